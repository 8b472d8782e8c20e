"""Two-phase persistence of a flattened forest.

Phase one stores content rows in bounded batches. Phase two runs only after
every batch of the upload has been acknowledged. It maps each item's
``parent_order`` to the parent's stored identity and writes the link.

Nothing is rolled back on failure. The project id acts as a continuation
token: re-sending the upload (or the missing batches) with it, or calling
``resolve_links`` again, finishes a partially stored forest.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel

from app.config import Settings, get_settings
from app.models.tree_models import (
    BatchUploadRequest,
    FlatItem,
    ItemBatch,
    ParentLink,
    PersistedItem,
    ProjectRecord,
    ProjectStatus,
    TreeNode,
    UnresolvedParent,
    UploadResponse,
)
from app.services.errors import (
    BatchWriteFailed,
    ContentMismatch,
    DirtreeError,
    InconsistentForest,
    LinkResolutionFailed,
    ProjectNotFound,
    UploadIncomplete,
)
from app.services.flattener import (
    check_consistency,
    chunk_items,
    fingerprint_items,
    flatten_forest,
)
from app.services.storage.base import BaseTreeStore
from app.services.tree_parser import (
    KindClassifier,
    check_input_size,
    decode_input,
    parse_directory_text,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    max_attempts: int = 3
    base_delay: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(max_attempts=settings.max_attempts, base_delay=settings.retry_base_delay)

    def delay(self, attempt: int) -> float:
        return self.base_delay * (2 ** (attempt - 1))


async def _retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str,
) -> T:
    """Await ``operation`` up to ``policy.max_attempts`` times.

    Pipeline errors are not retried. Any other error is retried with
    exponential backoff and re-raised once attempts run out.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except DirtreeError:
            raise
        except Exception as e:
            if attempt >= policy.max_attempts:
                logger.error("%s failed after %d attempts: %s", description, attempt, e)
                raise
            delay = policy.delay(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s. Retrying in %.2fs",
                description, attempt, policy.max_attempts, e, delay,
            )
            await asyncio.sleep(delay)


async def _require_project(store: BaseTreeStore, project_id: str) -> ProjectRecord:
    project = await store.get_project(project_id)
    if project is None:
        raise ProjectNotFound(project_id)
    return project


# --- Phase one ---


async def stage_batch(
    store: BaseTreeStore,
    project_id: str,
    batch: ItemBatch,
    policy: RetryPolicy,
) -> None:
    """Store one batch of content rows, retrying transient failures."""
    description = f"Batch {batch.batch_number}/{batch.total_batches} of project {project_id}"
    try:
        await _retry(lambda: store.insert_items(project_id, batch.items), policy, description)
    except DirtreeError:
        raise
    except Exception as e:
        raise BatchWriteFailed(
            batch.batch_number, batch.total_batches, policy.max_attempts, project_id
        ) from e
    logger.info("Stored %s (%d items)", description.lower(), len(batch.items))


async def _stage_batches(
    store: BaseTreeStore,
    project: ProjectRecord,
    batches: list[ItemBatch],
    settings: Settings,
) -> None:
    policy = RetryPolicy.from_settings(settings)

    async def _stage(batch: ItemBatch) -> None:
        await stage_batch(store, project.id, batch, policy)
        recorded = await store.record_batch(project.id, batch.batch_number, batch.total_batches)
        project.received_batches = sorted(
            set(project.received_batches) | set(recorded.received_batches)
        )
        project.total_batches = recorded.total_batches

    if store.supports_parallel_writes and settings.parallel_batches > 1 and len(batches) > 1:
        semaphore = asyncio.Semaphore(settings.parallel_batches)

        async def _bounded(batch: ItemBatch) -> None:
            async with semaphore:
                await _stage(batch)

        # Let every batch settle before reporting, so the stored state is final.
        results = await asyncio.gather(*(_bounded(b) for b in batches), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return

    for batch in batches:
        await _stage(batch)


# --- Phase two ---


def pending_links(items: list[PersistedItem]) -> list[UnresolvedParent]:
    """Items that name a parent by order but have no parent identity yet."""
    return [
        UnresolvedParent(order=item.order, parent_order=item.parent_order)
        for item in items
        if item.parent_order is not None and item.parent_id is None
    ]


async def find_unlinked(store: BaseTreeStore, project_id: str) -> list[PersistedItem]:
    await _require_project(store, project_id)
    items = await store.list_items(project_id)
    return [item for item in items if not item.linked]


async def _mark_link_failed(store: BaseTreeStore, project: ProjectRecord) -> None:
    project.status = ProjectStatus.LINK_FAILED
    try:
        await store.save_project(project)
    except Exception:
        logger.exception("Could not record link failure for project %s", project.id)


async def resolve_links(
    store: BaseTreeStore,
    project_id: str,
    settings: Settings | None = None,
) -> list[PersistedItem]:
    """Resolve every pending ``parent_order`` to an identity and write it.

    Only links that are still unresolved are written, so calling this again
    after a failure picks up where the previous attempt stopped.
    """
    settings = settings or get_settings()
    policy = RetryPolicy.from_settings(settings)
    project = await _require_project(store, project_id)

    if project.total_batches is not None and not project.all_batches_received():
        raise UploadIncomplete(project_id, project.missing_batches())

    items = await store.list_items(project_id)
    check_consistency(items)
    pending = pending_links(items)

    if pending:
        wanted = sorted({p.order for p in pending} | {p.parent_order for p in pending})
        identities = await store.resolve_identities(project_id, wanted)

        links: list[ParentLink] = []
        for ref in pending:
            parent_id = identities.get(ref.parent_order)
            if parent_id is None or ref.order not in identities:
                raise InconsistentForest(
                    ref.order, ref.parent_order, "parent order has no stored identity"
                )
            links.append(ParentLink(item_id=identities[ref.order], parent_id=parent_id))

        written = 0
        for start in range(0, len(links), settings.link_batch_size):
            chunk = links[start:start + settings.link_batch_size]
            try:
                await _retry(
                    lambda chunk=chunk: store.write_parent_links(project_id, chunk),
                    policy,
                    f"Parent links {start}-{start + len(chunk) - 1} of project {project_id}",
                )
            except Exception as e:
                await _mark_link_failed(store, project)
                raise LinkResolutionFailed(
                    project_id, policy.max_attempts, len(links) - written
                ) from e
            written += len(chunk)

        logger.info("Linked %d items for project %s", written, project_id)

    project.status = ProjectStatus.LINKED
    await store.save_project(project)
    return await store.list_items(project_id)


# --- Whole uploads ---


async def upload_items(
    store: BaseTreeStore,
    items: list[FlatItem],
    *,
    name: str,
    project_id: str | None = None,
    settings: Settings | None = None,
) -> UploadResponse:
    """Run both phases for an already-flattened, linked item list.

    With ``project_id`` the upload resumes that project. Batches whose rows
    are all stored already are skipped, which is safe because the same forest
    always flattens to the same items. Resuming with different content raises
    ContentMismatch, since the stored rows belong to another forest.
    """
    settings = settings or get_settings()
    batches = chunk_items(items, settings.batch_size)
    fingerprint = fingerprint_items(items)
    stored: set[int] = set()

    if project_id:
        project = await _require_project(store, project_id)
        if project.fingerprint != fingerprint and (
            project.fingerprint is not None or project.received_batches
        ):
            raise ContentMismatch(project.id)
        # Batch numbers depend on batch_size, so ask the store which rows exist.
        present = await store.resolve_identities(project.id, [item.order for item in items])
        stored = {
            b.batch_number for b in batches if all(item.order in present for item in b.items)
        }
        logger.info(
            "Resuming project %s (%d of %d batches already stored)",
            project.id, len(stored), len(batches),
        )
    else:
        project = await store.create_project(name)
        logger.info("Created project %s (%s) for %d items", project.id, name, len(items))

    project.total_batches = len(batches)
    project.fingerprint = fingerprint
    project.status = ProjectStatus.STAGING
    await store.save_project(project)

    for batch in batches:
        if batch.batch_number in stored:
            await store.record_batch(project.id, batch.batch_number, batch.total_batches)
    todo = [b for b in batches if b.batch_number not in stored]
    await _stage_batches(store, project, todo, settings)

    linked = await resolve_links(store, project.id, settings)
    project = await _require_project(store, project.id)
    return UploadResponse(project=project, items=linked)


async def upload_forest(
    store: BaseTreeStore,
    forest: list[TreeNode],
    *,
    name: str,
    project_id: str | None = None,
    settings: Settings | None = None,
) -> UploadResponse:
    items = flatten_forest(forest)
    check_consistency(items)
    return await upload_items(store, items, name=name, project_id=project_id, settings=settings)


async def upload_text(
    store: BaseTreeStore,
    text: str,
    *,
    name: str,
    project_id: str | None = None,
    settings: Settings | None = None,
    classify: KindClassifier | None = None,
) -> UploadResponse:
    """Size-check, parse and upload a directory listing."""
    settings = settings or get_settings()
    check_input_size(len(text.encode("utf-8")), settings)
    forest = parse_directory_text(text, settings=settings, classify=classify)
    return await upload_forest(store, forest, name=name, project_id=project_id, settings=settings)


async def upload_bytes(
    store: BaseTreeStore,
    blob: bytes,
    *,
    name: str,
    project_id: str | None = None,
    settings: Settings | None = None,
) -> UploadResponse:
    settings = settings or get_settings()
    text = decode_input(blob, settings)
    forest = parse_directory_text(text, settings=settings)
    return await upload_forest(store, forest, name=name, project_id=project_id, settings=settings)


async def receive_batch(
    store: BaseTreeStore,
    request: BatchUploadRequest,
    settings: Settings | None = None,
) -> UploadResponse:
    """Accept one batch of a client-driven upload.

    The first batch creates the project unless a ``project_id`` is given.
    Links are resolved once every batch number has arrived, whichever batch
    completes the set, and only then are the items returned.
    """
    settings = settings or get_settings()
    if request.batch_number > request.total_batches:
        raise ValueError(
            f"batch_number {request.batch_number} exceeds total_batches {request.total_batches}"
        )

    if request.project_id:
        project = await _require_project(store, request.project_id)
    else:
        if not request.name:
            raise ValueError("A project name is required for the first batch")
        project = await store.create_project(request.name)

    if project.total_batches is None:
        project.total_batches = request.total_batches
    elif project.total_batches != request.total_batches:
        raise ValueError(
            f"total_batches changed from {project.total_batches} to {request.total_batches}"
        )

    batch = ItemBatch(
        batch_number=request.batch_number,
        total_batches=request.total_batches,
        is_last_batch=request.is_last_batch,
        items=request.items,
    )
    await _stage_batches(store, project, [batch], settings)

    missing = project.missing_batches()
    if missing:
        if request.is_last_batch:
            logger.warning(
                "Last batch for project %s arrived with batches %s missing; deferring links",
                project.id, missing,
            )
        return UploadResponse(project=project, missing_batches=missing)

    linked = await resolve_links(store, project.id, settings)
    project = await _require_project(store, project.id)
    return UploadResponse(project=project, items=linked)
