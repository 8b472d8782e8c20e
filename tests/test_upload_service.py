import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from app.config import Settings
from app.models.tree_models import BatchUploadRequest, EntryKind, FlatItem, ProjectStatus
from app.services.errors import (
    BatchWriteFailed,
    ContentMismatch,
    InconsistentForest,
    InputTooLarge,
    LinkResolutionFailed,
    ProjectNotFound,
    UploadIncomplete,
)
from app.services.flattener import chunk_items, flatten_forest, rebuild_persisted_forest
from app.services.storage import SqliteTreeStore
from app.services.tree_parser import parse_directory_text
from app.services.upload_service import (
    RetryPolicy,
    find_unlinked,
    receive_batch,
    resolve_links,
    upload_bytes,
    upload_items,
    upload_text,
)

SPACE_FIXTURE = "root\n  docs\n    readme.md\n  src\n"


def _parents(items):
    by_id = {i.id: i for i in items}
    return {i.name: by_id[i.parent_id].name if i.parent_id else None for i in items}


def test_retry_policy_backoff_doubles():
    policy = RetryPolicy(max_attempts=4, base_delay=0.5)
    assert [policy.delay(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]


@pytest.mark.anyio
async def test_upload_text_links_every_item(store, settings):
    result = await upload_text(store, SPACE_FIXTURE, name="demo", settings=settings)

    assert result.project.status == ProjectStatus.LINKED
    assert result.project.total_batches == 2
    assert result.project.missing_batches() == []
    assert [i.order for i in result.items] == [0, 1, 2, 3]
    assert _parents(result.items) == {
        "root": None,
        "docs": "root",
        "readme.md": "docs",
        "src": "root",
    }
    assert all(i.linked for i in result.items)


@pytest.mark.anyio
async def test_upload_reproduces_parsed_forest(store, settings, fixtures_dir):
    text = (fixtures_dir / "tree_glyph.txt").read_text(encoding="utf-8")
    result = await upload_text(store, text, name="glyph", settings=settings)
    assert rebuild_persisted_forest(result.items) == parse_directory_text(text)


@pytest.mark.anyio
async def test_upload_bytes_decodes_first(store, settings):
    result = await upload_bytes(store, SPACE_FIXTURE.encode("utf-16"), name="demo", settings=settings)
    assert [i.name for i in result.items] == ["root", "docs", "readme.md", "src"]


@pytest.mark.anyio
async def test_upload_text_size_limit(store):
    with pytest.raises(InputTooLarge):
        await upload_text(store, "x" * 100, name="big", settings=Settings(max_input_bytes=10))


@pytest.mark.anyio
async def test_empty_forest_upload(store, settings):
    result = await upload_text(store, "", name="empty", settings=settings)
    assert result.items == []
    assert result.project.total_batches == 0
    assert result.project.status == ProjectStatus.LINKED


@pytest.mark.anyio
async def test_parallel_batches(store):
    settings = Settings(batch_size=1, parallel_batches=3, retry_base_delay=0.0)
    result = await upload_text(store, SPACE_FIXTURE, name="demo", settings=settings)
    assert sorted(result.project.received_batches) == [1, 2, 3, 4]
    assert _parents(result.items)["readme.md"] == "docs"


@pytest.mark.anyio
async def test_inconsistent_items_are_rejected(store, settings):
    items = [
        FlatItem(name="root", kind=EntryKind.FOLDER, depth=0, order=0),
        FlatItem(name="orphan", kind=EntryKind.FILE, depth=1, order=1, parent_order=9),
    ]
    with pytest.raises(InconsistentForest):
        await upload_items(store, items, name="bad", settings=settings)


# --- Failure handling ---


@pytest.mark.anyio
async def test_link_failure_keeps_content_rows(store, settings, monkeypatch):
    failing = AsyncMock(side_effect=RuntimeError("connection reset"))
    monkeypatch.setattr(store, "write_parent_links", failing)

    with pytest.raises(LinkResolutionFailed) as exc:
        await upload_text(store, SPACE_FIXTURE, name="demo", settings=settings)

    assert exc.value.attempts == settings.max_attempts
    assert exc.value.pending == 3
    assert failing.await_count == settings.max_attempts

    project_id = exc.value.project_id
    project = await store.get_project(project_id)
    assert project.status == ProjectStatus.LINK_FAILED
    assert len(await store.list_items(project_id)) == 4
    assert [i.name for i in await find_unlinked(store, project_id)] == ["docs", "readme.md", "src"]

    monkeypatch.undo()
    linked = await resolve_links(store, project_id, settings)
    assert all(i.linked for i in linked)
    assert (await store.get_project(project_id)).status == ProjectStatus.LINKED
    assert await find_unlinked(store, project_id) == []


@pytest.mark.anyio
async def test_transient_link_failure_is_retried(store, settings, monkeypatch):
    original = store.write_parent_links
    calls = []

    async def flaky(project_id, links):
        calls.append(len(links))
        if len(calls) == 1:
            raise RuntimeError("timeout")
        await original(project_id, links)

    monkeypatch.setattr(store, "write_parent_links", flaky)
    result = await upload_text(store, SPACE_FIXTURE, name="demo", settings=settings)
    assert result.project.status == ProjectStatus.LINKED
    assert calls == [2, 2, 1]


@pytest.mark.anyio
async def test_batch_failure_then_resume(store, settings, monkeypatch):
    original = store.insert_items

    async def fails_on_second_batch(project_id, items):
        if items[0].order == 2:
            raise RuntimeError("disk full")
        await original(project_id, items)

    monkeypatch.setattr(store, "insert_items", fails_on_second_batch)
    with pytest.raises(BatchWriteFailed) as exc:
        await upload_text(store, SPACE_FIXTURE, name="demo", settings=settings)

    assert exc.value.batch_number == 2
    assert exc.value.total_batches == 2
    project_id = exc.value.project_id
    project = await store.get_project(project_id)
    assert project.received_batches == [1]
    assert len(await store.list_items(project_id)) == 2

    stored_batches = []

    async def recording(project_id, items):
        stored_batches.append([i.order for i in items])
        await original(project_id, items)

    monkeypatch.setattr(store, "insert_items", recording)
    result = await upload_text(
        store, SPACE_FIXTURE, name="demo", project_id=project_id, settings=settings
    )
    assert stored_batches == [[2, 3]]
    assert result.project.id == project_id
    assert result.project.status == ProjectStatus.LINKED
    assert len(result.items) == 4


@pytest.mark.anyio
async def test_resume_unknown_project(store, settings):
    with pytest.raises(ProjectNotFound):
        await upload_text(store, SPACE_FIXTURE, name="demo", project_id="nope", settings=settings)


# --- Client-driven batches ---


def _batch_requests(settings):
    items = flatten_forest(parse_directory_text(SPACE_FIXTURE))
    return [
        BatchUploadRequest(
            name="demo",
            batch_number=b.batch_number,
            total_batches=b.total_batches,
            is_last_batch=b.is_last_batch,
            items=b.items,
        )
        for b in chunk_items(items, settings.batch_size)
    ]


@pytest.mark.anyio
async def test_receive_batches_out_of_order(store, settings, caplog):
    first, last = _batch_requests(settings)

    with caplog.at_level(logging.WARNING):
        pending = await receive_batch(store, last, settings)
    assert pending.items is None
    assert pending.missing_batches == [1]
    assert "deferring links" in caplog.text

    project_id = pending.project.id
    # Nothing is linked before the set is complete.
    assert all(i.parent_id is None for i in await store.list_items(project_id))

    done = await receive_batch(
        store, first.model_copy(update={"project_id": project_id}), settings
    )
    assert done.missing_batches == []
    assert done.project.status == ProjectStatus.LINKED
    assert _parents(done.items)["readme.md"] == "docs"


@pytest.mark.anyio
async def test_resolve_links_waits_for_every_batch(store, settings):
    first, _ = _batch_requests(settings)
    pending = await receive_batch(store, first, settings)
    with pytest.raises(UploadIncomplete) as exc:
        await resolve_links(store, pending.project.id, settings)
    assert exc.value.missing == [2]


@pytest.mark.anyio
async def test_receive_batch_rejects_bad_metadata(store, settings):
    first, last = _batch_requests(settings)
    with pytest.raises(ValueError):
        await receive_batch(store, first.model_copy(update={"batch_number": 5}), settings)

    pending = await receive_batch(store, first, settings)
    changed = last.model_copy(update={"project_id": pending.project.id, "total_batches": 3})
    with pytest.raises(ValueError, match="total_batches changed"):
        await receive_batch(store, changed, settings)

    with pytest.raises(ValueError, match="name"):
        await receive_batch(store, first.model_copy(update={"name": None}), settings)


@pytest.mark.anyio
async def test_repeated_batch_is_idempotent(store, settings):
    first, last = _batch_requests(settings)
    pending = await receive_batch(store, first, settings)
    again = first.model_copy(update={"project_id": pending.project.id})
    await receive_batch(store, again, settings)
    assert len(await store.list_items(pending.project.id)) == 2

    done = await receive_batch(store, last.model_copy(update={"project_id": pending.project.id}), settings)
    assert len(done.items) == 4


@pytest.mark.anyio
async def test_concurrent_batches_complete_the_barrier(tmp_path):
    settings = Settings(batch_size=1, link_batch_size=2, retry_base_delay=0.0)
    store = SqliteTreeStore(str(tmp_path / "dirtree.sqlite3"))
    try:
        first, *rest = _batch_requests(settings)
        pending = await receive_batch(store, first, settings)
        project_id = pending.project.id

        responses = await asyncio.gather(
            *(
                receive_batch(store, r.model_copy(update={"project_id": project_id}), settings)
                for r in rest
            )
        )

        project = await store.get_project(project_id)
        assert project.received_batches == [1, 2, 3, 4]
        assert project.status == ProjectStatus.LINKED
        finished = [r for r in responses if r.items is not None]
        assert len(finished) == 1
        assert _parents(finished[0].items)["readme.md"] == "docs"
    finally:
        await store.close()


# --- Continuation token ---


@pytest.mark.anyio
async def test_resume_with_different_content_is_rejected(store, settings):
    first = await upload_text(store, "alpha\n  one.txt", name="demo", settings=settings)
    project_id = first.project.id

    with pytest.raises(ContentMismatch) as exc:
        await upload_text(
            store, "beta\n  two.txt", name="demo", project_id=project_id, settings=settings
        )
    assert exc.value.project_id == project_id
    assert [i.name for i in await store.list_items(project_id)] == ["alpha", "one.txt"]


@pytest.mark.anyio
async def test_resume_with_same_content_is_idempotent(store, settings):
    first = await upload_text(store, SPACE_FIXTURE, name="demo", settings=settings)
    again = await upload_text(
        store, SPACE_FIXTURE, name="demo", project_id=first.project.id, settings=settings
    )
    assert [i.id for i in again.items] == [i.id for i in first.items]
    assert again.project.fingerprint == first.project.fingerprint


@pytest.mark.anyio
async def test_resume_of_batch_project_with_rows_is_rejected(store, settings):
    first, _ = _batch_requests(settings)
    pending = await receive_batch(store, first, settings)
    with pytest.raises(ContentMismatch):
        await upload_text(
            store, SPACE_FIXTURE, name="demo", project_id=pending.project.id, settings=settings
        )


@pytest.mark.anyio
async def test_resume_with_new_batch_size_restages_everything(store, settings, monkeypatch):
    original = store.insert_items

    async def fails_on_second_batch(project_id, items):
        if items[0].order == 2:
            raise RuntimeError("disk full")
        await original(project_id, items)

    monkeypatch.setattr(store, "insert_items", fails_on_second_batch)
    with pytest.raises(BatchWriteFailed) as exc:
        await upload_text(store, SPACE_FIXTURE, name="demo", settings=settings)
    monkeypatch.undo()

    wider = settings.model_copy(update={"batch_size": 3})
    result = await upload_text(
        store, SPACE_FIXTURE, name="demo", project_id=exc.value.project_id, settings=wider
    )
    assert result.project.total_batches == 2
    assert [i.name for i in result.items] == ["root", "docs", "readme.md", "src"]
    assert all(i.linked for i in result.items)
