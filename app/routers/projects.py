"""Projects router: persisted uploads, the batch protocol and read-back."""

from pathlib import Path

from fastapi import APIRouter, Depends, Form, HTTPException, Request, UploadFile
from fastapi.responses import PlainTextResponse

from app.config import Settings, get_settings
from app.models.tree_models import (
    BatchUploadRequest,
    PersistedItem,
    ProjectResponse,
    TextUploadRequest,
    TreeResponse,
    UploadResponse,
)
from app.rate_limit import limiter
from app.services.errors import (
    BatchWriteFailed,
    ContentMismatch,
    DirtreeError,
    InconsistentForest,
    InputTooLarge,
    InvalidEncoding,
    LinkResolutionFailed,
    ProjectNotFound,
    UploadIncomplete,
)
from app.services.flattener import rebuild_persisted_forest
from app.services.storage import BaseTreeStore
from app.services.tree_render import render_glyph, render_indented
from app.services.tree_walk import max_depth
from app.services.upload_service import (
    find_unlinked,
    receive_batch,
    resolve_links,
    upload_bytes,
    upload_text,
)

router = APIRouter(prefix="/api/projects", tags=["projects"])

_CHUNK_SIZE = 64 * 1024  # 64 KB

_STATUS_CODES: dict[type[DirtreeError], int] = {
    InputTooLarge: 413,
    InvalidEncoding: 400,
    BatchWriteFailed: 503,
    LinkResolutionFailed: 503,
    InconsistentForest: 422,
    ProjectNotFound: 404,
    UploadIncomplete: 409,
    ContentMismatch: 409,
}


def to_http_exception(e: DirtreeError) -> HTTPException:
    """Translate a pipeline error into an HTTP error the client can act on."""
    status = next(
        (code for cls, code in _STATUS_CODES.items() if isinstance(e, cls)), 500
    )
    detail: dict[str, object] = {"message": str(e), "error": type(e).__name__}
    project_id = getattr(e, "project_id", None)
    if project_id:
        # Continuation token: the client can resume or relink this project.
        detail["project_id"] = project_id
    return HTTPException(status_code=status, detail=detail)


def get_store(request: Request) -> BaseTreeStore:
    return request.app.state.store


async def read_limited(file: UploadFile, limit: int) -> bytes:
    """Stream an upload in chunks, failing as soon as it exceeds ``limit``."""
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await file.read(_CHUNK_SIZE)
        if not chunk:
            break
        total += len(chunk)
        if total > limit:
            raise InputTooLarge(total, limit)
        chunks.append(chunk)
    return b"".join(chunks)


async def _get_project_or_404(store: BaseTreeStore, project_id: str):
    project = await store.get_project(project_id)
    if project is None:
        raise to_http_exception(ProjectNotFound(project_id))
    return project


@router.post("/text", response_model=UploadResponse)
@limiter.limit("10/minute")
async def upload_project_text(
    request: Request,
    body: TextUploadRequest,
    store: BaseTreeStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> UploadResponse:
    try:
        return await upload_text(
            store, body.text, name=body.name, project_id=body.project_id, settings=settings
        )
    except DirtreeError as e:
        raise to_http_exception(e)


@router.post("/file", response_model=UploadResponse)
@limiter.limit("10/minute")
async def upload_project_file(
    request: Request,
    file: UploadFile,
    name: str | None = Form(None),
    project_id: str | None = Form(None),
    store: BaseTreeStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> UploadResponse:
    if not file.filename:
        raise HTTPException(status_code=400, detail="No filename provided")
    if Path(file.filename).suffix.lower() != ".txt":
        raise HTTPException(status_code=400, detail="Only .txt directory listings are supported")

    try:
        content = await read_limited(file, settings.max_input_bytes)
        return await upload_bytes(
            store,
            content,
            name=name or Path(file.filename).stem,
            project_id=project_id,
            settings=settings,
        )
    except DirtreeError as e:
        raise to_http_exception(e)


@router.post("/batches", response_model=UploadResponse)
@limiter.limit("120/minute")
async def upload_project_batch(
    request: Request,
    body: BatchUploadRequest,
    store: BaseTreeStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> UploadResponse:
    """Accept one batch; items come back once every batch has arrived."""
    try:
        return await receive_batch(store, body, settings)
    except DirtreeError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: str, store: BaseTreeStore = Depends(get_store)
) -> ProjectResponse:
    project = await _get_project_or_404(store, project_id)
    items = await store.list_items(project_id)
    return ProjectResponse(project=project, items=items)


@router.get("/{project_id}/tree", response_model=TreeResponse)
async def get_project_tree(
    project_id: str,
    store: BaseTreeStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> TreeResponse:
    project = await _get_project_or_404(store, project_id)
    items = await store.list_items(project_id)
    try:
        forest = rebuild_persisted_forest(items)
    except DirtreeError as e:
        raise to_http_exception(e)
    unlinked = sum(1 for item in items if not item.linked)
    if max_depth(forest) > settings.max_forest_depth:
        return TreeResponse(
            project=project, forest=None, forest_omitted=True, items=items, unlinked=unlinked
        )
    return TreeResponse(project=project, forest=forest, unlinked=unlinked)


@router.get("/{project_id}/export", response_class=PlainTextResponse)
async def export_project(
    project_id: str,
    style: str = "glyph",
    icons: bool = False,
    store: BaseTreeStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> PlainTextResponse:
    if style not in ("glyph", "indent"):
        raise HTTPException(status_code=400, detail=f"Unsupported style: {style}")
    await _get_project_or_404(store, project_id)
    try:
        forest = rebuild_persisted_forest(await store.list_items(project_id))
    except DirtreeError as e:
        raise to_http_exception(e)
    if style == "glyph":
        text = render_glyph(forest, icons=icons)
    else:
        text = render_indented(forest, settings.indent_width, icons=icons)
    return PlainTextResponse(text)


@router.get("/{project_id}/unlinked", response_model=list[PersistedItem])
async def get_unlinked_items(
    project_id: str, store: BaseTreeStore = Depends(get_store)
) -> list[PersistedItem]:
    try:
        return await find_unlinked(store, project_id)
    except DirtreeError as e:
        raise to_http_exception(e)


@router.post("/{project_id}/relink", response_model=ProjectResponse)
@limiter.limit("10/minute")
async def relink_project(
    request: Request,
    project_id: str,
    store: BaseTreeStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> ProjectResponse:
    """Re-run parent-link resolution for a partially linked project."""
    try:
        items = await resolve_links(store, project_id, settings)
    except DirtreeError as e:
        raise to_http_exception(e)
    project = await _get_project_or_404(store, project_id)
    return ProjectResponse(project=project, items=items)


@router.delete("/{project_id}", status_code=204)
async def delete_project(
    project_id: str, store: BaseTreeStore = Depends(get_store)
) -> None:
    if not await store.delete_project(project_id):
        raise to_http_exception(ProjectNotFound(project_id))
