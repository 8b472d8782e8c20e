from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile

from app.config import Settings, get_settings
from app.models.tree_models import ParseResponse, TextRequest
from app.rate_limit import limiter
from app.routers.projects import read_limited, to_http_exception
from app.services.errors import DirtreeError
from app.services.flattener import LinkStrategy, flatten_forest
from app.services.tree_parser import (
    build_forest,
    check_input_size,
    decode_input,
    detect_dialect,
    parse_lines,
)
from app.services.tree_walk import max_depth

router = APIRouter(prefix="/api/parse", tags=["parse"])


def _parse(
    text: str,
    settings: Settings,
    strategy: LinkStrategy,
    filename: str | None = None,
) -> ParseResponse:
    raw_lines = parse_lines(text, settings)
    forest = build_forest(raw_lines)
    items = flatten_forest(forest, strategy)
    # Nested JSON this deep cannot be serialized; clients rebuild from items.
    omitted = max_depth(forest) > settings.max_forest_depth
    return ParseResponse(
        dialect=detect_dialect(raw_lines),
        forest=None if omitted else forest,
        forest_omitted=omitted,
        items=items,
        total_items=len(items),
        source_filename=filename,
    )


@router.post("/file", response_model=ParseResponse)
@limiter.limit("10/minute")
async def parse_file_upload(
    request: Request,
    file: UploadFile,
    strategy: LinkStrategy = LinkStrategy.SAME_PASS,
    settings: Settings = Depends(get_settings),
) -> ParseResponse:
    if not file.filename:
        raise HTTPException(status_code=400, detail="No filename provided")
    if Path(file.filename).suffix.lower() != ".txt":
        raise HTTPException(status_code=400, detail="Only .txt directory listings are supported")

    try:
        content = await read_limited(file, settings.max_input_bytes)
        text = decode_input(content, settings)
    except DirtreeError as e:
        raise to_http_exception(e)
    return _parse(text, settings, strategy, filename=file.filename)


@router.post("/text", response_model=ParseResponse)
@limiter.limit("30/minute")
async def parse_text_input(
    request: Request,
    body: TextRequest,
    strategy: LinkStrategy = LinkStrategy.SAME_PASS,
    settings: Settings = Depends(get_settings),
) -> ParseResponse:
    try:
        check_input_size(len(body.text.encode("utf-8")), settings)
    except DirtreeError as e:
        raise to_http_exception(e)
    return _parse(body.text, settings, strategy)
