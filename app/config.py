"""Runtime settings loaded from environment variables."""

from __future__ import annotations

import logging
import os
from functools import lru_cache

from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_MAX_INPUT_BYTES = 50 * 1024 * 1024  # 50 MB


class Settings(BaseModel):
    max_input_bytes: int = DEFAULT_MAX_INPUT_BYTES
    indent_width: int = 2  # spaces per level, space dialect
    glyph_width: int = 4  # columns per level, "│   " / "├── "
    fallback_encodings: list[str] = []
    batch_size: int = 5000
    link_batch_size: int = 1000
    max_attempts: int = 3
    retry_base_delay: float = 0.5
    parallel_batches: int = 1
    max_forest_depth: int = 100  # deeper forests are returned as flat items only
    db_path: str | None = None
    cors_origins: list[str] = ["http://localhost:5173"]


def _int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default
    if value < minimum:
        logger.warning("Ignoring %s=%d (minimum %d), using %d", name, value, minimum, default)
        return default
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(0.0, float(raw))
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _list_env(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return [v.strip() for v in raw.split(",") if v.strip()]


def _settings_from_env() -> Settings:
    """Build Settings from environment variables."""
    return Settings(
        max_input_bytes=_int_env("DIRTREE_MAX_INPUT_BYTES", DEFAULT_MAX_INPUT_BYTES),
        indent_width=_int_env("DIRTREE_INDENT_WIDTH", 2),
        glyph_width=_int_env("DIRTREE_GLYPH_WIDTH", 4),
        fallback_encodings=_list_env("DIRTREE_FALLBACK_ENCODINGS", []),
        batch_size=_int_env("DIRTREE_BATCH_SIZE", 5000),
        link_batch_size=_int_env("DIRTREE_LINK_BATCH_SIZE", 1000),
        max_attempts=_int_env("DIRTREE_MAX_ATTEMPTS", 3),
        retry_base_delay=_float_env("DIRTREE_RETRY_BASE_DELAY", 0.5),
        parallel_batches=_int_env("DIRTREE_PARALLEL_BATCHES", 1),
        max_forest_depth=_int_env("DIRTREE_MAX_FOREST_DEPTH", 100, minimum=0),
        db_path=os.environ.get("DIRTREE_DB_PATH") or None,
        cors_origins=_list_env("CORS_ORIGINS", ["http://localhost:5173"]),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return _settings_from_env()
