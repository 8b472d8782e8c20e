import os
from pathlib import Path

import pytest

FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Disable rate limiting for tests
os.environ["DIRTREE_NO_RATE_LIMIT"] = "true"

from app.config import Settings  # noqa: E402
from app.services.storage import MemoryTreeStore  # noqa: E402


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES_DIR


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    """Small batches and no backoff delay so retries run instantly."""
    return Settings(batch_size=2, link_batch_size=2, retry_base_delay=0.0)


@pytest.fixture
def store() -> MemoryTreeStore:
    return MemoryTreeStore()
