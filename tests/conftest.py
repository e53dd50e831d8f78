from pathlib import Path
from typing import AsyncIterator

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from quotawatch.store import UsageStore


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def data_dir(tmp_path: "Path") -> "Path":
    """
    empty per-test data directory for config, database and discovery
    files.
    """
    path = tmp_path / "quotawatch"
    path.mkdir()
    return path


@pytest_asyncio.fixture()
async def store(data_dir: "Path") -> "AsyncIterator[UsageStore]":
    async with UsageStore(data_dir / "usage.db") as s:
        yield s
