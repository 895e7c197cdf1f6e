"""Pytest configuration and fixtures."""

import sys
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for platform_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from patchwindow.config import Config  # noqa: E402
from patchwindow.models import GroupMapping, GroupMapSpec  # noqa: E402
from patchwindow.store import WindowStore  # noqa: E402

FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


@pytest.fixture
def now() -> datetime:
    """Fixed, timezone-aware run time."""
    return FIXED_NOW


@pytest.fixture
def db_engine() -> Iterator[Engine]:
    """Shared in-memory SQLite engine (one connection for all sessions)."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine: Engine) -> WindowStore:
    """Window ledger with its table created."""
    window_store = WindowStore(db_engine)
    window_store.create_schema()
    return window_store


@pytest.fixture
def group_map() -> GroupMapSpec:
    return GroupMapSpec(
        groups=[
            GroupMapping(description="Patch Wave G", group="G"),
            GroupMapping(description="Patch Wave H", group="H"),
            GroupMapping(description="Patch Wave Pipe", group="P", delimiter="|"),
        ]
    )


@pytest.fixture
def config(group_map: GroupMapSpec, tmp_path: Path) -> Config:
    return Config(
        group_map=group_map,
        database_url="sqlite://",
        orion_url="https://orion.example.com:17778",
        directory_url="https://patch.example.com/st/console/api/v1.0",
        lock_file=tmp_path / "run.lock",
    )
