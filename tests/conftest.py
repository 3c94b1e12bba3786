"""Shared pytest fixtures for bugbase tests."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from click.testing import CliRunner

from bugbase.core import BUGBASE_DIR_NAME, DB_FILENAME, BugbaseDB, write_config
from bugbase.presence import PresenceTracker
from bugbase.service import TrackerService
from tests._db_factory import ManualClock, World, make_db, seed_world


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def db(tmp_path: Path, clock: ManualClock) -> Generator[BugbaseDB, None, None]:
    """Fresh BugbaseDB for each test."""
    d = make_db(tmp_path, clock=clock)
    yield d
    d.close()


@pytest.fixture
def world(db: BugbaseDB) -> World:
    """Project TEST with one subject per role. See ``World``."""
    return seed_world(db)


@pytest.fixture
def tracker(clock: ManualClock) -> PresenceTracker:
    return PresenceTracker(clock=clock, heartbeat_timeout=60.0, outbox_size=16)


@pytest.fixture
def service(world: World, tracker: PresenceTracker) -> TrackerService:
    return TrackerService(world.db, tracker=tracker)


@pytest.fixture
def bugbase_project(tmp_path: Path) -> Path:
    """A tmp directory set up as a bugbase deployment (.bugbase/ with config + db).

    Returns the deployment root (parent of .bugbase/).
    """
    bugbase_dir = tmp_path / BUGBASE_DIR_NAME
    bugbase_dir.mkdir()
    write_config(bugbase_dir, {"name": "proj", "version": 1})

    d = BugbaseDB(bugbase_dir / DB_FILENAME)
    d.initialize()
    d.close()
    return tmp_path


@pytest.fixture
def cli_runner() -> CliRunner:
    """Click CLI test runner."""
    return CliRunner()
