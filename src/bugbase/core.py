"""Core database handle for the bug tracker.

Single source of truth for all SQLite operations. The CLI, the HTTP layer
and the mutation pipeline all go through a ``BugbaseDB`` handle that is
constructed explicitly and passed down; there is no process-wide client.

Convention-based discovery: each deployment has a `.bugbase/` directory
containing `bugbase.db` (SQLite) and `config.json`.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import sqlite3
import uuid
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from bugbase.clock import Clock, SystemClock, to_iso
from bugbase.db_activity import ActivityMixin
from bugbase.db_bugs import BugsMixin
from bugbase.db_comments import CommentsMixin
from bugbase.db_members import MembersMixin
from bugbase.db_notifications import NotificationsMixin
from bugbase.db_schema import CURRENT_SCHEMA_VERSION, SCHEMA_SQL
from bugbase.db_watchers import WatchersMixin
from bugbase.types.core import ProjectConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Convention-based discovery
# ---------------------------------------------------------------------------

BUGBASE_DIR_NAME = ".bugbase"
DB_FILENAME = "bugbase.db"
CONFIG_FILENAME = "config.json"

DEFAULT_CONFIG = ProjectConfig(
    name="bugbase",
    version=1,
    heartbeat_timeout=60.0,
    reaper_interval=15.0,
    outbox_size=256,
    port=8377,
)

_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "BUGBASE_HEARTBEAT_TIMEOUT": ("heartbeat_timeout", float),
    "BUGBASE_PORT": ("port", int),
}


def find_bugbase_root(start: Path | None = None) -> Path:
    """Walk up from start (default cwd) looking for .bugbase/ directory.

    Returns the .bugbase/ directory path (not the deployment root).
    """
    current = (start or Path.cwd()).resolve()
    for parent in [current, *current.parents]:
        candidate = parent / BUGBASE_DIR_NAME
        if candidate.is_dir():
            return candidate
    msg = f"No {BUGBASE_DIR_NAME}/ directory found in {current} or any parent"
    raise FileNotFoundError(msg)


def read_config(bugbase_dir: Path) -> ProjectConfig:
    """Read .bugbase/config.json merged over defaults. Returns defaults if missing or corrupt."""
    config = ProjectConfig(**DEFAULT_CONFIG)
    config_path = bugbase_dir / CONFIG_FILENAME
    if config_path.exists():
        try:
            loaded = json.loads(config_path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Failed to read %s, using defaults: %s", config_path, exc)
        else:
            if isinstance(loaded, dict):
                config.update(loaded)  # type: ignore[typeddict-item]
            else:
                logger.warning("Ignoring %s: expected a JSON object", config_path)
    return config


def apply_env_overrides(config: ProjectConfig) -> ProjectConfig:
    """Overlay BUGBASE_* environment variables. Unparseable values are ignored with a warning."""
    result = ProjectConfig(**config)
    for var, (key, cast) in _ENV_OVERRIDES.items():
        raw = os.getenv(var)
        if raw is None:
            continue
        try:
            result[key] = cast(raw)  # type: ignore[literal-required]
        except ValueError:
            logger.warning("Unparseable %s=%r, falling back to %r", var, raw, result.get(key))
    return result


def write_config(bugbase_dir: Path, config: dict[str, Any] | ProjectConfig) -> None:
    """Write .bugbase/config.json."""
    config_path = bugbase_dir / CONFIG_FILENAME
    config_path.write_text(json.dumps(config, indent=2) + "\n")


# ---------------------------------------------------------------------------
# Database handle
# ---------------------------------------------------------------------------


class BugbaseDB(MembersMixin, BugsMixin, CommentsMixin, WatchersMixin, ActivityMixin, NotificationsMixin):
    """Direct SQLite operations. Implements the ``Repository`` protocol."""

    def __init__(
        self,
        db_path: str | Path,
        *,
        clock: Clock | None = None,
        check_same_thread: bool = True,
    ) -> None:
        self.db_path = Path(db_path)
        self.clock: Clock = clock or SystemClock()
        self._conn: sqlite3.Connection | None = None
        self._check_same_thread = check_same_thread
        self._tx_depth = 0

    @classmethod
    def from_directory(cls, bugbase_dir: Path | None = None, *, check_same_thread: bool = True) -> BugbaseDB:
        """Create a BugbaseDB by discovering .bugbase/ from bugbase_dir (or cwd)."""
        root = bugbase_dir if bugbase_dir is not None else find_bugbase_root()
        db = cls(root / DB_FILENAME, check_same_thread=check_same_thread)
        db.initialize()
        return db

    def __enter__(self) -> BugbaseDB:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                isolation_level="DEFERRED",
                check_same_thread=self._check_same_thread,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def initialize(self) -> None:
        """Create tables if the database is new."""
        if self.get_schema_version() == 0:
            self.conn.executescript(SCHEMA_SQL)
            self.conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION}")
        self.conn.commit()

    def get_schema_version(self) -> int:
        """Return the current schema version from PRAGMA user_version."""
        result: int = self.conn.execute("PRAGMA user_version").fetchone()[0]
        return result

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Atomic multi-write unit.

        Re-entrant: only the outermost block commits. Any exception
        escaping the outermost block rolls back every write made inside it.
        """
        if self._tx_depth > 0:
            self._tx_depth += 1
            try:
                yield self.conn
            finally:
                self._tx_depth -= 1
            return

        self._tx_depth = 1
        try:
            if not self.conn.in_transaction:
                self.conn.execute("BEGIN IMMEDIATE")
            yield self.conn
            self.conn.commit()
        except BaseException:
            self.conn.rollback()
            raise
        finally:
            self._tx_depth = 0

    def _now_iso(self) -> str:
        return to_iso(self.clock.now())

    def _generate_unique_id(self, table: str, prefix: str) -> str:
        """Generate a unique ID using O(1) EXISTS checks against the PK index.

        *table* is always a hardcoded literal at the call site (never user input).
        """
        for _ in range(10):
            candidate = f"{prefix}-{uuid.uuid4().hex[:10]}"
            if self.conn.execute(f"SELECT 1 FROM {table} WHERE id = ?", (candidate,)).fetchone() is None:
                return candidate
        return f"{prefix}-{uuid.uuid4().hex[:16]}"
