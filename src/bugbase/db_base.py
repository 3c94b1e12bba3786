"""Shared utilities and Protocol for DB mixins."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any, Protocol

from bugbase.clock import Clock


def _loads_object(raw: str | None) -> dict[str, Any]:
    """Decode a JSON object column; empty or NULL decodes to ``{}``."""
    if not raw:
        return {}
    value = json.loads(raw)
    return value if isinstance(value, dict) else {}


def _placeholders(values: list[Any] | tuple[Any, ...]) -> str:
    return ",".join("?" * len(values))


class DBMixinProtocol(Protocol):
    """Shared attributes and methods that DB mixins access via self.

    Mixins inherit this Protocol so mypy can type-check self.conn,
    self._now_iso(), etc. Actual implementations are provided by
    BugbaseDB at composition time.
    """

    db_path: Path
    clock: Clock
    _conn: sqlite3.Connection | None

    @property
    def conn(self) -> sqlite3.Connection: ...

    def _now_iso(self) -> str: ...

    def _generate_unique_id(self, table: str, prefix: str) -> str: ...
