"""Foundational TypedDicts for store returns and configuration."""

from __future__ import annotations

from typing import Any, TypedDict


class ProjectConfig(TypedDict, total=False):
    """Shape of .bugbase/config.json."""

    name: str
    version: int
    heartbeat_timeout: float
    reaper_interval: float
    outbox_size: int
    port: int


class PaginatedResult(TypedDict):
    """Envelope returned by paginated query methods."""

    results: list[dict[str, Any]]
    total: int
    limit: int
    offset: int
    has_more: bool


class FieldChange(TypedDict):
    old: Any
    new: Any
