"""Per-project bug numbering.

Numbers are ``max(existing) + 1``. Allocation and the insert that claims
the number happen under one per-project ``asyncio.Lock`` so two creates for
the same project never see the same maximum; other projects proceed
without waiting. The schema's unique ``(project_id, number)`` index backs
this up against writers outside the process.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from bugbase.errors import Conflict, SequenceTaken
from bugbase.repository import Repository

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3


class SequenceAllocator:
    def __init__(self, repo: Repository) -> None:
        self._repo = repo
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = self._locks[project_id] = asyncio.Lock()
        return lock

    def next_sequence(self, project_id: str) -> int:
        """Next number for *project_id*. Callers must hold ``reserve()``."""
        return self._repo.max_bug_number(project_id) + 1

    @asynccontextmanager
    async def reserve(self, project_id: str) -> AsyncIterator[int]:
        """Hold the project's numbering lock and yield the next number."""
        async with self._lock_for(project_id):
            yield self.next_sequence(project_id)

    async def claim(self, project_id: str, insert: Callable[[int], T]) -> T:
        """Run ``insert(number)`` with a freshly allocated number.

        Retries on ``SequenceTaken`` up to ``MAX_ATTEMPTS`` times, then
        surfaces ``Conflict``.
        """
        for attempt in range(1, MAX_ATTEMPTS + 1):
            async with self.reserve(project_id) as number:
                try:
                    return insert(number)
                except SequenceTaken:
                    logger.warning(
                        "Bug number %d taken in project %s (attempt %d/%d)",
                        number,
                        project_id,
                        attempt,
                        MAX_ATTEMPTS,
                    )
            await asyncio.sleep(0)
        msg = f"Could not allocate a bug number for project {project_id} after {MAX_ATTEMPTS} attempts"
        raise Conflict(msg)
