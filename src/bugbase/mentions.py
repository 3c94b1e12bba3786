"""@-mention extraction from free text."""

from __future__ import annotations

import re
from collections.abc import Iterable

from bugbase.models import Subject
from bugbase.repository import Repository

MENTION_RE = re.compile(r"@(\w+)")


def extract_mentions(text: str | None) -> frozenset[str]:
    """Return the distinct usernames referenced as ``@name`` in *text*."""
    if not text:
        return frozenset()
    return frozenset(MENTION_RE.findall(text))


def resolve_mentions(repo: Repository, usernames: Iterable[str]) -> list[Subject]:
    """Map usernames to subjects. Names with no matching subject are dropped."""
    return repo.find_subjects_by_usernames(usernames)
