"""Credential -> Subject resolution.

Tokens are opaque ``secrets.token_urlsafe`` strings handed out once; only
their SHA-256 digest is stored.
"""

from __future__ import annotations

import hashlib
import secrets
from typing import Protocol

from bugbase.errors import AuthenticationFailed
from bugbase.models import Subject

TOKEN_PREFIX = "bb_"


class Authenticator(Protocol):
    def authenticate(self, credential: str | None) -> Subject: ...


class TokenStore(Protocol):
    def get_subject(self, subject_id: str) -> Subject: ...
    def store_token_digest(self, token_hash: str, subject_id: str) -> None: ...
    def subject_for_token_digest(self, token_hash: str) -> Subject | None: ...


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def parse_bearer(header: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer ...`` header value."""
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class TokenAuthenticator:
    def __init__(self, store: TokenStore) -> None:
        self._store = store

    def issue(self, subject_id: str) -> str:
        """Mint a new token for *subject_id*. The plaintext is not recoverable later."""
        token = TOKEN_PREFIX + secrets.token_urlsafe(32)
        self._store.store_token_digest(_digest(token), subject_id)
        return token

    def authenticate(self, credential: str | None) -> Subject:
        if not credential:
            raise AuthenticationFailed("Missing credentials")
        subject = self._store.subject_for_token_digest(_digest(credential))
        if subject is None:
            raise AuthenticationFailed("Invalid or revoked token")
        return subject
