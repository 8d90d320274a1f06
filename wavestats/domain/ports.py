from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from .entities import CachedUser, CredentialPair


class TokenExchanger(Protocol):
    """Port for the upstream OAuth token endpoint."""

    def exchange_code(self, code: str) -> CredentialPair:
        """Trade an authorization code for a credential pair."""

    def refresh(self, refresh_token: str) -> CredentialPair:
        """Trade a refresh token for a fresh access token."""


class ProfileStore(Protocol):
    """Port for the persisted last-seen profile of each user.

    Implementations keep last-write-wins semantics: an upsert inserts the
    record if absent, otherwise overwrites only the fields in the patch.
    """

    def get(self, user_id: str) -> Optional[CachedUser]:
        """Return the cached record or None."""

    def upsert(self, user_id: str, patch: Dict[str, Any]) -> CachedUser:
        """Insert or merge the record for user_id and return it."""

    def all(self) -> List[CachedUser]:
        """Return every cached record."""
