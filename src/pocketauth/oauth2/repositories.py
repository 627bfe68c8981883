# Repository protocols - the storage seams the authorization engine depends on.
# Created: 2026-10-18
#
# Implementations: memory_store (in-process, lock-guarded) and sql_store
# (SQLAlchemy). "find_valid" methods exclude expired rows; "consume" methods
# delete and return a row in one atomic step, or return None if another
# caller got there first or the row has expired.

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from pocketauth.oauth2.models import (
    AccessToken,
    AuthorizationCode,
    OAuthClient,
    RefreshToken,
    User,
)


class ClientRepository(Protocol):
    def find_active_by_id(self, client_id: str) -> OAuthClient | None:
        """Return the client only if it exists and is active."""
        ...

    def find_by_id(self, client_id: str) -> OAuthClient | None: ...

    def create(self, client: OAuthClient) -> None: ...

    def deactivate(self, client_id: str) -> bool:
        """Mark a client inactive. Returns True if a row changed."""
        ...

    def list_clients(self, active_only: bool = False) -> list[OAuthClient]: ...


class AuthorizationCodeRepository(Protocol):
    def create(self, code: AuthorizationCode) -> None: ...

    def find_valid(
        self, code: str, client_id: str, redirect_uri: str
    ) -> AuthorizationCode | None:
        """Exact match on all three fields, unexpired."""
        ...

    def consume(self, code: str) -> AuthorizationCode | None:
        """Atomically delete an unexpired code and return it."""
        ...

    def delete(self, code: str) -> bool: ...

    def delete_by_client_id(self, client_id: str) -> int: ...

    def delete_expired(self) -> int: ...


class AccessTokenRepository(Protocol):
    def create(self, token: AccessToken) -> None: ...

    def find_valid(self, token: str) -> AccessToken | None: ...

    def find_by_token(self, token: str) -> AccessToken | None:
        """Lookup regardless of expiry."""
        ...

    def delete(self, token: str) -> bool: ...

    def delete_by_client_id(self, client_id: str) -> int: ...

    def delete_expired(self) -> int: ...


class RefreshTokenRepository(Protocol):
    def create(self, token: RefreshToken) -> None: ...

    def find_valid(self, token: str, client_id: str) -> RefreshToken | None: ...

    def find_by_token(self, token: str) -> RefreshToken | None: ...

    def consume(self, token: str, client_id: str) -> RefreshToken | None:
        """Atomically delete an unexpired refresh token owned by *client_id*."""
        ...

    def delete(self, token: str) -> bool: ...

    def delete_by_client_id(self, client_id: str) -> int: ...

    def delete_expired(self) -> int: ...


class UserRepository(Protocol):
    def find_by_id(self, user_id: int) -> User | None: ...


@dataclass
class Repositories:
    """The full set of collaborators an AuthorizationServer needs."""

    clients: ClientRepository
    codes: AuthorizationCodeRepository
    access_tokens: AccessTokenRepository
    refresh_tokens: RefreshTokenRepository
    users: UserRepository
