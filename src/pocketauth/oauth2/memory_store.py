# In-process OAuth2 repositories.
# Created: 2026-10-18
#
# Each repository guards its dict with a lock so that consume() is a true
# check-and-delete under concurrent request threads. Nothing is persisted;
# use sql_store for anything that must survive a restart.
# Rows go in and come out as copies, so callers never share state with the
# store.

from __future__ import annotations

import copy
import threading

from pocketauth.oauth2.models import (
    AccessToken,
    AuthorizationCode,
    OAuthClient,
    RefreshToken,
    User,
    utcnow,
)
from pocketauth.oauth2.repositories import Repositories


def _copy(row):
    return None if row is None else copy.deepcopy(row)


class MemoryClientRepository:
    def __init__(self) -> None:
        self._clients: dict[str, OAuthClient] = {}
        self._lock = threading.Lock()

    def find_active_by_id(self, client_id: str) -> OAuthClient | None:
        client = self._clients.get(client_id)
        if client is None or not client.is_active:
            return None
        return _copy(client)

    def find_by_id(self, client_id: str) -> OAuthClient | None:
        return _copy(self._clients.get(client_id))

    def create(self, client: OAuthClient) -> None:
        with self._lock:
            if client.client_id in self._clients:
                raise ValueError(f"Client already exists: {client.client_id}")
            self._clients[client.client_id] = _copy(client)

    def deactivate(self, client_id: str) -> bool:
        with self._lock:
            client = self._clients.get(client_id)
            if client is None or not client.is_active:
                return False
            client.is_active = False
            return True

    def list_clients(self, active_only: bool = False) -> list[OAuthClient]:
        clients = [c for c in self._clients.values() if c.is_active or not active_only]
        return [_copy(c) for c in sorted(clients, key=lambda c: c.created_at, reverse=True)]


class MemoryAuthorizationCodeRepository:
    def __init__(self) -> None:
        self._codes: dict[str, AuthorizationCode] = {}
        self._lock = threading.Lock()

    def create(self, code: AuthorizationCode) -> None:
        with self._lock:
            self._codes[code.code] = _copy(code)

    def find_valid(
        self, code: str, client_id: str, redirect_uri: str
    ) -> AuthorizationCode | None:
        row = self._codes.get(code)
        if row is None or row.is_expired():
            return None
        if row.client_id != client_id or row.redirect_uri != redirect_uri:
            return None
        return _copy(row)

    def consume(self, code: str) -> AuthorizationCode | None:
        with self._lock:
            row = self._codes.get(code)
            if row is None or row.is_expired():
                return None
            return self._codes.pop(code)

    def delete(self, code: str) -> bool:
        with self._lock:
            return self._codes.pop(code, None) is not None

    def delete_by_client_id(self, client_id: str) -> int:
        with self._lock:
            doomed = [k for k, v in self._codes.items() if v.client_id == client_id]
            for k in doomed:
                del self._codes[k]
            return len(doomed)

    def delete_expired(self) -> int:
        now = utcnow()
        with self._lock:
            doomed = [k for k, v in self._codes.items() if v.is_expired(now)]
            for k in doomed:
                del self._codes[k]
            return len(doomed)


class MemoryAccessTokenRepository:
    def __init__(self) -> None:
        self._tokens: dict[str, AccessToken] = {}
        self._lock = threading.Lock()

    def create(self, token: AccessToken) -> None:
        with self._lock:
            self._tokens[token.token] = _copy(token)

    def find_valid(self, token: str) -> AccessToken | None:
        row = self._tokens.get(token)
        if row is None or row.is_expired():
            return None
        return _copy(row)

    def find_by_token(self, token: str) -> AccessToken | None:
        return _copy(self._tokens.get(token))

    def delete(self, token: str) -> bool:
        with self._lock:
            return self._tokens.pop(token, None) is not None

    def delete_by_client_id(self, client_id: str) -> int:
        with self._lock:
            doomed = [k for k, v in self._tokens.items() if v.client_id == client_id]
            for k in doomed:
                del self._tokens[k]
            return len(doomed)

    def delete_expired(self) -> int:
        now = utcnow()
        with self._lock:
            doomed = [k for k, v in self._tokens.items() if v.is_expired(now)]
            for k in doomed:
                del self._tokens[k]
            return len(doomed)


class MemoryRefreshTokenRepository:
    def __init__(self) -> None:
        self._tokens: dict[str, RefreshToken] = {}
        self._lock = threading.Lock()

    def create(self, token: RefreshToken) -> None:
        with self._lock:
            self._tokens[token.token] = _copy(token)

    def find_valid(self, token: str, client_id: str) -> RefreshToken | None:
        row = self._tokens.get(token)
        if row is None or row.is_expired() or row.client_id != client_id:
            return None
        return _copy(row)

    def find_by_token(self, token: str) -> RefreshToken | None:
        return _copy(self._tokens.get(token))

    def consume(self, token: str, client_id: str) -> RefreshToken | None:
        with self._lock:
            row = self._tokens.get(token)
            if row is None or row.is_expired() or row.client_id != client_id:
                return None
            return self._tokens.pop(token)

    def delete(self, token: str) -> bool:
        with self._lock:
            return self._tokens.pop(token, None) is not None

    def delete_by_client_id(self, client_id: str) -> int:
        with self._lock:
            doomed = [k for k, v in self._tokens.items() if v.client_id == client_id]
            for k in doomed:
                del self._tokens[k]
            return len(doomed)

    def delete_expired(self) -> int:
        now = utcnow()
        with self._lock:
            doomed = [k for k, v in self._tokens.items() if v.is_expired(now)]
            for k in doomed:
                del self._tokens[k]
            return len(doomed)


class MemoryUserRepository:
    def __init__(self, users: list[User] | None = None) -> None:
        self._users: dict[int, User] = {u.id: _copy(u) for u in users or []}

    def add(self, user: User) -> None:
        self._users[user.id] = _copy(user)

    def remove(self, user_id: int) -> bool:
        return self._users.pop(user_id, None) is not None

    def find_by_id(self, user_id: int) -> User | None:
        return _copy(self._users.get(user_id))


def memory_repositories(users: list[User] | None = None) -> Repositories:
    """Build a fresh, empty set of in-memory repositories."""
    return Repositories(
        clients=MemoryClientRepository(),
        codes=MemoryAuthorizationCodeRepository(),
        access_tokens=MemoryAccessTokenRepository(),
        refresh_tokens=MemoryRefreshTokenRepository(),
        users=MemoryUserRepository(users),
    )
