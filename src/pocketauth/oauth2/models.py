# OAuth2 data models.
# Created: 2026-10-18
#
# Scopes are held as lists here; stores persist them space-delimited.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime


def utcnow() -> datetime:
    return datetime.now(UTC)


def split_scopes(value: str | None) -> list[str]:
    return value.split() if value else []


def join_scopes(scopes: list[str]) -> str:
    return " ".join(scopes)


@dataclass
class OAuthClient:
    """Registered OAuth2 client."""

    client_id: str
    client_name: str
    client_secret: str
    redirect_uris: list[str] = field(default_factory=list)
    scopes: list[str] = field(default_factory=lambda: ["openid", "profile", "email"])
    allowed_origin: str = ""
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuthorizationCode:
    """Single-use grant awaiting exchange."""

    code: str
    client_id: str
    user_id: int
    redirect_uri: str
    scopes: list[str]
    expires_at: datetime
    code_challenge: str | None = None
    code_challenge_method: str | None = None  # "S256" or "plain"
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class AccessToken:
    token: str
    client_id: str
    user_id: int
    scopes: list[str]
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class RefreshToken:
    """Refresh token, linked to the access token issued alongside it."""

    token: str
    access_token: str
    client_id: str
    user_id: int
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class User:
    """Resource owner as seen by the userinfo projection."""

    id: int
    display_name: str | None = None
    avatar_url: str | None = None
    email: str | None = None
    email_verified: bool = False


@dataclass
class AuthorizationState:
    """Decoded `state` blob carried through the login redirect."""

    csrf_token: str
    client_id: str | None = None
    return_to: str | None = None
    timestamp: int | None = None  # unix millis at encode time


@dataclass
class CodeGrant:
    """Result of a successful code validation."""

    user_id: int
    scopes: list[str]


@dataclass
class TokenGrant:
    """Result of a successful access-token validation."""

    user_id: int
    scopes: list[str]
    client_id: str


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int

    def to_response(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": "bearer",
        }
