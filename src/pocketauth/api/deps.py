# Shared FastAPI dependencies for the OAuth2 API.
# Created: 2026-10-18

from __future__ import annotations

import hmac

from fastapi import HTTPException, Request

from pocketauth.config import Settings
from pocketauth.oauth2.server import AuthorizationServer
from pocketauth.oauth2.state import StateCodec


def get_server(request: Request) -> AuthorizationServer:
    return request.app.state.oauth_server


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_state_codec(request: Request) -> StateCodec:
    return request.app.state.state_codec


def bearer_token(request: Request) -> str | None:
    """Extract a Bearer credential from the Authorization header, if any."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header.removeprefix("Bearer ").strip()
    return token or None


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def require_admin(request: Request) -> None:
    """Gate client administration behind the configured admin token.

    Registration is disabled entirely when no admin token is configured.
    """
    expected = request.app.state.settings.admin_token
    if not expected:
        raise HTTPException(status_code=403, detail="Client administration is disabled")

    presented = bearer_token(request)
    if presented is None or not hmac.compare_digest(presented.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid admin token")
