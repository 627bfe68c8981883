"""FastAPI application factory for ``pocketauth serve``.

Mounts the OAuth2 router under ``/api``. Everything the routes need is
placed on ``app.state`` so tests can hand in their own server, settings
and state codec.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI

from pocketauth import __version__
from pocketauth.config import Settings, get_settings
from pocketauth.oauth2.server import AuthorizationServer
from pocketauth.oauth2.state import StateCodec
from pocketauth.security.audit import AuditLogger
from pocketauth.security.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


def build_server(settings: Settings) -> AuthorizationServer:
    """Wire an AuthorizationServer to the configured SQL database."""
    from pocketauth.oauth2.sql_store import SqlStore

    store = SqlStore.from_url(settings.resolved_database_url())
    store.create_all()
    return AuthorizationServer.from_repositories(store.repositories(), audit=AuditLogger())


def create_app(
    server: AuthorizationServer | None = None,
    settings: Settings | None = None,
    state_codec: StateCodec | None = None,
) -> FastAPI:
    """Build the authorization server application."""
    from pocketauth.api.oauth2 import router

    settings = settings or get_settings()
    if server is None:
        server = build_server(settings)
    if state_codec is None:
        state_codec = StateCodec(settings.resolved_state_secret())

    app = FastAPI(
        title="PocketAuth",
        description="OAuth 2.0 authorization server (authorization code + PKCE).",
        version=__version__,
        docs_url="/api/docs",
        redoc_url=None,
        openapi_url="/api/openapi.json",
    )

    app.state.oauth_server = server
    app.state.settings = settings
    app.state.state_codec = state_codec
    # One bucket per endpoint.
    app.state.authorize_limiter = RateLimiter.from_settings(settings)
    app.state.token_limiter = RateLimiter.from_settings(settings)

    app.include_router(router, prefix="/api")
    logger.debug("PocketAuth app created (login_url=%s)", settings.login_url)
    return app
