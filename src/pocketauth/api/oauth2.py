# OAuth2 router - authorize, login round trip, token, userinfo, client admin.
# Created: 2026-10-18
#
# Protocol decisions live in AuthorizationServer; routes here translate
# between HTTP and its (result, OAuthError) tuples.
# The resource owner is read from request.state.user_id, which the host
# application's session middleware is expected to populate.
# Repositories are synchronous: handlers that reach them are plain defs
# (run in the threadpool) or hand the work to asyncio.to_thread.

from __future__ import annotations

import asyncio
import json
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import ValidationError

from pocketauth.api.deps import (
    bearer_token,
    client_ip,
    get_server,
    get_settings_dep,
    get_state_codec,
    require_admin,
)
from pocketauth.api.schemas import (
    ClientInfo,
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    TokenRequest,
    TokenResponse,
)
from pocketauth.config import Settings
from pocketauth.oauth2.server import AuthorizationServer, OAuthError
from pocketauth.oauth2.state import InvalidStateError, StateCodec
from pocketauth.oauth2.tokens import generate_secure_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["OAuth2"])

CSRF_COOKIE = "pocketauth_csrf"
LOGIN_STATE_MAX_AGE = 600  # seconds a login round trip may take
_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _append_query(uri: str, params: dict[str, str]) -> str:
    sep = "&" if "?" in uri else "?"
    return f"{uri}{sep}{urlencode(params)}"


def _too_many(request: Request, limiter_name: str) -> JSONResponse | None:
    limiter = getattr(request.app.state, limiter_name, None)
    if limiter is None:
        return None
    info = limiter.check(client_ip(request))
    if info.allowed:
        return None
    return JSONResponse(
        status_code=429,
        content={"error": "slow_down", "error_description": "Too many requests"},
        headers=info.headers(),
    )


def _client_cors_headers(
    request: Request, server: AuthorizationServer, client_id: str | None
) -> dict[str, str]:
    """CORS headers only when Origin matches the client's registered origin."""
    origin = request.headers.get("Origin")
    if not origin or not client_id:
        return {}
    client = server.clients.find_active_by_id(client_id)
    if client is None or not client.allowed_origin or client.allowed_origin != origin:
        return {}
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Credentials": "true",
        "Vary": "Origin",
    }


def _error_response(error: OAuthError, status_code: int | None = None, headers=None):
    return JSONResponse(
        status_code=status_code or error.status_code,
        content=error.to_dict(),
        headers=headers,
    )


# ---------------------------------------------------------------------------
# Authorization endpoint
# ---------------------------------------------------------------------------


@router.get("/oauth/authorize")
def authorize(
    request: Request,
    response_type: str | None = Query(None),
    client_id: str | None = Query(None),
    redirect_uri: str | None = Query(None),
    scope: str | None = Query(None),
    state: str | None = Query(None),
    code_challenge: str | None = Query(None),
    code_challenge_method: str | None = Query(None),
    server: AuthorizationServer = Depends(get_server),
    settings: Settings = Depends(get_settings_dep),
    codec: StateCodec = Depends(get_state_codec),
):
    """Issue an authorization code, or send the user to log in first."""
    limited = _too_many(request, "authorize_limiter")
    if limited is not None:
        return limited

    # Until redirect_uri is validated, errors must not be redirected anywhere.
    _, error = server.check_authorization_request(response_type, client_id, redirect_uri)
    if error is not None:
        return _error_response(error, status_code=400)

    user_id = getattr(request.state, "user_id", None)
    if user_id is None:
        return _login_redirect(request, settings, codec, client_id)

    code, error = server.authorize(
        response_type=response_type,
        client_id=client_id,
        redirect_uri=redirect_uri,
        user_id=user_id,
        scope=scope,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        default_scope=settings.default_scope,
    )

    if error is not None:
        if not error.redirect:
            return _error_response(error, status_code=400)
        params = error.to_dict()
        if state:
            params["state"] = state
        return RedirectResponse(_append_query(redirect_uri, params), status_code=302)

    params = {"code": code}
    if state:
        params["state"] = state
    return RedirectResponse(_append_query(redirect_uri, params), status_code=302)


def _login_redirect(
    request: Request, settings: Settings, codec: StateCodec, client_id: str
) -> RedirectResponse:
    csrf = generate_secure_token(16)
    login_state = codec.encode(csrf, client_id=client_id, return_to=str(request.url))
    callback = _append_query(str(request.url_for("login_complete")), {"state": login_state})

    response = RedirectResponse(
        _append_query(settings.login_url, {"callbackUrl": callback, "state": login_state}),
        status_code=302,
    )
    response.set_cookie(
        CSRF_COOKIE,
        csrf,
        max_age=LOGIN_STATE_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=request.url.scheme == "https",
    )
    return response


@router.get("/oauth/login/complete", name="login_complete")
async def login_complete(
    request: Request,
    state: str = Query(""),
    codec: StateCodec = Depends(get_state_codec),
):
    """Return from the login page to the original authorization request."""
    try:
        decoded = codec.verify(
            state, request.cookies.get(CSRF_COOKIE), max_age=LOGIN_STATE_MAX_AGE
        )
    except InvalidStateError as exc:
        logger.info("Login round trip rejected: %s", exc)
        return _error_response(OAuthError("invalid_request", "Invalid state parameter"))

    # Only ever bounce back into this server's own authorize endpoint.
    authorize_url = str(request.url_for("authorize"))
    if not decoded.return_to or not decoded.return_to.startswith(authorize_url):
        return _error_response(OAuthError("invalid_request", "Invalid state parameter"))

    response = RedirectResponse(decoded.return_to, status_code=302)
    response.delete_cookie(CSRF_COOKIE)
    return response


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------


async def _parse_token_request(request: Request) -> TokenRequest | None:
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("application/json"):
            data = await request.json()
        else:
            form = await request.form()
            data = {k: v for k, v in form.items() if isinstance(v, str)}
        if not isinstance(data, dict):
            return None
        return TokenRequest.model_validate(data)
    except (json.JSONDecodeError, ValidationError, UnicodeDecodeError):
        return None


def _exchange(request: Request, server: AuthorizationServer, body: TokenRequest):
    pair, error = server.exchange_token(
        grant_type=body.grant_type,
        client_id=body.client_id,
        client_secret=body.client_secret,
        code=body.code,
        redirect_uri=body.redirect_uri,
        code_verifier=body.code_verifier,
        refresh_token=body.refresh_token,
    )
    return pair, error, _client_cors_headers(request, server, body.client_id)


@router.options("/oauth/token")
def token_preflight(request: Request, server: AuthorizationServer = Depends(get_server)):
    origin = request.headers.get("Origin")
    headers = {
        "Access-Control-Allow-Methods": "POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
        "Access-Control-Max-Age": "600",
    }
    if origin and any(c.allowed_origin == origin for c in server.clients.list_clients(True)):
        headers["Access-Control-Allow-Origin"] = origin
        headers["Vary"] = "Origin"
    return Response(status_code=200, headers=headers)


@router.post("/oauth/token")
async def token(request: Request, server: AuthorizationServer = Depends(get_server)):
    """Exchange an authorization code or refresh token for a token pair."""
    limited = _too_many(request, "token_limiter")
    if limited is not None:
        return limited

    body = await _parse_token_request(request)
    if body is None:
        return _error_response(
            OAuthError("invalid_request", "Malformed request body"), headers=_NO_STORE
        )

    # The body has to be awaited; the exchange itself hits the store.
    pair, error, cors = await asyncio.to_thread(_exchange, request, server, body)

    headers = {**_NO_STORE, **cors}
    if error is not None:
        return _error_response(error, headers=headers)

    payload = TokenResponse(**pair.to_response())
    return JSONResponse(content=payload.model_dump(), headers=headers)


# ---------------------------------------------------------------------------
# UserInfo endpoint
# ---------------------------------------------------------------------------

# Bearer-only endpoint, no cookies.
_USERINFO_CORS = {"Access-Control-Allow-Origin": "*"}


@router.options("/oauth/userinfo")
async def userinfo_preflight():
    return Response(
        status_code=200,
        headers={
            **_USERINFO_CORS,
            "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
            "Access-Control-Allow-Headers": "Authorization",
        },
    )


@router.api_route("/oauth/userinfo", methods=["GET", "POST"])
def userinfo(request: Request, server: AuthorizationServer = Depends(get_server)):
    """Return the claims the access token's scopes allow."""
    claims, error = server.userinfo(bearer_token(request))
    if error is not None:
        headers = {
            **_USERINFO_CORS,
            "WWW-Authenticate": f'Bearer error="{error.error}"',
        }
        return _error_response(error, status_code=401, headers=headers)
    return JSONResponse(content=claims, headers={**_USERINFO_CORS, **_NO_STORE})


# ---------------------------------------------------------------------------
# Client administration
# ---------------------------------------------------------------------------


@router.post(
    "/oauth/clients",
    status_code=201,
    response_model=ClientRegistrationResponse,
    dependencies=[Depends(require_admin)],
)
def register_client(
    body: ClientRegistrationRequest, server: AuthorizationServer = Depends(get_server)
):
    """Register a client. The secret is returned only once."""
    client_id, client_secret = server.register_client(
        name=body.name,
        redirect_uris=body.redirect_uris,
        scopes=body.scopes,
        allowed_origin=body.allowed_origin,
    )
    return ClientRegistrationResponse(client_id=client_id, client_secret=client_secret)


@router.get(
    "/oauth/clients",
    response_model=list[ClientInfo],
    dependencies=[Depends(require_admin)],
)
def list_clients(
    active_only: bool = Query(False), server: AuthorizationServer = Depends(get_server)
):
    return [
        ClientInfo(
            client_id=c.client_id,
            name=c.client_name,
            redirect_uris=c.redirect_uris,
            scopes=c.scopes,
            allowed_origin=c.allowed_origin,
            is_active=c.is_active,
            created_at=c.created_at.isoformat(),
        )
        for c in server.clients.list_clients(active_only=active_only)
    ]


@router.delete("/oauth/clients/{client_id}", dependencies=[Depends(require_admin)])
def deactivate_client(client_id: str, server: AuthorizationServer = Depends(get_server)):
    if not server.deactivate_client(client_id):
        raise HTTPException(status_code=404, detail="Unknown or already inactive client")
    return {"deactivated": True}
