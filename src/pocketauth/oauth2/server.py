# OAuth2 Authorization Server with PKCE support.
# Created: 2026-10-18
#
# Implements the authorization code flow with PKCE (RFC 7636) and strict
# refresh-token rotation. All state lives in the injected repositories; the
# server itself keeps nothing between requests.
#
# Validation primitives return None on failure and log the internal reason.
# The protocol handlers (authorize / exchange_token / userinfo) return
# (result, OAuthError) and never reveal which check failed.

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from pocketauth.oauth2.models import (
    AccessToken,
    AuthorizationCode,
    CodeGrant,
    OAuthClient,
    RefreshToken,
    TokenGrant,
    TokenPair,
    utcnow,
)
from pocketauth.oauth2.repositories import (
    AccessTokenRepository,
    AuthorizationCodeRepository,
    ClientRepository,
    RefreshTokenRepository,
    Repositories,
    UserRepository,
)
from pocketauth.oauth2.tokens import generate_secure_token
from pocketauth.security.audit import AuditLogger, AuditSeverity

logger = logging.getLogger(__name__)

# Token lifetimes
CODE_TTL = timedelta(minutes=10)
ACCESS_TOKEN_TTL = timedelta(hours=1)
REFRESH_TOKEN_TTL = timedelta(days=30)
EXPIRES_IN = int(ACCESS_TOKEN_TTL.total_seconds())

DEFAULT_CLIENT_SCOPES = ["openid", "profile", "email"]
PKCE_METHODS = ("S256", "plain")
GRANT_TYPES = ("authorization_code", "refresh_token")


@dataclass
class OAuthError:
    """Protocol-level error as returned to the HTTP layer."""

    error: str
    description: str = ""
    # True once redirect_uri is validated: the error may go back to the client.
    redirect: bool = False

    @property
    def status_code(self) -> int:
        return 401 if self.error in ("invalid_client", "invalid_token") else 400

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


def compute_code_challenge(code_verifier: str, method: str) -> str | None:
    """Derive the PKCE challenge for *code_verifier*, or None for unknown methods."""
    if method == "S256":
        digest = hashlib.sha256(code_verifier.encode()).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
    if method == "plain":
        return code_verifier
    return None


def _peek(token: str) -> str:
    return f"{token[:8]}..."


class AuthorizationServer:
    """OAuth2 authorization server with PKCE."""

    def __init__(
        self,
        clients: ClientRepository,
        codes: AuthorizationCodeRepository,
        access_tokens: AccessTokenRepository,
        refresh_tokens: RefreshTokenRepository,
        users: UserRepository,
        audit: AuditLogger | None = None,
    ):
        self.clients = clients
        self.codes = codes
        self.access_tokens = access_tokens
        self.refresh_tokens = refresh_tokens
        self.users = users
        self.audit = audit

    @classmethod
    def from_repositories(
        cls, repos: Repositories, audit: AuditLogger | None = None
    ) -> AuthorizationServer:
        return cls(
            clients=repos.clients,
            codes=repos.codes,
            access_tokens=repos.access_tokens,
            refresh_tokens=repos.refresh_tokens,
            users=repos.users,
            audit=audit,
        )

    # ------------------------------------------------------------------
    # Client validation
    # ------------------------------------------------------------------

    def validate_client(
        self, client_id: str, client_secret: str | None = None
    ) -> OAuthClient | None:
        """Return the active client, checking *client_secret* if one is given."""
        client = self.clients.find_active_by_id(client_id)
        if client is None:
            logger.info("Client rejected: unknown or inactive client_id=%s", client_id)
            return None

        if client_secret and not hmac.compare_digest(
            client_secret.encode(), client.client_secret.encode()
        ):
            logger.info("Client rejected: secret mismatch client_id=%s", client_id)
            return None

        return client

    @staticmethod
    def validate_redirect_uri(client: OAuthClient, redirect_uri: str) -> bool:
        return redirect_uri in client.redirect_uris

    @staticmethod
    def validate_scopes(client: OAuthClient, requested_scopes: list[str]) -> bool:
        return set(requested_scopes).issubset(client.scopes)

    # ------------------------------------------------------------------
    # Authorization codes
    # ------------------------------------------------------------------

    def create_authorization_code(
        self,
        client_id: str,
        user_id: int,
        redirect_uri: str,
        scopes: list[str],
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
    ) -> str:
        if code_challenge and not code_challenge_method:
            code_challenge_method = "plain"  # RFC 7636 section 4.3 default
        if not code_challenge:
            code_challenge_method = None

        code = generate_secure_token()
        self.codes.create(
            AuthorizationCode(
                code=code,
                client_id=client_id,
                user_id=user_id,
                redirect_uri=redirect_uri,
                scopes=list(scopes),
                expires_at=utcnow() + CODE_TTL,
                code_challenge=code_challenge or None,
                code_challenge_method=code_challenge_method,
            )
        )
        logger.debug("Issued code %s for client=%s user=%s", _peek(code), client_id, user_id)
        self._audit("code_issued", actor=client_id, target=f"user:{user_id}", scopes=scopes)
        return code

    def validate_authorization_code(
        self,
        code: str,
        client_id: str,
        redirect_uri: str,
        code_verifier: str | None = None,
    ) -> CodeGrant | None:
        """Check and consume a code. At most one caller ever gets a grant back."""
        auth_code = self._redeem_code(code, client_id, redirect_uri, code_verifier)
        if auth_code is None:
            return None
        return CodeGrant(user_id=auth_code.user_id, scopes=list(auth_code.scopes))

    def _redeem_code(
        self,
        code: str,
        client_id: str,
        redirect_uri: str,
        code_verifier: str | None,
    ) -> AuthorizationCode | None:
        auth_code = self.codes.find_valid(code, client_id, redirect_uri)
        if auth_code is None:
            self._reject_code(code, client_id, "not found, expired, or mismatched")
            return None

        if auth_code.code_challenge:
            if not code_verifier:
                self._reject_code(code, client_id, "missing code_verifier")
                return None
            challenge = compute_code_challenge(
                code_verifier, auth_code.code_challenge_method or ""
            )
            if challenge is None:
                self._reject_code(code, client_id, "unsupported challenge method")
                return None
            if not hmac.compare_digest(challenge.encode(), auth_code.code_challenge.encode()):
                self._reject_code(code, client_id, "PKCE verifier mismatch")
                return None

        # The conditional delete is the real gate: concurrent redeemers that
        # all passed the checks above race here and only one gets the row.
        consumed = self.codes.consume(code)
        if consumed is None:
            self._reject_code(code, client_id, "already consumed", AuditSeverity.ALERT)
            return None

        self._audit("code_exchanged", actor=client_id, target=f"user:{consumed.user_id}")
        return consumed

    def _reject_code(
        self,
        code: str,
        client_id: str,
        reason: str,
        severity: AuditSeverity = AuditSeverity.WARNING,
    ) -> None:
        logger.info("Code %s rejected for client=%s: %s", _peek(code), client_id, reason)
        self._audit(
            "code_rejected",
            actor=client_id,
            target=f"code:{_peek(code)}",
            status="rejected",
            severity=severity,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def create_access_token(self, client_id: str, user_id: int, scopes: list[str]) -> TokenPair:
        now = utcnow()
        access = generate_secure_token()
        refresh = generate_secure_token()

        self.access_tokens.create(
            AccessToken(
                token=access,
                client_id=client_id,
                user_id=user_id,
                scopes=list(scopes),
                expires_at=now + ACCESS_TOKEN_TTL,
            )
        )
        try:
            self.refresh_tokens.create(
                RefreshToken(
                    token=refresh,
                    access_token=access,
                    client_id=client_id,
                    user_id=user_id,
                    expires_at=now + REFRESH_TOKEN_TTL,
                )
            )
        except Exception:
            # Half a pair is never handed out.
            self.access_tokens.delete(access)
            raise
        self._audit(
            "tokens_issued",
            actor=client_id,
            target=f"user:{user_id}",
            scopes=scopes,
            expires_in=EXPIRES_IN,
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=EXPIRES_IN,
        )

    def validate_access_token(self, token: str) -> TokenGrant | None:
        record = self.access_tokens.find_valid(token)
        if record is None:
            return None
        return TokenGrant(
            user_id=record.user_id,
            scopes=list(record.scopes),
            client_id=record.client_id,
        )

    def refresh_access_token(self, refresh_token: str, client_id: str) -> TokenPair | None:
        """Rotate a refresh token: old pair dies, a fresh pair is issued."""
        record = self.refresh_tokens.find_valid(refresh_token, client_id)
        if record is None:
            self._reject_refresh(refresh_token, client_id, "not found, expired, or wrong client")
            return None

        # Scopes live on the sibling access token. Without it there is nothing
        # safe to reissue, so the refresh fails rather than guessing.
        sibling = self.access_tokens.find_by_token(record.access_token)
        if sibling is None:
            self._reject_refresh(refresh_token, client_id, "sibling access token gone")
            return None

        consumed = self.refresh_tokens.consume(refresh_token, client_id)
        if consumed is None:
            self._reject_refresh(refresh_token, client_id, "already rotated", AuditSeverity.ALERT)
            return None
        self.access_tokens.delete(consumed.access_token)

        try:
            pair = self.create_access_token(client_id, consumed.user_id, sibling.scopes)
        except Exception:
            # Put the old pair back so the client can retry the rotation.
            self.access_tokens.create(sibling)
            self.refresh_tokens.create(consumed)
            raise
        logger.debug("Rotated refresh token %s for client=%s", _peek(refresh_token), client_id)
        self._audit("tokens_refreshed", actor=client_id, target=f"user:{consumed.user_id}")
        return pair

    def _reject_refresh(
        self,
        token: str,
        client_id: str,
        reason: str,
        severity: AuditSeverity = AuditSeverity.WARNING,
    ) -> None:
        logger.info("Refresh token %s rejected for client=%s: %s", _peek(token), client_id, reason)
        self._audit(
            "refresh_rejected",
            actor=client_id,
            target=f"refresh:{_peek(token)}",
            status="rejected",
            severity=severity,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # UserInfo
    # ------------------------------------------------------------------

    def get_user_info(self, user_id: int, scopes: list[str]) -> dict[str, Any] | None:
        user = self.users.find_by_id(user_id)
        if user is None:
            return None

        claims: dict[str, Any] = {"sub": str(user_id)}
        if "profile" in scopes:
            claims["name"] = user.display_name
            claims["picture"] = user.avatar_url
        if "email" in scopes:
            claims["email"] = user.email
            claims["email_verified"] = bool(user.email_verified)
        return claims

    # ------------------------------------------------------------------
    # Client administration
    # ------------------------------------------------------------------

    def register_client(
        self,
        name: str,
        redirect_uris: list[str],
        scopes: list[str] | None = None,
        allowed_origin: str = "",
    ) -> tuple[str, str]:
        """Register a new client. Returns (client_id, client_secret)."""
        if not redirect_uris:
            raise ValueError("At least one redirect URI is required")

        client_id = generate_secure_token(16)
        client_secret = generate_secure_token(32)
        self.clients.create(
            OAuthClient(
                client_id=client_id,
                client_name=name,
                client_secret=client_secret,
                redirect_uris=list(redirect_uris),
                scopes=list(scopes) if scopes is not None else list(DEFAULT_CLIENT_SCOPES),
                allowed_origin=allowed_origin,
            )
        )
        logger.info("Registered client %s (%s)", client_id, name)
        self._audit("client_registered", actor="admin", target=f"client:{client_id}", name=name)
        return client_id, client_secret

    def deactivate_client(self, client_id: str, revoke_grants: bool = True) -> bool:
        """Deactivate a client and, by default, drop its outstanding grants."""
        if not self.clients.deactivate(client_id):
            return False

        if revoke_grants:
            removed = {
                "codes": self.codes.delete_by_client_id(client_id),
                "access_tokens": self.access_tokens.delete_by_client_id(client_id),
                "refresh_tokens": self.refresh_tokens.delete_by_client_id(client_id),
            }
        else:
            removed = {}
        logger.info("Deactivated client %s %s", client_id, removed)
        self._audit(
            "client_deactivated", actor="admin", target=f"client:{client_id}", removed=removed
        )
        return True

    def cleanup_expired(self) -> dict[str, int]:
        """Delete expired codes and tokens. Returns per-table counts."""
        counts = {
            "codes": self.codes.delete_expired(),
            "access_tokens": self.access_tokens.delete_expired(),
            "refresh_tokens": self.refresh_tokens.delete_expired(),
        }
        if any(counts.values()):
            logger.info("Expired rows removed: %s", counts)
        return counts

    # ------------------------------------------------------------------
    # Protocol handlers
    # ------------------------------------------------------------------

    def check_authorization_request(
        self,
        response_type: str | None,
        client_id: str | None,
        redirect_uri: str | None,
    ) -> tuple[OAuthClient | None, OAuthError | None]:
        """Validate the parts of an authorization request that gate redirects."""
        if not response_type or not client_id or not redirect_uri:
            return None, OAuthError("invalid_request", "Missing required parameters")

        if response_type != "code":
            return None, OAuthError(
                "unsupported_response_type", "Only authorization code flow is supported"
            )

        client = self.validate_client(client_id)
        if client is None:
            return None, OAuthError("invalid_client", "Invalid client_id")

        if not self.validate_redirect_uri(client, redirect_uri):
            logger.info("Redirect URI rejected for client=%s: %s", client_id, redirect_uri)
            return None, OAuthError("invalid_request", "Invalid redirect_uri")

        return client, None

    def authorize(
        self,
        response_type: str | None,
        client_id: str | None,
        redirect_uri: str | None,
        user_id: int,
        scope: str | None = None,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
        default_scope: str = "openid",
    ) -> tuple[str | None, OAuthError | None]:
        """Issue a code for an authenticated user.

        Returns (code, error). If error is not None, code is None; errors
        with ``redirect=True`` belong on the client's redirect URI.
        """
        client, error = self.check_authorization_request(response_type, client_id, redirect_uri)
        if error is not None:
            return None, error

        scopes = (scope or default_scope).split()
        if not self.validate_scopes(client, scopes):
            logger.info("Scope rejected for client=%s: %s", client.client_id, scopes)
            return None, OAuthError("invalid_scope", "Requested scope is not allowed", True)

        if code_challenge_method and not code_challenge:
            return None, OAuthError("invalid_request", "code_challenge is required", True)
        if code_challenge and (code_challenge_method or "plain") not in PKCE_METHODS:
            return None, OAuthError(
                "invalid_request", "Unsupported code_challenge_method", True
            )

        code = self.create_authorization_code(
            client_id=client.client_id,
            user_id=user_id,
            redirect_uri=redirect_uri,
            scopes=scopes,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        )
        return code, None

    def exchange_token(
        self,
        grant_type: str | None,
        client_id: str | None,
        client_secret: str | None = None,
        code: str | None = None,
        redirect_uri: str | None = None,
        code_verifier: str | None = None,
        refresh_token: str | None = None,
    ) -> tuple[TokenPair | None, OAuthError | None]:
        """Token endpoint: authorization_code and refresh_token grants."""
        if not grant_type or not client_id:
            return None, OAuthError("invalid_request", "Missing required parameters")

        if grant_type not in GRANT_TYPES:
            return None, OAuthError("unsupported_grant_type", "Unsupported grant_type")

        client = self.validate_client(client_id, client_secret)
        if client is None:
            return None, OAuthError("invalid_client", "Invalid client credentials")

        if grant_type == "authorization_code":
            if not code or not redirect_uri:
                return None, OAuthError("invalid_request", "Missing code or redirect_uri")

            auth_code = self._redeem_code(code, client.client_id, redirect_uri, code_verifier)
            if auth_code is None:
                return None, OAuthError("invalid_grant", "Invalid authorization code")

            try:
                pair = self.create_access_token(
                    client.client_id, auth_code.user_id, auth_code.scopes
                )
            except Exception:
                # Restore the grant; it stays redeemable until it expires.
                self.codes.create(auth_code)
                raise
            return pair, None

        if not refresh_token:
            return None, OAuthError("invalid_request", "Missing refresh_token")

        pair = self.refresh_access_token(refresh_token, client.client_id)
        if pair is None:
            return None, OAuthError("invalid_grant", "Invalid refresh token")
        return pair, None

    def userinfo(self, access_token: str | None) -> tuple[dict | None, OAuthError | None]:
        if not access_token:
            return None, OAuthError("invalid_request", "Missing or invalid Authorization header")

        grant = self.validate_access_token(access_token)
        if grant is None:
            return None, OAuthError("invalid_token", "Invalid or expired access token")

        claims = self.get_user_info(grant.user_id, grant.scopes)
        if claims is None:
            return None, OAuthError("invalid_token", "Invalid or expired access token")
        return claims, None

    # ------------------------------------------------------------------

    def _audit(self, action: str, actor: str, target: str, **kwargs: Any) -> None:
        if self.audit is not None:
            self.audit.log_oauth_event(action=action, actor=actor, target=target, **kwargs)
