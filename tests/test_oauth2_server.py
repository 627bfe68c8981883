# Tests for the OAuth2 authorization engine.
# Created: 2026-10-18
#
# Every engine test runs against both the in-memory and the SQLite-backed
# repositories so the two stores cannot drift apart.

import base64
import hashlib
import json
import secrets
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from pocketauth.oauth2.memory_store import memory_repositories
from pocketauth.oauth2.models import AuthorizationCode, OAuthClient, User, utcnow
from pocketauth.oauth2.server import (
    EXPIRES_IN,
    AuthorizationServer,
    OAuthError,
    compute_code_challenge,
)
from pocketauth.oauth2.sql_store import SqlStore
from pocketauth.security.audit import AuditLogger

REDIRECT = "https://app.example/cb"
OTHER_REDIRECT = "https://app.example/other"


def _make_pkce_pair():
    """Generate a PKCE code_verifier and S256 code_challenge pair."""
    verifier = secrets.token_urlsafe(32)
    challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
        .rstrip(b"=")
        .decode()
    )
    return verifier, challenge


USERS = [
    User(
        id=42,
        display_name="Ada",
        avatar_url="https://img.example/ada.png",
        email="ada@example.com",
        email_verified=True,
    ),
    User(id=7, display_name="Bob"),
]


@pytest.fixture(params=["memory", "sql"])
def repos(request):
    if request.param == "memory":
        yield memory_repositories(USERS)
        return
    store = SqlStore.from_url("sqlite://")
    store.create_all()
    repos = store.repositories()
    for user in USERS:
        repos.users.add(user)
    yield repos
    store.dispose()


@pytest.fixture
def audit(tmp_path):
    return AuditLogger(log_path=tmp_path / "audit.jsonl")


@pytest.fixture
def server(repos, audit):
    return AuthorizationServer.from_repositories(repos, audit=audit)


@pytest.fixture
def client(server):
    server.clients.create(
        OAuthClient(
            client_id="client-c",
            client_name="Test App",
            client_secret="s3cret",
            redirect_uris=[REDIRECT, OTHER_REDIRECT],
            scopes=["openid", "profile", "email"],
            allowed_origin="https://app.example",
        )
    )
    return server.clients.find_by_id("client-c")


def _issue(server, scopes=("openid",), **kwargs):
    return server.create_authorization_code(
        client_id="client-c",
        user_id=42,
        redirect_uri=REDIRECT,
        scopes=list(scopes),
        **kwargs,
    )


# ===================== Client validation =====================


class TestValidateClient:
    def test_known_client_without_secret(self, server, client):
        assert server.validate_client("client-c").client_id == "client-c"

    def test_correct_secret(self, server, client):
        assert server.validate_client("client-c", "s3cret") is not None

    def test_wrong_secret(self, server, client):
        assert server.validate_client("client-c", "nope") is None

    def test_unknown_client(self, server, client):
        assert server.validate_client("ghost") is None

    def test_inactive_client(self, server, client):
        server.clients.deactivate("client-c")
        assert server.validate_client("client-c") is None

    def test_redirect_uri_exact_match(self, client):
        assert AuthorizationServer.validate_redirect_uri(client, REDIRECT)
        assert not AuthorizationServer.validate_redirect_uri(client, REDIRECT + "/")
        assert not AuthorizationServer.validate_redirect_uri(client, "https://evil.example/cb")

    def test_scope_subset(self, client):
        assert AuthorizationServer.validate_scopes(client, ["openid", "email"])
        assert AuthorizationServer.validate_scopes(client, [])
        assert not AuthorizationServer.validate_scopes(client, ["openid", "admin"])


# ===================== Authorization codes =====================


class TestAuthorizationCode:
    def test_concrete_scenario(self, server):
        client_id, _ = server.register_client(
            "C", redirect_uris=[REDIRECT], scopes=["openid", "profile"]
        )
        code = server.create_authorization_code(client_id, 42, REDIRECT, ["profile"])

        grant = server.validate_authorization_code(code, client_id, REDIRECT)
        assert grant is not None
        assert grant.user_id == 42
        assert grant.scopes == ["profile"]
        assert server.codes.find_valid(code, client_id, REDIRECT) is None

        assert server.validate_authorization_code(code, client_id, REDIRECT) is None

    def test_codes_are_unique(self, server, client):
        codes = {_issue(server) for _ in range(20)}
        assert len(codes) == 20

    def test_code_expires_in_ten_minutes(self, server, client):
        code = _issue(server)
        row = server.codes.find_valid(code, "client-c", REDIRECT)
        remaining = row.expires_at - utcnow()
        assert timedelta(minutes=9) < remaining <= timedelta(minutes=10)

    def test_redirect_uri_binding(self, server, client):
        code = _issue(server)
        assert server.validate_authorization_code(code, "client-c", OTHER_REDIRECT) is None
        # A mismatch does not burn the code for the rightful redeemer.
        assert server.validate_authorization_code(code, "client-c", REDIRECT) is not None

    def test_wrong_client(self, server, client):
        code = _issue(server)
        assert server.validate_authorization_code(code, "other-client", REDIRECT) is None

    def test_expired_code(self, server, client):
        server.codes.create(
            AuthorizationCode(
                code="stale",
                client_id="client-c",
                user_id=42,
                redirect_uri=REDIRECT,
                scopes=["openid"],
                expires_at=utcnow() - timedelta(seconds=1),
            )
        )
        assert server.validate_authorization_code("stale", "client-c", REDIRECT) is None

    def test_unknown_code(self, server, client):
        assert server.validate_authorization_code("nope", "client-c", REDIRECT) is None


class TestPKCE:
    def test_s256_correct_verifier(self, server, client):
        verifier, challenge = _make_pkce_pair()
        code = _issue(server, code_challenge=challenge, code_challenge_method="S256")
        assert server.validate_authorization_code(code, "client-c", REDIRECT, verifier)

    def test_s256_wrong_verifier(self, server, client):
        _, challenge = _make_pkce_pair()
        code = _issue(server, code_challenge=challenge, code_challenge_method="S256")
        assert server.validate_authorization_code(code, "client-c", REDIRECT, "wrong") is None

    def test_missing_verifier(self, server, client):
        _, challenge = _make_pkce_pair()
        code = _issue(server, code_challenge=challenge, code_challenge_method="S256")
        assert server.validate_authorization_code(code, "client-c", REDIRECT) is None

    def test_plain_exact_match(self, server, client):
        code = _issue(server, code_challenge="plain-verifier", code_challenge_method="plain")
        assert (
            server.validate_authorization_code(code, "client-c", REDIRECT, "plain-verifier ")
            is None
        )
        assert server.validate_authorization_code(code, "client-c", REDIRECT, "plain-verifier")

    def test_challenge_without_method_is_plain(self, server, client):
        code = _issue(server, code_challenge="abc")
        row = server.codes.find_valid(code, "client-c", REDIRECT)
        assert row.code_challenge_method == "plain"
        assert server.validate_authorization_code(code, "client-c", REDIRECT, "abc")

    def test_failed_verifier_does_not_burn_code(self, server, client):
        verifier, challenge = _make_pkce_pair()
        code = _issue(server, code_challenge=challenge, code_challenge_method="S256")
        assert server.validate_authorization_code(code, "client-c", REDIRECT, "bad") is None
        assert server.validate_authorization_code(code, "client-c", REDIRECT, verifier)

    def test_no_challenge_ignores_verifier(self, server, client):
        code = _issue(server)
        assert server.validate_authorization_code(code, "client-c", REDIRECT, "anything")

    def test_rfc7636_vector(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert (
            compute_code_challenge(verifier, "S256")
            == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
        )
        assert compute_code_challenge(verifier, "plain") == verifier
        assert compute_code_challenge(verifier, "S512") is None


# ===================== Tokens =====================


class TestTokens:
    def test_create_and_validate(self, server, client):
        pair = server.create_access_token("client-c", 42, ["openid", "email"])
        assert pair.expires_in == EXPIRES_IN == 3600
        assert pair.access_token != pair.refresh_token

        grant = server.validate_access_token(pair.access_token)
        assert grant.user_id == 42
        assert grant.scopes == ["openid", "email"]
        assert grant.client_id == "client-c"

    def test_refresh_token_lifetime(self, server, client):
        pair = server.create_access_token("client-c", 42, ["openid"])
        row = server.refresh_tokens.find_by_token(pair.refresh_token)
        assert row.access_token == pair.access_token
        assert row.expires_at - utcnow() > timedelta(days=29)

    def test_unknown_token(self, server, client):
        assert server.validate_access_token("nope") is None

    def test_expired_access_token(self, server, client):
        from pocketauth.oauth2.models import AccessToken

        server.access_tokens.create(
            AccessToken(
                token="old",
                client_id="client-c",
                user_id=42,
                scopes=["openid"],
                expires_at=utcnow() - timedelta(seconds=1),
            )
        )
        assert server.validate_access_token("old") is None

    def test_refresh_rotation(self, server, client):
        first = server.create_access_token("client-c", 42, ["openid", "profile"])
        second = server.refresh_access_token(first.refresh_token, "client-c")

        assert second is not None
        assert server.validate_access_token(first.access_token) is None
        assert server.refresh_access_token(first.refresh_token, "client-c") is None

        grant = server.validate_access_token(second.access_token)
        assert grant.scopes == ["openid", "profile"]
        assert server.refresh_access_token(second.refresh_token, "client-c") is not None

    def test_refresh_wrong_client(self, server, client):
        pair = server.create_access_token("client-c", 42, ["openid"])
        assert server.refresh_access_token(pair.refresh_token, "other") is None
        # Still usable by its owner.
        assert server.refresh_access_token(pair.refresh_token, "client-c") is not None

    def test_refresh_with_missing_sibling_fails(self, server, client):
        pair = server.create_access_token("client-c", 42, ["openid"])
        server.access_tokens.delete(pair.access_token)
        assert server.refresh_access_token(pair.refresh_token, "client-c") is None

    def test_expired_refresh_token(self, server, client):
        from pocketauth.oauth2.models import RefreshToken

        pair = server.create_access_token("client-c", 42, ["openid"])
        server.refresh_tokens.create(
            RefreshToken(
                token="stale-refresh",
                access_token=pair.access_token,
                client_id="client-c",
                user_id=42,
                expires_at=utcnow() - timedelta(seconds=1),
            )
        )
        assert server.refresh_access_token("stale-refresh", "client-c") is None


# ===================== UserInfo =====================


class TestUserInfo:
    def test_no_scopes(self, server):
        assert server.get_user_info(42, []) == {"sub": "42"}

    def test_email_only(self, server):
        claims = server.get_user_info(42, ["email"])
        assert claims == {"sub": "42", "email": "ada@example.com", "email_verified": True}

    def test_profile_only(self, server):
        claims = server.get_user_info(42, ["openid", "profile"])
        assert claims == {
            "sub": "42",
            "name": "Ada",
            "picture": "https://img.example/ada.png",
        }

    def test_email_verified_is_bool(self, server):
        claims = server.get_user_info(7, ["email"])
        assert claims["email"] is None
        assert claims["email_verified"] is False

    def test_unknown_user(self, server):
        assert server.get_user_info(999, ["profile"]) is None


# ===================== Protocol handlers =====================


class TestAuthorizeHandler:
    def test_success(self, server, client):
        code, error = server.authorize("code", "client-c", REDIRECT, 42, scope="openid email")
        assert error is None
        assert server.codes.find_valid(code, "client-c", REDIRECT).scopes == ["openid", "email"]

    def test_default_scope(self, server, client):
        code, _ = server.authorize("code", "client-c", REDIRECT, 42)
        assert server.codes.find_valid(code, "client-c", REDIRECT).scopes == ["openid"]

    def test_missing_params(self, server, client):
        _, error = server.authorize(None, "client-c", REDIRECT, 42)
        assert error.error == "invalid_request"
        assert not error.redirect

    def test_unsupported_response_type(self, server, client):
        _, error = server.authorize("token", "client-c", REDIRECT, 42)
        assert error.error == "unsupported_response_type"

    def test_invalid_client(self, server, client):
        _, error = server.authorize("code", "ghost", REDIRECT, 42)
        assert error.error == "invalid_client"
        assert not error.redirect

    def test_invalid_redirect_not_redirectable(self, server, client):
        _, error = server.authorize("code", "client-c", "https://evil.example/cb", 42)
        assert error.error == "invalid_request"
        assert not error.redirect

    def test_invalid_scope_is_redirectable(self, server, client):
        code, error = server.authorize("code", "client-c", REDIRECT, 42, scope="admin")
        assert code is None
        assert error.error == "invalid_scope"
        assert error.redirect

    def test_unsupported_pkce_method(self, server, client):
        _, error = server.authorize(
            "code", "client-c", REDIRECT, 42, code_challenge="x", code_challenge_method="S512"
        )
        assert error.error == "invalid_request"
        assert error.redirect


class TestExchangeHandler:
    def test_code_grant(self, server, client):
        verifier, challenge = _make_pkce_pair()
        code, _ = server.authorize(
            "code", "client-c", REDIRECT, 42, code_challenge=challenge, code_challenge_method="S256"
        )
        pair, error = server.exchange_token(
            "authorization_code", "client-c", "s3cret", code, REDIRECT, verifier
        )
        assert error is None
        assert pair.to_response()["token_type"] == "bearer"
        assert server.validate_access_token(pair.access_token).user_id == 42

    def test_public_client_without_secret(self, server, client):
        code, _ = server.authorize("code", "client-c", REDIRECT, 42)
        pair, error = server.exchange_token("authorization_code", "client-c", None, code, REDIRECT)
        assert error is None

    def test_bad_secret(self, server, client):
        code, _ = server.authorize("code", "client-c", REDIRECT, 42)
        _, error = server.exchange_token("authorization_code", "client-c", "bad", code, REDIRECT)
        assert error.error == "invalid_client"
        assert error.status_code == 401

    def test_unsupported_grant(self, server, client):
        _, error = server.exchange_token("password", "client-c")
        assert error.error == "unsupported_grant_type"
        assert error.status_code == 400

    def test_missing_code(self, server, client):
        _, error = server.exchange_token("authorization_code", "client-c", redirect_uri=REDIRECT)
        assert error.error == "invalid_request"

    def test_replayed_code(self, server, client):
        code, _ = server.authorize("code", "client-c", REDIRECT, 42)
        server.exchange_token("authorization_code", "client-c", None, code, REDIRECT)
        _, error = server.exchange_token("authorization_code", "client-c", None, code, REDIRECT)
        assert error == OAuthError("invalid_grant", "Invalid authorization code")

    def test_refresh_grant(self, server, client):
        pair = server.create_access_token("client-c", 42, ["openid"])
        new, error = server.exchange_token(
            "refresh_token", "client-c", "s3cret", refresh_token=pair.refresh_token
        )
        assert error is None
        assert new.refresh_token != pair.refresh_token

    def test_refresh_missing_token(self, server, client):
        _, error = server.exchange_token("refresh_token", "client-c")
        assert error.error == "invalid_request"

    def test_refresh_invalid(self, server, client):
        _, error = server.exchange_token("refresh_token", "client-c", refresh_token="nope")
        assert error.error == "invalid_grant"

    def test_code_restored_when_issuance_fails(self, server, client, monkeypatch):
        code, _ = server.authorize("code", "client-c", REDIRECT, 42)

        def boom(token):
            raise RuntimeError("store down")

        monkeypatch.setattr(server.access_tokens, "create", boom)
        with pytest.raises(RuntimeError):
            server.exchange_token("authorization_code", "client-c", None, code, REDIRECT)
        monkeypatch.undo()

        pair, error = server.exchange_token("authorization_code", "client-c", None, code, REDIRECT)
        assert error is None
        assert pair is not None

    def test_no_access_token_left_when_refresh_insert_fails(self, server, client, monkeypatch):
        code, _ = server.authorize("code", "client-c", REDIRECT, 42)
        inserted = []
        real_create = server.access_tokens.create

        def record(token):
            inserted.append(token.token)
            real_create(token)

        def boom(token):
            raise RuntimeError("store down")

        monkeypatch.setattr(server.access_tokens, "create", record)
        monkeypatch.setattr(server.refresh_tokens, "create", boom)
        with pytest.raises(RuntimeError):
            server.exchange_token("authorization_code", "client-c", None, code, REDIRECT)
        monkeypatch.undo()

        assert len(inserted) == 1
        assert server.validate_access_token(inserted[0]) is None
        pair, error = server.exchange_token("authorization_code", "client-c", None, code, REDIRECT)
        assert error is None
        assert server.validate_access_token(pair.access_token).user_id == 42

    def test_refresh_token_restored_when_rotation_fails(self, server, client, monkeypatch):
        pair = server.create_access_token("client-c", 42, ["openid"])
        real_create = server.refresh_tokens.create
        calls = []

        def fail_once(token):
            calls.append(token.token)
            if len(calls) == 1:
                raise RuntimeError("store down")
            real_create(token)

        monkeypatch.setattr(server.refresh_tokens, "create", fail_once)
        with pytest.raises(RuntimeError):
            server.exchange_token(
                "refresh_token", "client-c", "s3cret", refresh_token=pair.refresh_token
            )
        monkeypatch.undo()

        assert server.validate_access_token(pair.access_token).user_id == 42
        new, error = server.exchange_token(
            "refresh_token", "client-c", "s3cret", refresh_token=pair.refresh_token
        )
        assert error is None
        assert new.refresh_token != pair.refresh_token

    def test_failing_audit_listener_keeps_exchange(self, server, client):
        def broken(record):
            if record["action"] in ("code_exchanged", "tokens_refreshed"):
                raise RuntimeError("listener down")

        server.audit.on_log(broken)
        code, _ = server.authorize("code", "client-c", REDIRECT, 42)
        pair, error = server.exchange_token("authorization_code", "client-c", None, code, REDIRECT)
        assert error is None
        assert server.validate_access_token(pair.access_token).user_id == 42

        new, error = server.exchange_token(
            "refresh_token", "client-c", "s3cret", refresh_token=pair.refresh_token
        )
        assert error is None
        assert server.validate_access_token(new.access_token).user_id == 42


class TestUserInfoHandler:
    def test_missing_token(self, server):
        _, error = server.userinfo(None)
        assert error.error == "invalid_request"

    def test_invalid_token(self, server):
        _, error = server.userinfo("nope")
        assert error.error == "invalid_token"
        assert error.status_code == 401

    def test_claims(self, server, client):
        pair = server.create_access_token("client-c", 42, ["openid", "profile"])
        claims, error = server.userinfo(pair.access_token)
        assert error is None
        assert claims["name"] == "Ada"
        assert "email" not in claims


# ===================== Client administration =====================


class TestClientAdmin:
    def test_register_client(self, server):
        client_id, secret = server.register_client("App", [REDIRECT])
        stored = server.clients.find_active_by_id(client_id)
        assert stored.client_secret == secret
        assert stored.scopes == ["openid", "profile", "email"]
        assert len(client_id) >= 20 and len(secret) >= 40

    def test_register_requires_redirect(self, server):
        with pytest.raises(ValueError):
            server.register_client("App", [])

    def test_deactivate_revokes_grants(self, server, client):
        code = _issue(server)
        pair = server.create_access_token("client-c", 42, ["openid"])

        assert server.deactivate_client("client-c")
        assert server.validate_client("client-c") is None
        assert server.validate_access_token(pair.access_token) is None
        assert server.refresh_tokens.find_by_token(pair.refresh_token) is None
        assert server.codes.find_valid(code, "client-c", REDIRECT) is None

    def test_deactivate_unknown(self, server):
        assert server.deactivate_client("ghost") is False

    def test_cleanup_expired(self, server, client):
        server.codes.create(
            AuthorizationCode(
                code="stale",
                client_id="client-c",
                user_id=42,
                redirect_uri=REDIRECT,
                scopes=[],
                expires_at=utcnow() - timedelta(minutes=1),
            )
        )
        live = _issue(server)
        counts = server.cleanup_expired()
        assert counts == {"codes": 1, "access_tokens": 0, "refresh_tokens": 0}
        assert server.codes.find_valid(live, "client-c", REDIRECT) is not None


# ===================== Audit trail =====================


class TestAudit:
    def test_lifecycle_events(self, server, client, audit):
        code = _issue(server)
        server.validate_authorization_code(code, "client-c", REDIRECT)
        server.validate_authorization_code(code, "client-c", REDIRECT)

        actions = [e["action"] for e in audit.read_events()]
        assert actions == ["code_issued", "code_exchanged", "code_rejected"]

    def test_no_full_credentials_logged(self, server, client, audit):
        pair = server.create_access_token("client-c", 42, ["openid"])
        server.refresh_access_token(pair.refresh_token, "client-c")
        server.refresh_access_token(pair.refresh_token, "client-c")

        text = audit.log_path.read_text()
        assert pair.access_token not in text
        assert pair.refresh_token not in text
        rejected = [json.loads(line) for line in text.splitlines()][-1]
        assert rejected["action"] == "refresh_rejected"
        assert rejected["severity"] == "warning"


# ===================== Concurrency =====================


@pytest.fixture(params=["memory", "sqlite-file"])
def concurrent_server(request, tmp_path):
    if request.param == "memory":
        repos = memory_repositories(USERS)
        store = None
    else:
        store = SqlStore.from_url(f"sqlite:///{tmp_path / 'race.db'}")
        store.create_all()
        repos = store.repositories()
    server = AuthorizationServer.from_repositories(repos)
    server.clients.create(
        OAuthClient(
            client_id="client-c",
            client_name="Race",
            client_secret="s3cret",
            redirect_uris=[REDIRECT],
        )
    )
    yield server
    if store is not None:
        store.dispose()


class TestConcurrency:
    WORKERS = 8

    def test_code_redeemed_exactly_once(self, concurrent_server):
        code = concurrent_server.create_authorization_code("client-c", 42, REDIRECT, ["openid"])
        with ThreadPoolExecutor(max_workers=self.WORKERS) as pool:
            results = list(
                pool.map(
                    lambda _: concurrent_server.validate_authorization_code(
                        code, "client-c", REDIRECT
                    ),
                    range(self.WORKERS),
                )
            )
        assert sum(r is not None for r in results) == 1

    def test_refresh_rotates_exactly_once(self, concurrent_server):
        pair = concurrent_server.create_access_token("client-c", 42, ["openid"])
        with ThreadPoolExecutor(max_workers=self.WORKERS) as pool:
            results = list(
                pool.map(
                    lambda _: concurrent_server.refresh_access_token(
                        pair.refresh_token, "client-c"
                    ),
                    range(self.WORKERS),
                )
            )
        assert sum(r is not None for r in results) == 1
