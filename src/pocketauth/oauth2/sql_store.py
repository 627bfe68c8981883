# Relational OAuth2 repositories on SQLAlchemy.
# Created: 2026-10-18
#
# One ORM class per table with every column declared explicitly; the
# _*_from_row / _*_to_row helpers are the only place fields and columns meet.
# consume() uses DELETE ... RETURNING so the validity check and the delete
# are a single statement (SQLite >= 3.35, PostgreSQL).

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from pocketauth.oauth2.models import (
    AccessToken,
    AuthorizationCode,
    OAuthClient,
    RefreshToken,
    User,
    join_scopes,
    split_scopes,
    utcnow,
)
from pocketauth.oauth2.repositories import Repositories

logger = logging.getLogger(__name__)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes, stored naive so SQLite compares correctly."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


class Base(DeclarativeBase):
    pass


class ClientRow(Base):
    __tablename__ = "oauth_clients"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    client_secret: Mapped[str] = mapped_column(Text, nullable=False)
    redirect_uris: Mapped[str] = mapped_column(Text, nullable=False)  # JSON array
    allowed_origin: Mapped[str] = mapped_column(Text, nullable=False, default="")
    scopes: Mapped[str] = mapped_column(Text, nullable=False, default="openid profile email")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class AuthorizationCodeRow(Base):
    __tablename__ = "oauth_authorization_codes"

    code: Mapped[str] = mapped_column(String(128), primary_key=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    redirect_uri: Mapped[str] = mapped_column(Text, nullable=False)
    scopes: Mapped[str] = mapped_column(Text, nullable=False)
    code_challenge: Mapped[str | None] = mapped_column(Text, nullable=True)
    code_challenge_method: Mapped[str | None] = mapped_column(String(16), nullable=True)
    expires: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class AccessTokenRow(Base):
    __tablename__ = "oauth_access_tokens"

    token: Mapped[str] = mapped_column(String(128), primary_key=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    scopes: Mapped[str] = mapped_column(Text, nullable=False)
    expires: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class RefreshTokenRow(Base):
    __tablename__ = "oauth_refresh_tokens"

    token: Mapped[str] = mapped_column(String(128), primary_key=True)
    # No FK: the sibling access token may be gone while this row is still live.
    access_token: Mapped[str] = mapped_column(String(128), nullable=False)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    expires: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


# ---------------------------------------------------------------------------
# Row <-> model mappings
# ---------------------------------------------------------------------------


def _client_from_row(row: ClientRow) -> OAuthClient:
    return OAuthClient(
        client_id=row.id,
        client_name=row.name,
        client_secret=row.client_secret,
        redirect_uris=json.loads(row.redirect_uris),
        scopes=split_scopes(row.scopes),
        allowed_origin=row.allowed_origin,
        is_active=row.is_active,
        created_at=row.created_at,
    )


def _client_to_row(client: OAuthClient) -> ClientRow:
    return ClientRow(
        id=client.client_id,
        name=client.client_name,
        client_secret=client.client_secret,
        redirect_uris=json.dumps(client.redirect_uris),
        allowed_origin=client.allowed_origin,
        scopes=join_scopes(client.scopes),
        created_at=client.created_at,
        is_active=client.is_active,
    )


def _code_from_row(row: AuthorizationCodeRow) -> AuthorizationCode:
    return AuthorizationCode(
        code=row.code,
        client_id=row.client_id,
        user_id=row.user_id,
        redirect_uri=row.redirect_uri,
        scopes=split_scopes(row.scopes),
        expires_at=row.expires,
        code_challenge=row.code_challenge,
        code_challenge_method=row.code_challenge_method,
        created_at=row.created_at,
    )


def _code_to_row(code: AuthorizationCode) -> AuthorizationCodeRow:
    return AuthorizationCodeRow(
        code=code.code,
        client_id=code.client_id,
        user_id=code.user_id,
        redirect_uri=code.redirect_uri,
        scopes=join_scopes(code.scopes),
        code_challenge=code.code_challenge,
        code_challenge_method=code.code_challenge_method,
        expires=code.expires_at,
        created_at=code.created_at,
    )


def _access_from_row(row: AccessTokenRow) -> AccessToken:
    return AccessToken(
        token=row.token,
        client_id=row.client_id,
        user_id=row.user_id,
        scopes=split_scopes(row.scopes),
        expires_at=row.expires,
        created_at=row.created_at,
    )


def _access_to_row(token: AccessToken) -> AccessTokenRow:
    return AccessTokenRow(
        token=token.token,
        client_id=token.client_id,
        user_id=token.user_id,
        scopes=join_scopes(token.scopes),
        expires=token.expires_at,
        created_at=token.created_at,
    )


def _refresh_from_row(row: RefreshTokenRow) -> RefreshToken:
    return RefreshToken(
        token=row.token,
        access_token=row.access_token,
        client_id=row.client_id,
        user_id=row.user_id,
        expires_at=row.expires,
        created_at=row.created_at,
    )


def _refresh_to_row(token: RefreshToken) -> RefreshTokenRow:
    return RefreshTokenRow(
        token=token.token,
        access_token=token.access_token,
        client_id=token.client_id,
        user_id=token.user_id,
        expires=token.expires_at,
        created_at=token.created_at,
    )


def _user_from_row(row: UserRow) -> User:
    return User(
        id=row.id,
        display_name=row.display_name,
        avatar_url=row.avatar_url,
        email=row.email,
        email_verified=row.email_verified,
    )


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class SqlClientRepository:
    def __init__(self, sessions: sessionmaker):
        self._sessions = sessions

    def find_active_by_id(self, client_id: str) -> OAuthClient | None:
        stmt = select(ClientRow).where(ClientRow.id == client_id, ClientRow.is_active.is_(True))
        with self._sessions() as session:
            row = session.scalars(stmt).first()
            return _client_from_row(row) if row else None

    def find_by_id(self, client_id: str) -> OAuthClient | None:
        with self._sessions() as session:
            row = session.get(ClientRow, client_id)
            return _client_from_row(row) if row else None

    def create(self, client: OAuthClient) -> None:
        with self._sessions.begin() as session:
            session.add(_client_to_row(client))

    def deactivate(self, client_id: str) -> bool:
        stmt = (
            update(ClientRow)
            .where(ClientRow.id == client_id, ClientRow.is_active.is_(True))
            .values(is_active=False)
        )
        with self._sessions.begin() as session:
            return session.execute(stmt).rowcount > 0

    def list_clients(self, active_only: bool = False) -> list[OAuthClient]:
        stmt = select(ClientRow).order_by(ClientRow.created_at.desc())
        if active_only:
            stmt = stmt.where(ClientRow.is_active.is_(True))
        with self._sessions() as session:
            return [_client_from_row(r) for r in session.scalars(stmt)]


class SqlAuthorizationCodeRepository:
    def __init__(self, sessions: sessionmaker):
        self._sessions = sessions

    def create(self, code: AuthorizationCode) -> None:
        with self._sessions.begin() as session:
            session.add(_code_to_row(code))

    def find_valid(
        self, code: str, client_id: str, redirect_uri: str
    ) -> AuthorizationCode | None:
        stmt = select(AuthorizationCodeRow).where(
            AuthorizationCodeRow.code == code,
            AuthorizationCodeRow.client_id == client_id,
            AuthorizationCodeRow.redirect_uri == redirect_uri,
            AuthorizationCodeRow.expires > utcnow(),
        )
        with self._sessions() as session:
            row = session.scalars(stmt).first()
            return _code_from_row(row) if row else None

    def consume(self, code: str) -> AuthorizationCode | None:
        stmt = (
            delete(AuthorizationCodeRow)
            .where(AuthorizationCodeRow.code == code, AuthorizationCodeRow.expires > utcnow())
            .returning(AuthorizationCodeRow)
        )
        with self._sessions.begin() as session:
            row = session.scalars(stmt).first()
            return _code_from_row(row) if row else None

    def delete(self, code: str) -> bool:
        stmt = delete(AuthorizationCodeRow).where(AuthorizationCodeRow.code == code)
        with self._sessions.begin() as session:
            return session.execute(stmt).rowcount > 0

    def delete_by_client_id(self, client_id: str) -> int:
        stmt = delete(AuthorizationCodeRow).where(AuthorizationCodeRow.client_id == client_id)
        with self._sessions.begin() as session:
            return session.execute(stmt).rowcount

    def delete_expired(self) -> int:
        stmt = delete(AuthorizationCodeRow).where(AuthorizationCodeRow.expires <= utcnow())
        with self._sessions.begin() as session:
            return session.execute(stmt).rowcount


class SqlAccessTokenRepository:
    def __init__(self, sessions: sessionmaker):
        self._sessions = sessions

    def create(self, token: AccessToken) -> None:
        with self._sessions.begin() as session:
            session.add(_access_to_row(token))

    def find_valid(self, token: str) -> AccessToken | None:
        stmt = select(AccessTokenRow).where(
            AccessTokenRow.token == token, AccessTokenRow.expires > utcnow()
        )
        with self._sessions() as session:
            row = session.scalars(stmt).first()
            return _access_from_row(row) if row else None

    def find_by_token(self, token: str) -> AccessToken | None:
        with self._sessions() as session:
            row = session.get(AccessTokenRow, token)
            return _access_from_row(row) if row else None

    def delete(self, token: str) -> bool:
        stmt = delete(AccessTokenRow).where(AccessTokenRow.token == token)
        with self._sessions.begin() as session:
            return session.execute(stmt).rowcount > 0

    def delete_by_client_id(self, client_id: str) -> int:
        stmt = delete(AccessTokenRow).where(AccessTokenRow.client_id == client_id)
        with self._sessions.begin() as session:
            return session.execute(stmt).rowcount

    def delete_expired(self) -> int:
        stmt = delete(AccessTokenRow).where(AccessTokenRow.expires <= utcnow())
        with self._sessions.begin() as session:
            return session.execute(stmt).rowcount


class SqlRefreshTokenRepository:
    def __init__(self, sessions: sessionmaker):
        self._sessions = sessions

    def create(self, token: RefreshToken) -> None:
        with self._sessions.begin() as session:
            session.add(_refresh_to_row(token))

    def find_valid(self, token: str, client_id: str) -> RefreshToken | None:
        stmt = select(RefreshTokenRow).where(
            RefreshTokenRow.token == token,
            RefreshTokenRow.client_id == client_id,
            RefreshTokenRow.expires > utcnow(),
        )
        with self._sessions() as session:
            row = session.scalars(stmt).first()
            return _refresh_from_row(row) if row else None

    def find_by_token(self, token: str) -> RefreshToken | None:
        with self._sessions() as session:
            row = session.get(RefreshTokenRow, token)
            return _refresh_from_row(row) if row else None

    def consume(self, token: str, client_id: str) -> RefreshToken | None:
        stmt = (
            delete(RefreshTokenRow)
            .where(
                RefreshTokenRow.token == token,
                RefreshTokenRow.client_id == client_id,
                RefreshTokenRow.expires > utcnow(),
            )
            .returning(RefreshTokenRow)
        )
        with self._sessions.begin() as session:
            row = session.scalars(stmt).first()
            return _refresh_from_row(row) if row else None

    def delete(self, token: str) -> bool:
        stmt = delete(RefreshTokenRow).where(RefreshTokenRow.token == token)
        with self._sessions.begin() as session:
            return session.execute(stmt).rowcount > 0

    def delete_by_client_id(self, client_id: str) -> int:
        stmt = delete(RefreshTokenRow).where(RefreshTokenRow.client_id == client_id)
        with self._sessions.begin() as session:
            return session.execute(stmt).rowcount

    def delete_expired(self) -> int:
        stmt = delete(RefreshTokenRow).where(RefreshTokenRow.expires <= utcnow())
        with self._sessions.begin() as session:
            return session.execute(stmt).rowcount


class SqlUserRepository:
    def __init__(self, sessions: sessionmaker):
        self._sessions = sessions

    def find_by_id(self, user_id: int) -> User | None:
        with self._sessions() as session:
            row = session.get(UserRow, user_id)
            return _user_from_row(row) if row else None

    def add(self, user: User) -> None:
        with self._sessions.begin() as session:
            session.merge(
                UserRow(
                    id=user.id,
                    display_name=user.display_name,
                    avatar_url=user.avatar_url,
                    email=user.email,
                    email_verified=user.email_verified,
                )
            )


class SqlStore:
    """Owns the engine and session factory shared by the SQL repositories."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.sessions = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> SqlStore:
        kwargs: dict = {"echo": echo}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, or each session sees an empty database.
                kwargs["poolclass"] = StaticPool
        return cls(create_engine(url, **kwargs))

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.debug("Ensured OAuth2 tables on %s", self.engine.url)

    def repositories(self) -> Repositories:
        return Repositories(
            clients=SqlClientRepository(self.sessions),
            codes=SqlAuthorizationCodeRepository(self.sessions),
            access_tokens=SqlAccessTokenRepository(self.sessions),
            refresh_tokens=SqlRefreshTokenRepository(self.sessions),
            users=SqlUserRepository(self.sessions),
        )

    def dispose(self) -> None:
        self.engine.dispose()
