# OAuth2 schemas.
# Created: 2026-10-18

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, Field


class TokenRequest(BaseModel):
    """Token endpoint body (form-encoded or JSON).

    Everything is optional here; missing fields are reported as
    ``invalid_request`` by the server rather than as a 422.
    """

    grant_type: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    code: str | None = None
    redirect_uri: str | None = None
    code_verifier: str | None = None
    refresh_token: str | None = None


class TokenResponse(BaseModel):
    """OAuth2 token response."""

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


class ClientRegistrationRequest(BaseModel):
    name: str = Field(..., min_length=1)
    redirect_uris: list[str] = Field(
        ..., min_length=1, validation_alias=AliasChoices("redirect_uris", "redirectUris")
    )
    scopes: list[str] = Field(default_factory=lambda: ["openid", "profile", "email"])
    allowed_origin: str = Field(
        "", validation_alias=AliasChoices("allowed_origin", "allowedOrigin")
    )


class ClientRegistrationResponse(BaseModel):
    client_id: str
    client_secret: str


class ClientInfo(BaseModel):
    """Client as listed to administrators (no secret)."""

    client_id: str
    name: str
    redirect_uris: list[str]
    scopes: list[str]
    allowed_origin: str
    is_active: bool
    created_at: str
