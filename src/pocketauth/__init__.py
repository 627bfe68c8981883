"""PocketAuth - OAuth 2.0 authorization server with PKCE."""

__version__ = "0.1.0"
