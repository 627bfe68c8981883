# OAuth2 authorization engine.
# Created: 2026-10-18

from pocketauth.oauth2.server import AuthorizationServer
from pocketauth.oauth2.state import InvalidStateError, StateCodec

__all__ = ["AuthorizationServer", "InvalidStateError", "StateCodec"]
