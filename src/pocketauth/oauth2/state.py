"""Authorization request state codec.

Wire format: ``{base64url(json)}.{hex_hmac}``

The JSON payload carries ``csrfToken`` (required), ``clientId`` and
``returnTo`` (optional) and a ``timestamp`` in unix milliseconds.  The HMAC
makes the blob unforgeable without the server key, but CSRF protection still
comes from comparing the embedded token with a value the caller tracks
independently (see :meth:`StateCodec.verify`).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time

from pocketauth.oauth2.models import AuthorizationState

__all__ = ["InvalidStateError", "StateCodec"]


class InvalidStateError(ValueError):
    """The state blob is tampered, malformed, stale, or fails the CSRF check."""


class StateCodec:
    def __init__(self, secret: str):
        if not secret:
            raise ValueError("StateCodec requires a non-empty secret")
        self._key = secret.encode()

    def encode(
        self,
        csrf_token: str,
        client_id: str | None = None,
        return_to: str | None = None,
    ) -> str:
        payload: dict[str, object] = {"csrfToken": csrf_token}
        if client_id:
            payload["clientId"] = client_id
        if return_to:
            payload["returnTo"] = return_to
        payload["timestamp"] = int(time.time() * 1000)

        raw = json.dumps(payload, separators=(",", ":")).encode()
        body = base64.urlsafe_b64encode(raw).rstrip(b"=").decode()
        return f"{body}.{self._sign(body)}"

    def decode(self, state: str, max_age: float | None = None) -> AuthorizationState:
        """Decode *state*. Raises InvalidStateError on any defect."""
        if not state or "." not in state:
            raise InvalidStateError("Invalid state parameter")

        body, sig = state.rsplit(".", 1)
        if not hmac.compare_digest(sig.encode(), self._sign(body).encode()):
            raise InvalidStateError("Invalid state parameter")

        try:
            raw = base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
            data = json.loads(raw)
        except (binascii.Error, ValueError) as exc:
            raise InvalidStateError("Invalid state parameter") from exc

        if not isinstance(data, dict):
            raise InvalidStateError("Invalid state parameter")

        csrf_token = data.get("csrfToken")
        if not isinstance(csrf_token, str) or not csrf_token:
            raise InvalidStateError("Invalid state: missing csrfToken")

        client_id = data.get("clientId")
        return_to = data.get("returnTo")
        timestamp = data.get("timestamp")
        if client_id is not None and not isinstance(client_id, str):
            raise InvalidStateError("Invalid state parameter")
        if return_to is not None and not isinstance(return_to, str):
            raise InvalidStateError("Invalid state parameter")
        if timestamp is not None and not isinstance(timestamp, int):
            raise InvalidStateError("Invalid state parameter")

        if max_age is not None:
            if timestamp is None or time.time() * 1000 - timestamp > max_age * 1000:
                raise InvalidStateError("State parameter has expired")

        return AuthorizationState(
            csrf_token=csrf_token,
            client_id=client_id,
            return_to=return_to,
            timestamp=timestamp,
        )

    def verify(
        self, state: str, expected_csrf: str | None, max_age: float | None = None
    ) -> AuthorizationState:
        """Decode *state* and require its CSRF token to equal *expected_csrf*."""
        decoded = self.decode(state, max_age=max_age)
        if not expected_csrf or not hmac.compare_digest(
            decoded.csrf_token.encode(), expected_csrf.encode()
        ):
            raise InvalidStateError("CSRF token mismatch")
        return decoded

    def _sign(self, message: str) -> str:
        return hmac.new(self._key, message.encode(), hashlib.sha256).hexdigest()
