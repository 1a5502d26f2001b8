"""Auth collaborator for the chat client.

The chat core never signs users in. It only needs to know who the current
user is (to classify messages as own or counterparty) and which bearer
token to present to the store.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

from jose import JWTError, jwt

logger = logging.getLogger(__name__)


class AuthProvider(Protocol):
    """Minimal view of the authentication session."""

    def current_user_id(self) -> str | None:
        """Return the signed-in user id, or None when signed out."""

    def access_token(self) -> str | None:
        """Return the bearer token for store requests, or None."""


class TokenAuth:
    """Session backed by an access token issued by the managed auth service.

    The token is not verified here; the store verifies it on every request.
    Claims are only read to learn the user id (``sub``) and expiry.
    """

    def __init__(
        self,
        token: str | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._token = token
        self._clock = clock
        self._claims: dict[str, Any] | None = None

    def set_token(self, token: str | None) -> None:
        """Replace the session token (e.g. after a refresh)."""
        self._token = token
        self._claims = None

    def clear(self) -> None:
        """Forget the session (sign-out)."""
        self.set_token(None)

    def _read_claims(self) -> dict[str, Any] | None:
        if self._token is None:
            return None
        if self._claims is None:
            try:
                self._claims = jwt.get_unverified_claims(self._token)
            except JWTError as exc:
                logger.warning("Ignoring malformed access token: %s", exc)
                return None
        return self._claims

    def is_expired(self) -> bool:
        claims = self._read_claims()
        if claims is None:
            return True
        exp = claims.get("exp")
        return exp is not None and float(exp) <= self._clock()

    def current_user_id(self) -> str | None:
        claims = self._read_claims()
        if claims is None or self.is_expired():
            return None
        subject = claims.get("sub")
        return str(subject) if subject else None

    def access_token(self) -> str | None:
        if self.current_user_id() is None:
            return None
        return self._token


class StaticAuth:
    """Fixed identity, for service accounts and tests."""

    def __init__(self, user_id: str | None, token: str | None = None) -> None:
        self.user_id = user_id
        self.token = token

    def current_user_id(self) -> str | None:
        return self.user_id

    def access_token(self) -> str | None:
        return self.token if self.user_id is not None else None
