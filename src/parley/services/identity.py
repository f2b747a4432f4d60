"""Identity collaborators yielding the authenticated user and credential."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from jose import JWTError, jwt

from parley.core.settings import Settings, settings

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    """Source of the current user id and bearer credential."""

    def current_user_id(self) -> str | None: ...

    def bearer_token(self) -> str | None: ...


@dataclass
class StaticIdentity:
    """Identity with a fixed user id, for tests and trusted processes."""

    user_id: str | None
    token: str | None = None

    def current_user_id(self) -> str | None:
        return self.user_id

    def bearer_token(self) -> str | None:
        return self.token


class JwtIdentity:
    """Identity derived from a bearer JWT issued by the auth collaborator.

    The user id is the token's ``sub`` claim. When a signing secret is
    configured the token is verified; otherwise the claims are read as-is
    since the backing store verifies the credential on every request.
    """

    def __init__(self, token: str | None, config: Settings | None = None) -> None:
        self._config = config or settings
        self._token: str | None = None
        self._user_id: str | None = None
        self.set_token(token)

    def set_token(self, token: str | None) -> None:
        """Replace the credential, e.g. after a refresh or sign-out."""
        self._token = token
        self._user_id = self._subject(token) if token else None

    def clear(self) -> None:
        self.set_token(None)

    def current_user_id(self) -> str | None:
        return self._user_id

    def bearer_token(self) -> str | None:
        return self._token if self._user_id else None

    def _subject(self, token: str) -> str | None:
        try:
            claims = self._decode(token)
        except JWTError as exc:
            logger.warning("Rejecting bearer token: %s", exc)
            return None
        subject = claims.get("sub")
        return str(subject) if subject else None

    def _decode(self, token: str) -> dict[str, Any]:
        if self._config.jwt_secret:
            options = {"verify_aud": bool(self._config.jwt_audience)}
            return jwt.decode(
                token,
                self._config.jwt_secret,
                algorithms=[self._config.jwt_algorithm],
                audience=self._config.jwt_audience,
                options=options,
            )
        return jwt.get_unverified_claims(token)
