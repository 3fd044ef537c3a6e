"""
Short-lived ES256 JWT credentials for the Cloud IoT MQTT bridge.

The bridge authenticates a device by a JWT passed as the MQTT password at
connect time. Tokens live for TOKEN_LIFETIME_S and are renewed once fewer
than REFRESH_SKEW_S seconds of validity remain. Tokens are cached in memory
only and never written to disk.

Operations:
- get_token(): Return the cached token or sign a new one.
- invalidate(): Drop the cached token.

CHANGELOG:
- 2026-10-13: Initial creation (STORY-103)

TODO:
- None
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import jwt
from sensesync.src.errors import CredentialError

logger = logging.getLogger(__name__)

TOKEN_LIFETIME_S: int = 300
"""Validity of a freshly signed token, in seconds."""

REFRESH_SKEW_S: int = 60
"""Safety margin subtracted from expiry to force early renewal."""

SIGNING_ALGORITHM = "ES256"


@dataclass(frozen=True)
class AuthToken:
    """A signed bearer token and its validity window (epoch seconds)."""

    signed_value: str
    issued_at: int
    expires_at: int

    def needs_refresh(self, now: float) -> bool:
        return now >= self.expires_at - REFRESH_SKEW_S


class CredentialManager:
    """Produces and caches the device JWT for one cloud project.

    Exactly one token is live at a time. A call made while the cached token
    is still inside its refresh window returns the same object and has no
    side effect.

    Args:
        private_key_file: PEM-encoded EC (P-256) private key.
        project_id: Cloud project id, used as the token audience.
        clock: Source of the current epoch time, injectable for tests.
        log: Logger to use; defaults to the module logger.

    Usage::

        credentials = CredentialManager("/data/mqtt/keys/ec_private.pem", "my-project")
        token = credentials.get_token()
        client.username_pw_set("unused", token.signed_value)
    """

    def __init__(
        self,
        private_key_file: str | Path,
        project_id: str,
        *,
        clock: Callable[[], float] = time.time,
        log: logging.Logger | None = None,
    ) -> None:
        self._private_key_file = Path(private_key_file)
        self._project_id = project_id
        self._clock = clock
        self._log = log or logger
        self._token: AuthToken | None = None

    @property
    def cached(self) -> AuthToken | None:
        return self._token

    def get_token(self) -> AuthToken:
        """Return a token valid for at least REFRESH_SKEW_S more seconds.

        Raises:
            CredentialError: If the key cannot be read or signing fails.
        """
        now = self._clock()
        if self._token is not None and not self._token.needs_refresh(now):
            return self._token

        self._token = self._sign(int(now))
        self._log.debug(
            "Signed new broker token for audience=%s (expires_at=%d)",
            self._project_id,
            self._token.expires_at,
        )
        return self._token

    def invalidate(self) -> None:
        self._token = None

    def _sign(self, now: int) -> AuthToken:
        try:
            key = self._private_key_file.read_bytes()
        except OSError as exc:
            raise CredentialError(
                f"Cannot read private key {self._private_key_file}: {exc}"
            ) from exc

        claims = {"iat": now, "exp": now + TOKEN_LIFETIME_S, "aud": self._project_id}
        try:
            signed = jwt.encode(claims, key, algorithm=SIGNING_ALGORITHM)
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            raise CredentialError(
                f"Cannot sign token with key {self._private_key_file}: {exc}"
            ) from exc

        return AuthToken(signed_value=signed, issued_at=now, expires_at=now + TOKEN_LIFETIME_S)
