"""Bearer token verification for the HTTP edge.

Tokens are HS256 JWTs issued by the external auth service; the ``sub``
claim is the user id. Verification failures are ``UnauthenticatedError``
so they map to 401 like every other taxonomy error.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Final

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from oms_core.common.errors import UnauthenticatedError

log = structlog.get_logger()

DEFAULT_ALGORITHM: Final[str] = "HS256"
DEFAULT_LEEWAY_SECONDS: Final[int] = 30

security = HTTPBearer(auto_error=False)


class TokenVerifier:
    """Verifies bearer tokens and extracts the user id."""

    def __init__(
        self,
        secret: str,
        algorithm: str = DEFAULT_ALGORITHM,
        leeway_seconds: int = DEFAULT_LEEWAY_SECONDS,
    ) -> None:
        if not secret:
            msg = "JWT secret must not be empty"
            raise ValueError(msg)
        self._secret = secret
        self.algorithm = algorithm
        self.leeway_seconds = leeway_seconds

    def verify(self, token: str) -> str:
        """Return the user id carried by a valid token.

        Raises:
            UnauthenticatedError: Expired, malformed or badly signed token.
        """
        try:
            claims: dict[str, Any] = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                leeway=self.leeway_seconds,
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise UnauthenticatedError("Token has expired") from exc
        except jwt.InvalidTokenError as exc:
            log.info("Rejected bearer token", error=str(exc))
            raise UnauthenticatedError("Invalid token") from exc

        user_id = claims.get("sub")
        if not isinstance(user_id, str) or not user_id.strip():
            raise UnauthenticatedError("Token has no subject")
        return user_id

    def issue(self, user_id: str, ttl: timedelta = timedelta(hours=1)) -> str:
        """Mint a token (local tooling and tests; production tokens come from the auth service)."""
        now = datetime.now(timezone.utc)
        return jwt.encode(
            {"sub": user_id, "iat": now, "exp": now + ttl},
            self._secret,
            algorithm=self.algorithm,
        )


def current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    """FastAPI dependency resolving the authenticated user id."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise UnauthenticatedError("Missing bearer token")
    verifier: TokenVerifier = request.app.state.verifier
    return verifier.verify(credentials.credentials)
