"""Identity resolution for realtime connections and HTTP requests.

Tokens are HS256 JWTs issued by the platform's CRUD layer. The user ID comes
from the ``sub`` claim (or ``userId`` for older tokens) and the display name
from ``name``.
"""
import logging
import time
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from app.config import get_config
from app.realtime.errors import AuthenticationError, to_http_exception

logger = logging.getLogger(__name__)


class Identity(BaseModel):
    """A verified user.

    Attributes:
        userId: Stable user identifier.
        userName: Display name shown to other users.
    """
    userId: str
    userName: str


class IdentityResolver:
    """Verifies bearer tokens and turns them into identities."""

    def __init__(self, secret_key: str, algorithm: str = "HS256") -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm

    def resolve(self, token: Optional[str]) -> Identity:
        """Verify *token* and return its identity.

        Raises:
            AuthenticationError: Missing, malformed, expired or badly signed token.
        """
        if not token:
            raise AuthenticationError("Missing token")
        try:
            claims: Dict[str, Any] = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except JWTError as e:
            logger.info("Rejected token: %s", e)
            raise AuthenticationError("Invalid token") from e
        user_id = claims.get("sub") or claims.get("userId")
        if not user_id:
            raise AuthenticationError("Token has no subject")
        return Identity(userId=str(user_id), userName=str(claims.get("name") or user_id))

    def issue_token(
        self,
        user_id: str,
        user_name: Optional[str] = None,
        expires_in_seconds: Optional[int] = 3600,
    ) -> str:
        """Sign a token for *user_id*. Used by development tooling and tests."""
        claims: Dict[str, Any] = {"sub": user_id, "iat": int(time.time())}
        if user_name:
            claims["name"] = user_name
        if expires_in_seconds is not None:
            claims["exp"] = int(time.time()) + expires_in_seconds
        return jwt.encode(claims, self._secret_key, algorithm=self._algorithm)


def get_identity_resolver() -> IdentityResolver:
    """Build a resolver from the configured JWT secrets."""
    jwt_secrets = get_config().secrets.jwt
    return IdentityResolver(jwt_secrets.secret_key, jwt_secrets.algorithm)


_bearer = HTTPBearer(auto_error=False)


def require_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    resolver: IdentityResolver = Depends(get_identity_resolver),
) -> Identity:
    """FastAPI dependency resolving the ``Authorization: Bearer`` header."""
    try:
        return resolver.resolve(credentials.credentials if credentials else None)
    except AuthenticationError as e:
        exc: HTTPException = to_http_exception(e)
        exc.headers = {"WWW-Authenticate": "Bearer"}
        raise exc from e
