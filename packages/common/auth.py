"""Auth helpers for FastAPI endpoints.

Provides:
- `User` Pydantic model for JWT subject
- `verify_jwt` to decode/validate RS256 JWTs
- `get_current_user` FastAPI dependency using HTTP Bearer auth
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
import logging
from pydantic import BaseModel
from .config import get_settings

security = HTTPBearer(auto_error=False)
log = logging.getLogger(__name__)

ROLE_PRIORITY = ("admin", "teacher", "student")


class User(BaseModel):
    """Authenticated user extracted from a validated JWT."""
    sub: str
    email: str | None = None
    roles: list[str] = []

    @property
    def primary_role(self) -> str:
        """Most privileged known role; `student` when the token carries none."""
        return next((r for r in ROLE_PRIORITY if r in self.roles), "student")


def verify_jwt(token: str) -> User:
    """Decode and validate a JWT and return a `User`.

    Validates signature (RS256), audience, and expiration using settings.
    Raises HTTP 401 on any validation failure.
    """
    s = get_settings()
    if not s.JWT_PUBLIC_KEY:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication is not configured")
    try:
        payload = jwt.decode(
            token,
            s.JWT_PUBLIC_KEY,
            algorithms=["RS256"],
            audience=s.OIDC_AUDIENCE,
            options={"verify_exp": True, "verify_aud": s.OIDC_AUDIENCE is not None},
        )
    except jwt.PyJWTError as e:
        log.info("rejected bearer token: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from e
    if not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return User(
        sub=payload["sub"],
        email=payload.get("email"),
        roles=payload.get("roles", []),
    )


def get_current_user(creds: HTTPAuthorizationCredentials = Depends(security)) -> User:
    """FastAPI dependency to extract the current user from Authorization header.

    Raises:
        HTTPException: 401 if credentials are missing or token is invalid.
    """
    if not creds:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing credentials",
        )
    return verify_jwt(creds.credentials)
