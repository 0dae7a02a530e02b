"""RBAC utilities for FastAPI dependencies.

Provides a `require_any_role(*roles)` factory that returns a dependency ensuring
the authenticated user (from `get_current_user`) holds at least one of the roles.
"""

from typing import Callable
from fastapi import Depends, HTTPException, status
from .auth import get_current_user, User


def require_any_role(*allowed: str) -> Callable[[User], User]:
    """Create a dependency that admits users holding any of `allowed`.

    Returns:
        A FastAPI dependency callable that:
          - receives the current `User` (via `Depends(get_current_user)`)
          - raises 403 if none of the user's roles is in `allowed`
          - otherwise returns the `User`
    """
    def wrapper(user: User = Depends(get_current_user)) -> User:
        """Validate the current user's roles against the allowed set."""
        if not set(allowed) & set(user.roles):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role",
            )
        return user

    return wrapper
