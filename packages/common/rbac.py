"""RBAC utilities.

Provides:
- `require_roles(*roles)`: FastAPI dependency factory ensuring the authenticated
  user holds at least one of the given roles.
- `can_manage(user, owner_id)`: ownership rule used for quiz authoring
  (admins manage everything, teachers manage what they created).
"""

from typing import Callable
from fastapi import Depends, HTTPException, status
from .auth import get_current_user, User

ADMIN = "admin"
TEACHER = "teacher"
SYSTEM = "system"


def require_roles(*allowed: str) -> Callable[[User], User]:
    """Create a dependency that enforces presence of one of the given roles.

    Args:
        allowed: Role names; the user must have at least one of them.

    Returns:
        A FastAPI dependency callable that raises 403 when the user's roles do
        not intersect `allowed`, otherwise returns the `User`.
    """
    def wrapper(user: User = Depends(get_current_user)) -> User:
        """Validate the current user's roles against the allowed set."""
        if not user.has_role(*allowed):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role",
            )
        return user

    return wrapper


def can_author(user: User) -> bool:
    """Return True if `user` may create quizzes."""
    return user.has_role(ADMIN, TEACHER)


def can_manage(user: User, owner_id: str | None) -> bool:
    """Return True if `user` may modify or inspect a quiz owned by `owner_id`."""
    if user.has_role(ADMIN):
        return True
    return user.has_role(TEACHER) and owner_id is not None and owner_id == user.sub
