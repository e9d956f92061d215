"""User lookups used for per-operation authorization."""

from uuid import UUID

from sqlalchemy.orm import Session

from billing_api.db.enums import Role
from billing_api.db.models import User
from billing_api.services.errors import ForbiddenError, UnauthorizedError


def get_user(db: Session, user_id: UUID | None) -> User | None:
    """Active user by id, or None."""
    if not user_id:
        return None
    user = db.get(User, user_id)
    if not user or not user.is_active:
        return None
    return user


def get_user_role(user: User) -> Role | None:
    if not Role.has_value(user.role):
        return None
    return Role(user.role)


def require_role(
    db: Session,
    user_id: UUID | None,
    allowed_roles: frozenset[Role] | set[Role],
    action: str,
) -> tuple[User, Role]:
    """
    Resolve the requesting user and check the role.

    Raises:
        UnauthorizedError: user missing or disabled
        ForbiddenError: role unknown or not in ``allowed_roles``
    """
    user = get_user(db, user_id)
    if not user:
        raise UnauthorizedError("User not found")
    role = get_user_role(user)
    if role is None or role not in allowed_roles:
        raise ForbiddenError(f"Role '{user.role}' is not allowed to {action}")
    return user, role
