# access.py — Capability-scoped ownership filtering
# One place decides what a caller may see and change:
# - admin: no ownership filter
# - user: only rows whose owner_id is their own id
# - guest: nothing

from typing import Any

from sqlalchemy import false

from exceptions import ForbiddenError
from models import UserRole


class AccessScope:
    """The acting user's id and role, applied to queries and mutations."""

    def __init__(self, user_id: int, role: UserRole = UserRole.USER):
        self.user_id = user_id
        self.role = UserRole(role)

    @classmethod
    def for_user(cls, user: Any) -> "AccessScope":
        return cls(user_id=user.id, role=user.role)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def restrict(self, stmt, owner_column):
        """Inject the ownership filter for this scope into a select."""
        if self.role == UserRole.ADMIN:
            return stmt
        if self.role == UserRole.USER:
            return stmt.where(owner_column == self.user_id)
        return stmt.where(false())

    def can_access(self, owner_id: int) -> bool:
        if self.role == UserRole.ADMIN:
            return True
        if self.role == UserRole.USER:
            return owner_id == self.user_id
        return False

    def ensure_can_write(self, owner_id: int, resource: str = "task") -> None:
        if not self.can_access(owner_id):
            raise ForbiddenError(
                f"access denied: user {self.user_id} does not own this {resource}",
                user_id=self.user_id,
            )

    def __repr__(self) -> str:
        return f"AccessScope(user_id={self.user_id!r}, role={self.role.value!r})"
