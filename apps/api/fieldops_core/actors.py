from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header

from fieldops_core.errors import UnauthorizedActorError

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Actor:
    """Who is performing a mutation. Passed explicitly into every *_txn call."""

    user_id: int
    role: str = "operator"

    def __post_init__(self):
        if not isinstance(self.user_id, int) or self.user_id <= 0:
            raise ValueError("user_id must be a positive integer.")
        if not self.role or not isinstance(self.role, str):
            raise ValueError("role must be a non-empty string.")

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    def require_admin(self, what: str) -> None:
        if not self.is_admin:
            raise UnauthorizedActorError(
                f"{what} requires role {ADMIN_ROLE}",
                details={"user_id": self.user_id, "role": self.role},
            )


async def get_actor(
    x_actor_id: int = Header(gt=0),
    x_actor_role: str = Header(default="operator", min_length=1, max_length=32),
) -> Actor:
    return Actor(user_id=x_actor_id, role=x_actor_role.strip().lower())
