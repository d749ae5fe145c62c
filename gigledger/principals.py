"""Authenticated principals.

Identity resolution happens outside the engine; callers pass a ``Principal``
into every state-machine operation.
"""

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    """Account roles."""

    CLIENT = "CLIENT"
    FREELANCER = "FREELANCER"
    ADMIN = "ADMIN"


@dataclass(frozen=True)
class Principal:
    """The caller of an operation."""

    id: str
    role: Role

    def __post_init__(self):
        if not self.id:
            raise ValueError("Principal id is required")
        if not isinstance(self.role, Role):
            try:
                object.__setattr__(self, "role", Role(str(self.role).upper()))
            except ValueError:
                raise ValueError(f"Invalid role: {self.role}") from None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


# Actor id recorded for transitions made by the reconciler
SYSTEM_ACTOR = "system"
