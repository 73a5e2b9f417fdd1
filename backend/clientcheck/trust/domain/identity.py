"""Identity context consumed by the trust subsystem."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ActorRole(str, Enum):
    USER = "user"
    MANAGER = "manager"
    ADMIN = "admin"


ELEVATED_ROLES = frozenset({ActorRole.ADMIN, ActorRole.MANAGER})


@dataclass(frozen=True, slots=True)
class ActorContext:
    """Already-authenticated caller resolved by the application layer."""

    actor_id: int
    role: ActorRole = ActorRole.USER

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role is ActorRole.ADMIN
