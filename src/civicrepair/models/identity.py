"""Identity boundary — the principal yielded by signature verification."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


class Role(str, enum.Enum):
    CITIZEN = "citizen"
    WORKER = "worker"
    DELEGATE = "delegate"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    """An authenticated actor: wallet address plus declared roles."""
    address: str
    roles: frozenset[Role] = frozenset()
    reputation: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "address", self.address.strip().lower())

    def has_role(self, role: Role) -> bool:
        return role in self.roles or Role.ADMIN in self.roles


class DelegateStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass
class DelegateEntry:
    """A delegate eligible to vote on ballots."""
    delegate_id: str
    voting_power: Decimal = Decimal("1")
    status: DelegateStatus = DelegateStatus.ACTIVE
    registered_utc: Optional[datetime] = None
    votes_cast: int = 0
    tags: list[str] = field(default_factory=list)

    def is_active(self) -> bool:
        return self.status == DelegateStatus.ACTIVE
