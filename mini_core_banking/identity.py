"""
Caller Identity Module

The acting principal is resolved by the presentation layer and passed
explicitly into every ledger and loan operation.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet


class Role(Enum):
    """Roles a caller may hold"""
    CUSTOMER = "customer"
    LOAN_OFFICER = "loan_officer"
    ADMIN = "admin"


STAFF_ROLES = frozenset({Role.LOAN_OFFICER, Role.ADMIN})


@dataclass(frozen=True)
class Principal:
    """Authenticated caller"""
    user_id: str
    roles: FrozenSet[Role] = field(default_factory=lambda: frozenset({Role.CUSTOMER}))

    @property
    def is_staff(self) -> bool:
        """Loan officers and admins"""
        return bool(self.roles & STAFF_ROLES)

    @classmethod
    def customer(cls, user_id: str) -> "Principal":
        return cls(user_id=user_id, roles=frozenset({Role.CUSTOMER}))

    @classmethod
    def loan_officer(cls, user_id: str) -> "Principal":
        return cls(user_id=user_id, roles=frozenset({Role.LOAN_OFFICER}))

    @classmethod
    def admin(cls, user_id: str) -> "Principal":
        return cls(user_id=user_id, roles=frozenset({Role.ADMIN}))
