"""Principal kinds and the single place that maps token subjects onto them.

Users and admins live in separate stores but share one token namespace. On
the wire an admin subject carries the ``admin:`` prefix and a user subject is
the bare username. Only ``subject_for`` and ``PrincipalResolver`` know about
that encoding; every other caller works with ``UserPrincipal`` or
``AdminPrincipal`` values.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple, Union

from stoneridge.service.errors import BadCredentialsError
from stoneridge.storage.models import Account, Admin

ADMIN_SUBJECT_PREFIX = "admin:"


@dataclass(frozen=True)
class UserPrincipal:
    id: str
    username: str
    role: str = "USER"
    enabled: bool = True

    @classmethod
    def from_account(cls, account: Account) -> "UserPrincipal":
        return cls(
            id=account.id,
            username=account.username,
            role=account.role.value,
            enabled=account.enabled,
        )


@dataclass(frozen=True)
class AdminPrincipal:
    id: str
    username: str
    role: str = "ADMIN"
    enabled: bool = True

    @classmethod
    def from_admin(cls, admin: Admin) -> "AdminPrincipal":
        return cls(id=admin.id, username=admin.username, enabled=admin.enabled)


Principal = Union[UserPrincipal, AdminPrincipal]


def subject_for(principal: Principal) -> str:
    if isinstance(principal, AdminPrincipal):
        return f"{ADMIN_SUBJECT_PREFIX}{principal.username}"
    return principal.username


def parse_subject(subject: str) -> Tuple[str, str]:
    """Split a subject into ``("admin" | "user", username)``."""
    if subject.startswith(ADMIN_SUBJECT_PREFIX):
        return "admin", subject[len(ADMIN_SUBJECT_PREFIX):]
    return "user", subject


class _AccountLookup(Protocol):
    def find_by_username(self, username: str) -> Optional[Account]: ...

    def find_admin_by_username(self, username: str) -> Optional[Admin]: ...


class PrincipalResolver:
    def __init__(self, store: _AccountLookup) -> None:
        self.store = store

    def resolve(self, subject: str) -> Principal:
        """Look the subject up in the store its kind belongs to.

        Unknown subjects raise ``BadCredentialsError``; the enabled flag is
        carried on the principal and checked by the caller.
        """
        kind, username = parse_subject(subject)
        if not username:
            raise BadCredentialsError("Invalid credentials")
        if kind == "admin":
            admin = self.store.find_admin_by_username(username)
            if not admin:
                raise BadCredentialsError("Invalid credentials")
            return AdminPrincipal.from_admin(admin)
        account = self.store.find_by_username(username)
        if not account:
            raise BadCredentialsError("Invalid credentials")
        return UserPrincipal.from_account(account)
