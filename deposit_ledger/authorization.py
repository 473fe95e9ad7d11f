"""Pluggable administrator checks used by the approval engine."""

from typing import Iterable, Protocol

from .storage import UserStore


class AdminPolicy(Protocol):
    def is_administrator(self, user_id: str) -> bool: ...


class AllowListPolicy:
    """Static set of administrator ids, usually taken from settings."""

    def __init__(self, admin_ids: Iterable[str] = ()):
        self.admin_ids = frozenset(i for i in admin_ids if i)

    def is_administrator(self, user_id: str) -> bool:
        return bool(user_id) and user_id in self.admin_ids


class AccountRolePolicy:
    """Checks the ``is_admin`` role flag on the caller's stored account."""

    def __init__(self, store: UserStore):
        self.store = store

    def is_administrator(self, user_id: str) -> bool:
        if not user_id:
            return False
        account = self.store.get_user(user_id)
        return account is not None and account.is_admin


class AnyOfPolicy:
    def __init__(self, *policies: AdminPolicy):
        self.policies = policies

    def is_administrator(self, user_id: str) -> bool:
        return any(p.is_administrator(user_id) for p in self.policies)
