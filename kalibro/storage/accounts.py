from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from typing import Dict, Optional, Protocol

from kalibro.storage.errors import ConstraintViolation
from kalibro.storage.models import Account, AccountCredential, AccountRole


class AccountStore(Protocol):
    """Narrow view of the relational account table used by the auth core."""

    def get_by_id(self, account_id: str) -> Optional[Account]: ...

    def get_by_username_or_email(self, identifier: str) -> Optional[Account]: ...

    def get_by_email(self, email: str) -> Optional[Account]: ...

    def get_password_hash(self, account_id: str) -> Optional[str]: ...

    def update_password(self, account_id: str, password_hash: str) -> bool: ...

    def create_account(
        self,
        *,
        username: str,
        email: str,
        password_hash: str,
        role: str = AccountRole.STUDENT.value,
        name: Optional[str] = None,
        is_active: bool = True,
    ) -> Account: ...

    def update_role(self, account_id: str, role: str) -> Optional[Account]: ...


class MemoryAccountStore:
    """In-process account store for tests and local development."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, AccountCredential] = {}

    def get_by_id(self, account_id: str) -> Optional[Account]:
        with self._lock:
            account = self.accounts.get(str(account_id))
            return replace(account) if account else None

    def get_by_username_or_email(self, identifier: str) -> Optional[Account]:
        needle = identifier.strip().lower()
        with self._lock:
            for account in self.accounts.values():
                if account.username.lower() == needle or account.email.lower() == needle:
                    return replace(account)
        return None

    def get_by_email(self, email: str) -> Optional[Account]:
        needle = email.strip().lower()
        with self._lock:
            for account in self.accounts.values():
                if account.email.lower() == needle:
                    return replace(account)
        return None

    def get_password_hash(self, account_id: str) -> Optional[str]:
        with self._lock:
            credential = self.credentials.get(str(account_id))
            return credential.password_hash if credential else None

    def update_password(self, account_id: str, password_hash: str) -> bool:
        with self._lock:
            if str(account_id) not in self.accounts:
                return False
            self.credentials[str(account_id)] = AccountCredential(
                account_id=str(account_id), password_hash=password_hash
            )
            return True

    def create_account(
        self,
        *,
        username: str,
        email: str,
        password_hash: str,
        role: str = AccountRole.STUDENT.value,
        name: Optional[str] = None,
        is_active: bool = True,
    ) -> Account:
        with self._lock:
            for existing in self.accounts.values():
                if existing.email.lower() == email.lower():
                    raise ConstraintViolation("email already registered", {"field": "email"})
                if existing.username.lower() == username.lower():
                    raise ConstraintViolation("username already taken", {"field": "username"})
            account = Account(
                id=str(uuid.uuid4()),
                username=username,
                email=email.lower(),
                role=AccountRole(role).value,
                is_active=is_active,
                name=name,
            )
            self.accounts[account.id] = account
            self.credentials[account.id] = AccountCredential(
                account_id=account.id, password_hash=password_hash
            )
            return replace(account)

    def update_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._lock:
            account = self.accounts.get(str(account_id))
            if account is None:
                return None
            account.role = AccountRole(role).value
            return replace(account)

    def set_active(self, account_id: str, is_active: bool) -> Optional[Account]:
        with self._lock:
            account = self.accounts.get(str(account_id))
            if account is None:
                return None
            account.is_active = is_active
            return replace(account)


__all__ = ["AccountStore", "MemoryAccountStore"]
