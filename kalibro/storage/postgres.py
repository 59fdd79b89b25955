from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from kalibro.logging import get_logger
from kalibro.storage.errors import ConstraintViolation
from kalibro.storage.models import Account, AccountRole

_ACCOUNT_COLUMNS = "id, name, username, email, role, is_active, created_at"


class PostgresAccountStore:
    """Account lookups against the library's ``staff_account`` table.

    Only the columns the auth core needs are touched; the rest of the
    relational schema belongs to the catalog application.
    """

    def __init__(self, dsn: str, *, pool: Optional[Any] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": True},
        )

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @staticmethod
    def _to_account(row: Optional[Dict[str, Any]]) -> Optional[Account]:
        if not row:
            return None
        return Account(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            role=row.get("role") or AccountRole.STUDENT.value,
            is_active=bool(row.get("is_active", True)),
            name=row.get("name"),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    @staticmethod
    def _numeric_id(account_id: str) -> Optional[int]:
        try:
            return int(account_id)
        except (TypeError, ValueError):
            return None

    def get_by_id(self, account_id: str) -> Optional[Account]:
        numeric_id = self._numeric_id(account_id)
        if numeric_id is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM staff_account WHERE id = %s",
                (numeric_id,),
            ).fetchone()
        return self._to_account(row)

    def get_by_username_or_email(self, identifier: str) -> Optional[Account]:
        needle = identifier.strip().lower()
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM staff_account "
                "WHERE lower(username) = %s OR lower(email) = %s LIMIT 1",
                (needle, needle),
            ).fetchone()
        return self._to_account(row)

    def get_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM staff_account WHERE lower(email) = %s",
                (email.strip().lower(),),
            ).fetchone()
        return self._to_account(row)

    def get_password_hash(self, account_id: str) -> Optional[str]:
        numeric_id = self._numeric_id(account_id)
        if numeric_id is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password FROM staff_account WHERE id = %s", (numeric_id,)
            ).fetchone()
        if not row:
            return None
        return row["password"]

    def update_password(self, account_id: str, password_hash: str) -> bool:
        numeric_id = self._numeric_id(account_id)
        if numeric_id is None:
            return False
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE staff_account SET password = %s WHERE id = %s",
                (password_hash, numeric_id),
            )
            updated = cursor.rowcount > 0
        if not updated:
            self.logger.warning("account_password_update_missed", account_id=account_id)
        return updated

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO staff_account (name, username, email, password, role, is_active) "
                    f"VALUES (%s, %s, %s, %s, %s, %s) RETURNING {_ACCOUNT_COLUMNS}",
                    (
                        name or username,
                        username,
                        email.strip().lower(),
                        password_hash,
                        AccountRole(role).value,
                        is_active,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "username or email already exists", {"field": "username_or_email"}
            )
        account = self._to_account(row)
        self.logger.info("account_created", account_id=account.id, role=account.role)
        return account

    def update_role(self, account_id: str, role: str) -> Optional[Account]:
        numeric_id = self._numeric_id(account_id)
        if numeric_id is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE staff_account SET role = %s WHERE id = %s RETURNING {_ACCOUNT_COLUMNS}",
                (AccountRole(role).value, numeric_id),
            ).fetchone()
        return self._to_account(row)


__all__ = ["PostgresAccountStore"]
