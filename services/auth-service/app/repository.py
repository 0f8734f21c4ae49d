"""Database repository for account and audit data."""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Tuple

from psycopg.errors import UniqueViolation
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import (
    LOCKOUT_REASON,
    Account,
    AccountStatus,
    EmailVerificationStatus,
    Role,
)
from .domain.contracts import CreateAccountInput
from .domain.errors import EmailAlreadyExists

ACCOUNT_COLUMNS = (
    "account_id",
    "email",
    "password_hash",
    "created_at",
    "status",
    "email_verification_status",
    "role",
    "tenant_id",
    "failed_login_attempts",
    "last_failed_login_at",
    "last_login_at",
    "locked_at",
    "lock_reason",
    "password_changed_at",
    "email_verified_at",
    "is_active",
    "is_deleted",
    "updated_at",
)
_SELECT_ACCOUNT = f"SELECT {', '.join(ACCOUNT_COLUMNS)} FROM accounts"
_RETURNING_ACCOUNT = f"RETURNING {', '.join(ACCOUNT_COLUMNS)}"

# columns callers may change through ``update``; counters and credentials have dedicated methods
UPDATABLE_COLUMNS = frozenset(
    {
        "status",
        "email_verification_status",
        "role",
        "tenant_id",
        "locked_at",
        "lock_reason",
        "email_verified_at",
        "last_login_at",
        "is_active",
        "is_deleted",
    }
)


@dataclass(slots=True)
class AuditLogRecord:
    """Row projection for items in auth_audit_log."""

    audit_id: int
    account_id: str | None
    tenant_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


def _db_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class AccountRepository:
    """Postgres-backed account directory.

    Counter mutations are single ``UPDATE`` statements so concurrent failed
    logins never lose an increment.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def _hash_email(self, email: str) -> bytes:
        """Normalise an email address and return its SHA-256 digest."""
        return hashlib.sha256(email.strip().lower().encode("utf-8")).digest()

    def _fetch_one(self, query: str, params: tuple | list) -> Account | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                row = cur.fetchone()
                conn.commit()
        return self._map_record(row) if row else None

    def _fetch_all(self, query: str, params: tuple | list) -> list[Account]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        return [self._map_record(row) for row in rows]

    def create_account(self, payload: CreateAccountInput) -> Account:
        """Persist a new account record.

        Raises
        ------
        EmailAlreadyExists
            If another account already owns the normalised email.
        """
        now = datetime.now(timezone.utc)
        email = payload.email.strip().lower()
        try:
            record = self._fetch_one(
                f"""
                INSERT INTO accounts (
                    account_id, tenant_id, email_hash, email, password_hash, status,
                    email_verification_status, role, failed_login_attempts,
                    is_active, is_deleted, created_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 0, TRUE, FALSE, %s, %s)
                {_RETURNING_ACCOUNT}
                """,
                (
                    str(uuid.uuid4()),
                    payload.tenant_id,
                    self._hash_email(email),
                    email,
                    payload.password_hash,
                    _db_value(payload.status),
                    _db_value(payload.email_verification_status),
                    _db_value(payload.role),
                    now,
                    now,
                ),
            )
        except UniqueViolation as exc:
            raise EmailAlreadyExists() from exc
        if record is None:
            raise RuntimeError("account insert returned no row")
        return record

    def find_by_id(self, account_id: str) -> Account | None:
        return self._fetch_one(f"{_SELECT_ACCOUNT} WHERE account_id = %s", (account_id,))

    def find_by_email(self, email: str) -> Account | None:
        """Look up an account by email, ignoring case."""
        return self._fetch_one(f"{_SELECT_ACCOUNT} WHERE email_hash = %s", (self._hash_email(email),))

    def email_exists(self, email: str) -> bool:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    "SELECT 1 FROM accounts WHERE email_hash = %s LIMIT 1",
                    (self._hash_email(email),),
                )
                return cur.fetchone() is not None

    def update(self, account_id: str, changes: dict[str, Any]) -> Account | None:
        """Apply a partial update limited to :data:`UPDATABLE_COLUMNS`."""
        unknown = set(changes) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"cannot update columns: {', '.join(sorted(unknown))}")
        if not changes:
            return self.find_by_id(account_id)
        assignments = ", ".join(f"{column} = %s" for column in changes)
        params: list[Any] = [_db_value(value) for value in changes.values()]
        params.extend([datetime.now(timezone.utc), account_id])
        return self._fetch_one(
            f"UPDATE accounts SET {assignments}, updated_at = %s WHERE account_id = %s {_RETURNING_ACCOUNT}",
            params,
        )

    def update_password(self, account_id: str, password_hash: str) -> Account | None:
        now = datetime.now(timezone.utc)
        return self._fetch_one(
            f"""
            UPDATE accounts
            SET password_hash = %s, password_changed_at = %s, updated_at = %s
            WHERE account_id = %s
            {_RETURNING_ACCOUNT}
            """,
            (password_hash, now, now, account_id),
        )

    def increment_failed_login_attempts(self, account_id: str, lock_threshold: int) -> int:
        """Atomically add one failed attempt and lock the account at ``lock_threshold``.

        Returns the counter value after the increment, or ``0`` if the account
        does not exist.
        """
        now = datetime.now(timezone.utc)
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    UPDATE accounts
                    SET failed_login_attempts = failed_login_attempts + 1,
                        last_failed_login_at = %(now)s,
                        status = CASE
                            WHEN failed_login_attempts + 1 >= %(threshold)s AND status <> %(suspended)s
                            THEN %(locked)s ELSE status END,
                        locked_at = CASE
                            WHEN failed_login_attempts + 1 >= %(threshold)s AND status <> %(suspended)s
                            THEN COALESCE(locked_at, %(now)s) ELSE locked_at END,
                        lock_reason = CASE
                            WHEN failed_login_attempts + 1 >= %(threshold)s AND status <> %(suspended)s
                            THEN COALESCE(lock_reason, %(reason)s) ELSE lock_reason END,
                        updated_at = %(now)s
                    WHERE account_id = %(account_id)s
                    RETURNING failed_login_attempts
                    """,
                    {
                        "now": now,
                        "threshold": lock_threshold,
                        "suspended": AccountStatus.suspended.value,
                        "locked": AccountStatus.locked.value,
                        "reason": LOCKOUT_REASON,
                        "account_id": account_id,
                    },
                )
                row = cur.fetchone()
                conn.commit()
        return int(row[0]) if row else 0

    def reset_failed_login_attempts(self, account_id: str) -> None:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE accounts
                    SET failed_login_attempts = 0, last_failed_login_at = NULL, updated_at = NOW()
                    WHERE account_id = %s
                    """,
                    (account_id,),
                )
                conn.commit()

    def record_successful_login(self, account_id: str) -> Account | None:
        """Reset the failed-attempt counter and stamp the login time in one statement."""
        return self._fetch_one(
            f"""
            UPDATE accounts
            SET failed_login_attempts = 0,
                last_failed_login_at = NULL,
                last_login_at = NOW(),
                updated_at = NOW()
            WHERE account_id = %s
            {_RETURNING_ACCOUNT}
            """,
            (account_id,),
        )

    def mark_email_as_verified(self, account_id: str) -> Account | None:
        return self.update(
            account_id,
            {
                "email_verification_status": EmailVerificationStatus.verified,
                "email_verified_at": datetime.now(timezone.utc),
            },
        )

    def change_status(self, account_id: str, status: AccountStatus) -> Account | None:
        return self.update(account_id, {"status": status})

    def lock_account(self, account_id: str, reason: str) -> Account | None:
        return self.update(
            account_id,
            {
                "status": AccountStatus.locked,
                "locked_at": datetime.now(timezone.utc),
                "lock_reason": reason,
            },
        )

    def unlock_account(self, account_id: str) -> Account | None:
        now = datetime.now(timezone.utc)
        return self._fetch_one(
            f"""
            UPDATE accounts
            SET status = %s, locked_at = NULL, lock_reason = NULL,
                failed_login_attempts = 0, last_failed_login_at = NULL, updated_at = %s
            WHERE account_id = %s
            {_RETURNING_ACCOUNT}
            """,
            (AccountStatus.active.value, now, account_id),
        )

    def soft_delete(self, account_id: str) -> bool:
        return self.update(account_id, {"is_deleted": True, "is_active": False}) is not None

    def find_by_role(self, role: Role) -> list[Account]:
        return self._fetch_all(
            f"{_SELECT_ACCOUNT} WHERE role = %s AND NOT is_deleted ORDER BY created_at", (_db_value(role),)
        )

    def find_by_status(self, status: AccountStatus) -> list[Account]:
        return self._fetch_all(
            f"{_SELECT_ACCOUNT} WHERE status = %s AND NOT is_deleted ORDER BY created_at", (_db_value(status),)
        )

    def find_by_tenant_id(self, tenant_id: str) -> list[Account]:
        return self._fetch_all(
            f"{_SELECT_ACCOUNT} WHERE tenant_id = %s AND NOT is_deleted ORDER BY created_at", (tenant_id,)
        )

    def find_all(self, page: int, limit: int) -> tuple[list[Account], int]:
        """Return one page (1-based) of non-deleted accounts and the total count."""
        page = max(1, page)
        limit = max(1, min(limit, 100))
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute("SELECT COUNT(*) FROM accounts WHERE NOT is_deleted")
                total = int(cur.fetchone()[0])
                cur.execute(
                    f"{_SELECT_ACCOUNT} WHERE NOT is_deleted ORDER BY created_at, account_id LIMIT %s OFFSET %s",
                    (limit, (page - 1) * limit),
                )
                rows = cur.fetchall()
        return [self._map_record(row) for row in rows], total

    def _map_record(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        values = dict(zip(ACCOUNT_COLUMNS, row))
        values["status"] = AccountStatus(values["status"])
        values["email_verification_status"] = EmailVerificationStatus(values["email_verification_status"])
        values["role"] = Role(values["role"])
        return Account(**values)

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        tenant_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry capturing authentication activity."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO auth_audit_log (account_id, tenant_id, event_type, actor, metadata)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (account_id, tenant_id, event_type, actor, Json(metadata or {})),
                )
                conn.commit()

    def list_audit_events(
        self,
        *,
        tenant_id: str | None,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[Tuple[datetime, int]]]:
        """Return audit log entries, optionally tenant scoped, with filters and cursor pagination."""
        limit = max(1, min(limit, 100))
        clauses = ["TRUE"]
        params: list[Any] = []

        if tenant_id:
            clauses.append("tenant_id = %s")
            params.append(tenant_id)
        if account_id:
            clauses.append("account_id = %s")
            params.append(account_id)
        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        if created_after:
            clauses.append("created_at >= %s")
            params.append(created_after)
        if created_before:
            clauses.append("created_at <= %s")
            params.append(created_before)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT audit_id, account_id, tenant_id, event_type, actor, metadata, created_at
            FROM auth_audit_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        # one extra row tells whether another page exists
        params.append(limit + 1)

        records: list[AuditLogRecord] = []
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                for row in cur.fetchall():
                    records.append(
                        AuditLogRecord(
                            audit_id=row[0],
                            account_id=row[1],
                            tenant_id=row[2],
                            event_type=row[3],
                            actor=row[4],
                            metadata=row[5] or {},
                            created_at=row[6],
                        )
                    )

        next_cursor: Tuple[datetime, int] | None = None
        if len(records) > limit:
            records = records[:limit]
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor
