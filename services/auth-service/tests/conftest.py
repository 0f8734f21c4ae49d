from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone

import pytest

from app.config import Settings
from app.domain.account import LOCKOUT_REASON, Account, AccountStatus, EmailVerificationStatus, Role
from app.domain.contracts import CreateAccountInput
from app.domain.errors import EmailAlreadyExists
from app.domain.service import AccountService, AuthenticationService
from app.repository import UPDATABLE_COLUMNS
from app.security.guard import AuthGuard
from app.security.passwords import PasswordHasher
from app.security.token_store import InMemoryTokenStore
from app.security.tokens import TokenIssuer

STRONG_PASSWORD = "P@ssw0rd1"


class FakeRepository:
    """In-memory directory mimicking the Postgres-backed behaviours."""

    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self.audit_log: list[FakeAuditLogRecord] = []
        self._audit_seq = 0
        self._lock = threading.Lock()
        self.fail_login_stamp = False

    def _by_email(self, email: str) -> Account | None:
        wanted = email.strip().lower()
        for account in self._accounts.values():
            if account.email == wanted:
                return account
        return None

    def create_account(self, payload: CreateAccountInput) -> Account:
        with self._lock:
            if self._by_email(payload.email) is not None:
                raise EmailAlreadyExists()
            account = Account(
                account_id=str(uuid.uuid4()),
                email=payload.email.strip().lower(),
                password_hash=payload.password_hash,
                created_at=datetime.now(timezone.utc),
                status=payload.status,
                email_verification_status=payload.email_verification_status,
                role=payload.role,
                tenant_id=payload.tenant_id,
            )
            self._accounts[account.account_id] = account
            return replace(account)

    def find_by_id(self, account_id: str) -> Account | None:
        account = self._accounts.get(account_id)
        return replace(account) if account else None

    def find_by_email(self, email: str) -> Account | None:
        account = self._by_email(email)
        return replace(account) if account else None

    def email_exists(self, email: str) -> bool:
        return self._by_email(email) is not None

    def update(self, account_id: str, changes: dict) -> Account | None:
        unknown = set(changes) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"cannot update columns: {', '.join(sorted(unknown))}")
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return None
            for column, value in changes.items():
                setattr(account, column, value)
            account.updated_at = datetime.now(timezone.utc)
            return replace(account)

    def update_password(self, account_id: str, password_hash: str) -> Account | None:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return None
            account.password_hash = password_hash
            account.password_changed_at = datetime.now(timezone.utc)
            return replace(account)

    def increment_failed_login_attempts(self, account_id: str, lock_threshold: int) -> int:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return 0
            account.failed_login_attempts += 1
            account.last_failed_login_at = datetime.now(timezone.utc)
            if account.failed_login_attempts >= lock_threshold and account.status != AccountStatus.suspended:
                account.status = AccountStatus.locked
                account.locked_at = account.locked_at or datetime.now(timezone.utc)
                account.lock_reason = account.lock_reason or LOCKOUT_REASON
            return account.failed_login_attempts

    def reset_failed_login_attempts(self, account_id: str) -> None:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is not None:
                account.failed_login_attempts = 0
                account.last_failed_login_at = None

    def record_successful_login(self, account_id: str) -> Account | None:
        if self.fail_login_stamp:
            raise RuntimeError("database unavailable")
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return None
            account.failed_login_attempts = 0
            account.last_failed_login_at = None
            account.last_login_at = datetime.now(timezone.utc)
            return replace(account)

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
            {"status": AccountStatus.locked, "locked_at": datetime.now(timezone.utc), "lock_reason": reason},
        )

    def unlock_account(self, account_id: str) -> Account | None:
        self.reset_failed_login_attempts(account_id)
        return self.update(account_id, {"status": AccountStatus.active, "locked_at": None, "lock_reason": None})

    def soft_delete(self, account_id: str) -> bool:
        return self.update(account_id, {"is_deleted": True, "is_active": False}) is not None

    def _live(self) -> list[Account]:
        accounts = [account for account in self._accounts.values() if not account.is_deleted]
        return sorted(accounts, key=lambda a: (a.created_at, a.account_id))

    def find_by_role(self, role: Role) -> list[Account]:
        return [replace(a) for a in self._live() if a.role == role]

    def find_by_status(self, status: AccountStatus) -> list[Account]:
        return [replace(a) for a in self._live() if a.status == status]

    def find_by_tenant_id(self, tenant_id: str) -> list[Account]:
        return [replace(a) for a in self._live() if a.tenant_id == tenant_id]

    def find_all(self, page: int, limit: int) -> tuple[list[Account], int]:
        live = self._live()
        start = (max(1, page) - 1) * limit
        return [replace(a) for a in live[start : start + limit]], len(live)

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        tenant_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict | None = None,
    ) -> None:
        with self._lock:
            self._audit_seq += 1
            self.audit_log.append(
                FakeAuditLogRecord(
                    audit_id=self._audit_seq,
                    account_id=account_id,
                    tenant_id=tenant_id,
                    event_type=event_type,
                    actor=actor,
                    metadata=metadata or {},
                    created_at=datetime.now(timezone.utc),
                )
            )

    def list_audit_events(
        self,
        *,
        tenant_id: str | None,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: tuple[datetime, int] | None = None,
    ):
        results = list(self.audit_log)
        if tenant_id:
            results = [record for record in results if record.tenant_id == tenant_id]
        if account_id:
            results = [record for record in results if record.account_id == account_id]
        if event_type:
            results = [record for record in results if record.event_type == event_type]
        if created_after:
            results = [record for record in results if record.created_at >= created_after]
        if created_before:
            results = [record for record in results if record.created_at <= created_before]
        results.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        if cursor:
            results = [record for record in results if (record.created_at, record.audit_id) < cursor]
        slice_ = results[:limit]
        next_cursor = None
        if len(results) > limit:
            last = slice_[-1]
            next_cursor = (last.created_at, last.audit_id)
        return slice_, next_cursor

    def events(self, event_type: str) -> list[FakeAuditLogRecord]:
        return [record for record in self.audit_log if record.event_type == event_type]

    def force(self, account_id: str, **changes) -> None:
        """Overwrite stored fields directly, bypassing the column whitelist."""
        with self._lock:
            account = self._accounts[account_id]
            for column, value in changes.items():
                setattr(account, column, value)


@dataclass
class FakeAuditLogRecord:
    audit_id: int
    account_id: str | None
    tenant_id: str | None
    event_type: str
    actor: str | None
    metadata: dict
    created_at: datetime


class RecordingNotifier:
    """Collects the raw one-time tokens handed to the notifier."""

    def __init__(self) -> None:
        self.verifications: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []
        self.fail = False

    def send_email_verification(self, account: Account, token: str) -> None:
        if self.fail:
            raise RuntimeError("mail relay down")
        self.verifications.append((account.email, token))

    def send_password_reset(self, account: Account, token: str) -> None:
        if self.fail:
            raise RuntimeError("mail relay down")
        self.resets.append((account.email, token))

    def last_verification(self, email: str) -> str:
        return [token for address, token in self.verifications if address == email][-1]

    def last_reset(self, email: str) -> str:
        return [token for address, token in self.resets if address == email][-1]


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    # bcrypt's minimum cost keeps the suite fast
    return PasswordHasher(rounds=4)


@pytest.fixture
def settings() -> Settings:
    return replace(
        Settings(),
        jwt_secret="test-secret-0123456789abcdef0123456789",
        bcrypt_rounds=4,
        lockout_threshold=5,
        allow_unverified_login=False,
    )


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def issuer(settings) -> TokenIssuer:
    return TokenIssuer(settings)


@pytest.fixture
def auth_service(repository, hasher, issuer, token_store, settings, notifier) -> AuthenticationService:
    return AuthenticationService(repository, hasher, issuer, token_store, settings, notifier)


@pytest.fixture
def account_service(repository, hasher, token_store, settings) -> AccountService:
    return AccountService(repository, hasher, token_store, settings)


@pytest.fixture
def guard(issuer, repository) -> AuthGuard:
    return AuthGuard(issuer, repository)


@pytest.fixture
def make_account(repository, hasher):
    """Create an account directly in the fake directory with the given state."""

    def factory(
        email: str = "user@example.com",
        password: str = STRONG_PASSWORD,
        *,
        status: AccountStatus = AccountStatus.active,
        verified: bool = True,
        role: Role = Role.user,
        tenant_id: str | None = None,
    ) -> Account:
        return repository.create_account(
            CreateAccountInput(
                email=email,
                password_hash=hasher.hash(password),
                role=role,
                tenant_id=tenant_id,
                status=status,
                email_verification_status=(
                    EmailVerificationStatus.verified if verified else EmailVerificationStatus.unverified
                ),
            )
        )

    return factory
