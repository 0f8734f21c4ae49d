"""Domain-level request contracts and collaborator interfaces shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, Optional, Protocol, Tuple

from .account import Account, AccountStatus, EmailVerificationStatus, Role
from .permissions import Permission

if TYPE_CHECKING:
    from ..repository import AuditLogRecord


@dataclass(slots=True)
class CreateAccountInput:
    """Validated inputs required to create an account."""

    email: str
    password_hash: str
    role: Role = Role.user
    tenant_id: str | None = None
    status: AccountStatus = AccountStatus.pending_verification
    email_verification_status: EmailVerificationStatus = EmailVerificationStatus.unverified


@dataclass(frozen=True, slots=True)
class AuthenticatedPrincipal:
    """Identity attached to a single request once the guard lets it through."""

    id: str
    email: str
    role: Role
    status: AccountStatus
    tenant_id: str | None
    email_verification_status: EmailVerificationStatus
    permissions: tuple[Permission, ...] = field(default_factory=tuple)

    @classmethod
    def from_account(cls, account: Account) -> "AuthenticatedPrincipal":
        return cls(
            id=account.account_id,
            email=account.email,
            role=account.role,
            status=account.status,
            tenant_id=account.tenant_id,
            email_verification_status=account.email_verification_status,
        )

    def with_permissions(self, permissions: Iterable[Permission]) -> "AuthenticatedPrincipal":
        return replace(self, permissions=tuple(sorted(permissions, key=lambda p: p.value)))


class AccountDirectory(Protocol):
    """Persistence operations the authentication core relies on.

    Counter updates must be atomic in the backing store: two concurrent failed
    logins always add two to ``failed_login_attempts``.
    """

    def find_by_email(self, email: str) -> Account | None: ...

    def find_by_id(self, account_id: str) -> Account | None: ...

    def create_account(self, payload: CreateAccountInput) -> Account: ...

    def update(self, account_id: str, changes: dict[str, Any]) -> Account | None: ...

    def update_password(self, account_id: str, password_hash: str) -> Account | None: ...

    def email_exists(self, email: str) -> bool: ...

    def increment_failed_login_attempts(self, account_id: str, lock_threshold: int) -> int: ...

    def reset_failed_login_attempts(self, account_id: str) -> None: ...

    def record_successful_login(self, account_id: str) -> Account | None: ...

    def mark_email_as_verified(self, account_id: str) -> Account | None: ...

    def change_status(self, account_id: str, status: AccountStatus) -> Account | None: ...

    def lock_account(self, account_id: str, reason: str) -> Account | None: ...

    def unlock_account(self, account_id: str) -> Account | None: ...

    def soft_delete(self, account_id: str) -> bool: ...

    def find_by_role(self, role: Role) -> list[Account]: ...

    def find_by_status(self, status: AccountStatus) -> list[Account]: ...

    def find_by_tenant_id(self, tenant_id: str) -> list[Account]: ...

    def find_all(self, page: int, limit: int) -> tuple[list[Account], int]: ...

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        tenant_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...

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
    ) -> tuple[list["AuditLogRecord"], Optional[Tuple[datetime, int]]]: ...


class AccountNotifier(Protocol):
    """Outbound channel for one-time tokens; delivery itself lives elsewhere."""

    def send_email_verification(self, account: Account, token: str) -> None: ...

    def send_password_reset(self, account: Account, token: str) -> None: ...
