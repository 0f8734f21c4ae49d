from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class AccountStatus(str, Enum):
    pending_verification = "pending_verification"
    active = "active"
    inactive = "inactive"
    locked = "locked"
    suspended = "suspended"


class EmailVerificationStatus(str, Enum):
    unverified = "unverified"
    verified = "verified"


class Role(str, Enum):
    """Account roles, declared from least to most privileged."""

    guest = "guest"
    user = "user"
    moderator = "moderator"
    admin = "admin"
    super_admin = "super_admin"

    @property
    def rank(self) -> int:
        return list(Role).index(self)


LOCKOUT_REASON = "Too many failed login attempts"
ADMIN_LOCK_REASON = "Locked by an administrator"


@dataclass(slots=True)
class Account:
    """Aggregate root for a user identity with credential and lifecycle state."""

    account_id: str
    email: str
    password_hash: str
    created_at: datetime
    status: AccountStatus = AccountStatus.pending_verification
    email_verification_status: EmailVerificationStatus = EmailVerificationStatus.unverified
    role: Role = Role.user
    tenant_id: str | None = None
    failed_login_attempts: int = 0
    last_failed_login_at: datetime | None = None
    last_login_at: datetime | None = None
    locked_at: datetime | None = None
    lock_reason: str | None = None
    password_changed_at: datetime | None = None
    email_verified_at: datetime | None = None
    is_active: bool = True
    is_deleted: bool = False
    updated_at: datetime | None = None

    @property
    def email_verified(self) -> bool:
        return self.email_verification_status == EmailVerificationStatus.verified

    def is_account_active(self) -> bool:
        """Return ``True`` for live accounts in the ``active`` status."""
        return self.is_active and not self.is_deleted and self.status == AccountStatus.active

    def can_login(self, *, lockout_threshold: int, allow_unverified: bool = False) -> bool:
        """Evaluate the login gate that runs before any credential check.

        Deleted, deactivated, locked and suspended accounts never pass, nor do
        accounts that reached ``lockout_threshold`` failed attempts. Active
        accounts need a verified email unless ``allow_unverified`` is set, in
        which case accounts still pending verification may log in as well.
        """
        if not self.is_active or self.is_deleted:
            return False
        if self.status in (AccountStatus.locked, AccountStatus.suspended):
            return False
        if self.failed_login_attempts >= lockout_threshold:
            return False
        if self.status == AccountStatus.active:
            return self.email_verified or allow_unverified
        if self.status == AccountStatus.pending_verification:
            return allow_unverified
        return False
