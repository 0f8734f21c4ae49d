"""Authentication and account services orchestrating directory, tokens and auditing."""

from __future__ import annotations

from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime
import json
import logging
import time
from typing import Any, Iterable, Optional, Tuple

from .account import ADMIN_LOCK_REASON, Account, AccountStatus, EmailVerificationStatus, Role
from .contracts import AccountDirectory, AccountNotifier, CreateAccountInput
from .errors import (
    AccountInactive,
    AccountNotUsable,
    EmailAlreadyExists,
    Forbidden,
    HashFormatError,
    InvalidCredentials,
    InvalidRefreshToken,
    InvalidResetToken,
    InvalidVerificationToken,
    NotAuthenticated,
    NotFound,
    PasswordMismatch,
)
from .permissions import (
    Permission,
    permissions_for,
    role_satisfies,
    role_satisfies_all,
    role_satisfies_any,
)
from ..config import Settings
from ..repository import AuditLogRecord
from ..security.passwords import PasswordHasher
from ..security.token_store import TokenStore
from ..security.tokens import REFRESH, InvalidTokenError, TokenIssuer, generate_opaque_token, hash_opaque_token

logger = logging.getLogger(__name__)

PASSWORD_RESET = "password_reset"
EMAIL_VERIFICATION = "email_verification"


@dataclass(slots=True)
class AuthenticationResult:
    """Token pair handed back after a successful login or refresh."""

    account: Account
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    token_type: str = "Bearer"


class LoggingNotifier:
    """Notifier that only records that a message would have been sent."""

    def send_email_verification(self, account: Account, token: str) -> None:
        logger.info("email verification queued for account %s", account.account_id)

    def send_password_reset(self, account: Account, token: str) -> None:
        logger.info("password reset queued for account %s", account.account_id)


def _audit(
    directory: AccountDirectory,
    event_type: str,
    *,
    account: Account | None = None,
    account_id: str | None = None,
    actor: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str = "-",
) -> None:
    """Write an audit record; failures are logged and never reach the caller."""
    if account is not None:
        account_id = account.account_id
    try:
        directory.write_audit_event(
            account_id=account_id,
            tenant_id=account.tenant_id if account is not None else None,
            event_type=event_type,
            actor=actor or account_id,
            metadata={"request_id": request_id, **(metadata or {})},
        )
    except Exception:
        logger.exception("failed to write audit event %s", event_type, extra={"request_id": request_id})


class AuthenticationService:
    """Credential, token and account-state workflows."""

    def __init__(
        self,
        directory: AccountDirectory,
        hasher: PasswordHasher,
        issuer: TokenIssuer,
        token_store: TokenStore,
        settings: Settings,
        notifier: AccountNotifier | None = None,
    ) -> None:
        self._directory = directory
        self._hasher = hasher
        self._issuer = issuer
        self._token_store = token_store
        self._settings = settings
        self._notifier = notifier or LoggingNotifier()

    def _can_login(self, account: Account) -> bool:
        return account.can_login(
            lockout_threshold=self._settings.lockout_threshold,
            allow_unverified=self._settings.allow_unverified_login,
        )

    def _issue_pair(self, account: Account) -> AuthenticationResult:
        access = self._issuer.sign_access(account)
        refresh = self._issuer.sign_refresh(account)
        self._token_store.track_refresh(account.account_id, refresh.jti, refresh.expires_in)
        return AuthenticationResult(
            account=account,
            access_token=access.token,
            refresh_token=refresh.token,
            expires_in=access.expires_in,
            refresh_expires_in=refresh.expires_in,
        )

    def authenticate(self, email: str, password: str, *, request_id: str = "-") -> AuthenticationResult:
        """Verify credentials and issue an access/refresh token pair.

        Parameters
        ----------
        email:
            Login email; matched case-insensitively.
        password:
            Clear-text password, compared with the stored bcrypt hash.
        request_id:
            Correlation id carried into log records and audit metadata.

        Raises
        ------
        InvalidCredentials
            Unknown email or wrong password; the two are indistinguishable.
        AccountNotUsable
            The account exists but may not sign in (inactive, deleted, locked,
            suspended, at the lockout threshold or awaiting verification).
        """
        log_extra = {"request_id": request_id}
        account = self._directory.find_by_email(email)
        if account is None:
            logger.info("login rejected: unknown email", extra=log_extra)
            raise InvalidCredentials()

        if not self._can_login(account):
            logger.info(
                "login rejected: account %s not usable (status=%s)",
                account.account_id,
                account.status.value,
                extra=log_extra,
            )
            raise AccountNotUsable()

        try:
            matches = self._hasher.verify(password, account.password_hash)
        except HashFormatError:
            logger.error("stored password hash for account %s is malformed", account.account_id, extra=log_extra)
            raise InvalidCredentials() from None

        if not matches:
            attempts = self._directory.increment_failed_login_attempts(
                account.account_id, self._settings.lockout_threshold
            )
            logger.info(
                "login rejected: bad password for account %s (attempt %d)",
                account.account_id,
                attempts,
                extra=log_extra,
            )
            _audit(
                self._directory,
                "auth.login_failed",
                account=account,
                metadata={"failed_login_attempts": attempts},
                request_id=request_id,
            )
            if attempts == self._settings.lockout_threshold and account.status != AccountStatus.suspended:
                logger.warning("account %s locked after %d failed logins", account.account_id, attempts, extra=log_extra)
                _audit(self._directory, "account.locked", account=account, request_id=request_id)
            raise InvalidCredentials()

        try:
            account = self._directory.record_successful_login(account.account_id) or account
        except Exception:
            logger.exception("failed to record login for account %s", account.account_id, extra=log_extra)

        result = self._issue_pair(account)
        _audit(self._directory, "auth.login", account=account, request_id=request_id)
        logger.info("account %s logged in", account.account_id, extra=log_extra)
        return result

    def register(
        self,
        email: str,
        password: str,
        confirm_password: str,
        *,
        role: Role | None = None,
        tenant_id: str | None = None,
        request_id: str = "-",
    ) -> Account:
        """Create a new account awaiting email verification."""
        if password != confirm_password:
            raise PasswordMismatch()
        self._hasher.validate_strength(password)
        if self._directory.email_exists(email):
            raise EmailAlreadyExists()

        account = self._directory.create_account(
            CreateAccountInput(
                email=email.strip().lower(),
                password_hash=self._hasher.hash(password),
                role=role or Role.user,
                tenant_id=tenant_id,
            )
        )
        logger.info("account %s registered", account.account_id, extra={"request_id": request_id})
        _audit(
            self._directory,
            "account.registered",
            account=account,
            metadata={"role": account.role.value},
            request_id=request_id,
        )
        try:
            self._send_verification(account)
        except Exception:
            logger.exception(
                "failed to send verification for account %s", account.account_id, extra={"request_id": request_id}
            )
        return account

    def refresh_token(self, refresh_token: str, *, request_id: str = "-") -> AuthenticationResult:
        """Exchange a refresh token for a new pair, revoking the presented one."""
        log_extra = {"request_id": request_id}
        try:
            claims = self._issuer.verify(refresh_token, expected_type=REFRESH)
        except InvalidTokenError as exc:
            logger.info("refresh rejected: %s", exc.reason, extra=log_extra)
            raise InvalidRefreshToken() from exc

        if self._token_store.is_revoked(claims.jti):
            logger.warning("refresh rejected: token %s already revoked", claims.jti, extra=log_extra)
            raise InvalidRefreshToken()

        account = self._directory.find_by_id(claims.sub)
        if account is None:
            logger.info("refresh rejected: account %s missing", claims.sub, extra=log_extra)
            raise InvalidRefreshToken()
        if not self._can_login(account):
            raise AccountNotUsable()

        if not self._token_store.revoke(claims.jti, self._remaining_ttl(claims.exp)):
            # lost a race with a concurrent refresh of the same token
            raise InvalidRefreshToken()

        result = self._issue_pair(account)
        _audit(
            self._directory,
            "token.refreshed",
            account=account,
            metadata={"previous_jti": claims.jti},
            request_id=request_id,
        )
        return result

    def revoke_token(self, refresh_token: str, *, request_id: str = "-") -> bool:
        """Revoke a refresh token; returns ``False`` if it does not verify."""
        try:
            claims = self._issuer.verify(refresh_token, expected_type=REFRESH)
        except InvalidTokenError as exc:
            logger.info("revoke ignored: %s", exc.reason, extra={"request_id": request_id})
            return False
        self._token_store.revoke(claims.jti, self._remaining_ttl(claims.exp))
        _audit(
            self._directory,
            "token.revoked",
            account_id=claims.sub,
            metadata={"jti": claims.jti},
            request_id=request_id,
        )
        return True

    def logout(self, user_id: str, *, request_id: str = "-") -> bool:
        """Revoke every tracked refresh token of the account."""
        account = self._directory.find_by_id(user_id)
        if account is None:
            return False
        revoked = self._token_store.revoke_account_tokens(account.account_id, self._settings.refresh_ttl_seconds)
        logger.info(
            "account %s logged out, %d refresh tokens revoked", account.account_id, revoked, extra={"request_id": request_id}
        )
        _audit(self._directory, "auth.logout", account=account, metadata={"revoked": revoked}, request_id=request_id)
        return True

    def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        confirm_password: str,
        *,
        request_id: str = "-",
    ) -> bool:
        """Replace the password of an authenticated account.

        The current password must verify before anything is written. On success
        the failed-login counter is cleared and outstanding refresh tokens are
        revoked.
        """
        account = self._directory.find_by_id(user_id)
        if account is None:
            raise NotAuthenticated()
        if not account.is_account_active():
            raise AccountInactive()
        if new_password != confirm_password:
            raise PasswordMismatch()

        try:
            matches = self._hasher.verify(current_password, account.password_hash)
        except HashFormatError:
            logger.error("stored password hash for account %s is malformed", account.account_id, extra={"request_id": request_id})
            raise InvalidCredentials() from None
        if not matches:
            logger.info("password change rejected for account %s", account.account_id, extra={"request_id": request_id})
            raise InvalidCredentials()

        self._hasher.validate_strength(new_password)
        self._replace_password(account, new_password)
        _audit(self._directory, "password.changed", account=account, request_id=request_id)
        return True

    def request_password_reset(self, email: str, *, request_id: str = "-") -> bool:
        """Issue a one-time reset token to the notifier for an active account."""
        log_extra = {"request_id": request_id}
        account = self._directory.find_by_email(email)
        if account is None or not account.is_account_active():
            logger.info("password reset not issued", extra=log_extra)
            return False

        token, token_hash = generate_opaque_token()
        self._token_store.put_one_time(
            PASSWORD_RESET,
            token_hash,
            {"account_id": account.account_id},
            self._settings.password_reset_ttl_seconds,
        )
        try:
            self._notifier.send_password_reset(account, token)
        except Exception:
            logger.exception("failed to send password reset for account %s", account.account_id, extra=log_extra)
            return False
        _audit(self._directory, "password.reset_requested", account=account, request_id=request_id)
        return True

    def confirm_password_reset(
        self,
        token: str,
        new_password: str,
        *,
        confirm_password: str | None = None,
        request_id: str = "-",
    ) -> bool:
        """Set a new password using a one-time reset token."""
        if confirm_password is not None and new_password != confirm_password:
            raise PasswordMismatch()
        self._hasher.validate_strength(new_password)

        record = self._token_store.pop_one_time(PASSWORD_RESET, hash_opaque_token(token))
        if record is None:
            raise InvalidResetToken()

        account = self._directory.find_by_id(record["account_id"])
        if account is None or not account.is_account_active():
            logger.info("password reset refused for unusable account", extra={"request_id": request_id})
            return False

        self._replace_password(account, new_password)
        _audit(self._directory, "password.reset", account=account, request_id=request_id)
        return True

    def verify_email(self, token: str, *, request_id: str = "-") -> bool:
        """Mark the email verified and activate accounts pending verification."""
        record = self._token_store.pop_one_time(EMAIL_VERIFICATION, hash_opaque_token(token))
        if record is None:
            raise InvalidVerificationToken()

        account = self._directory.find_by_id(record["account_id"])
        if account is None:
            raise NotFound("account not found")

        self._directory.mark_email_as_verified(account.account_id)
        if account.status == AccountStatus.pending_verification:
            self._directory.change_status(account.account_id, AccountStatus.active)
        logger.info("email verified for account %s", account.account_id, extra={"request_id": request_id})
        _audit(self._directory, "email.verified", account=account, request_id=request_id)
        return True

    def resend_email_verification(self, email: str, *, request_id: str = "-") -> bool:
        account = self._directory.find_by_email(email)
        if account is None or account.email_verified or account.is_deleted or not account.is_active:
            return False
        try:
            self._send_verification(account)
        except Exception:
            logger.exception(
                "failed to resend verification for account %s", account.account_id, extra={"request_id": request_id}
            )
            return False
        return True

    def has_permission(self, user_id: str, permission: Permission | str) -> bool:
        account = self._directory.find_by_id(user_id)
        return account is not None and role_satisfies(account.role, permission)

    def has_any_permission(self, user_id: str, permissions: Iterable[Permission | str]) -> bool:
        account = self._directory.find_by_id(user_id)
        return account is not None and role_satisfies_any(account.role, permissions)

    def has_all_permissions(self, user_id: str, permissions: Iterable[Permission | str]) -> bool:
        account = self._directory.find_by_id(user_id)
        return account is not None and role_satisfies_all(account.role, permissions)

    def get_user_permissions(self, user_id: str) -> frozenset[Permission]:
        account = self._directory.find_by_id(user_id)
        if account is None:
            return frozenset()
        return permissions_for(account.role)

    def _replace_password(self, account: Account, new_password: str) -> None:
        self._directory.update_password(account.account_id, self._hasher.hash(new_password))
        self._directory.reset_failed_login_attempts(account.account_id)
        self._token_store.revoke_account_tokens(account.account_id, self._settings.refresh_ttl_seconds)

    def _send_verification(self, account: Account) -> None:
        token, token_hash = generate_opaque_token()
        self._token_store.put_one_time(
            EMAIL_VERIFICATION,
            token_hash,
            {"account_id": account.account_id},
            self._settings.email_verification_ttl_seconds,
        )
        self._notifier.send_email_verification(account, token)

    def _remaining_ttl(self, exp: int) -> int:
        return max(1, exp - int(time.time()))


class AccountService:
    """Administrative account workflows backed by the account directory."""

    def __init__(
        self,
        directory: AccountDirectory,
        hasher: PasswordHasher,
        token_store: TokenStore,
        settings: Settings,
    ) -> None:
        self._directory = directory
        self._hasher = hasher
        self._token_store = token_store
        self._settings = settings

    def get_account(self, account_id: str) -> Account:
        account = self._directory.find_by_id(account_id)
        if account is None or account.is_deleted:
            raise NotFound("account not found")
        return account

    def list_accounts(
        self,
        *,
        role: Role | None = None,
        status: AccountStatus | None = None,
        tenant_id: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Account], int]:
        """Return one page of accounts and the total, optionally filtered.

        Without filters the directory paginates; with filters the matching
        accounts are intersected and paginated here.
        """
        page = max(1, page)
        limit = max(1, min(limit, 100))
        if role is None and status is None and tenant_id is None:
            return self._directory.find_all(page, limit)

        candidates: list[Account] | None = None
        for lookup, value in (
            (self._directory.find_by_role, role),
            (self._directory.find_by_status, status),
            (self._directory.find_by_tenant_id, tenant_id),
        ):
            if value is None:
                continue
            matches = lookup(value)
            if candidates is None:
                candidates = matches
            else:
                ids = {account.account_id for account in matches}
                candidates = [account for account in candidates if account.account_id in ids]
        candidates = candidates or []
        start = (page - 1) * limit
        return candidates[start : start + limit], len(candidates)

    def create_account(
        self,
        email: str,
        password: str,
        *,
        role: Role = Role.user,
        status: AccountStatus = AccountStatus.active,
        email_verified: bool = False,
        tenant_id: str | None = None,
        actor: str | None = None,
        actor_role: Role | None = None,
        request_id: str = "-",
    ) -> Account:
        """Create an account on behalf of an administrator.

        Unlike self-registration the caller picks the role and initial status.
        An administrator may not grant a role ranked above their own.
        """
        if actor_role is not None and role.rank > actor_role.rank:
            raise Forbidden("insufficient_permissions")
        self._hasher.validate_strength(password)
        if self._directory.email_exists(email):
            raise EmailAlreadyExists()

        account = self._directory.create_account(
            CreateAccountInput(
                email=email.strip().lower(),
                password_hash=self._hasher.hash(password),
                role=role,
                tenant_id=tenant_id,
                status=status,
                email_verification_status=(
                    EmailVerificationStatus.verified if email_verified else EmailVerificationStatus.unverified
                ),
            )
        )
        logger.info("account %s created by %s", account.account_id, actor or "-", extra={"request_id": request_id})
        _audit(
            self._directory,
            "account.created",
            account=account,
            actor=actor,
            metadata={"role": account.role.value, "status": account.status.value},
            request_id=request_id,
        )
        return account

    def delete_account(
        self,
        account_id: str,
        *,
        actor: str | None = None,
        actor_role: Role | None = None,
        request_id: str = "-",
    ) -> None:
        """Soft-delete an account and revoke its outstanding refresh tokens."""
        account = self.get_account(account_id)
        if actor_role is not None and account.role.rank > actor_role.rank:
            raise Forbidden("insufficient_permissions")
        if not self._directory.soft_delete(account_id):
            raise NotFound("account not found")
        revoked = self._token_store.revoke_account_tokens(account_id, self._settings.refresh_ttl_seconds)
        logger.info(
            "account %s deleted by %s (%d refresh tokens revoked)",
            account_id,
            actor or "-",
            revoked,
            extra={"request_id": request_id},
        )
        _audit(self._directory, "account.deleted", account=account, actor=actor, request_id=request_id)

    def unlock_account(self, account_id: str, *, actor: str | None = None, request_id: str = "-") -> Account:
        self.get_account(account_id)
        account = self._directory.unlock_account(account_id)
        if account is None:
            raise NotFound("account not found")
        _audit(self._directory, "account.unlocked", account=account, actor=actor, request_id=request_id)
        return account

    def change_status(
        self,
        account_id: str,
        status: AccountStatus,
        *,
        reason: str | None = None,
        actor: str | None = None,
        request_id: str = "-",
    ) -> Account:
        """Set the lifecycle status; leaving ``active`` revokes refresh tokens.

        Locking records when and why the account was locked, and reactivating a
        locked account clears that record along with the failed-login counter.
        """
        previous = self.get_account(account_id)
        if status == AccountStatus.active and previous.status == AccountStatus.locked:
            account = self._directory.unlock_account(account_id)
        elif status == AccountStatus.locked:
            account = self._directory.lock_account(account_id, reason or ADMIN_LOCK_REASON)
        else:
            account = self._directory.change_status(account_id, status)
        if account is None:
            raise NotFound("account not found")
        if status in (AccountStatus.suspended, AccountStatus.inactive, AccountStatus.locked):
            self._token_store.revoke_account_tokens(account_id, self._settings.refresh_ttl_seconds)
        metadata = {"from": previous.status.value, "to": status.value}
        if reason:
            metadata["reason"] = reason
        _audit(
            self._directory,
            "account.status_changed",
            account=account,
            actor=actor,
            metadata=metadata,
            request_id=request_id,
        )
        return account

    def list_audit_events(
        self,
        *,
        tenant_id: str | None,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditLogRecord], str | None]:
        """Return audit log records with optional filters and cursor pagination."""
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
        records, next_cursor_tuple = self._directory.list_audit_events(
            tenant_id=tenant_id,
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=decoded_cursor,
        )
        next_cursor = self._encode_cursor(next_cursor_tuple) if next_cursor_tuple else None
        return records, next_cursor

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, audit_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            created_at = datetime.fromisoformat(data["created_at"])
            audit_id = int(data["audit_id"])
            return created_at, audit_id
        except Exception as exc:
            raise ValueError("invalid cursor") from exc
