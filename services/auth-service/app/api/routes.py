"""HTTP route definitions for the auth service."""

from __future__ import annotations

import logging

from datetime import datetime
from typing import Any, Callable

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, EmailStr, Field

from ..config import get_settings
from ..domain.account import Account, AccountStatus, EmailVerificationStatus, Role
from ..domain.contracts import AuthenticatedPrincipal
from ..domain.errors import AuthenticationFailed, AuthError, Forbidden, RateLimited
from ..domain.permissions import Permission, permissions_for, role_satisfies_all
from ..domain.service import AccountService, AuthenticationResult, AuthenticationService
from ..security.guard import AUTHENTICATED, VERIFIED, AuthGuard, RequestContext, RoutePolicy
from ..security.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


class AccountResponse(BaseModel):
    """Serialised representation of an `Account` aggregate without credentials."""

    account_id: str
    email: EmailStr
    status: AccountStatus
    email_verification_status: EmailVerificationStatus
    role: Role
    tenant_id: str | None
    created_at: str
    last_login_at: str | None = None

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        """Build a response model from the domain aggregate."""
        return cls(
            account_id=account.account_id,
            email=account.email,
            status=account.status,
            email_verification_status=account.email_verification_status,
            role=account.role,
            tenant_id=account.tenant_id,
            created_at=account.created_at.isoformat(),
            last_login_at=account.last_login_at.isoformat() if account.last_login_at else None,
        )


class AccountListResponse(BaseModel):
    items: list[AccountResponse]
    total: int
    page: int
    limit: int


class RegisterRequest(BaseModel):
    """Payload accepted when signing up a new account."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=256)
    confirm_password: str = Field(..., max_length=256)
    tenant_id: str | None = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., max_length=256)


class TokenResponse(BaseModel):
    """Token issuance response containing the bearer token pair."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str
    refresh_expires_in: int
    account: AccountResponse

    @classmethod
    def from_result(cls, result: AuthenticationResult) -> "TokenResponse":
        return cls(
            access_token=result.access_token,
            token_type=result.token_type,
            expires_in=result.expires_in,
            refresh_token=result.refresh_token,
            refresh_expires_in=result.refresh_expires_in,
            account=AccountResponse.from_domain(result.account),
        )


class RefreshTokenRequest(BaseModel):
    """Request body carrying a refresh token."""

    refresh_token: str


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=256)
    confirm_password: str = Field(..., max_length=256)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str = Field(..., max_length=256)
    confirm_password: str | None = Field(default=None, max_length=256)


class VerifyEmailRequest(BaseModel):
    token: str


class ResendVerificationRequest(BaseModel):
    email: EmailStr


class CreateAccountRequest(BaseModel):
    """Administrator-supplied account with an explicit role and initial state."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=256)
    role: Role = Role.user
    status: AccountStatus = AccountStatus.active
    email_verified: bool = False
    tenant_id: str | None = None


class StatusChangeRequest(BaseModel):
    status: AccountStatus
    reason: str | None = Field(default=None, max_length=255)


class ActionResponse(BaseModel):
    """Outcome of an operation that only reports success."""

    success: bool


class PrincipalResponse(BaseModel):
    id: str
    email: str
    role: Role
    status: AccountStatus
    tenant_id: str | None
    email_verification_status: EmailVerificationStatus


class PermissionsResponse(BaseModel):
    role: Role
    permissions: list[Permission]


class AuditLogEntry(BaseModel):
    """Audit log response entry."""

    audit_id: int
    account_id: str | None
    tenant_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AuditLogResponse(BaseModel):
    """Envelope for paginated audit log data."""

    items: list[AuditLogEntry]
    next_cursor: str | None = None


settings = get_settings()

rate_limiter = SlidingWindowRateLimiter(
    max_requests=settings.rate_limit_requests,
    window_seconds=settings.rate_limit_window_seconds,
)


def get_auth_service(request: Request) -> AuthenticationService:
    """Resolve the `AuthenticationService` stored on the FastAPI application state."""
    service: AuthenticationService = request.app.state.auth_service
    return service


def get_account_service(request: Request) -> AccountService:
    service: AccountService = request.app.state.account_service
    return service


def get_guard(request: Request) -> AuthGuard:
    guard: AuthGuard = request.app.state.auth_guard
    return guard


def get_request_id(request: Request) -> str:
    """Return the correlation id assigned by the request-id middleware."""
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID") or "unknown"


def authenticated(policy: RoutePolicy = AUTHENTICATED) -> Callable[..., AuthenticatedPrincipal]:
    """Build a dependency that runs the guard with ``policy`` and yields the principal."""

    def dependency(
        request: Request,
        guard: AuthGuard = Depends(get_guard),
        request_id: str = Depends(get_request_id),
    ) -> AuthenticatedPrincipal:
        context = RequestContext(headers=request.headers, policy=policy, request_id=request_id)
        try:
            guard.can_activate(context)
        except AuthError as exc:
            raise _http_error_from_auth_error(exc) from exc
        if context.principal is None:
            raise _http_error_from_auth_error(AuthenticationFailed())
        return context.principal

    return dependency


def require_permissions(
    *permissions: Permission, policy: RoutePolicy = VERIFIED
) -> Callable[..., AuthenticatedPrincipal]:
    """Build a dependency requiring every permission in ``permissions``."""

    def dependency(
        principal: AuthenticatedPrincipal = Depends(authenticated(policy)),
    ) -> AuthenticatedPrincipal:
        if not role_satisfies_all(principal.role, permissions):
            logger.info("principal %s lacks %s", principal.id, ",".join(p.value for p in permissions))
            raise _http_error_from_auth_error(Forbidden("insufficient_permissions"))
        return principal.with_permissions(permissions_for(principal.role))

    return dependency


def _enforce_rate_limit(key: str) -> None:
    if not rate_limiter.allow(key):
        raise _http_error_from_auth_error(RateLimited())


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@router.post("/auth/register", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest,
    request: Request,
    service: AuthenticationService = Depends(get_auth_service),
    request_id: str = Depends(get_request_id),
) -> AccountResponse:
    """Register an account; it stays pending until the email is verified."""
    _enforce_rate_limit(f"register:{_client_host(request)}")
    try:
        account = service.register(
            payload.email,
            payload.password,
            payload.confirm_password,
            tenant_id=payload.tenant_id,
            request_id=request_id,
        )
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/auth/login", response_model=TokenResponse)
def login(
    payload: LoginRequest,
    service: AuthenticationService = Depends(get_auth_service),
    request_id: str = Depends(get_request_id),
) -> TokenResponse:
    """Exchange email and password for an access/refresh token pair."""
    limit_key = f"login:{payload.email.lower()}"
    _enforce_rate_limit(limit_key)
    try:
        result = service.authenticate(payload.email, payload.password, request_id=request_id)
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    rate_limiter.reset(limit_key)
    return TokenResponse.from_result(result)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh_token(
    payload: RefreshTokenRequest,
    service: AuthenticationService = Depends(get_auth_service),
    request_id: str = Depends(get_request_id),
) -> TokenResponse:
    try:
        result = service.refresh_token(payload.refresh_token, request_id=request_id)
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return TokenResponse.from_result(result)


@router.post("/auth/revoke", response_model=ActionResponse)
def revoke_token(
    payload: RefreshTokenRequest,
    service: AuthenticationService = Depends(get_auth_service),
    request_id: str = Depends(get_request_id),
) -> ActionResponse:
    return ActionResponse(success=service.revoke_token(payload.refresh_token, request_id=request_id))


@router.post("/auth/logout", response_model=ActionResponse)
def logout(
    principal: AuthenticatedPrincipal = Depends(authenticated()),
    service: AuthenticationService = Depends(get_auth_service),
    request_id: str = Depends(get_request_id),
) -> ActionResponse:
    """Revoke every refresh token of the caller; access tokens expire on their own."""
    return ActionResponse(success=service.logout(principal.id, request_id=request_id))


@router.get("/auth/me", response_model=PrincipalResponse)
def me(principal: AuthenticatedPrincipal = Depends(authenticated())) -> PrincipalResponse:
    return PrincipalResponse(
        id=principal.id,
        email=principal.email,
        role=principal.role,
        status=principal.status,
        tenant_id=principal.tenant_id,
        email_verification_status=principal.email_verification_status,
    )


@router.get("/auth/me/permissions", response_model=PermissionsResponse)
def my_permissions(principal: AuthenticatedPrincipal = Depends(authenticated())) -> PermissionsResponse:
    granted = principal.with_permissions(permissions_for(principal.role))
    return PermissionsResponse(role=granted.role, permissions=list(granted.permissions))


@router.post("/auth/password/change", response_model=ActionResponse)
def change_password(
    payload: ChangePasswordRequest,
    principal: AuthenticatedPrincipal = Depends(require_permissions(Permission.change_password, policy=AUTHENTICATED)),
    service: AuthenticationService = Depends(get_auth_service),
    request_id: str = Depends(get_request_id),
) -> ActionResponse:
    try:
        changed = service.change_password(
            principal.id,
            payload.current_password,
            payload.new_password,
            payload.confirm_password,
            request_id=request_id,
        )
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return ActionResponse(success=changed)


@router.post("/auth/password/forgot", response_model=ActionResponse, status_code=status.HTTP_202_ACCEPTED)
def forgot_password(
    payload: ForgotPasswordRequest,
    service: AuthenticationService = Depends(get_auth_service),
    request_id: str = Depends(get_request_id),
) -> ActionResponse:
    """Start a password reset; the response never reveals whether the email exists."""
    _enforce_rate_limit(f"forgot:{payload.email.lower()}")
    service.request_password_reset(payload.email, request_id=request_id)
    return ActionResponse(success=True)


@router.post("/auth/password/reset", response_model=ActionResponse)
def reset_password(
    payload: ResetPasswordRequest,
    service: AuthenticationService = Depends(get_auth_service),
    request_id: str = Depends(get_request_id),
) -> ActionResponse:
    try:
        reset = service.confirm_password_reset(
            payload.token,
            payload.new_password,
            confirm_password=payload.confirm_password,
            request_id=request_id,
        )
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return ActionResponse(success=reset)


@router.post("/auth/email/verify", response_model=ActionResponse)
def verify_email(
    payload: VerifyEmailRequest,
    service: AuthenticationService = Depends(get_auth_service),
    request_id: str = Depends(get_request_id),
) -> ActionResponse:
    try:
        verified = service.verify_email(payload.token, request_id=request_id)
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return ActionResponse(success=verified)


@router.post("/auth/email/resend", response_model=ActionResponse, status_code=status.HTTP_202_ACCEPTED)
def resend_verification(
    payload: ResendVerificationRequest,
    service: AuthenticationService = Depends(get_auth_service),
    request_id: str = Depends(get_request_id),
) -> ActionResponse:
    _enforce_rate_limit(f"resend:{payload.email.lower()}")
    service.resend_email_verification(payload.email, request_id=request_id)
    return ActionResponse(success=True)


@router.get("/accounts", response_model=AccountListResponse)
def list_accounts(
    role: Role | None = Query(default=None),
    account_status: AccountStatus | None = Query(default=None, alias="status"),
    tenant_id: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    _: AuthenticatedPrincipal = Depends(require_permissions(Permission.read_users)),
    service: AccountService = Depends(get_account_service),
) -> AccountListResponse:
    accounts, total = service.list_accounts(
        role=role, status=account_status, tenant_id=tenant_id, page=page, limit=limit
    )
    return AccountListResponse(
        items=[AccountResponse.from_domain(account) for account in accounts],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: str,
    _: AuthenticatedPrincipal = Depends(require_permissions(Permission.read_users)),
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    try:
        account = service.get_account(account_id)
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def create_account(
    payload: CreateAccountRequest,
    principal: AuthenticatedPrincipal = Depends(require_permissions(Permission.create_users)),
    service: AccountService = Depends(get_account_service),
    request_id: str = Depends(get_request_id),
) -> AccountResponse:
    """Create an account directly, bypassing self-registration."""
    try:
        account = service.create_account(
            payload.email,
            payload.password,
            role=payload.role,
            status=payload.status,
            email_verified=payload.email_verified,
            tenant_id=payload.tenant_id,
            actor=principal.id,
            actor_role=principal.role,
            request_id=request_id,
        )
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.delete("/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_account(
    account_id: str,
    principal: AuthenticatedPrincipal = Depends(require_permissions(Permission.delete_users)),
    service: AccountService = Depends(get_account_service),
    request_id: str = Depends(get_request_id),
) -> Response:
    """Soft-delete an account; its refresh tokens stop working immediately."""
    try:
        service.delete_account(account_id, actor=principal.id, actor_role=principal.role, request_id=request_id)
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/accounts/{account_id}/unlock", response_model=AccountResponse)
def unlock_account(
    account_id: str,
    principal: AuthenticatedPrincipal = Depends(require_permissions(Permission.unlock_users)),
    service: AccountService = Depends(get_account_service),
    request_id: str = Depends(get_request_id),
) -> AccountResponse:
    """Clear a lockout and return the account to ``active``."""
    try:
        account = service.unlock_account(account_id, actor=principal.id, request_id=request_id)
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.put("/accounts/{account_id}/status", response_model=AccountResponse)
def change_account_status(
    account_id: str,
    payload: StatusChangeRequest,
    principal: AuthenticatedPrincipal = Depends(require_permissions(Permission.suspend_users)),
    service: AccountService = Depends(get_account_service),
    request_id: str = Depends(get_request_id),
) -> AccountResponse:
    try:
        account = service.change_status(
            account_id, payload.status, reason=payload.reason, actor=principal.id, request_id=request_id
        )
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.get("/audit/logs", response_model=AuditLogResponse)
def list_audit_logs(
    tenant_id: str | None = Query(default=None),
    account_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    principal: AuthenticatedPrincipal = Depends(require_permissions(Permission.view_audit_logs)),
    service: AccountService = Depends(get_account_service),
) -> AuditLogResponse:
    """Return paginated audit events with optional filtering.

    Callers other than super admins only see their own tenant's events.
    """
    if principal.role != Role.super_admin:
        if tenant_id is not None and tenant_id != principal.tenant_id:
            raise _http_error_from_auth_error(Forbidden("insufficient_permissions"))
        tenant_id = principal.tenant_id
    try:
        records, next_cursor = service.list_audit_events(
            tenant_id=tenant_id,
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    items = [
        AuditLogEntry(
            audit_id=record.audit_id,
            account_id=record.account_id,
            tenant_id=record.tenant_id,
            event_type=record.event_type,
            actor=record.actor,
            metadata=record.metadata,
            created_at=record.created_at,
        )
        for record in records
    ]
    return AuditLogResponse(items=items, next_cursor=next_cursor)


def _http_error_from_auth_error(exc: AuthError) -> HTTPException:
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == status.HTTP_401_UNAUTHORIZED else None
    return HTTPException(
        status_code=exc.status_code,
        detail={"error": exc.error_code, "message": exc.message},
        headers=headers,
    )
