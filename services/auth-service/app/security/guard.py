"""Request gate enforcing bearer-token validity and account state."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from ..domain.account import AccountStatus
from ..domain.contracts import AccountDirectory, AuthenticatedPrincipal
from ..domain.errors import (
    AuthenticationFailed,
    AuthError,
    Forbidden,
    InvalidToken,
    MissingToken,
    UserNotFound,
)
from .tokens import ACCESS, InvalidTokenError, TokenIssuer

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RoutePolicy:
    """Per-route guard configuration."""

    public: bool = False
    require_verified_email: bool = False


PUBLIC = RoutePolicy(public=True)
AUTHENTICATED = RoutePolicy()
VERIFIED = RoutePolicy(require_verified_email=True)


@dataclass(slots=True)
class RequestContext:
    headers: Mapping[str, str]
    policy: RoutePolicy = AUTHENTICATED
    request_id: str = "unknown"
    principal: AuthenticatedPrincipal | None = None

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token of an ``Authorization: Bearer <token>`` header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthGuard:
    """Decide whether a request may reach its handler.

    Checks run in a fixed order and the first failure wins: token presence,
    token validity, account existence, then account state (inactive, locked,
    suspended, unverified). Lock and suspension are reported before a missing
    email verification.
    """

    def __init__(self, issuer: TokenIssuer, directory: AccountDirectory) -> None:
        self._issuer = issuer
        self._directory = directory

    def can_activate(self, context: RequestContext) -> bool:
        """Validate ``context`` and attach its principal.

        Returns ``True`` when the request may proceed; every rejection raises
        a typed :class:`~app.domain.errors.AuthError`.
        """
        if context.policy.public:
            return True
        log_extra = {"request_id": context.request_id}
        try:
            token = extract_bearer_token(context.header("Authorization"))
            if token is None:
                raise MissingToken()

            try:
                claims = self._issuer.verify(token, expected_type=ACCESS)
            except InvalidTokenError as exc:
                logger.info("access token rejected: %s", exc.reason, extra=log_extra)
                raise InvalidToken() from exc

            account = self._directory.find_by_id(claims.sub)
            if account is None:
                raise UserNotFound()

            if not account.is_active or account.is_deleted or account.status == AccountStatus.inactive:
                raise Forbidden("inactive")
            if account.status == AccountStatus.locked:
                raise Forbidden("locked")
            if account.status == AccountStatus.suspended:
                raise Forbidden("suspended")
            if context.policy.require_verified_email and not account.email_verified:
                raise Forbidden("unverified")

            context.principal = AuthenticatedPrincipal.from_account(account)
            return True
        except AuthError:
            raise
        except Exception as exc:
            logger.exception("unexpected error while authenticating request", extra=log_extra)
            raise AuthenticationFailed() from exc
