"""Utilities for issuing and validating application JWTs."""

from __future__ import annotations

import hashlib
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any

import jwt

from ..config import Settings
from ..domain.account import Account, Role

ACCESS = "access"
REFRESH = "refresh"
ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ["sub", "type", "iat", "exp", "jti"]


class InvalidTokenError(Exception):
    """Token failed signature, expiry, issuer, shape or type checks.

    ``reason`` is an internal code meant for logs. Callers surface a single
    error kind to clients regardless of it.
    """

    def __init__(self, reason: str) -> None:
        super().__init__("invalid token")
        self.reason = reason


@dataclass(frozen=True, slots=True)
class TokenClaims:
    """Decoded claim-set of a token minted by :class:`TokenIssuer`."""

    sub: str
    email: str
    role: Role
    tenant_id: str | None
    type: str
    iat: int
    exp: int
    jti: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        try:
            return cls(
                sub=str(payload["sub"]),
                email=str(payload.get("email", "")),
                role=Role(payload.get("role", Role.user.value)),
                tenant_id=payload.get("tenant_id"),
                type=str(payload["type"]),
                iat=int(payload["iat"]),
                exp=int(payload["exp"]),
                jti=str(payload["jti"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidTokenError("malformed_claims") from exc


@dataclass(frozen=True, slots=True)
class IssuedToken:
    token: str
    jti: str
    expires_in: int


class TokenIssuer:
    """Sign and verify access and refresh JWTs with a shared HMAC secret."""

    def __init__(self, settings: Settings) -> None:
        self._secret = settings.jwt_secret
        self._issuer = settings.jwt_issuer
        self._ttl = {ACCESS: settings.access_ttl_seconds, REFRESH: settings.refresh_ttl_seconds}

    def ttl_for(self, token_type: str) -> int:
        return self._ttl[token_type]

    def sign_access(self, account: Account) -> IssuedToken:
        return self._sign(account, ACCESS)

    def sign_refresh(self, account: Account) -> IssuedToken:
        return self._sign(account, REFRESH)

    def _sign(self, account: Account, token_type: str) -> IssuedToken:
        """Create a signed JWT representing an authenticated account.

        Parameters
        ----------
        account:
            Account whose identifier, email, role and tenant are embedded.
        token_type:
            ``"access"`` or ``"refresh"``; selects the TTL and the ``type`` claim.

        Returns
        -------
        IssuedToken
            Encoded JWT, its unique ``jti`` and its TTL in seconds.
        """
        now = int(time.time())
        expires_in = self._ttl[token_type]
        jti = uuid.uuid4().hex
        payload: dict[str, Any] = {
            "iss": self._issuer,
            "sub": account.account_id,
            "email": account.email,
            "role": Role(account.role).value,
            "tenant_id": account.tenant_id,
            "type": token_type,
            "iat": now,
            "exp": now + expires_in,
            "jti": jti,
        }
        token = jwt.encode(payload, self._secret, algorithm=ALGORITHM)
        return IssuedToken(token=token, jti=jti, expires_in=expires_in)

    def verify(self, token: str, expected_type: str | None = None) -> TokenClaims:
        """Decode and verify a JWT returning its claims.

        Parameters
        ----------
        token:
            Encoded JWT issued by this service.
        expected_type:
            When given, the ``type`` claim must equal it.

        Raises
        ------
        InvalidTokenError
            For expired, malformed, foreign or wrongly typed tokens.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                issuer=self._issuer,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError as exc:
            raise InvalidTokenError("token_expired") from exc
        except jwt.InvalidSignatureError as exc:
            raise InvalidTokenError("bad_signature") from exc
        except jwt.InvalidIssuerError as exc:
            raise InvalidTokenError("bad_issuer") from exc
        except jwt.MissingRequiredClaimError as exc:
            raise InvalidTokenError("missing_claim") from exc
        except jwt.PyJWTError as exc:
            raise InvalidTokenError("malformed") from exc

        claims = TokenClaims.from_payload(payload)
        if expected_type is not None and claims.type != expected_type:
            raise InvalidTokenError("wrong_type")
        return claims


def generate_opaque_token() -> tuple[str, str]:
    """Generate a one-time token string and its SHA-256 hash."""
    token = secrets.token_urlsafe(32)
    return token, hash_opaque_token(token)


def hash_opaque_token(token: str) -> str:
    """Return the SHA-256 hex digest for a token string."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
