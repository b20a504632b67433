from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class TokenState(str, Enum):
    """Lifecycle state of a refresh token, derived from its audit columns."""

    ACTIVE = "active"
    ROTATED = "rotated"
    REVOKED = "revoked"
    EXPIRED = "expired"


# Only an active token may move; every other state is terminal.
TOKEN_TRANSITIONS: Dict[TokenState, FrozenSet[TokenState]] = {
    TokenState.ACTIVE: frozenset(
        {TokenState.ROTATED, TokenState.REVOKED, TokenState.EXPIRED}
    ),
    TokenState.ROTATED: frozenset(),
    TokenState.REVOKED: frozenset(),
    TokenState.EXPIRED: frozenset(),
}


class TokenPurpose(str, Enum):
    ACTIVATION = "activation"
    PASSWORD_RESET = "password_reset"


@dataclass
class UserIdentity:
    """Primary-store account record."""

    id: str
    email: str
    password_hash: str
    password_algo: str = "argon2id"
    confirmed: bool = False
    role: str = "employer"
    locked_out: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
        role: str = "employer",
        confirmed: bool = False,
        user_id: Optional[str] = None,
    ) -> "UserIdentity":
        return cls(
            id=user_id or str(uuid.uuid4()),
            email=normalize_email(email),
            password_hash=password_hash,
            password_algo=password_algo,
            confirmed=confirmed,
            role=role,
        )


@dataclass
class LegacyCredential:
    """Row of the older credential table kept in step with ``UserIdentity``."""

    id: int
    user_id: str
    email: str
    password_hash: str
    active: bool = False
    locked_out: bool = False
    created_at: datetime = field(default_factory=utcnow)
    activated_at: Optional[datetime] = None
    last_access_at: Optional[datetime] = None
    last_ip: Optional[str] = None


@dataclass
class CredentialChange:
    """One account-level edit applied to both credential stores together.

    ``None`` fields are left untouched.  ``password_hash`` targets the primary
    store and ``legacy_password_hash`` the legacy table; a password change
    always carries both.  ``locked_out`` is the administrative lock and is
    independent of ``confirmed``; locking also clears the legacy ``active``
    flag.
    """

    confirmed: Optional[bool] = None
    locked_out: Optional[bool] = None
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    legacy_password_hash: Optional[str] = None
    email: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.password_hash is None) != (self.legacy_password_hash is None):
            raise ValueError("password changes must update both stores")
        if self.locked_out and self.confirmed:
            raise ValueError("cannot confirm and lock an account in one change")
        if self.email is not None:
            self.email = normalize_email(self.email)

    @property
    def legacy_active(self) -> Optional[bool]:
        """Value for the legacy ``active`` flag, or ``None`` to leave it."""
        if self.locked_out:
            return False
        return self.confirmed

    def is_empty(self) -> bool:
        return (
            self.confirmed is None
            and self.locked_out is None
            and self.password_hash is None
            and self.email is None
        )


@dataclass
class RefreshToken:
    token: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    created_by_ip: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_by_ip: Optional[str] = None
    revoked_reason: Optional[str] = None
    replaced_by: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int,
        ip_addr: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> "RefreshToken":
        issued = now or utcnow()
        return cls(
            token=secrets.token_urlsafe(48),
            user_id=user_id,
            created_at=issued,
            expires_at=issued + timedelta(minutes=ttl_minutes),
            created_by_ip=ip_addr,
        )

    def state(self, now: Optional[datetime] = None) -> TokenState:
        if self.revoked_at is not None:
            return TokenState.ROTATED if self.replaced_by else TokenState.REVOKED
        if self.expires_at <= (now or utcnow()):
            return TokenState.EXPIRED
        return TokenState.ACTIVE

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.state(now) is TokenState.ACTIVE

    def can_transition(self, target: TokenState, now: Optional[datetime] = None) -> bool:
        return target in TOKEN_TRANSITIONS[self.state(now)]


@dataclass
class EphemeralToken:
    """Single-use activation or password-reset token keyed by email."""

    id: str
    purpose: TokenPurpose
    email: str
    token: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    user_id: Optional[str] = None
    used_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        purpose: TokenPurpose,
        email: str,
        token: str,
        *,
        ttl_minutes: Optional[int],
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "EphemeralToken":
        issued = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            purpose=purpose,
            email=normalize_email(email),
            token=token,
            created_at=issued,
            expires_at=issued + timedelta(minutes=ttl_minutes) if ttl_minutes else None,
            user_id=user_id,
        )

    def invalid_reason(self, now: Optional[datetime] = None) -> Optional[str]:
        """Return why the token cannot be consumed, or ``None`` if it can."""
        if self.used_at is not None:
            return "already_used"
        if self.expires_at is not None and self.expires_at <= (now or utcnow()):
            return "expired"
        return None

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.invalid_reason(now) is None
