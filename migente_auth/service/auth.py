from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Tuple, Union

from migente_auth.config import Settings
from migente_auth.logging import email_fingerprint, get_logger
from migente_auth.service.email import EmailService
from migente_auth.service.ephemeral import EphemeralTokenManager
from migente_auth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from migente_auth.service.issuer import IssuedSession, SessionIssuer
from migente_auth.service.ledger import TokenLedger
from migente_auth.service.passwords import PasswordService
from migente_auth.service.profiles import USER_ROLES, InMemoryProfileDirectory, ProfileDirectory
from migente_auth.service.resolver import CredentialResolver, ResolvedUser
from migente_auth.service.sync import Synchronizer
from migente_auth.service.tokens import AccessTokenCodec
from migente_auth.storage.errors import ConstraintViolation
from migente_auth.storage.models import (
    EphemeralToken,
    LegacyCredential,
    TokenPurpose,
    UserIdentity,
)

logger = get_logger(__name__)


class AuthStore(Protocol):
    def get_user(self, user_id: str) -> Optional[UserIdentity]: ...

    def get_user_by_email(self, email: str) -> Optional[UserIdentity]: ...

    def create_user(self, user: UserIdentity) -> UserIdentity: ...

    def register_identity(
        self, user: UserIdentity, legacy_password_hash: str
    ) -> Tuple[UserIdentity, LegacyCredential]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def get_legacy_credential(self, credential_id: int) -> Optional[LegacyCredential]: ...

    def get_legacy_credential_by_email(self, email: str) -> Optional[LegacyCredential]: ...

    def get_legacy_credential_by_user(self, user_id: str) -> Optional[LegacyCredential]: ...

    def record_legacy_access(self, user_id: str, ip_addr: Optional[str], *, at=None) -> None: ...

    def apply_credential_change(self, user_id: str, change, *, at=None) -> bool: ...

    def add_refresh_token(self, token): ...

    def get_refresh_token(self, token: str): ...

    def list_refresh_tokens(self, user_id: str): ...

    def rotate_refresh_token(self, token: str, successor, *, revoked_by_ip=None, at=None) -> bool: ...

    def revoke_refresh_token(self, token: str, *, reason: str, revoked_by_ip=None, at=None) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str, *, reason: str, at=None) -> int: ...

    def add_ephemeral_token(self, token: EphemeralToken) -> EphemeralToken: ...

    def list_ephemeral_tokens(self, email: str, purpose: TokenPurpose): ...

    def consume_ephemeral_token(self, purpose, email: str, token: str, *, at=None): ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# Account as seen by flows that accept either store's record
Account = Union[UserIdentity, LegacyCredential]


def _account_active(account: Account) -> bool:
    if account.locked_out:
        return False
    return account.confirmed if isinstance(account, UserIdentity) else account.active


def _account_user_id(account: Account) -> str:
    return account.id if isinstance(account, UserIdentity) else account.user_id


class AuthService:
    """Login, session rotation, activation and password recovery.

    Composes the credential resolver, session issuer, token ledger, ephemeral
    token manager and synchronizer over one store.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        email_service: Optional[EmailService] = None,
        profiles: Optional[ProfileDirectory] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.email_service = email_service
        self.profiles: ProfileDirectory = profiles or InMemoryProfileDirectory()
        self.passwords = PasswordService(bcrypt_rounds=settings.legacy_bcrypt_rounds)
        self.codec = AccessTokenCodec(settings)
        self.ledger = TokenLedger(store, settings)
        self.ephemeral = EphemeralTokenManager(store, settings)
        self.resolver = CredentialResolver(store, self.passwords, self.profiles, settings)
        self.issuer = SessionIssuer(self.codec, self.ledger)
        self.sync = Synchronizer(store, self.passwords)
        self.logger = logger

    def _find_account(self, email: str) -> Optional[Account]:
        return self.store.get_user_by_email(email) or self.store.get_legacy_credential_by_email(
            email
        )

    # sessions
    async def login(
        self, email: str, password: str, *, ip_addr: Optional[str] = None
    ) -> IssuedSession:
        resolved = self.resolver.resolve(email, password, ip_addr)
        return self.issuer.issue(resolved, ip_addr)

    async def refresh(
        self, refresh_token: str, *, ip_addr: Optional[str] = None
    ) -> IssuedSession:
        record = self.ledger.require_usable(refresh_token)
        user = self.store.get_user(record.user_id)
        if not user or not user.confirmed or user.locked_out:
            self.logger.warning("refresh_for_inactive_account", user_id=record.user_id)
            self.ledger.revoke(refresh_token, ip_addr=ip_addr, reason="account_inactive")
            raise InvalidTokenError("invalid refresh token")
        return self.issuer.reissue(ResolvedUser.from_identity(user), record, ip_addr)

    async def revoke(
        self,
        refresh_token: str,
        *,
        ip_addr: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        self.ledger.revoke(refresh_token, ip_addr=ip_addr, reason=reason)

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve a ``Bearer`` header into the caller's identity."""
        if not authorization:
            raise AuthenticationError("missing bearer token")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthenticationError("missing bearer token")
        claims = self.codec.decode(token.strip())
        if not claims or not claims.get("sub"):
            raise AuthenticationError("invalid access token")
        return AuthContext(
            user_id=str(claims["sub"]),
            email=str(claims.get("email", "")),
            role=str(claims.get("role", "")),
        )

    # registration and activation
    async def register(
        self, email: str, password: str, profile_fields: Optional[Dict[str, Any]] = None
    ) -> UserIdentity:
        if not self.settings.allow_signup:
            raise ForbiddenError("signups are disabled")
        fields = dict(profile_fields or {})
        role = fields.setdefault("role", self.settings.default_user_role)
        if role not in USER_ROLES:
            raise ValidationError("invalid role", detail={"field": "role"})
        if self._find_account(email):
            self.logger.info("signup_duplicate_email", email_hash=email_fingerprint(email))
            raise ConflictError("email already exists", detail={"field": "email"})

        primary_hash, algo, legacy_hash = self.passwords.hash_both(password)
        candidate = UserIdentity.new(
            email, primary_hash, password_algo=algo, role=role, confirmed=False
        )
        try:
            user, _ = self.store.register_identity(candidate, legacy_hash)
        except ConstraintViolation as exc:
            raise ConflictError("email already exists", detail=exc.detail) from exc
        try:
            self.profiles.create_profile(user.id, user.email, fields)
        except Exception:
            self.logger.error("profile_creation_failed", user_id=user.id)
            self.store.delete_user(user.id)
            raise

        token = self.ephemeral.generate(TokenPurpose.ACTIVATION, user.email, user_id=user.id)
        if self.email_service:
            await asyncio.to_thread(
                self.email_service.send_activation, user.email, user.id, token.token
            )
        self.logger.info("user_registered", user_id=user.id, role=role)
        return user

    async def activate(self, user_id: str, email: str) -> bool:
        """Activate from the emailed link's ``userId`` and ``email`` pair."""
        account: Optional[Account] = self.store.get_user(
            user_id
        ) or self.store.get_legacy_credential_by_user(user_id)
        if not account or account.email != email.strip().lower():
            self.logger.warning("activation_mismatch", user_id=user_id)
            return False
        if account.locked_out:
            self.logger.warning("activation_locked_out", user_id=user_id)
            return False
        if _account_active(account):
            self.logger.info("activation_already_active", user_id=user_id)
            return False
        return self.sync.activate_user(user_id)

    async def confirm_activation(self, email: str, token: str) -> bool:
        """Activate by consuming an activation token issued for ``email``."""
        consumed = self.ephemeral.consume(TokenPurpose.ACTIVATION, email, token)
        account = self._find_account(email)
        if not account:
            self.logger.warning("activation_account_missing", email_hash=email_fingerprint(email))
            return False
        if account.locked_out:
            self.logger.warning("activation_locked_out", user_id=_account_user_id(account))
            return False
        if _account_active(account):
            return False
        user_id = consumed.user_id or _account_user_id(account)
        return self.sync.activate_user(user_id)

    async def resend_activation(self, email: str) -> bool:
        account = self._find_account(email)
        if not account:
            self.logger.info("activation_resend_unknown", email_hash=email_fingerprint(email))
            return False
        if account.locked_out:
            self.logger.warning("activation_resend_locked_out", user_id=_account_user_id(account))
            return False
        if _account_active(account):
            raise BadRequestError("account already active")
        user_id = _account_user_id(account)
        token = self.ephemeral.generate(TokenPurpose.ACTIVATION, account.email, user_id=user_id)
        if self.email_service:
            await asyncio.to_thread(
                self.email_service.send_activation, account.email, user_id, token.token
            )
        return True

    # password recovery and changes
    async def forgot_password(self, email: str) -> None:
        """Email a reset code; unknown emails are accepted unless configured otherwise."""
        account = self._find_account(email)
        if not account or not _account_active(account):
            self.logger.info(
                "password_reset_unknown_account",
                email_hash=email_fingerprint(email),
                account_reason="inactive" if account else "unknown",
            )
            if self.settings.reveal_unknown_reset_email:
                raise NotFoundError("no active account for email")
            return
        token = self.ephemeral.generate(
            TokenPurpose.PASSWORD_RESET, account.email, user_id=_account_user_id(account)
        )
        if self.email_service:
            await asyncio.to_thread(
                self.email_service.send_password_reset,
                account.email, token.token, self.settings.reset_token_ttl_minutes
            )

    async def reset_password(self, email: str, token: str, new_password: str) -> bool:
        consumed = self.ephemeral.consume(TokenPurpose.PASSWORD_RESET, email, token)
        account = self._find_account(email)
        if account and account.locked_out:
            self.logger.warning("password_reset_locked_out", user_id=_account_user_id(account))
            return False
        user_id = consumed.user_id or (_account_user_id(account) if account else None)
        if not user_id or not self.sync.change_password(user_id, new_password):
            self.logger.warning("password_reset_account_missing", email_hash=email_fingerprint(email))
            return False
        self.ledger.revoke_all(user_id, "password_reset")
        self.logger.info("password_reset_completed", user_id=user_id)
        return True

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        user = self.store.get_user(user_id)
        if not user or not self.passwords.verify_primary(
            user.password_hash, user.password_algo, current_password
        ):
            self.logger.warning("password_change_rejected", user_id=user_id)
            raise AuthenticationError("invalid credentials")
        self.sync.change_password(user_id, new_password)
        self.ledger.revoke_all(user_id, "password_changed")
        if self.email_service:
            await asyncio.to_thread(self.email_service.send_password_changed, user.email)

    # administration
    async def admin_set_password(self, user_id: str, new_password: str) -> None:
        if not self.sync.change_password(user_id, new_password):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.ledger.revoke_all(user_id, "password_set_by_admin")

    async def update_legacy_credential(
        self,
        credential_id: int,
        *,
        email: Optional[str] = None,
        password: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> LegacyCredential:
        credential = self.sync.apply_legacy_update(
            credential_id, email=email, password=password, active=active
        )
        if active is False or password is not None:
            self.ledger.revoke_all(credential.user_id, "credential_updated")
        return credential

    async def deactivate(self, user_id: str) -> None:
        """Soft delete: lock both records and end open sessions.

        A locked account stays locked through activation and password
        recovery; only ``reactivate`` lifts it.
        """
        if not self.sync.deactivate_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.ledger.revoke_all(user_id, "deactivated")

    async def reactivate(self, user_id: str) -> None:
        if not self.sync.reactivate_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info("user_reactivated", user_id=user_id)

    async def purge_user(self, user_id: str) -> None:
        """Hard delete of both records, tokens and profile."""
        if not self.store.delete_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.profiles.delete_profile(user_id)
        self.logger.info("user_purged", user_id=user_id)

    def get_account(self, user_id: str) -> Dict[str, Any]:
        user = self.store.get_user(user_id)
        legacy = self.store.get_legacy_credential_by_user(user_id)
        account: Optional[Account] = user or legacy
        if not account:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return {
            "id": user_id,
            "email": account.email,
            "role": user.role if user else self.profiles.role_for(user_id),
            "active": _account_active(account),
            "locked_out": account.locked_out,
            "credential_id": legacy.id if legacy else None,
            "last_access_at": legacy.last_access_at.isoformat()
            if legacy and legacy.last_access_at
            else None,
        }

    def email_available(self, email: str) -> bool:
        return self._find_account(email) is None
