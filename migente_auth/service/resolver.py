from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from migente_auth.config import Settings
from migente_auth.logging import email_fingerprint, get_logger
from migente_auth.service.errors import AuthenticationError
from migente_auth.service.passwords import PasswordService
from migente_auth.service.profiles import ProfileDirectory
from migente_auth.storage.errors import ConstraintViolation
from migente_auth.storage.models import LegacyCredential, UserIdentity

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid credentials"


@dataclass
class ResolvedUser:
    user_id: str
    email: str
    role: str
    materialized: bool = False

    @classmethod
    def from_identity(cls, user: UserIdentity, *, materialized: bool = False) -> "ResolvedUser":
        return cls(user_id=user.id, email=user.email, role=user.role, materialized=materialized)

    def as_dict(self) -> dict:
        return {"id": self.user_id, "email": self.email, "role": self.role}


class CredentialResolver:
    """Find and verify a login across the primary store and the legacy table.

    A legacy-only account that verifies is copied into the primary store under
    the same identifier. Every rejection raises the same
    ``AuthenticationError``; the concrete reason only reaches the log.
    """

    def __init__(
        self,
        store,
        passwords: PasswordService,
        profiles: ProfileDirectory,
        settings: Settings,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.profiles = profiles
        self.settings = settings

    def _reject(self, reason: str, email: str, user_id: Optional[str] = None) -> AuthenticationError:
        logger.warning(
            "login_rejected",
            login_reason=reason,
            email_hash=email_fingerprint(email),
            user_id=user_id,
        )
        return AuthenticationError(INVALID_CREDENTIALS)

    def resolve(self, email: str, password: str, ip_addr: Optional[str] = None) -> ResolvedUser:
        user = self.store.get_user_by_email(email)
        if user:
            if not self.passwords.verify_primary(user.password_hash, user.password_algo, password):
                raise self._reject("password_mismatch", email, user.id)
            if user.locked_out:
                raise self._reject("locked_out", email, user.id)
            if not user.confirmed:
                raise self._reject("unconfirmed", email, user.id)
            self.store.record_legacy_access(user.id, ip_addr)
            return ResolvedUser.from_identity(user)

        legacy = self.store.get_legacy_credential_by_email(email)
        if not legacy:
            self.passwords.burn(password)
            raise self._reject("unknown_email", email)
        if not self.passwords.verify_legacy(legacy.password_hash, password):
            raise self._reject("password_mismatch", email, legacy.user_id)
        if legacy.locked_out:
            raise self._reject("locked_out", email, legacy.user_id)
        if not legacy.active:
            raise self._reject("legacy_inactive", email, legacy.user_id)

        materialized = self._materialize(legacy, password)
        self.store.record_legacy_access(materialized.id, ip_addr)
        return ResolvedUser.from_identity(materialized, materialized=True)

    def _materialize(self, legacy: LegacyCredential, password: str) -> UserIdentity:
        """Create the primary record for a legacy-only account, or reuse a racer's."""
        digest, algo = self.passwords.hash_primary(password)
        candidate = UserIdentity(
            id=legacy.user_id,
            email=legacy.email,
            password_hash=digest,
            password_algo=algo,
            confirmed=legacy.active,
            role=self.profiles.role_for(legacy.user_id) or self.settings.default_user_role,
        )
        try:
            created = self.store.create_user(candidate)
        except ConstraintViolation as exc:
            existing = self.store.get_user(legacy.user_id)
            if existing is None:
                # the email belongs to a different primary account
                logger.error(
                    "legacy_materialization_conflict",
                    user_id=legacy.user_id,
                    field=exc.detail.get("field"),
                )
                raise AuthenticationError(INVALID_CREDENTIALS) from exc
            logger.info("legacy_materialization_reused", user_id=legacy.user_id)
            return existing
        logger.info("legacy_credential_materialized", user_id=created.id)
        return created
