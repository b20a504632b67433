from __future__ import annotations

from typing import Optional

from migente_auth.logging import get_logger
from migente_auth.service.errors import ConflictError, NotFoundError
from migente_auth.service.passwords import PasswordService
from migente_auth.storage.errors import ConstraintViolation
from migente_auth.storage.models import CredentialChange, LegacyCredential

logger = get_logger(__name__)


class Synchronizer:
    """Single write path for account state shared by both credential stores.

    Each domain event becomes one ``CredentialChange`` applied by the store to
    the primary record and the legacy row together, so neither side is ever
    written alone.
    """

    def __init__(self, store, passwords: PasswordService) -> None:
        self.store = store
        self.passwords = passwords

    def _apply(self, event: str, user_id: str, change: CredentialChange) -> bool:
        if change.is_empty():
            return False
        try:
            applied = self.store.apply_credential_change(user_id, change)
        except ConstraintViolation as exc:
            logger.warning("credential_sync_conflict", sync_event=event, user_id=user_id)
            raise ConflictError("email already exists", detail=exc.detail) from exc
        if applied:
            logger.info("credentials_synchronized", sync_event=event, user_id=user_id)
        else:
            logger.warning("credential_sync_missing_user", sync_event=event, user_id=user_id)
        return applied

    def activate_user(self, user_id: str) -> bool:
        return self._apply("activate", user_id, CredentialChange(confirmed=True))

    def deactivate_user(self, user_id: str) -> bool:
        return self._apply("deactivate", user_id, CredentialChange(locked_out=True))

    def reactivate_user(self, user_id: str) -> bool:
        """Lift an administrative lock; the only path that clears ``locked_out``."""
        return self._apply(
            "reactivate", user_id, CredentialChange(confirmed=True, locked_out=False)
        )

    def change_password(self, user_id: str, new_password: str) -> bool:
        primary_hash, algo, legacy_hash = self.passwords.hash_both(new_password)
        return self._apply(
            "change_password",
            user_id,
            CredentialChange(
                password_hash=primary_hash,
                password_algo=algo,
                legacy_password_hash=legacy_hash,
            ),
        )

    def apply_legacy_update(
        self,
        credential_id: int,
        *,
        email: Optional[str] = None,
        password: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> LegacyCredential:
        """Edit an account addressed by its legacy row id, mirrored to the primary store."""
        credential = self.store.get_legacy_credential(credential_id)
        if not credential:
            raise NotFoundError("credential not found", detail={"credential_id": credential_id})
        # admin toggles of the legacy flag lock or lift the account
        if active is None:
            change = CredentialChange(email=email)
        elif active:
            change = CredentialChange(confirmed=True, locked_out=False, email=email)
        else:
            change = CredentialChange(locked_out=True, email=email)
        if password is not None:
            primary_hash, algo, legacy_hash = self.passwords.hash_both(password)
            change.password_hash = primary_hash
            change.password_algo = algo
            change.legacy_password_hash = legacy_hash
        self._apply("legacy_update", credential.user_id, change)
        return self.store.get_legacy_credential(credential_id)
