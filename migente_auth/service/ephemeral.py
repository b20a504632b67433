from __future__ import annotations

import hmac
import secrets
from typing import List, Optional

from migente_auth.config import Settings
from migente_auth.logging import email_fingerprint, get_logger
from migente_auth.service.errors import InvalidTokenError
from migente_auth.storage.models import EphemeralToken, TokenPurpose, utcnow

logger = get_logger(__name__)


class EphemeralTokenManager:
    """Single-use activation links and password-reset codes keyed by email.

    Several tokens may be outstanding for one email at a time; any of them
    that is unused and unexpired is accepted.
    """

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _ttl_minutes(self, purpose: TokenPurpose) -> Optional[int]:
        if purpose is TokenPurpose.PASSWORD_RESET:
            return self.settings.reset_token_ttl_minutes
        return self.settings.activation_token_ttl_minutes

    def _new_value(self, purpose: TokenPurpose) -> str:
        if purpose is TokenPurpose.PASSWORD_RESET:
            digits = self.settings.reset_code_digits
            low = 10 ** (digits - 1)
            return str(low + secrets.randbelow(9 * low))
        return secrets.token_urlsafe(32)

    def generate(
        self, purpose: TokenPurpose, email: str, *, user_id: Optional[str] = None
    ) -> EphemeralToken:
        token = EphemeralToken.new(
            purpose,
            email,
            self._new_value(purpose),
            ttl_minutes=self._ttl_minutes(purpose),
            user_id=user_id,
        )
        stored = self.store.add_ephemeral_token(token)
        logger.info(
            "ephemeral_token_issued",
            purpose=purpose.value,
            email_hash=email_fingerprint(email),
            expires_at=stored.expires_at.isoformat() if stored.expires_at else None,
        )
        return stored

    def consume(self, purpose: TokenPurpose, email: str, token: str) -> EphemeralToken:
        """Mark a matching usable token as used, or raise ``InvalidTokenError``."""
        now = utcnow()
        consumed = self.store.consume_ephemeral_token(purpose, email, token, at=now)
        if consumed:
            logger.info(
                "ephemeral_token_consumed",
                purpose=purpose.value,
                email_hash=email_fingerprint(email),
            )
            return consumed
        logger.warning(
            "ephemeral_token_rejected",
            purpose=purpose.value,
            email_hash=email_fingerprint(email),
            token_reason=self._rejection_reason(purpose, email, token, now),
        )
        raise InvalidTokenError("invalid or expired token")

    def _rejection_reason(self, purpose, email, token, now) -> str:
        matches = [
            record
            for record in self.store.list_ephemeral_tokens(email, purpose)
            if hmac.compare_digest(record.token.encode(), token.encode())
        ]
        if not matches:
            return "unknown"
        # None means the row changed between the consume and this read
        return matches[0].invalid_reason(now) or "raced"

    def outstanding(self, purpose: TokenPurpose, email: str) -> List[EphemeralToken]:
        now = utcnow()
        return [
            record
            for record in self.store.list_ephemeral_tokens(email, purpose)
            if record.is_usable(now)
        ]
