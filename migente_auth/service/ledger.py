from __future__ import annotations

from typing import List, Optional

from migente_auth.config import Settings
from migente_auth.logging import get_logger
from migente_auth.service.errors import InvalidTokenError
from migente_auth.storage.models import RefreshToken, TokenState, utcnow

logger = get_logger(__name__)

DEFAULT_REVOKE_REASON = "logout"


class TokenLedger:
    """Refresh-token chain per user: issue, single-use rotation, revocation.

    State comes from ``RefreshToken.state``; the store's conditional writes
    decide races, so two rotations of one token produce exactly one successor.
    """

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def issue(self, user_id: str, ip_addr: Optional[str] = None) -> RefreshToken:
        token = RefreshToken.new(
            user_id, self.settings.refresh_token_ttl_minutes, ip_addr
        )
        return self.store.add_refresh_token(token)

    def require_usable(self, token: str) -> RefreshToken:
        """Return the ledger row for ``token`` if it is active, else raise."""
        record = self.store.get_refresh_token(token)
        if not record:
            logger.info("refresh_token_rejected", token_reason="unknown")
            raise InvalidTokenError("invalid refresh token")
        state = record.state()
        if state is not TokenState.ACTIVE:
            if state is TokenState.ROTATED:
                # a superseded link was presented again
                logger.warning(
                    "refresh_token_replayed",
                    user_id=record.user_id,
                    rotated_at=record.revoked_at.isoformat() if record.revoked_at else None,
                )
            else:
                logger.info(
                    "refresh_token_rejected",
                    user_id=record.user_id,
                    token_reason=state.value,
                )
            raise InvalidTokenError("invalid refresh token")
        return record

    def rotate(self, record: RefreshToken, ip_addr: Optional[str] = None) -> RefreshToken:
        """Replace ``record`` with a fresh token for the same user."""
        now = utcnow()
        successor = RefreshToken.new(
            record.user_id, self.settings.refresh_token_ttl_minutes, ip_addr, now=now
        )
        if not self.store.rotate_refresh_token(
            record.token, successor, revoked_by_ip=ip_addr, at=now
        ):
            logger.warning("refresh_token_rotation_lost", user_id=record.user_id)
            raise InvalidTokenError("invalid refresh token")
        logger.info("refresh_token_rotated", user_id=record.user_id)
        return successor

    def revoke(
        self,
        token: str,
        *,
        ip_addr: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Revoke ``token``; revoking an already inactive token is a no-op."""
        record = self.store.get_refresh_token(token)
        if not record:
            logger.info("refresh_token_revoke_unknown")
            raise InvalidTokenError("invalid refresh token")
        revoked = self.store.revoke_refresh_token(
            token,
            reason=reason or DEFAULT_REVOKE_REASON,
            revoked_by_ip=ip_addr,
        )
        if revoked:
            logger.info(
                "refresh_token_revoked",
                user_id=record.user_id,
                token_reason=reason or DEFAULT_REVOKE_REASON,
            )
        else:
            logger.info(
                "refresh_token_revoke_noop",
                user_id=record.user_id,
                token_state=record.state().value,
            )

    def revoke_all(self, user_id: str, reason: str) -> int:
        count = self.store.revoke_user_refresh_tokens(user_id, reason=reason)
        if count:
            logger.info("refresh_tokens_revoked", user_id=user_id, count=count, token_reason=reason)
        return count

    def history(self, user_id: str) -> List[RefreshToken]:
        return self.store.list_refresh_tokens(user_id)
