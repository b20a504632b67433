from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from migente_auth.logging import get_logger
from migente_auth.service.ledger import TokenLedger
from migente_auth.service.resolver import ResolvedUser
from migente_auth.service.tokens import AccessTokenCodec
from migente_auth.storage.models import RefreshToken

logger = get_logger(__name__)


@dataclass
class IssuedSession:
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    user: ResolvedUser
    token_type: str = "bearer"

    def as_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "access_expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
            "user": self.user.as_dict(),
        }


class SessionIssuer:
    """Pair a fresh access token with a refresh-token ledger row."""

    def __init__(self, codec: AccessTokenCodec, ledger: TokenLedger) -> None:
        self.codec = codec
        self.ledger = ledger

    def _bundle(self, user: ResolvedUser, refresh: RefreshToken) -> IssuedSession:
        access_token, access_expires_at = self.codec.issue(
            user_id=user.user_id, email=user.email, role=user.role
        )
        return IssuedSession(
            access_token=access_token,
            access_expires_at=access_expires_at,
            refresh_token=refresh.token,
            refresh_expires_at=refresh.expires_at,
            user=user,
        )

    def issue(self, user: ResolvedUser, ip_addr: Optional[str] = None) -> IssuedSession:
        refresh = self.ledger.issue(user.user_id, ip_addr)
        logger.info("session_issued", user_id=user.user_id, materialized=user.materialized)
        return self._bundle(user, refresh)

    def reissue(
        self, user: ResolvedUser, record: RefreshToken, ip_addr: Optional[str] = None
    ) -> IssuedSession:
        """Rotate ``record`` and mint an access token for the same user."""
        successor = self.ledger.rotate(record, ip_addr)
        return self._bundle(user, successor)
