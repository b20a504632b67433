from __future__ import annotations

import hmac
import json
import os
import threading
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from migente_auth.logging import get_logger
from migente_auth.storage.errors import ConstraintViolation
from migente_auth.storage.models import (
    CredentialChange,
    EphemeralToken,
    LegacyCredential,
    RefreshToken,
    TokenPurpose,
    TokenState,
    UserIdentity,
    normalize_email,
    utcnow,
)


class MemoryStore:
    """In-process credential store and token ledger.

    Every read-check-write runs under ``_data_lock`` so rotation and token
    consumption behave like the conditional updates in ``PostgresStore``.
    Records handed to callers are copies; mutating them never changes state.
    State is snapshotted to ``<fs_root>/state/auth_store.json`` after each write;
    retired tokens are dropped once ``retention_minutes`` have passed since
    they were used, revoked or expired.
    """

    def __init__(
        self, fs_root: str = "/tmp/migente", *, retention_minutes: int = 7 * 24 * 60
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserIdentity] = {}
        self.legacy_credentials: Dict[int, LegacyCredential] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.ephemeral_tokens: Dict[str, EphemeralToken] = {}
        self._legacy_id_seq: int = 1
        self.retention = timedelta(minutes=retention_minutes)
        # RLock so helpers can re-enter from within a locked operation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    # primary store
    def _user_id_for_email(self, email: str) -> Optional[str]:
        normalized = normalize_email(email)
        return next((u.id for u in self.users.values() if u.email == normalized), None)

    def _legacy_for_email(self, email: str) -> Optional[LegacyCredential]:
        normalized = normalize_email(email)
        return next(
            (c for c in self.legacy_credentials.values() if c.email == normalized),
            None,
        )

    def _legacy_for_user(self, user_id: str) -> Optional[LegacyCredential]:
        return next(
            (c for c in self.legacy_credentials.values() if c.user_id == user_id),
            None,
        )

    def _insert_user(self, user: UserIdentity) -> UserIdentity:
        if user.id in self.users:
            raise ConstraintViolation("user id already exists", {"field": "id"})
        if self._user_id_for_email(user.email):
            raise ConstraintViolation("email already exists", {"field": "email"})
        stored = replace(user, email=normalize_email(user.email))
        self.users[stored.id] = stored
        return replace(stored)

    def create_user(self, user: UserIdentity) -> UserIdentity:
        with self._data_lock:
            created = self._insert_user(user)
            self._persist_state()
            return created

    def get_user(self, user_id: str) -> Optional[UserIdentity]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[UserIdentity]:
        with self._data_lock:
            user_id = self._user_id_for_email(email)
            return replace(self.users[user_id]) if user_id else None

    def list_users(self, limit: int = 100) -> List[UserIdentity]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered[:limit]]

    def register_identity(
        self, user: UserIdentity, legacy_password_hash: str
    ) -> Tuple[UserIdentity, LegacyCredential]:
        """Create the primary record and its legacy twin in one step."""
        with self._data_lock:
            if self._legacy_for_email(user.email) or self._legacy_for_user(user.id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            created = self._insert_user(user)
            credential = self._insert_legacy(
                created.id, created.email, legacy_password_hash, active=created.confirmed
            )
            self._persist_state()
            return created, credential

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.pop(user_id, None)
            legacy = self._legacy_for_user(user_id)
            if legacy:
                self.legacy_credentials.pop(legacy.id, None)
            if not user and not legacy:
                return False
            emails = {r.email for r in (user, legacy) if r is not None}
            for token, record in list(self.refresh_tokens.items()):
                if record.user_id == user_id:
                    self.refresh_tokens.pop(token, None)
            for token_id, record in list(self.ephemeral_tokens.items()):
                if record.user_id == user_id or record.email in emails:
                    self.ephemeral_tokens.pop(token_id, None)
            self._persist_state()
            return True

    # legacy store
    def _insert_legacy(
        self, user_id: str, email: str, password_hash: str, *, active: bool
    ) -> LegacyCredential:
        if self._legacy_for_user(user_id):
            raise ConstraintViolation("legacy credential exists for user", {"field": "user_id"})
        if self._legacy_for_email(email):
            raise ConstraintViolation("email already exists", {"field": "email"})
        credential = LegacyCredential(
            id=self._legacy_id_seq,
            user_id=user_id,
            email=normalize_email(email),
            password_hash=password_hash,
            active=active,
            activated_at=utcnow() if active else None,
        )
        self._legacy_id_seq += 1
        self.legacy_credentials[credential.id] = credential
        return replace(credential)

    def create_legacy_credential(
        self, user_id: str, email: str, password_hash: str, *, active: bool = False
    ) -> LegacyCredential:
        with self._data_lock:
            credential = self._insert_legacy(user_id, email, password_hash, active=active)
            self._persist_state()
            return credential

    def get_legacy_credential(self, credential_id: int) -> Optional[LegacyCredential]:
        with self._data_lock:
            credential = self.legacy_credentials.get(credential_id)
            return replace(credential) if credential else None

    def get_legacy_credential_by_email(self, email: str) -> Optional[LegacyCredential]:
        with self._data_lock:
            credential = self._legacy_for_email(email)
            return replace(credential) if credential else None

    def get_legacy_credential_by_user(self, user_id: str) -> Optional[LegacyCredential]:
        with self._data_lock:
            credential = self._legacy_for_user(user_id)
            return replace(credential) if credential else None

    def record_legacy_access(
        self, user_id: str, ip_addr: Optional[str], *, at: Optional[datetime] = None
    ) -> None:
        with self._data_lock:
            credential = self._legacy_for_user(user_id)
            if not credential:
                return
            credential.last_access_at = at or utcnow()
            credential.last_ip = ip_addr
            self._persist_state()

    # cross-store writes
    def apply_credential_change(
        self, user_id: str, change: CredentialChange, *, at: Optional[datetime] = None
    ) -> bool:
        """Apply ``change`` to the user's primary record and legacy row together.

        Returns False when neither record exists. Raises ConstraintViolation
        before touching anything if a new email is already taken.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            legacy = self._legacy_for_user(user_id)
            if not user and not legacy:
                return False
            if change.email is not None:
                owner = self._user_id_for_email(change.email)
                legacy_owner = self._legacy_for_email(change.email)
                if (owner and owner != user_id) or (
                    legacy_owner and legacy_owner.user_id != user_id
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            when = at or utcnow()
            if user:
                if change.confirmed is not None:
                    user.confirmed = change.confirmed
                if change.locked_out is not None:
                    user.locked_out = change.locked_out
                if change.password_hash is not None:
                    user.password_hash = change.password_hash
                    user.password_algo = change.password_algo or user.password_algo
                if change.email is not None:
                    user.email = change.email
                user.updated_at = when
            if legacy:
                active = change.legacy_active
                if active is not None:
                    if active and not legacy.active:
                        legacy.activated_at = when
                    legacy.active = active
                if change.locked_out is not None:
                    legacy.locked_out = change.locked_out
                if change.legacy_password_hash is not None:
                    legacy.password_hash = change.legacy_password_hash
                if change.email is not None:
                    legacy.email = change.email
            self._persist_state()
            return True

    # refresh-token ledger
    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token exists", {"field": "token"})
            self.refresh_tokens[token.token] = replace(token)
            self._persist_state()
            return replace(token)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            records = [r for r in self.refresh_tokens.values() if r.user_id == user_id]
            return [replace(r) for r in sorted(records, key=lambda r: r.created_at)]

    def rotate_refresh_token(
        self,
        token: str,
        successor: RefreshToken,
        *,
        revoked_by_ip: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> bool:
        """Retire ``token`` in favour of ``successor`` iff it is still active."""
        when = at or utcnow()
        with self._data_lock:
            current = self.refresh_tokens.get(token)
            if not current or not current.can_transition(TokenState.ROTATED, when):
                return False
            if successor.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token exists", {"field": "token"})
            current.revoked_at = when
            current.revoked_by_ip = revoked_by_ip
            current.revoked_reason = "rotated"
            current.replaced_by = successor.token
            self.refresh_tokens[successor.token] = replace(successor)
            self._persist_state()
            return True

    def revoke_refresh_token(
        self,
        token: str,
        *,
        reason: str,
        revoked_by_ip: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> bool:
        when = at or utcnow()
        with self._data_lock:
            current = self.refresh_tokens.get(token)
            if not current or not current.can_transition(TokenState.REVOKED, when):
                return False
            current.revoked_at = when
            current.revoked_by_ip = revoked_by_ip
            current.revoked_reason = reason
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(
        self, user_id: str, *, reason: str, at: Optional[datetime] = None
    ) -> int:
        when = at or utcnow()
        revoked = 0
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and record.is_usable(when):
                    record.revoked_at = when
                    record.revoked_reason = reason
                    revoked += 1
            if revoked:
                self._persist_state()
        return revoked

    # ephemeral tokens
    def add_ephemeral_token(self, token: EphemeralToken) -> EphemeralToken:
        with self._data_lock:
            self.ephemeral_tokens[token.id] = replace(token)
            self._persist_state()
            return replace(token)

    def list_ephemeral_tokens(
        self, email: str, purpose: TokenPurpose
    ) -> List[EphemeralToken]:
        """Tokens for ``email`` and ``purpose``, newest first."""
        normalized = normalize_email(email)
        with self._data_lock:
            records = [
                r
                for r in self.ephemeral_tokens.values()
                if r.email == normalized and r.purpose == purpose
            ]
            records.sort(key=lambda r: r.created_at, reverse=True)
            return [replace(r) for r in records]

    def consume_ephemeral_token(
        self,
        purpose: TokenPurpose,
        email: str,
        token: str,
        *,
        at: Optional[datetime] = None,
    ) -> Optional[EphemeralToken]:
        """Mark the newest usable match as used and return it, else ``None``."""
        when = at or utcnow()
        normalized = normalize_email(email)
        with self._data_lock:
            candidates = sorted(
                (
                    r
                    for r in self.ephemeral_tokens.values()
                    if r.purpose == purpose
                    and r.email == normalized
                    and hmac.compare_digest(r.token.encode(), token.encode())
                    and r.is_usable(when)
                ),
                key=lambda r: r.created_at,
                reverse=True,
            )
            if not candidates:
                return None
            winner = candidates[0]
            winner.used_at = when
            self._persist_state()
            return replace(winner)

    # persistence
    @staticmethod
    def _dump(record: Any) -> Dict[str, Any]:
        data = asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif isinstance(value, Enum):
                data[key] = value.value
        return data

    @staticmethod
    def _parse_datetimes(data: Dict[str, Any], *keys: str) -> Dict[str, Any]:
        parsed = dict(data)
        for key in keys:
            raw = parsed.get(key)
            if raw:
                parsed[key] = datetime.fromisoformat(raw)
        return parsed

    def _prune_retired_tokens(self, now: datetime) -> None:
        cutoff = now - self.retention
        stale_refresh = [
            token
            for token, record in self.refresh_tokens.items()
            if (record.revoked_at or record.expires_at) <= cutoff
        ]
        stale_ephemeral = [
            token_id
            for token_id, record in self.ephemeral_tokens.items()
            if (record.used_at or record.expires_at) is not None
            and (record.used_at or record.expires_at) <= cutoff
        ]
        for token in stale_refresh:
            del self.refresh_tokens[token]
        for token_id in stale_ephemeral:
            del self.ephemeral_tokens[token_id]
        if stale_refresh or stale_ephemeral:
            self.logger.info(
                "memory_store_pruned",
                refresh_tokens=len(stale_refresh),
                ephemeral_tokens=len(stale_ephemeral),
            )

    def _persist_state(self) -> None:
        self._prune_retired_tokens(utcnow())
        state = {
            "legacy_id_seq": self._legacy_id_seq,
            "users": [self._dump(u) for u in self.users.values()],
            "legacy_credentials": [
                self._dump(c) for c in self.legacy_credentials.values()
            ],
            "refresh_tokens": [self._dump(t) for t in self.refresh_tokens.values()],
            "ephemeral_tokens": [
                self._dump(t) for t in self.ephemeral_tokens.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: UserIdentity(**self._parse_datetimes(u, "created_at", "updated_at"))
            for u in data.get("users", [])
        }
        self.legacy_credentials = {
            c["id"]: LegacyCredential(
                **self._parse_datetimes(
                    c, "created_at", "activated_at", "last_access_at"
                )
            )
            for c in data.get("legacy_credentials", [])
        }
        self.refresh_tokens = {
            t["token"]: RefreshToken(
                **self._parse_datetimes(t, "created_at", "expires_at", "revoked_at")
            )
            for t in data.get("refresh_tokens", [])
        }
        self.ephemeral_tokens = {}
        for raw in data.get("ephemeral_tokens", []):
            parsed = self._parse_datetimes(raw, "created_at", "expires_at", "used_at")
            parsed["purpose"] = TokenPurpose(parsed["purpose"])
            self.ephemeral_tokens[parsed["id"]] = EphemeralToken(**parsed)
        max_legacy_id = max(self.legacy_credentials, default=0)
        self._legacy_id_seq = max(data.get("legacy_id_seq", 1), max_legacy_id + 1)
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            legacy_credentials=len(self.legacy_credentials),
        )
        return True
