from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from migente_auth.logging import get_logger
from migente_auth.storage.errors import ConstraintViolation, SchemaMissingError
from migente_auth.storage.models import (
    CredentialChange,
    EphemeralToken,
    LegacyCredential,
    RefreshToken,
    TokenPurpose,
    UserIdentity,
    normalize_email,
    utcnow,
)

_REQUIRED_TABLES = (
    "app_user",
    "legacy_credential",
    "refresh_token",
    "ephemeral_token",
)


def _constraint_field(exc: errors.UniqueViolation) -> str:
    name = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    if "email" in name:
        return "email"
    if "user_id" in name:
        return "user_id"
    if "token" in name:
        return "token"
    return "id"


class PostgresStore:
    """Postgres-backed credential store and token ledger.

    Race-sensitive transitions are single conditional statements: rotation and
    revocation only touch rows whose ``revoked_at`` is still null, and
    consumption only touches rows whose ``used_at`` is still null.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables and citext exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise SchemaMissingError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

            citext_ext = conn.execute(
                "SELECT extname FROM pg_extension WHERE extname = 'citext'"
            ).fetchone()
            if not citext_ext:
                raise SchemaMissingError(
                    "citext extension is missing. Install it and apply scripts/schema.sql."
                )

    # row mapping
    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> UserIdentity:
        return UserIdentity(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            confirmed=bool(row.get("confirmed")),
            role=row.get("role") or "employer",
            locked_out=bool(row.get("locked_out")),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_legacy(row: Dict[str, Any]) -> LegacyCredential:
        return LegacyCredential(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            active=bool(row.get("active")),
            locked_out=bool(row.get("locked_out")),
            created_at=row.get("created_at") or utcnow(),
            activated_at=row.get("activated_at"),
            last_access_at=row.get("last_access_at"),
            last_ip=row.get("last_ip"),
        )

    @staticmethod
    def _row_to_refresh_token(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            created_by_ip=row.get("created_by_ip"),
            revoked_at=row.get("revoked_at"),
            revoked_by_ip=row.get("revoked_by_ip"),
            revoked_reason=row.get("revoked_reason"),
            replaced_by=row.get("replaced_by"),
        )

    @staticmethod
    def _row_to_ephemeral(row: Dict[str, Any]) -> EphemeralToken:
        return EphemeralToken(
            id=str(row["id"]),
            purpose=TokenPurpose(row["purpose"]),
            email=row["email"],
            token=row["token"],
            created_at=row["created_at"],
            expires_at=row.get("expires_at"),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            used_at=row.get("used_at"),
        )

    # primary store
    @staticmethod
    def _insert_user(conn, user: UserIdentity) -> None:
        conn.execute(
            """
            INSERT INTO app_user (id, email, password_hash, password_algo, confirmed, role, locked_out, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                user.id,
                normalize_email(user.email),
                user.password_hash,
                user.password_algo,
                user.confirmed,
                user.role,
                user.locked_out,
                user.created_at,
            ),
        )

    def create_user(self, user: UserIdentity) -> UserIdentity:
        try:
            with self._connect() as conn:
                self._insert_user(conn, user)
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return replace(user, email=normalize_email(user.email))

    def get_user(self, user_id: str) -> Optional[UserIdentity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserIdentity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[UserIdentity]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def register_identity(
        self, user: UserIdentity, legacy_password_hash: str
    ) -> Tuple[UserIdentity, LegacyCredential]:
        """Create the primary record and its legacy twin in one transaction."""
        try:
            with self._connect() as conn:
                with conn.transaction():
                    self._insert_user(conn, user)
                    row = conn.execute(
                        """
                        INSERT INTO legacy_credential (user_id, email, password_hash, active, activated_at)
                        VALUES (%s, %s, %s, %s, CASE WHEN %s THEN now() END)
                        RETURNING *
                        """,
                        (
                            user.id,
                            normalize_email(user.email),
                            legacy_password_hash,
                            user.confirmed,
                            user.confirmed,
                        ),
                    ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        created = replace(user, email=normalize_email(user.email))
        return created, self._row_to_legacy(row)

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                emails = [
                    row["email"]
                    for row in conn.execute(
                        """
                        SELECT email FROM app_user WHERE id = %s
                        UNION
                        SELECT email FROM legacy_credential WHERE user_id = %s
                        """,
                        (user_id, user_id),
                    ).fetchall()
                ]
                if not emails:
                    return False
                conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
                conn.execute(
                    "DELETE FROM ephemeral_token WHERE user_id = %s OR email = ANY(%s)",
                    (user_id, emails),
                )
                conn.execute("DELETE FROM legacy_credential WHERE user_id = %s", (user_id,))
                conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
        return True

    # legacy store
    def create_legacy_credential(
        self, user_id: str, email: str, password_hash: str, *, active: bool = False
    ) -> LegacyCredential:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO legacy_credential (user_id, email, password_hash, active, activated_at)
                    VALUES (%s, %s, %s, %s, CASE WHEN %s THEN now() END)
                    RETURNING *
                    """,
                    (user_id, normalize_email(email), password_hash, active, active),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._row_to_legacy(row)

    def get_legacy_credential(self, credential_id: int) -> Optional[LegacyCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM legacy_credential WHERE id = %s", (credential_id,)
            ).fetchone()
        return self._row_to_legacy(row) if row else None

    def get_legacy_credential_by_email(self, email: str) -> Optional[LegacyCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM legacy_credential WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._row_to_legacy(row) if row else None

    def get_legacy_credential_by_user(self, user_id: str) -> Optional[LegacyCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM legacy_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._row_to_legacy(row) if row else None

    def record_legacy_access(
        self, user_id: str, ip_addr: Optional[str], *, at: Optional[datetime] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE legacy_credential SET last_access_at = %s, last_ip = %s WHERE user_id = %s",
                (at or utcnow(), ip_addr, user_id),
            )

    # cross-store writes
    @staticmethod
    def _change_clauses(
        change: CredentialChange, when: datetime
    ) -> Tuple[List[str], List[Any], List[str], List[Any]]:
        user_sets: List[str] = []
        user_params: List[Any] = []
        legacy_sets: List[str] = []
        legacy_params: List[Any] = []
        if change.confirmed is not None:
            user_sets.append("confirmed = %s")
            user_params.append(change.confirmed)
        if change.locked_out is not None:
            user_sets.append("locked_out = %s")
            user_params.append(change.locked_out)
            legacy_sets.append("locked_out = %s")
            legacy_params.append(change.locked_out)
        active = change.legacy_active
        if active is not None:
            legacy_sets += [
                "activated_at = CASE WHEN %s AND NOT active THEN %s ELSE activated_at END",
                "active = %s",
            ]
            legacy_params += [active, when, active]
        if change.password_hash is not None:
            user_sets.append("password_hash = %s")
            user_params.append(change.password_hash)
            if change.password_algo:
                user_sets.append("password_algo = %s")
                user_params.append(change.password_algo)
            legacy_sets.append("password_hash = %s")
            legacy_params.append(change.legacy_password_hash)
        if change.email is not None:
            user_sets.append("email = %s")
            user_params.append(change.email)
            legacy_sets.append("email = %s")
            legacy_params.append(change.email)
        user_sets.append("updated_at = %s")
        user_params.append(when)
        return user_sets, user_params, legacy_sets, legacy_params

    def apply_credential_change(
        self, user_id: str, change: CredentialChange, *, at: Optional[datetime] = None
    ) -> bool:
        """Apply ``change`` to ``app_user`` and ``legacy_credential`` in one transaction."""
        user_sets, user_params, legacy_sets, legacy_params = self._change_clauses(
            change, at or utcnow()
        )
        try:
            with self._connect() as conn:
                with conn.transaction():
                    user_rows = conn.execute(
                        f"UPDATE app_user SET {', '.join(user_sets)} WHERE id = %s",
                        (*user_params, user_id),
                    ).rowcount
                    legacy_rows = 0
                    if legacy_sets:
                        legacy_rows = conn.execute(
                            f"UPDATE legacy_credential SET {', '.join(legacy_sets)} WHERE user_id = %s",
                            (*legacy_params, user_id),
                        ).rowcount
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return bool(user_rows or legacy_rows)

    # refresh-token ledger
    @staticmethod
    def _insert_refresh_token(conn, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (token, user_id, created_at, expires_at, created_by_ip)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (
                token.token,
                token.user_id,
                token.created_at,
                token.expires_at,
                token.created_by_ip,
            ),
        )

    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, token)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("refresh token exists", {"field": "token"}) from exc
        return token

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]

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
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        UPDATE refresh_token
                        SET revoked_at = %s, revoked_by_ip = %s, revoked_reason = 'rotated', replaced_by = %s
                        WHERE token = %s AND revoked_at IS NULL AND expires_at > %s
                        RETURNING token
                        """,
                        (when, revoked_by_ip, successor.token, token, when),
                    ).fetchone()
                    if not row:
                        return False
                    self._insert_refresh_token(conn, successor)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("refresh token exists", {"field": "token"}) from exc
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
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s, revoked_by_ip = %s, revoked_reason = %s
                WHERE token = %s AND revoked_at IS NULL AND expires_at > %s
                RETURNING token
                """,
                (when, revoked_by_ip, reason, token, when),
            ).fetchone()
        return row is not None

    def revoke_user_refresh_tokens(
        self, user_id: str, *, reason: str, at: Optional[datetime] = None
    ) -> int:
        when = at or utcnow()
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s, revoked_reason = %s
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (when, reason, user_id, when),
            )
            return result.rowcount

    # ephemeral tokens
    def add_ephemeral_token(self, token: EphemeralToken) -> EphemeralToken:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO ephemeral_token (id, purpose, email, token, user_id, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.purpose.value,
                    normalize_email(token.email),
                    token.token,
                    token.user_id,
                    token.created_at,
                    token.expires_at,
                ),
            )
        return token

    def list_ephemeral_tokens(
        self, email: str, purpose: TokenPurpose
    ) -> List[EphemeralToken]:
        """Tokens for ``email`` and ``purpose``, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM ephemeral_token
                WHERE email = %s AND purpose = %s
                ORDER BY created_at DESC
                """,
                (normalize_email(email), purpose.value),
            ).fetchall()
        return [self._row_to_ephemeral(row) for row in rows]

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
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE ephemeral_token SET used_at = %s
                WHERE id = (
                    SELECT id FROM ephemeral_token
                    WHERE purpose = %s AND email = %s AND token = %s
                      AND used_at IS NULL AND (expires_at IS NULL OR expires_at > %s)
                    ORDER BY created_at DESC
                    LIMIT 1
                    FOR UPDATE
                )
                AND used_at IS NULL
                RETURNING *
                """,
                (when, purpose.value, normalize_email(email), token, when),
            ).fetchone()
        return self._row_to_ephemeral(row) if row else None
