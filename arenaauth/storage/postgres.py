from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from cryptography.fernet import Fernet
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from arenaauth.logging import get_logger
from arenaauth.storage.common import (
    PROFILE_FIELDS,
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
    normalize_json,
)
from arenaauth.storage.errors import ConstraintViolation, StoreError
from arenaauth.storage.models import (
    Role,
    RoleAssignment,
    SecurityLogEntry,
    Session,
    User,
    VerificationToken,
    VerificationType,
    utcnow,
)

REQUIRED_TABLES = (
    "users",
    "user_sessions",
    "security_logs",
    "user_roles",
    "user_role_assignments",
    "verification_tokens",
)


class PostgresStore:
    """Postgres-backed auth store.

    Each public method runs in its own pooled transaction. The atomic
    primitives (failed-login increment, conditional lock, token consumption,
    session touch) are single statements so concurrent callers serialize on
    the row lock instead of racing in Python.
    """

    def __init__(self, dsn: str, *, secret_encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher: Fernet = build_secret_cipher(secret_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        """Yield a pooled connection, translating driver errors.

        Constraint failures become ``ConstraintViolation``; every other
        driver failure becomes ``StoreError`` so no caller mistakes an
        outage for an absent row.
        """
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "duplicate value", {"constraint": _constraint_name(exc)}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "referenced record missing", {"constraint": _constraint_name(exc)}
            ) from exc
        except psycopg.Error as exc:
            self.logger.error("postgres_store_error", error_type=type(exc).__name__)
            raise StoreError("database operation failed") from exc

    def _verify_required_schema(self) -> None:
        """Fail fast when the auth tables are missing."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_auth_core.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # row mapping
    def _row_to_user(self, row: Dict[str, Any]) -> User:
        meta = row.get("meta")
        return User(
            id=str(row["id"]),
            email=row.get("email"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            profile_image_url=row.get("profile_image_url"),
            role=row.get("role") or "user",
            is_active=row.get("is_active", True),
            email_verified=bool(row.get("email_verified", False)),
            phone_number=row.get("phone_number"),
            phone_verified=bool(row.get("phone_verified", False)),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            two_factor_secret=decrypt_secret(self._cipher, row.get("two_factor_secret")),
            account_locked=bool(row.get("account_locked", False)),
            lock_reason=row.get("lock_reason"),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            last_failed_login_at=row.get("last_failed_login_at"),
            last_login_at=row.get("last_login_at"),
            login_count=int(row.get("login_count") or 0),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            meta=normalize_json(meta) if meta is not None else None,
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            session_token=row["session_token"],
            device_info=normalize_json(row.get("device_info")),
            ip_address=str(row["ip_address"]) if row.get("ip_address") else None,
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
            last_accessed_at=row.get("last_accessed_at") or row["created_at"],
            expires_at=row["expires_at"],
            is_active=bool(row.get("is_active", True)),
        )

    @staticmethod
    def _row_to_log(row: Dict[str, Any]) -> SecurityLogEntry:
        return SecurityLogEntry(
            id=int(row["id"]),
            action=row["action"],
            created_at=row["created_at"],
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            details=normalize_json(row.get("details")),
            ip_address=str(row["ip_address"]) if row.get("ip_address") else None,
            user_agent=row.get("user_agent"),
            success=bool(row.get("success", True)),
            risk_score=int(row.get("risk_score") or 0),
            location=row.get("location"),
        )

    @staticmethod
    def _row_to_role(row: Dict[str, Any]) -> Role:
        permissions = row.get("permissions") or []
        if isinstance(permissions, str):
            permissions = json.loads(permissions)
        return Role(
            id=str(row["id"]),
            name=row["name"],
            permissions=list(permissions),
            description=row.get("description"),
            is_active=bool(row.get("is_active", True)),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_assignment(row: Dict[str, Any]) -> RoleAssignment:
        return RoleAssignment(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            role_id=str(row["role_id"]),
            assigned_by=row.get("assigned_by"),
            assigned_at=row.get("assigned_at") or utcnow(),
            expires_at=row.get("expires_at"),
        )

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> VerificationToken:
        return VerificationToken(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            type=VerificationType(row["type"]),
            expires_at=row["expires_at"],
            used=bool(row.get("used", False)),
            used_at=row.get("used_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def upsert_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        profile_image_url: Optional[str] = None,
        email_verified: Optional[bool] = None,
    ) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO users (id, email, first_name, last_name, profile_image_url, email_verified)
                VALUES (%s, %s, %s, %s, %s, COALESCE(%s, false))
                ON CONFLICT (id) DO UPDATE
                SET email = COALESCE(EXCLUDED.email, users.email),
                    first_name = COALESCE(EXCLUDED.first_name, users.first_name),
                    last_name = COALESCE(EXCLUDED.last_name, users.last_name),
                    profile_image_url = COALESCE(EXCLUDED.profile_image_url, users.profile_image_url),
                    email_verified = COALESCE(%s, users.email_verified),
                    updated_at = now()
                RETURNING *
                """,
                (
                    user_id,
                    email,
                    first_name,
                    last_name,
                    profile_image_url,
                    email_verified,
                    email_verified,
                ),
            ).fetchone()
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_profile(self, user_id: str, updates: Dict[str, Any]) -> Optional[User]:
        unknown = set(updates) - PROFILE_FIELDS
        if unknown:
            raise ValueError(f"not a profile field: {', '.join(sorted(unknown))}")
        if not updates:
            return self.get_user(user_id)
        columns = sorted(updates)
        # column names come from PROFILE_FIELDS, never from the caller
        assignments = ", ".join(f"{col} = %s" for col in columns)
        values = [
            json.dumps(updates[col]) if col == "meta" and updates[col] is not None else updates[col]
            for col in columns
        ]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE users SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*values, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def increment_failed_logins(self, user_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET failed_login_attempts = failed_login_attempts + 1,
                    last_failed_login_at = now(),
                    updated_at = now()
                WHERE id = %s
                RETURNING failed_login_attempts
                """,
                (user_id,),
            ).fetchone()
        return int(row["failed_login_attempts"]) if row else None

    def record_successful_login(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET failed_login_attempts = 0,
                    last_login_at = now(),
                    login_count = login_count + 1,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def lock_user(self, user_id: str, reason: str) -> Optional[bool]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET account_locked = true, lock_reason = %s, updated_at = now()
                WHERE id = %s AND account_locked = false
                RETURNING id
                """,
                (reason, user_id),
            ).fetchone()
            if row:
                return True
            exists = conn.execute(
                "SELECT 1 AS present FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return False if exists else None

    def unlock_user(self, user_id: str) -> Optional[bool]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users u
                SET account_locked = false,
                    lock_reason = NULL,
                    failed_login_attempts = 0,
                    updated_at = now()
                FROM (SELECT id, account_locked AS was_locked FROM users WHERE id = %s FOR UPDATE) prev
                WHERE u.id = prev.id
                RETURNING prev.was_locked
                """,
                (user_id,),
            ).fetchone()
        return bool(row["was_locked"]) if row else None

    def set_two_factor(
        self, user_id: str, *, enabled: bool, secret: Optional[str]
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET two_factor_enabled = %s, two_factor_secret = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (enabled, encrypt_secret(self._cipher, secret), user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def mark_verified(self, user_id: str, channel: VerificationType) -> Optional[User]:
        if channel == VerificationType.EMAIL_VERIFICATION:
            column = "email_verified"
        elif channel == VerificationType.PHONE_VERIFICATION:
            column = "phone_verified"
        else:
            return self.get_user(user_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE users SET {column} = true, updated_at = now() WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_sessions (id, user_id, session_token, device_info, ip_address,
                                           user_agent, created_at, last_accessed_at, expires_at, is_active)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    session.user_id,
                    session.session_token,
                    json.dumps(session.device_info or {}),
                    session.ip_address,
                    session.user_agent,
                    session.created_at,
                    session.last_accessed_at,
                    session.expires_at,
                    session.is_active,
                ),
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_sessions WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_token(self, session_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_sessions WHERE session_token = %s", (session_token,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def touch_active_session(self, session_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_sessions
                SET last_accessed_at = now()
                WHERE session_token = %s AND is_active = true AND expires_at > now()
                RETURNING *
                """,
                (session_token,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def deactivate_session(
        self, session_id: str, *, user_id: Optional[str] = None
    ) -> bool:
        query = "UPDATE user_sessions SET is_active = false WHERE id = %s AND is_active = true"
        params: list[Any] = [session_id]
        if user_id is not None:
            query += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(query + " RETURNING id", tuple(params)).fetchone()
        return row is not None

    def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                rows = conn.execute(
                    """
                    UPDATE user_sessions SET is_active = false
                    WHERE user_id = %s AND is_active = true AND id <> %s
                    RETURNING id
                    """,
                    (user_id, except_session_id),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    UPDATE user_sessions SET is_active = false
                    WHERE user_id = %s AND is_active = true
                    RETURNING id
                    """,
                    (user_id,),
                ).fetchall()
        return len(rows)

    def list_active_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_sessions
                WHERE user_id = %s AND is_active = true AND expires_at > now()
                ORDER BY last_accessed_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    # security log
    def append_security_log(
        self,
        *,
        action: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        risk_score: int = 0,
        location: Optional[str] = None,
    ) -> SecurityLogEntry:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO security_logs (user_id, action, details, ip_address, user_agent,
                                           success, risk_score, location)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    user_id,
                    action,
                    json.dumps(details or {}),
                    ip_address,
                    user_agent,
                    success,
                    risk_score,
                    location,
                ),
            ).fetchone()
        return self._row_to_log(row)

    def list_security_logs(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[SecurityLogEntry]:
        with self._connect() as conn:
            if user_id:
                rows = conn.execute(
                    """
                    SELECT * FROM security_logs WHERE user_id = %s
                    ORDER BY created_at DESC, id DESC LIMIT %s
                    """,
                    (user_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM security_logs ORDER BY created_at DESC, id DESC LIMIT %s",
                    (limit,),
                ).fetchall()
        return [self._row_to_log(row) for row in rows]

    def count_security_events(self, user_id: str, action: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS total FROM security_logs
                WHERE user_id = %s AND action = %s AND created_at >= %s
                """,
                (user_id, action, since),
            ).fetchone()
        return int(row["total"]) if row else 0

    def has_successful_event_from_ip(self, user_id: str, ip_address: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 AS seen FROM security_logs
                WHERE user_id = %s AND ip_address = %s AND success = true
                LIMIT 1
                """,
                (user_id, ip_address),
            ).fetchone()
        return row is not None

    # roles
    def create_role(
        self,
        name: str,
        permissions: List[str],
        *,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> Role:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_roles (id, name, description, permissions, is_active)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (str(uuid.uuid4()), name, description, json.dumps(list(permissions)), is_active),
            ).fetchone()
        return self._row_to_role(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM user_roles WHERE id = %s", (role_id,)).fetchone()
        return self._row_to_role(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM user_roles WHERE name = %s", (name,)).fetchone()
        return self._row_to_role(row) if row else None

    def assign_role(
        self,
        user_id: str,
        role_id: str,
        *,
        assigned_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> RoleAssignment:
        with self._connect() as conn:
            # serialize concurrent assignments for the same user
            owner = conn.execute(
                "SELECT id FROM users WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not owner:
                raise ConstraintViolation("assignment user missing", {"user_id": user_id})
            row = conn.execute(
                """
                INSERT INTO user_role_assignments (id, user_id, role_id, assigned_by, expires_at)
                SELECT %s, %s, %s, %s, %s
                WHERE NOT EXISTS (
                    SELECT 1 FROM user_role_assignments
                    WHERE user_id = %s AND role_id = %s
                      AND (expires_at IS NULL OR expires_at > now())
                )
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    user_id,
                    role_id,
                    assigned_by,
                    expires_at,
                    user_id,
                    role_id,
                ),
            ).fetchone()
        if not row:
            raise ConstraintViolation(
                "role already assigned", {"user_id": user_id, "role_id": role_id}
            )
        return self._row_to_assignment(row)

    def list_active_roles(self, user_id: str) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT ON (r.id) r.*
                FROM user_role_assignments a
                JOIN user_roles r ON r.id = a.role_id
                WHERE a.user_id = %s
                  AND r.is_active = true
                  AND (a.expires_at IS NULL OR a.expires_at > now())
                ORDER BY r.id, a.assigned_at
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_role(row) for row in rows]

    # verification tokens
    def create_verification_token(
        self,
        user_id: str,
        token: str,
        token_type: VerificationType,
        expires_at: datetime,
    ) -> VerificationToken:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO verification_tokens (user_id, token, type, expires_at)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (user_id, token, token_type.value, expires_at),
            ).fetchone()
        return self._row_to_token(row)

    def consume_verification_token(
        self, token: str, token_type: VerificationType
    ) -> Optional[VerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE verification_tokens
                SET used = true, used_at = now()
                WHERE token = %s AND type = %s AND used = false AND expires_at > now()
                RETURNING *
                """,
                (token, token_type.value),
            ).fetchone()
        return self._row_to_token(row) if row else None


def _constraint_name(exc: psycopg.Error) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    return getattr(diag, "constraint_name", None) if diag else None
