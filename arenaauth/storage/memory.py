from __future__ import annotations

import copy
import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet

from arenaauth.logging import get_logger
from arenaauth.storage.common import (
    PROFILE_FIELDS,
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
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


class MemoryStore:
    """In-process auth store guarded by a single re-entrant lock.

    Every public method runs under ``_data_lock`` so read-modify-write
    primitives (counter increments, token consumption, conditional locks)
    are atomic with respect to each other. When ``fs_root`` is given the
    whole state is written to ``<fs_root>/state/auth_store.json`` after each
    mutation and reloaded on start.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        secret_encryption_key: str,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.session_tokens: Dict[str, str] = {}
        self.security_logs: List[SecurityLogEntry] = []
        self.verification_tokens: Dict[str, VerificationToken] = {}
        self.roles: Dict[str, Role] = {}
        self.role_assignments: Dict[str, RoleAssignment] = {}
        self._log_id_seq: int = 1
        self._token_id_seq: int = 1
        # RLock so helpers can be called from within locked sections
        self._data_lock = threading.RLock()
        self._cipher: Fernet = build_secret_cipher(secret_encryption_key)
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info(
                    "memory_store_state_loaded",
                    users=len(self.users),
                    sessions=len(self.sessions),
                    security_logs=len(self.security_logs),
                )

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime | None) -> str | None:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: str | None) -> datetime | None:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def _public_user(self, user: User) -> User:
        return replace(
            user,
            two_factor_secret=decrypt_secret(self._cipher, user.two_factor_secret),
            meta=dict(user.meta) if user.meta is not None else None,
        )

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
        with self._data_lock:
            if email and any(
                existing.email == email and existing.id != user_id
                for existing in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = self.users.get(user_id)
            if user is None:
                user = User(id=user_id)
                self.users[user_id] = user
            for name, value in (
                ("email", email),
                ("first_name", first_name),
                ("last_name", last_name),
                ("profile_image_url", profile_image_url),
                ("email_verified", email_verified),
            ):
                if value is not None:
                    setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return self._public_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._public_user(user) if user else None

    def update_user_profile(self, user_id: str, updates: Dict[str, Any]) -> Optional[User]:
        unknown = set(updates) - PROFILE_FIELDS
        if unknown:
            raise ValueError(f"not a profile field: {', '.join(sorted(unknown))}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            email = updates.get("email")
            if email and any(
                existing.email == email and existing.id != user_id
                for existing in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            for name, value in updates.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return self._public_user(user)

    def increment_failed_logins(self, user_id: str) -> Optional[int]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            now = utcnow()
            user.failed_login_attempts += 1
            user.last_failed_login_at = now
            user.updated_at = now
            self._persist_state()
            return user.failed_login_attempts

    def record_successful_login(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            now = utcnow()
            user.failed_login_attempts = 0
            user.last_login_at = now
            user.login_count += 1
            user.updated_at = now
            self._persist_state()
            return self._public_user(user)

    def lock_user(self, user_id: str, reason: str) -> Optional[bool]:
        """Lock only if currently unlocked; returns whether the state changed."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.account_locked:
                return False
            user.account_locked = True
            user.lock_reason = reason
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def unlock_user(self, user_id: str) -> Optional[bool]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            was_locked = user.account_locked
            user.account_locked = False
            user.lock_reason = None
            user.failed_login_attempts = 0
            user.updated_at = utcnow()
            self._persist_state()
            return was_locked

    def set_two_factor(
        self, user_id: str, *, enabled: bool, secret: Optional[str]
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.two_factor_enabled = enabled
            user.two_factor_secret = encrypt_secret(self._cipher, secret)
            user.updated_at = utcnow()
            self._persist_state()
            return self._public_user(user)

    def mark_verified(self, user_id: str, channel: VerificationType) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if channel == VerificationType.EMAIL_VERIFICATION:
                user.email_verified = True
            elif channel == VerificationType.PHONE_VERIFICATION:
                user.phone_verified = True
            user.updated_at = utcnow()
            self._persist_state()
            return self._public_user(user)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "session user missing", {"user_id": session.user_id}
                )
            if session.session_token in self.session_tokens:
                raise ConstraintViolation("session token collision", {})
            stored = replace(session, device_info=dict(session.device_info))
            self.sessions[stored.id] = stored
            self.session_tokens[stored.session_token] = stored.id
            self._persist_state()
            return replace(stored)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_token(self, session_token: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self.session_tokens.get(session_token)
            sess = self.sessions.get(session_id) if session_id else None
            return replace(sess) if sess else None

    def touch_active_session(self, session_token: str) -> Optional[Session]:
        """Return the session and bump last_accessed_at only if it is still valid."""
        with self._data_lock:
            session_id = self.session_tokens.get(session_token)
            sess = self.sessions.get(session_id) if session_id else None
            now = utcnow()
            if not sess or not sess.is_valid(now):
                return None
            sess.last_accessed_at = now
            self._persist_state()
            return replace(sess)

    def deactivate_session(
        self, session_id: str, *, user_id: Optional[str] = None
    ) -> bool:
        """Soft-revoke a session; returns True if it was active before the call."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or (user_id is not None and sess.user_id != user_id):
                return False
            was_active = sess.is_active
            sess.is_active = False
            if was_active:
                self._persist_state()
            return was_active

    def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            revoked = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or sess.id == except_session_id:
                    continue
                if sess.is_active:
                    sess.is_active = False
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def list_active_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            now = utcnow()
            active = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_valid(now)
            ]
        return sorted(active, key=lambda s: s.last_accessed_at, reverse=True)

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
        with self._data_lock:
            entry = SecurityLogEntry(
                id=self._log_id_seq,
                action=action,
                created_at=utcnow(),
                user_id=user_id,
                details=dict(details or {}),
                ip_address=ip_address,
                user_agent=user_agent,
                success=success,
                risk_score=risk_score,
                location=location,
            )
            self._log_id_seq += 1
            self.security_logs.append(entry)
            self._persist_state()
            return replace(entry, details=copy.deepcopy(entry.details))

    def list_security_logs(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[SecurityLogEntry]:
        with self._data_lock:
            entries = [
                replace(e, details=copy.deepcopy(e.details))
                for e in self.security_logs
                if user_id is None or e.user_id == user_id
            ]
        entries.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return entries[:limit]

    def count_security_events(self, user_id: str, action: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for e in self.security_logs
                if e.user_id == user_id and e.action == action and e.created_at >= since
            )

    def has_successful_event_from_ip(self, user_id: str, ip_address: str) -> bool:
        with self._data_lock:
            return any(
                e.user_id == user_id and e.ip_address == ip_address and e.success
                for e in self.security_logs
            )

    # roles
    def create_role(
        self,
        name: str,
        permissions: List[str],
        *,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> Role:
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            role = Role(
                id=str(uuid.uuid4()),
                name=name,
                permissions=list(permissions),
                description=description,
                is_active=is_active,
            )
            self.roles[role.id] = role
            self._persist_state()
            return replace(role, permissions=list(role.permissions))

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role, permissions=list(role.permissions)) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == name), None)
            return replace(role, permissions=list(role.permissions)) if role else None

    def assign_role(
        self,
        user_id: str,
        role_id: str,
        *,
        assigned_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> RoleAssignment:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("assignment user missing", {"user_id": user_id})
            if role_id not in self.roles:
                raise ConstraintViolation("assignment role missing", {"role_id": role_id})
            now = utcnow()
            if any(
                a.user_id == user_id and a.role_id == role_id and a.is_current(now)
                for a in self.role_assignments.values()
            ):
                raise ConstraintViolation(
                    "role already assigned", {"user_id": user_id, "role_id": role_id}
                )
            assignment = RoleAssignment(
                id=str(uuid.uuid4()),
                user_id=user_id,
                role_id=role_id,
                assigned_by=assigned_by,
                assigned_at=now,
                expires_at=expires_at,
            )
            self.role_assignments[assignment.id] = assignment
            self._persist_state()
            return replace(assignment)

    def list_active_roles(self, user_id: str) -> List[Role]:
        with self._data_lock:
            now = utcnow()
            seen: set[str] = set()
            roles: List[Role] = []
            assignments = sorted(
                (a for a in self.role_assignments.values() if a.user_id == user_id),
                key=lambda a: a.assigned_at,
            )
            for assignment in assignments:
                role = self.roles.get(assignment.role_id)
                if not role or not role.is_active or not assignment.is_current(now):
                    continue
                if role.id in seen:
                    continue
                seen.add(role.id)
                roles.append(replace(role, permissions=list(role.permissions)))
            return roles

    # verification tokens
    def create_verification_token(
        self,
        user_id: str,
        token: str,
        token_type: VerificationType,
        expires_at: datetime,
    ) -> VerificationToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("token user missing", {"user_id": user_id})
            if token in self.verification_tokens:
                raise ConstraintViolation("verification token collision", {})
            record = VerificationToken(
                id=self._token_id_seq,
                user_id=user_id,
                token=token,
                type=token_type,
                expires_at=expires_at,
            )
            self._token_id_seq += 1
            self.verification_tokens[token] = record
            self._persist_state()
            return replace(record)

    def consume_verification_token(
        self, token: str, token_type: VerificationType
    ) -> Optional[VerificationToken]:
        """Mark the token used if it is unused, unexpired and of the given type."""
        with self._data_lock:
            record = self.verification_tokens.get(token)
            now = utcnow()
            if not record or record.type != token_type or not record.is_consumable(now):
                return None
            record.used = True
            record.used_at = now
            self._persist_state()
            return replace(record)

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "security_logs": [
                self._serialize_security_log(e) for e in self.security_logs
            ],
            "verification_tokens": [
                self._serialize_verification_token(t)
                for t in self.verification_tokens.values()
            ],
            "roles": [self._serialize_role(r) for r in self.roles.values()],
            "role_assignments": [
                self._serialize_role_assignment(a)
                for a in self.role_assignments.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise StoreError("failed to persist in-memory state", {"path": str(path)}) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreError("failed to load in-memory state", {"path": str(path)}) from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.session_tokens = {s.session_token: s.id for s in self.sessions.values()}
        self.security_logs = [
            self._deserialize_security_log(e) for e in data.get("security_logs", [])
        ]
        self._log_id_seq = max((e.id for e in self.security_logs), default=0) + 1
        self.verification_tokens = {}
        for raw in data.get("verification_tokens", []):
            record = self._deserialize_verification_token(raw)
            self.verification_tokens[record.token] = record
        self._token_id_seq = (
            max((t.id for t in self.verification_tokens.values()), default=0) + 1
        )
        self.roles = {r["id"]: self._deserialize_role(r) for r in data.get("roles", [])}
        self.role_assignments = {
            a["id"]: self._deserialize_role_assignment(a)
            for a in data.get("role_assignments", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "profile_image_url": user.profile_image_url,
            "role": user.role,
            "is_active": user.is_active,
            "email_verified": user.email_verified,
            "phone_number": user.phone_number,
            "phone_verified": user.phone_verified,
            "two_factor_enabled": user.two_factor_enabled,
            # already encrypted in memory
            "two_factor_secret": user.two_factor_secret,
            "account_locked": user.account_locked,
            "lock_reason": user.lock_reason,
            "failed_login_attempts": user.failed_login_attempts,
            "last_failed_login_at": self._serialize_datetime(user.last_failed_login_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "login_count": user.login_count,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data.get("email"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            profile_image_url=data.get("profile_image_url"),
            role=data.get("role", "user"),
            is_active=data.get("is_active", True),
            email_verified=data.get("email_verified", False),
            phone_number=data.get("phone_number"),
            phone_verified=data.get("phone_verified", False),
            two_factor_enabled=data.get("two_factor_enabled", False),
            two_factor_secret=data.get("two_factor_secret"),
            account_locked=data.get("account_locked", False),
            lock_reason=data.get("lock_reason"),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            last_failed_login_at=self._deserialize_datetime(data.get("last_failed_login_at")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            login_count=int(data.get("login_count", 0)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
            meta=data.get("meta"),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "session_token": session.session_token,
            "device_info": session.device_info,
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "created_at": self._serialize_datetime(session.created_at),
            "last_accessed_at": self._serialize_datetime(session.last_accessed_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "is_active": session.is_active,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            session_token=data["session_token"],
            device_info=data.get("device_info") or {},
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_accessed_at=self._deserialize_datetime(data["last_accessed_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_active=data.get("is_active", True),
        )

    def _serialize_security_log(self, entry: SecurityLogEntry) -> dict:
        return {
            "id": entry.id,
            "user_id": entry.user_id,
            "action": entry.action,
            "details": entry.details,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "success": entry.success,
            "risk_score": entry.risk_score,
            "location": entry.location,
            "created_at": self._serialize_datetime(entry.created_at),
        }

    def _deserialize_security_log(self, data: dict) -> SecurityLogEntry:
        return SecurityLogEntry(
            id=int(data["id"]),
            action=data["action"],
            created_at=self._deserialize_datetime(data["created_at"]),
            user_id=data.get("user_id"),
            details=data.get("details") or {},
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            success=data.get("success", True),
            risk_score=int(data.get("risk_score", 0)),
            location=data.get("location"),
        )

    def _serialize_verification_token(self, record: VerificationToken) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token": record.token,
            "type": record.type.value,
            "expires_at": self._serialize_datetime(record.expires_at),
            "used": record.used,
            "used_at": self._serialize_datetime(record.used_at),
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_verification_token(self, data: dict) -> VerificationToken:
        return VerificationToken(
            id=int(data["id"]),
            user_id=data["user_id"],
            token=data["token"],
            type=VerificationType(data["type"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used=data.get("used", False),
            used_at=self._deserialize_datetime(data.get("used_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_role(self, role: Role) -> dict:
        return {
            "id": role.id,
            "name": role.name,
            "permissions": role.permissions,
            "description": role.description,
            "is_active": role.is_active,
            "created_at": self._serialize_datetime(role.created_at),
        }

    def _deserialize_role(self, data: dict) -> Role:
        return Role(
            id=data["id"],
            name=data["name"],
            permissions=list(data.get("permissions") or []),
            description=data.get("description"),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_role_assignment(self, assignment: RoleAssignment) -> dict:
        return {
            "id": assignment.id,
            "user_id": assignment.user_id,
            "role_id": assignment.role_id,
            "assigned_by": assignment.assigned_by,
            "assigned_at": self._serialize_datetime(assignment.assigned_at),
            "expires_at": self._serialize_datetime(assignment.expires_at),
        }

    def _deserialize_role_assignment(self, data: dict) -> RoleAssignment:
        return RoleAssignment(
            id=data["id"],
            user_id=data["user_id"],
            role_id=data["role_id"],
            assigned_by=data.get("assigned_by"),
            assigned_at=self._deserialize_datetime(data.get("assigned_at")) or utcnow(),
            expires_at=self._deserialize_datetime(data.get("expires_at")),
        )
