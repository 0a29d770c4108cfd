from __future__ import annotations

import base64
import dataclasses
import hashlib
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from bmsauth.logging import get_logger
from bmsauth.storage.errors import ConstraintViolation, DuplicateIdentifier
from bmsauth.storage.models import (
    Principal,
    SessionRecord,
    normalize_identifier,
)

# Demo accounts for local runs of the bookstore backend.
DEMO_USERS = (
    ("owner@bms.com", "Owner123!", "store_owner"),
    ("clerk@bms.com", "Clerk123!", "sales_clerk"),
    ("admin@bms.com", "Admin123!", "system_admin"),
)


class MemoryStore:
    """In-memory credential store with an optional JSON snapshot on disk."""

    def __init__(
        self,
        state_path: str | Path | None = None,
        *,
        mfa_encryption_key: str,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, Principal] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        # RLock so setters can call lookup helpers while holding the lock
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        if self.state_path is not None:
            self._load_state()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str) -> Fernet:
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        try:
            return Fernet(self._derive_cipher_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def _encrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            # A secret we cannot decrypt is unusable; treat it as absent.
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    def _export(self, principal: Principal) -> Principal:
        return dataclasses.replace(
            principal, mfa_secret=self._decrypt_mfa_secret(principal.mfa_secret)
        )

    def _require_user(self, user_id: str) -> Principal:
        user = self.users.get(user_id)
        if user is None:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return user

    # principals
    def find_by_identifier(self, identifier: str) -> Optional[Principal]:
        key = normalize_identifier(identifier)
        if not key:
            return None
        with self._data_lock:
            user = next((u for u in self.users.values() if u.identifier == key), None)
            return self._export(user) if user else None

    def find_by_id(self, user_id: str) -> Optional[Principal]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._export(user) if user else None

    def create(self, identifier: str, password_hash: str, role: str) -> Principal:
        key = normalize_identifier(identifier)
        if not key:
            raise ConstraintViolation("identifier is required", {"field": "identifier"})
        with self._data_lock:
            if any(existing.identifier == key for existing in self.users.values()):
                raise DuplicateIdentifier(
                    "identifier already exists", {"field": "identifier"}
                )
            user = Principal.new(key, password_hash, role)
            self.users[user.id] = user
            self._persist_state()
            return self._export(user)

    def set_mfa_secret(self, user_id: str, secret: Optional[str]) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.mfa_secret = self._encrypt_mfa_secret(secret)
            self._persist_state()

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.mfa_enabled = bool(enabled)
            self._persist_state()

    def set_pending_code(
        self,
        user_id: str,
        code: Optional[str],
        expires_at: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.pending_code = code
            user.pending_code_expires_at = expires_at if code else None
            self._persist_state()

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.password_hash = password_hash
            self._persist_state()

    def update_role(self, user_id: str, role: str) -> Optional[Principal]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return self._export(user)

    def list_principals(self) -> List[Principal]:
        with self._data_lock:
            return [
                self._export(u)
                for u in sorted(self.users.values(), key=lambda u: u.created_at)
            ]

    def seed_demo_users(self, hash_password: Callable[[str], str]) -> int:
        """Create the demo accounts that are missing; returns how many were added."""
        created = 0
        for identifier, password, role in DEMO_USERS:
            if self.find_by_identifier(identifier):
                continue
            self.create(identifier, hash_password(password), role)
            created += 1
        if created:
            self.logger.info("demo_users_seeded", count=created)
        return created

    # sessions
    def create_session(self, record: SessionRecord) -> SessionRecord:
        with self._data_lock:
            self._require_user(record.user_id)
            self.sessions[record.id] = record
            self._persist_state()
            return dataclasses.replace(record)

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            record = self.sessions.get(session_id)
            return dataclasses.replace(record) if record else None

    def delete_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None) is not None:
                self._persist_state()

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def count_sessions(self) -> int:
        with self._data_lock:
            return len(self.sessions)

    # persistence
    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.state_path.with_suffix(self.state_path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(self.state_path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist credential store: {exc}") from exc

    def _load_state(self) -> bool:
        assert self.state_path is not None
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "credential_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: Principal) -> dict:
        # mfa_secret is already encrypted in memory
        return {
            "id": user.id,
            "identifier": user.identifier,
            "password_hash": user.password_hash,
            "role": user.role,
            "mfa_enabled": user.mfa_enabled,
            "mfa_secret": user.mfa_secret,
            "pending_code": user.pending_code,
            "pending_code_expires_at": self._serialize_datetime(
                user.pending_code_expires_at
            ),
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> Principal:
        return Principal(
            id=str(data["id"]),
            identifier=data["identifier"],
            password_hash=data.get("password_hash", ""),
            role=data.get("role", "customer"),
            mfa_enabled=bool(data.get("mfa_enabled", False)),
            mfa_secret=data.get("mfa_secret"),
            pending_code=data.get("pending_code"),
            pending_code_expires_at=self._deserialize_datetime(
                data.get("pending_code_expires_at")
            ),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: SessionRecord) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "identifier": session.identifier,
            "role": session.role,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "mfa_verified": session.mfa_verified,
        }

    def _deserialize_session(self, data: dict) -> SessionRecord:
        return SessionRecord(
            id=data["id"],
            user_id=data["user_id"],
            identifier=data["identifier"],
            role=data["role"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            mfa_verified=data.get("mfa_verified", True),
        )
