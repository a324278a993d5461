from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from shopauth.logging import get_logger
from shopauth.storage.errors import ConstraintViolation
from shopauth.storage.models import SecurityEvent, Session, User, utcnow

# Columns an update may touch; identity and creation time are immutable
_MUTABLE_USER_FIELDS = frozenset(
    {
        "first_name",
        "last_name",
        "avatar",
        "role",
        "is_active",
        "is_locked",
        "last_password_change",
    }
)


class MemoryStore:
    """In-process store for users, sessions and security events.

    Every mutation happens under a single re-entrant lock and is followed by a
    JSON snapshot to ``{fs_root}/state/auth_store.json``, so a change is on disk
    before the call returns. Reads hand out copies; callers never observe a
    record halfway through an update.
    """

    def __init__(self, fs_root: str = "/tmp/shopauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.security_events: List[SecurityEvent] = []
        # RLock so bulk operations can call single-record helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    def verify_connection(self) -> None:
        probe = self.fs_root / ".health_check"
        probe.write_text(utcnow().isoformat())
        probe.unlink(missing_ok=True)

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def create_user(
        self,
        email: str,
        username: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar: Optional[str] = None,
        role: str = "USER",
        is_active: bool = True,
        is_locked: bool = False,
        now: Optional[datetime] = None,
    ) -> User:
        with self._data_lock:
            if self._find_user(email=email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if self._find_user(username=username):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User.new(
                email,
                username,
                first_name=first_name,
                last_name=last_name,
                avatar=avatar,
                role=role,
                is_active=is_active,
                is_locked=is_locked,
                now=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def _find_user(
        self, *, email: Optional[str] = None, username: Optional[str] = None
    ) -> Optional[User]:
        if email is not None:
            needle = email.lower()
            return next((u for u in self.users.values() if u.email.lower() == needle), None)
        if username is not None:
            needle = username.lower()
            return next(
                (u for u in self.users.values() if u.username.lower() == needle), None
            )
        return None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user(email=email)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user(username=username)
            return replace(user) if user else None

    def email_exists(self, email: str) -> bool:
        with self._data_lock:
            return self._find_user(email=email) is not None

    def username_exists(self, username: str) -> bool:
        with self._data_lock:
            return self._find_user(username=username) is not None

    def update_user(self, user_id: str, **changes) -> Optional[User]:
        unknown = set(changes) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {', '.join(sorted(unknown))}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, **changes)
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = password_hash
            self._persist_state()

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.refresh_token in self.sessions:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "refresh_token"}
                )
            stored = replace(session)
            self.sessions[stored.refresh_token] = stored
            self._persist_state()
            return replace(stored)

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(refresh_token)
            return replace(sess) if sess else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [replace(s) for s in self.sessions.values() if s.user_id == user_id]

    def update_session_access_token(
        self, refresh_token: str, access_token: str, at: datetime
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(refresh_token)
            # A session logged out mid-refresh keeps its last token
            if not sess or not sess.active:
                return False
            self.sessions[refresh_token] = replace(
                sess, access_token=access_token, last_activity_at=at
            )
            self._persist_state()
            return True

    def invalidate_session(self, refresh_token: str, at: datetime) -> bool:
        """Deactivate one session; True only when this call ended it."""
        with self._data_lock:
            sess = self.sessions.get(refresh_token)
            if not sess or not sess.active:
                return False
            self.sessions[refresh_token] = replace(
                sess, active=False, logged_out_at=sess.logged_out_at or at
            )
            self._persist_state()
            return True

    def invalidate_user_sessions(self, user_id: str, at: datetime) -> int:
        with self._data_lock:
            stale = [
                token
                for token, sess in self.sessions.items()
                if sess.user_id == user_id and sess.active
            ]
            for token in stale:
                self.sessions[token] = replace(
                    self.sessions[token], active=False, logged_out_at=at
                )
            if stale:
                self._persist_state()
            return len(stale)

    def invalidate_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                token
                for token, sess in self.sessions.items()
                if sess.active and sess.is_expired(now)
            ]
            for token in expired:
                self.sessions[token] = replace(self.sessions[token], active=False)
            if expired:
                self._persist_state()
            return len(expired)

    # security events
    def append_security_event(self, event: SecurityEvent) -> None:
        with self._data_lock:
            self.security_events.append(replace(event))
            self._persist_state()

    def list_security_events(
        self, subject: Optional[str] = None, limit: int = 100
    ) -> List[SecurityEvent]:
        with self._data_lock:
            matches = [
                e
                for e in self.security_events
                if subject is None or e.subject.lower() == subject.lower()
            ]
            return [replace(e) for e in matches[-limit:]]

    def count_security_events(self) -> int:
        with self._data_lock:
            return len(self.security_events)

    def delete_security_events_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            kept = [e for e in self.security_events if e.created_at >= cutoff]
            removed = len(self.security_events) - len(kept)
            if removed:
                self.security_events = kept
                self._persist_state()
            return removed

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": pwd_hash}
                for user_id, pwd_hash in self.credentials.items()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "security_events": [
                self._serialize_security_event(e) for e in self.security_events
            ],
        }
        path = self._state_path()
        try:
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: entry["password_hash"]
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["refresh_token"]: self._deserialize_session(s)
            for s in data.get("sessions", [])
        }
        self.security_events = [
            self._deserialize_security_event(e) for e in data.get("security_events", [])
        ]
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "avatar": user.avatar,
            "role": user.role,
            "is_active": user.is_active,
            "is_locked": user.is_locked,
            "last_password_change": self._serialize_datetime(user.last_password_change),
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            username=data["username"],
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            avatar=data.get("avatar"),
            role=data.get("role", "USER"),
            is_active=data.get("is_active", True),
            is_locked=data.get("is_locked", False),
            last_password_change=self._deserialize_datetime(data.get("last_password_change")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "refresh_token": session.refresh_token,
            "user_id": session.user_id,
            "access_token": session.access_token,
            "token_type": session.token_type,
            "active": session.active,
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
            "logged_out_at": self._serialize_datetime(session.logged_out_at),
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "device_name": session.device_name,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            refresh_token=data["refresh_token"],
            user_id=data["user_id"],
            access_token=data.get("access_token"),
            token_type=data.get("token_type", "Bearer"),
            active=data.get("active", False),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_activity_at=self._deserialize_datetime(data.get("last_activity_at")),
            logged_out_at=self._deserialize_datetime(data.get("logged_out_at")),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            device_name=data.get("device_name"),
        )

    def _serialize_security_event(self, event: SecurityEvent) -> dict:
        return {
            "id": event.id,
            "subject": event.subject,
            "kind": event.kind,
            "reason": event.reason,
            "ip_address": event.ip_address,
            "created_at": self._serialize_datetime(event.created_at),
        }

    def _deserialize_security_event(self, data: dict) -> SecurityEvent:
        return SecurityEvent(
            id=data["id"],
            subject=data["subject"],
            kind=data["kind"],
            reason=data.get("reason"),
            ip_address=data.get("ip_address"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
