from __future__ import annotations

import secrets
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from shopauth.config import Settings
from shopauth.logging import get_logger, mask_email
from shopauth.service.blacklist import Blacklist
from shopauth.service.client_context import ClientContext
from shopauth.service.errors import (
    AccountLockedError,
    BadCredentialsError,
    DuplicateResourceError,
    InvalidTokenError,
    ResourceNotFoundError,
)
from shopauth.service.isolation import run_isolated
from shopauth.service.security_events import SecurityEventLog
from shopauth.service.tokens import TokenCodec, ms_floor
from shopauth.storage.errors import ConstraintViolation
from shopauth.storage.models import Session, User

logger = get_logger(__name__)

LOCKED_MESSAGE = "Account is locked. Please contact support."
ADMIN_ACTOR = "admin"


class UserDirectory(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def email_exists(self, email: str) -> bool: ...

    def username_exists(self, username: str) -> bool: ...

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str) -> None: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    def update_session_access_token(
        self, refresh_token: str, access_token: str, at: datetime
    ) -> bool: ...

    def invalidate_session(self, refresh_token: str, at: datetime) -> bool:
        """Return True only if the session was active before this call."""

    def invalidate_user_sessions(self, user_id: str, at: datetime) -> int: ...

    def invalidate_expired_sessions(self, now: datetime) -> int: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...


@dataclass(frozen=True)
class UserSummary:
    id: str
    email: str
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = "USER"

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
        )


@dataclass(frozen=True)
class AuthResult:
    """Everything a client receives after a successful authentication."""

    access_token: str
    refresh_token: str
    expires_in: int
    user: UserSummary
    token_type: str = "Bearer"
    provider: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AuthResult":
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_in=int(data["expires_in"]),
            user=UserSummary(**data["user"]),
            token_type=data.get("token_type", "Bearer"),
            provider=data.get("provider"),
        )


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    role: str
    email: Optional[str] = None
    issued_at: Optional[float] = None


class AuthService:
    """Registration, login, refresh, logout and account administration.

    Session rows are the source of truth: every revocation first deactivates
    sessions, then marks tokens in the blacklist. The blacklist and event log
    are injected so each runtime (and each test) owns its own instances.
    """

    def __init__(
        self,
        users: UserDirectory,
        sessions: SessionStore,
        codec: TokenCodec,
        blacklist: Blacklist,
        events: SecurityEventLog,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.codec = codec
        self.blacklist = blacklist
        self.events = events
        self.settings = settings
        self._clock = clock or time.time
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths pay for a hash
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _password_matches(self, stored_hash: Optional[str], password: str) -> bool:
        try:
            matched = self._pwd_hasher.verify(stored_hash or self._dummy_hash, password)
        except (InvalidHash, VerificationError):
            return False
        return matched and stored_hash is not None

    # registration and login
    def register(
        self,
        email: str,
        username: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        client: Optional[ClientContext] = None,
    ) -> AuthResult:
        client = client or ClientContext()
        self.logger.info("register_attempt", user=mask_email(email))
        if self.users.email_exists(email):
            raise DuplicateResourceError("Email already registered", detail={"field": "email"})
        if self.users.username_exists(username):
            raise DuplicateResourceError(
                "Username already taken", detail={"field": "username"}
            )
        password_hash = self._hash_password(password)
        try:
            user = self.users.create_user(
                email,
                username,
                first_name=first_name,
                last_name=last_name,
                role="USER",
                is_active=True,
                is_locked=False,
                now=self._now(),
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            if exc.field == "username":
                raise DuplicateResourceError(
                    "Username already taken", detail={"field": "username"}
                ) from exc
            raise DuplicateResourceError(
                "Email already registered", detail={"field": "email"}
            ) from exc
        self.users.save_password(user.id, password_hash)
        self.logger.info("user_registered", user_id=user.id)
        self.events.record_login_success(user.email, client.ip_address)
        return self._create_session(user, client)

    def login(
        self, email: str, password: str, *, client: Optional[ClientContext] = None
    ) -> AuthResult:
        client = client or ClientContext()
        self.logger.info("login_attempt", user=mask_email(email))
        user = self.users.get_user_by_email(email)
        stored_hash = self.users.get_password_hash(user.id) if user else None
        # Always pay for one verification, whether or not the email exists
        credentials_valid = self._password_matches(stored_hash, password)
        if not user or not credentials_valid:
            self.events.record_login_failure(email, "Invalid credentials", client.ip_address)
            raise BadCredentialsError("Invalid email or password")
        self._ensure_can_sign_in(user, client)
        self.events.record_login_success(user.email, client.ip_address)
        return self._create_session(user, client)

    def oauth2_login(
        self, user: User, provider: str, *, client: Optional[ClientContext] = None
    ) -> AuthResult:
        client = client or ClientContext()
        self._ensure_can_sign_in(user, client)
        self.events.record_oauth2_login(user.email, provider, client.ip_address)
        return self._create_session(user, client, provider=provider)

    def _ensure_can_sign_in(self, user: User, client: ClientContext) -> None:
        if not user.is_active:
            self.events.record_login_failure(user.email, "Account inactive", client.ip_address)
            raise BadCredentialsError("Account is inactive")
        if user.is_locked:
            self.events.record_login_failure(user.email, "Account locked", client.ip_address)
            raise AccountLockedError(LOCKED_MESSAGE)

    def _create_session(
        self, user: User, client: ClientContext, *, provider: Optional[str] = None
    ) -> AuthResult:
        refresh_token = secrets.token_urlsafe(48)
        issued = self.codec.mint(user)
        session = Session.new(
            user.id,
            refresh_token,
            issued.token,
            ttl_seconds=self.settings.refresh_token_ttl_seconds,
            now=self._now(),
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            device_name=client.device_name,
        )
        self.sessions.create_session(session)
        self.logger.info("session_created", user_id=user.id, device=client.device_name)
        return AuthResult(
            access_token=issued.token,
            refresh_token=refresh_token,
            expires_in=self.codec.ttl_seconds,
            user=UserSummary.from_user(user),
            provider=provider,
        )

    # token lifecycle
    def refresh_token(self, refresh_token: str) -> AuthResult:
        """Mint a new access token for a live session; the refresh token is reused."""
        session = self.sessions.get_session_by_refresh_token(refresh_token)
        if not session or not session.is_usable(self._now()):
            raise InvalidTokenError("Invalid or expired refresh token")
        user = self.users.get_user(session.user_id)
        if not user:
            raise InvalidTokenError("Invalid or expired refresh token")
        issued = self.codec.mint(user)
        if not self.sessions.update_session_access_token(
            refresh_token, issued.token, self._now()
        ):
            # Logged out between the read and the write
            raise InvalidTokenError("Invalid or expired refresh token")
        self.logger.info("access_token_refreshed", user_id=user.id)
        return AuthResult(
            access_token=issued.token,
            refresh_token=refresh_token,
            expires_in=self.codec.ttl_seconds,
            user=UserSummary.from_user(user),
        )

    def logout(self, refresh_token: str) -> None:
        """End the session behind ``refresh_token`` and revoke the user's tokens.

        Unknown tokens are ignored. Deactivating the session must succeed;
        blacklisting and marker updates afterwards are best effort. Only the
        call that actually ends the session revokes anything, so a replayed
        logout cannot sign the user out of a newer login.
        """
        session = self.sessions.get_session_by_refresh_token(refresh_token)
        if session is None:
            self.logger.info("logout_unknown_session")
            return
        if not self.sessions.invalidate_session(refresh_token, self._now()):
            self.logger.info("logout_session_already_ended", user_id=session.user_id)
            return
        user_id = session.user_id

        if session.access_token:
            access_token = session.access_token
            run_isolated(
                "logout_blacklist",
                lambda: self._blacklist_access_token(access_token, user_id, "User logout"),
                user_id=user_id,
            )
        run_isolated(
            "logout_revoke_user_tokens",
            lambda: self.blacklist.revoke_all_for_user(user_id),
            user_id=user_id,
        )
        self.logger.info("logout_completed", user_id=user_id)

    def _blacklist_access_token(self, access_token: str, user_id: str, reason: str) -> None:
        remaining = self.codec.remaining_ttl(access_token)
        if remaining > 0:
            self.blacklist.revoke(access_token, remaining)
        self.events.record_token_revoked(f"user_{user_id}", reason)

    def authenticate(self, access_token: str) -> AuthContext:
        """Validate a bearer token for a protected request."""
        claims = self.codec.verify(access_token)
        if self.blacklist.is_revoked(access_token):
            raise InvalidTokenError("Token has been revoked")
        user = self.users.get_user(claims.user_id)
        if not user:
            raise InvalidTokenError("User not found")
        if user.is_locked:
            raise AccountLockedError(LOCKED_MESSAGE)
        if not user.is_active:
            raise InvalidTokenError("Account is inactive")
        changed_at = user.last_password_change
        if changed_at and ms_floor(changed_at.timestamp()) > claims.issued_at:
            raise InvalidTokenError("Password has been changed. Please login again.")
        if self.blacklist.is_user_revoked(user.id, claims.issued_at):
            raise InvalidTokenError("Session invalidated. Please login again.")
        return AuthContext(
            user_id=user.id, role=user.role, email=user.email, issued_at=claims.issued_at
        )

    # account administration
    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        user = self.users.get_user(user_id)
        if not user:
            raise ResourceNotFoundError("User not found")
        if not self._password_matches(self.users.get_password_hash(user_id), current_password):
            raise BadCredentialsError("Current password is incorrect")
        now = self._now()
        self.users.save_password(user_id, self._hash_password(new_password))
        self.users.update_user(user_id, last_password_change=now)
        revoked = self.sessions.invalidate_user_sessions(user_id, now)
        self.blacklist.revoke_all_for_user(user_id)
        self.events.record_token_revoked(f"user_{user_id}", "Password changed")
        self.logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)

    def lock_account(self, user_id: str, reason: str) -> None:
        user = self.users.get_user(user_id)
        if not user:
            raise ResourceNotFoundError("User not found")
        self.users.update_user(user_id, is_locked=True)
        revoked = self.sessions.invalidate_user_sessions(user_id, self._now())
        self.blacklist.revoke_all_for_user(user_id)
        self.events.record_account_locked(user.email, ADMIN_ACTOR, reason)
        self.logger.info("account_locked", user_id=user_id, sessions_revoked=revoked)

    def unlock_account(self, user_id: str) -> None:
        user = self.users.get_user(user_id)
        if not user:
            raise ResourceNotFoundError("User not found")
        self.users.update_user(user_id, is_locked=False)
        self.events.record_account_unlocked(user.email, ADMIN_ACTOR)
        self.logger.info("account_unlocked", user_id=user_id)

    # maintenance
    def invalidate_expired_sessions(self) -> int:
        invalidated = self.sessions.invalidate_expired_sessions(self._now())
        self.logger.info("expired_sessions_invalidated", count=invalidated)
        return invalidated

    def cleanup_expired_sessions(self) -> Tuple[int, int]:
        """Deactivate expired sessions, then sweep the blacklist.

        Returns ``(sessions_invalidated, blacklist_removed)``.
        """
        invalidated = self.invalidate_expired_sessions()
        return invalidated, self.blacklist.sweep_expired()

    def get_user(self, user_id: str) -> User:
        user = self.users.get_user(user_id)
        if not user:
            raise ResourceNotFoundError("User not found")
        return user

    def create_external_user(
        self,
        email: str,
        username: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> User:
        """Create a user that signs in through a provider and has no usable password."""
        user = self.users.create_user(
            email,
            username,
            first_name=first_name,
            last_name=last_name,
            avatar=avatar,
            now=self._now(),
        )
        self.users.save_password(user.id, self._hash_password(secrets.token_urlsafe(32)))
        return user
