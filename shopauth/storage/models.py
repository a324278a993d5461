from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar: Optional[str] = None
    role: str = "USER"
    is_active: bool = True
    is_locked: bool = False
    last_password_change: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
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
    ) -> "User":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            username=username,
            first_name=first_name,
            last_name=last_name,
            avatar=avatar,
            role=role,
            is_active=is_active,
            is_locked=is_locked,
            last_password_change=created,
            created_at=created,
        )


@dataclass
class Session:
    """One login, keyed by its opaque refresh token."""

    refresh_token: str
    user_id: str
    access_token: Optional[str]
    expires_at: datetime
    created_at: datetime
    token_type: str = "Bearer"
    active: bool = True
    last_activity_at: Optional[datetime] = None
    logged_out_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_name: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        access_token: str,
        *,
        ttl_seconds: int,
        now: Optional[datetime] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_name: Optional[str] = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            refresh_token=refresh_token,
            user_id=user_id,
            access_token=access_token,
            expires_at=created + timedelta(seconds=ttl_seconds),
            created_at=created,
            last_activity_at=created,
            ip_address=ip_address,
            user_agent=user_agent,
            device_name=device_name,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_usable(self, now: datetime) -> bool:
        return self.active and not self.is_expired(now)


@dataclass
class SecurityEvent:
    subject: str
    kind: str
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
