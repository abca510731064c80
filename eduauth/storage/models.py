from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    first_name: str
    last_name: str
    role: str = "STUDENT"
    is_verified: bool = False
    is_active: bool = True
    is_banned: bool = False
    banned_at: Optional[datetime] = None
    ban_reason: Optional[str] = None
    last_login: Optional[datetime] = None
    profile_image: Optional[str] = None
    profile_image_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class RoleProfile:
    """Role-specific profile row created alongside the account."""

    user_id: str
    role: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuthProviderLink:
    user_id: str
    provider: str
    provider_user_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    token: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    device_type: str = "unknown"
    operating_system: Optional[str] = None
    browser: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        ttl_seconds: int,
        *,
        device_type: str = "unknown",
        operating_system: str | None = None,
        browser: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            last_activity=now,
            device_type=device_type,
            operating_system=operating_system,
            browser=browser,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_live(self, now: datetime | None = None) -> bool:
        return self.is_active and self.expires_at > (now or utcnow())


@dataclass
class ReactivationRequest:
    id: str
    user_id: str
    reason: str
    status: str = "PENDING"
    additional_info: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    submitted_at: datetime = field(default_factory=utcnow)
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    admin_notes: Optional[str] = None


@dataclass
class AccountDeletion:
    id: str
    user_id: str
    original_email: str
    reason: str
    deleted_at: datetime
    recovery_expires_at: datetime
    ip_address: Optional[str] = None


@dataclass
class Notification:
    id: str
    user_id: str
    type: str
    title: str
    message: str
    priority: str = "NORMAL"
    data: Dict | None = None
    is_read: bool = False
    created_at: datetime = field(default_factory=utcnow)
