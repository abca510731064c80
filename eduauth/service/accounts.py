from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from eduauth.logging import get_logger
from eduauth.service.errors import ForbiddenError
from eduauth.storage.models import User, utcnow
from eduauth.storage.redis_cache import CACHE_ERRORS

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(str(value))


def public_user(user: User) -> Dict[str, Any]:
    """Account fields safe to return to the account holder."""
    return {
        "id": user.id,
        "email": user.email,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "fullName": user.full_name,
        "role": user.role,
        "isVerified": user.is_verified,
        "isActive": user.is_active,
        "profileImage": user.profile_image,
        "lastLogin": _iso(user.last_login),
        "createdAt": _iso(user.created_at),
    }


def user_to_cache(user: User) -> Dict[str, Any]:
    payload = public_user(user)
    payload.update(
        {
            "isBanned": user.is_banned,
            "bannedAt": _iso(user.banned_at),
            "banReason": user.ban_reason,
            "profileImageId": user.profile_image_id,
            "updatedAt": _iso(user.updated_at),
        }
    )
    return payload


def user_from_cache(payload: Dict[str, Any]) -> Optional[User]:
    try:
        return User(
            id=payload["id"],
            email=payload["email"],
            first_name=payload.get("firstName", ""),
            last_name=payload.get("lastName", ""),
            role=payload.get("role", "STUDENT"),
            is_verified=bool(payload.get("isVerified")),
            is_active=bool(payload.get("isActive", True)),
            is_banned=bool(payload.get("isBanned")),
            banned_at=_parse(payload.get("bannedAt")),
            ban_reason=payload.get("banReason"),
            last_login=_parse(payload.get("lastLogin")),
            profile_image=payload.get("profileImage"),
            profile_image_id=payload.get("profileImageId"),
            created_at=_parse(payload.get("createdAt")) or utcnow(),
            updated_at=_parse(payload.get("updatedAt")) or utcnow(),
        )
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("user_cache_decode_failed", error=str(exc))
        return None


def ensure_account_usable(user: User, *, require_verified: bool = True) -> None:
    """Status gate in fixed order: unverified, deactivated, banned."""
    if require_verified and not user.is_verified:
        raise ForbiddenError(
            "Please verify your email before logging in",
            error_code="EMAIL_NOT_VERIFIED",
            detail={"needsVerification": True, "email": user.email},
        )
    if not user.is_active:
        raise ForbiddenError(
            "Your account has been deactivated. Please contact support.",
            error_code="ACCOUNT_DEACTIVATED",
        )
    if user.is_banned:
        raise ForbiddenError(
            "Your account has been banned",
            error_code="ACCOUNT_BANNED",
            detail={"banReason": user.ban_reason, "bannedAt": _iso(user.banned_at)},
        )


class AccountDirectory:
    """Cache-aside account lookups over the durable store.

    The cache holds a read replica under ``user:{email}`` and ``user:{id}``.
    Misses are served from the store and the replica is re-warmed in the
    background; any mutation must call :meth:`invalidate`.
    """

    def __init__(self, store, cache, settings, background) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.background = background

    async def _cached(self, key: str) -> Optional[User]:
        if self.cache is None:
            return None
        try:
            payload = await self.cache.get_user(key)
        except CACHE_ERRORS as exc:
            logger.warning("user_cache_read_failed", error=str(exc))
            return None
        return user_from_cache(payload) if payload else None

    async def warm(self, user: User) -> None:
        if self.cache is None:
            return
        await self.cache.cache_user(user_to_cache(user), self.settings.user_cache_ttl_seconds)

    def _warm_later(self, user: User) -> None:
        self.background.spawn(self.warm(user), event="user_cache_warm")

    async def by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        cached = await self._cached(email)
        if cached:
            return cached
        user = self.store.get_user_by_email(email)
        if user:
            self._warm_later(user)
        return user

    async def fresh(self, user_id: str) -> Optional[User]:
        """Durable read for decisions that must not trust a replica."""
        return self.store.get_user(user_id)

    async def invalidate(self, user_id: str, *emails: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.clear_user(user_id, *[normalize_email(e) for e in emails if e])
        except CACHE_ERRORS as exc:
            logger.warning("user_cache_invalidate_failed", user_id=user_id, error=str(exc))
