from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from eduauth.config import Settings
from eduauth.logging import get_logger
from eduauth.service.tokens import TokenManager
from eduauth.storage.models import Session, User, utcnow
from eduauth.storage.redis_cache import CACHE_ERRORS

logger = get_logger(__name__)

# Rows carrying a one-time OAuth exchange code, not a login
EXCHANGE_CODE_DEVICE = "temp_auth_code"

_MOBILE = re.compile(r"iphone|android.+mobile|windows phone|mobile", re.I)
_TABLET = re.compile(r"ipad|tablet|android(?!.*mobile)", re.I)
_OS_PATTERNS = (
    ("Windows", re.compile(r"windows", re.I)),
    ("iOS", re.compile(r"iphone|ipad|ipod", re.I)),
    ("macOS", re.compile(r"mac os x|macintosh", re.I)),
    ("Android", re.compile(r"android", re.I)),
    ("Linux", re.compile(r"linux", re.I)),
)
_BROWSER_PATTERNS = (
    ("Edge", re.compile(r"edg/", re.I)),
    ("Opera", re.compile(r"opr/|opera", re.I)),
    ("Chrome", re.compile(r"chrome/|crios/", re.I)),
    ("Firefox", re.compile(r"firefox/|fxios/", re.I)),
    ("Safari", re.compile(r"safari/", re.I)),
)


def parse_user_agent(user_agent: Optional[str]) -> Tuple[str, Optional[str], Optional[str]]:
    """Classify a User-Agent into ``(device_type, operating_system, browser)``."""
    if not user_agent:
        return "unknown", None, None
    if _TABLET.search(user_agent):
        device = "tablet"
    elif _MOBILE.search(user_agent):
        device = "mobile"
    else:
        device = "desktop"
    operating_system = next((name for name, rx in _OS_PATTERNS if rx.search(user_agent)), None)
    browser = next((name for name, rx in _BROWSER_PATTERNS if rx.search(user_agent)), None)
    return device, operating_system, browser


def mask_token(token: str) -> str:
    return f"{token[:10]}..."


@dataclass
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuthContext:
    user: User
    session: Session
    token: str
    claims: Dict[str, Any]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class SessionRegistry:
    """Session lifecycle across the durable store and the cache.

    The durable ``auth_session`` row is ground truth and is consulted on every
    authentication. ``session:{token}`` mirrors it for listing and activity,
    and ``user_sessions:{userId}`` is the per-account token set. Revocation
    blacklists the token for its remaining lifetime and deactivates the row, so
    a stale mirror left behind by a cache outage never revives a session.
    """

    def __init__(self, store, cache, tokens: TokenManager, settings: Settings) -> None:
        self.store = store
        self.cache = cache
        self.tokens = tokens
        self.settings = settings

    # ----------------------------------------------------------- cache mirror

    @staticmethod
    def _cache_payload(session: Session) -> Dict[str, Any]:
        return {
            "userId": session.user_id,
            "sessionId": session.id,
            "createdAt": _iso(session.created_at),
            "expiresAt": _iso(session.expires_at),
            "deviceType": session.device_type,
            "ipAddress": session.ip_address,
            "lastActivity": _iso(session.last_activity),
        }

    async def _mirror(self, session: Session) -> bool:
        if self.cache is None:
            return False
        ttl = int((session.expires_at - utcnow()).total_seconds())
        if ttl <= 0:
            return False
        try:
            await self.cache.cache_session(
                session.token, session.user_id, self._cache_payload(session), ttl
            )
        except CACHE_ERRORS as exc:
            logger.warning("session_cache_write_failed", user_id=session.user_id, error=str(exc))
            return False
        return True

    # --------------------------------------------------------------- creation

    def _new_session(self, user: User, client: ClientInfo, ttl_seconds: int, device_type: Optional[str]) -> Session:
        parsed_device, operating_system, browser = parse_user_agent(client.user_agent)
        session = Session.new(
            user.id,
            token="",
            ttl_seconds=ttl_seconds,
            device_type=device_type or parsed_device,
            operating_system=operating_system,
            browser=browser,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        session.token, _ = self.tokens.issue(
            user_id=user.id,
            email=user.email,
            role=user.role,
            session_id=session.id,
            ttl_seconds=ttl_seconds,
        )
        return session

    async def _enforce_session_cap(self, user_id: str) -> int:
        live = [
            s
            for s in self.store.list_user_sessions(user_id)
            if s.is_live() and s.device_type != EXCHANGE_CODE_DEVICE
        ]
        overflow = len(live) - self.settings.max_sessions_per_user + 1
        if overflow <= 0:
            return 0
        oldest_first = sorted(live, key=lambda s: s.created_at)
        for session in oldest_first[:overflow]:
            await self.revoke(session.token, user_id=user_id)
        logger.info("session_cap_evicted", user_id=user_id, evicted=overflow)
        return overflow

    async def open(
        self,
        user: User,
        client: ClientInfo,
        *,
        device_type: Optional[str] = None,
        mark_verified: bool = False,
        ttl_seconds: Optional[int] = None,
    ) -> Tuple[User, Session]:
        """Mint a token and record it durably (with lastLogin) and in the cache."""
        await self._enforce_session_cap(user.id)
        session = self._new_session(
            user, client, ttl_seconds or self.settings.session_ttl_seconds, device_type
        )
        updated = self.store.record_login(user.id, session, mark_verified=mark_verified)
        await self._mirror(session)
        logger.info(
            "session_created",
            user_id=user.id,
            session_id=session.id,
            device_type=session.device_type,
        )
        return updated, session

    # ------------------------------------------------------------- validation

    async def _is_blacklisted(self, token: str) -> bool:
        if self.cache is None:
            return False
        try:
            return await self.cache.is_blacklisted(token)
        except CACHE_ERRORS as exc:
            logger.warning("blacklist_check_unavailable", error=str(exc))
            return False

    async def _live_session(self, token: str, claims: Dict[str, Any]) -> Optional[Session]:
        subject = claims.get("sub")
        cached = None
        cache_ok = self.cache is not None
        if cache_ok:
            try:
                cached = await self.cache.get_session(token)
            except CACHE_ERRORS as exc:
                logger.warning("session_cache_read_failed", error=str(exc))
                cache_ok = False
        if cached:
            expires_at = _parse_iso(cached.get("expiresAt"))
            if cached.get("userId") != subject or not expires_at or expires_at <= utcnow():
                return None
        # A mirror hit still needs an active durable row; revocations that
        # could not reach the cache only deactivated the row
        session = self.store.get_session_by_token(token)
        if (
            not session
            or not session.is_live()
            or session.user_id != subject
            or session.device_type == EXCHANGE_CODE_DEVICE
        ):
            if cached:
                logger.info("stale_session_mirror_dropped", user_id=subject)
                await self._drop_mirror(token, subject)
            return None
        if cached:
            session.last_activity = _parse_iso(cached.get("lastActivity")) or session.last_activity
        elif cache_ok:
            await self._mirror(session)
        return session

    async def authenticate(self, token: Optional[str]) -> Optional[AuthContext]:
        """Resolve a bearer token to a live session and an accessible account."""
        if not token:
            return None
        claims = self.tokens.decode(token)
        if not claims:
            return None
        if await self._is_blacklisted(token):
            logger.info("blacklisted_token_rejected", user_id=claims.get("sub"))
            return None
        session = await self._live_session(token, claims)
        if not session:
            return None
        user = self.store.get_user(session.user_id)
        if not user or not user.is_active or user.is_banned:
            return None
        return AuthContext(user=user, session=session, token=token, claims=claims)

    # ------------------------------------------------------------- revocation

    async def _blacklist(self, token: str) -> bool:
        if self.cache is None:
            return False
        claims = self.tokens.decode(token, verify_exp=False)
        if not claims:
            return False
        ttl = self.tokens.revocation_ttl(claims)
        if ttl <= 0:
            return False
        try:
            await self.cache.blacklist_token(token, ttl)
        except CACHE_ERRORS as exc:
            logger.error("token_blacklist_failed", user_id=claims.get("sub"), error=str(exc))
            return False
        return True

    async def _drop_mirror(self, token: str, user_id: Optional[str]) -> None:
        if self.cache is None:
            return
        try:
            if user_id:
                await self.cache.drop_session(token, user_id)
            else:
                await self.cache.delete(f"session:{token}")
        except CACHE_ERRORS as exc:
            logger.warning("session_cache_delete_failed", user_id=user_id, error=str(exc))

    async def revoke(self, token: str, *, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Blacklist a token, drop its cache mirror and registry entry, deactivate its row.

        Each step runs even when an earlier one fails.
        """
        if user_id is None:
            claims = self.tokens.decode(token, verify_exp=False)
            user_id = claims.get("sub") if claims else None
        blacklisted = await self._blacklist(token)
        await self._drop_mirror(token, user_id)
        try:
            terminated = self.store.deactivate_session(token)
        except Exception as exc:
            logger.error("session_deactivate_failed", user_id=user_id, error=str(exc))
            terminated = False
        return {"tokenBlacklisted": blacklisted, "sessionsTerminated": 1 if terminated else 0}

    async def invalidate_all(
        self, user_id: str, *, exclude_token: Optional[str] = None
    ) -> Dict[str, int]:
        """Log an account out everywhere, optionally keeping ``exclude_token``."""
        tokens: set[str] = set()
        if self.cache is not None:
            try:
                tokens = await self.cache.session_tokens(user_id)
            except CACHE_ERRORS as exc:
                logger.warning("session_registry_read_failed", user_id=user_id, error=str(exc))
        # Durable rows cover tokens the registry lost
        tokens.update(
            s.token
            for s in self.store.list_user_sessions(user_id)
            if s.device_type != EXCHANGE_CODE_DEVICE
        )
        tokens.discard(exclude_token)

        blacklisted = 0
        for token in tokens:
            if await self._blacklist(token):
                blacklisted += 1
            await self._drop_mirror(token, user_id)
        deactivated = self.store.deactivate_user_sessions(user_id, except_token=exclude_token)
        logger.info(
            "user_sessions_invalidated",
            user_id=user_id,
            invalidated=max(len(tokens), deactivated),
            blacklisted=blacklisted,
            kept_current=bool(exclude_token),
        )
        return {
            "invalidatedCount": max(len(tokens), deactivated),
            "tokensBlacklisted": blacklisted,
        }

    async def touch(self, context: AuthContext) -> None:
        now = utcnow()
        self.store.touch_session(context.token, now)

    # ---------------------------------------------------------------- listing

    async def list_sessions(
        self, user_id: str, *, current_token: Optional[str], page: int = 1, limit: int = 10
    ) -> Dict[str, Any]:
        limit = max(1, min(limit, 50))
        page = max(1, page)
        now = utcnow()
        rows = {
            s.token: s
            for s in self.store.list_user_sessions(user_id)
            if s.device_type != EXCHANGE_CODE_DEVICE
        }
        registry: set[str] = set()
        if self.cache is not None:
            try:
                registry = await self.cache.session_tokens(user_id)
            except CACHE_ERRORS as exc:
                logger.warning("session_registry_read_failed", user_id=user_id, error=str(exc))

        entries: Dict[str, Dict[str, Any]] = {}
        for token in registry:
            cached = None
            try:
                cached = await self.cache.get_session(token)
            except CACHE_ERRORS as exc:
                logger.warning("session_cache_read_failed", error=str(exc))
            if cached:
                entries[token] = cached
            elif token not in rows or not rows[token].is_live(now):
                # Registry member without a live mirror or row
                try:
                    await self.cache.forget_session_token(user_id, token)
                except CACHE_ERRORS as exc:
                    logger.warning("session_registry_prune_failed", error=str(exc))

        items: List[Dict[str, Any]] = []
        for token in set(rows) | set(entries):
            row = rows.get(token)
            cached = entries.get(token, {})
            expires_at = row.expires_at if row else _parse_iso(cached.get("expiresAt"))
            items.append(
                {
                    "id": row.id if row else cached.get("sessionId"),
                    "token": mask_token(token),
                    "deviceType": row.device_type if row else cached.get("deviceType"),
                    "operatingSystem": row.operating_system if row else None,
                    "browser": row.browser if row else None,
                    "ipAddress": row.ip_address if row else cached.get("ipAddress"),
                    "createdAt": _iso(row.created_at) if row else cached.get("createdAt"),
                    "lastActivity": cached.get("lastActivity") or (_iso(row.last_activity) if row else None),
                    "expiresAt": _iso(expires_at),
                    "isActive": bool(expires_at and expires_at > now),
                    "isCurrent": token == current_token,
                }
            )
        items.sort(key=lambda item: item["lastActivity"] or "", reverse=True)

        total = len(items)
        start = (page - 1) * limit
        active = [item for item in items if item["isActive"]]
        return {
            "sessions": items[start : start + limit],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": math.ceil(total / limit) if total else 0,
                "hasNext": start + limit < total,
                "hasPrev": page > 1,
            },
            "stats": {
                "activeCount": len(active),
                "totalCount": total,
                "expiredCount": total - len(active),
                "devicesCount": len({item["deviceType"] for item in active}),
            },
        }

    # ---------------------------------------------------------------- history

    async def recent_sessions(self, user_id: str, *, hours: int = 24, limit: int = 5) -> List[Session]:
        since = utcnow() - timedelta(hours=hours)
        return [
            s
            for s in self.store.list_recent_sessions(user_id, since, limit + 1)
            if s.device_type != EXCHANGE_CODE_DEVICE
        ][:limit]
