from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from eduauth.config import SELF_SERVICE_ROLES, Role, Settings
from eduauth.logging import get_logger
from eduauth.service.accounts import AccountDirectory, ensure_account_usable, normalize_email, public_user
from eduauth.service.errors import AuthenticationError, ValidationError
from eduauth.service.sessions import EXCHANGE_CODE_DEVICE, ClientInfo, SessionRegistry
from eduauth.storage.errors import ConstraintViolation
from eduauth.storage.models import Session, User, utcnow
from eduauth.storage.redis_cache import CACHE_ERRORS

logger = get_logger(__name__)

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
}

STATE_TTL_SECONDS = 600


@dataclass
class OAuthIdentity:
    provider: str
    provider_uid: str
    email: str
    first_name: str
    last_name: str
    picture: Optional[str] = None
    email_verified: bool = True


def _split_name(full_name: Optional[str], fallback: str) -> tuple[str, str]:
    parts = (full_name or "").strip().split()
    if not parts:
        return fallback, ""
    return parts[0], " ".join(parts[1:])


class OAuthService:
    """Provider redirect, callback reconciliation and one-time code exchange.

    The pending role lives server-side under ``oauth_role:{state}``; the
    callback never trusts a role from the query string. A successful callback
    yields an opaque exchange code stored both as a durable session row
    (deviceType ``temp_auth_code``) and at ``auth_code:{code}``. Redeeming the
    code deletes both copies and opens a real session.
    """

    def __init__(
        self,
        store,
        cache,
        settings: Settings,
        accounts: AccountDirectory,
        sessions: SessionRegistry,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.accounts = accounts
        self.sessions = sessions
        self._transport = transport

    def _credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.google_client_id, self.settings.google_client_secret
        if provider == "github":
            return self.settings.github_client_id, self.settings.github_client_secret
        return None, None

    def redirect_uri(self, provider: str) -> str:
        return f"{self.settings.oauth_redirect_base_url.rstrip('/')}/{provider}/callback"

    def success_redirect(self, code: str, provider: str) -> str:
        query = urlencode({"code": code, "success": "true", "provider": provider})
        return f"{self.settings.frontend_url.rstrip('/')}/auth/callback?{query}"

    def failure_redirect(self) -> str:
        return f"{self.settings.frontend_url.rstrip('/')}/login?error=auth_failed"

    # ----------------------------------------------------------------- start

    async def start(self, provider: str, role: Optional[str] = None) -> Dict[str, str]:
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"Unsupported OAuth provider: {provider}", error_code="UNSUPPORTED_PROVIDER")
        client_id, _ = self._credentials(provider)
        if not client_id:
            logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(
                f"OAuth provider {provider} is not configured", error_code="PROVIDER_NOT_CONFIGURED"
            )
        pending_role = (role or Role.STUDENT.value).upper()
        if pending_role not in SELF_SERVICE_ROLES:
            raise ValidationError("Invalid role for OAuth sign-up", error_code="INVALID_ROLE")

        state = secrets.token_urlsafe(32)
        await self.cache.set_json(
            f"oauth_role:{state}", {"role": pending_role, "provider": provider}, STATE_TTL_SECONDS
        )
        config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": self.redirect_uri(provider),
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        if provider == "google":
            params["prompt"] = "select_account"
        logger.info("oauth_started", provider=provider, role=pending_role)
        return {
            "authorization_url": f"{config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    # -------------------------------------------------------------- callback

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.outbound_timeout_seconds,
            follow_redirects=False,
            transport=self._transport,
        )

    @staticmethod
    def _parse_userinfo(provider: str, userinfo: dict) -> Dict[str, Any]:
        if provider == "google":
            first, last = _split_name(userinfo.get("name"), "Google")
            return {
                "provider_uid": str(userinfo.get("id") or userinfo.get("sub") or ""),
                "email": userinfo.get("email"),
                "first_name": userinfo.get("given_name") or first,
                "last_name": userinfo.get("family_name") or last,
                "picture": userinfo.get("picture"),
                "email_verified": userinfo.get("verified_email", True),
            }
        first, last = _split_name(userinfo.get("name"), userinfo.get("login") or "GitHub")
        return {
            "provider_uid": str(userinfo.get("id") or ""),
            "email": userinfo.get("email"),
            "first_name": first,
            "last_name": last,
            "picture": userinfo.get("avatar_url"),
            "email_verified": True,
        }

    async def fetch_identity(self, provider: str, code: str) -> Optional[OAuthIdentity]:
        """Exchange the provider code for an access token and read the profile."""
        client_id, client_secret = self._credentials(provider)
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=provider)
            return None
        config = OAUTH_PROVIDERS[provider]
        try:
            async with self._client() as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = token_response.json().get("access_token")
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    return None

                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(config["userinfo_url"], headers=headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    return None
                identity = self._parse_userinfo(provider, userinfo)

                if provider == "github" and not identity.get("email"):
                    emails_response = await client.get(config["emails_url"], headers=headers)
                    if emails_response.status_code == 200:
                        identity["email"] = next(
                            (
                                e["email"]
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
        except httpx.HTTPStatusError as e:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=e.response.status_code,
                error=str(e),
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error("oauth_exchange_error", provider=provider, error=str(e))
            return None

        if not identity.get("provider_uid") or not identity.get("email"):
            logger.error("oauth_identity_incomplete", provider=provider)
            return None
        return OAuthIdentity(
            provider=provider,
            provider_uid=identity["provider_uid"],
            email=normalize_email(identity["email"]),
            first_name=identity["first_name"],
            last_name=identity["last_name"],
            picture=identity.get("picture"),
            email_verified=bool(identity.get("email_verified", True)),
        )

    async def reconcile(self, identity: OAuthIdentity, role: str) -> Optional[tuple[User, bool]]:
        """Match by email, linking the provider; otherwise create the account.

        Returns None when the email belongs to an existing account but the
        provider has not verified it.
        """
        user = self.store.get_user_by_email(identity.email)
        if user:
            if not identity.email_verified:
                logger.warning(
                    "oauth_unverified_email_link_refused", user_id=user.id, provider=identity.provider
                )
                return None
            linked = self.store.link_user_auth_provider(user.id, identity.provider, identity.provider_uid)
            updates: Dict[str, Any] = {"last_login": utcnow()}
            if not user.profile_image and identity.picture:
                updates["profile_image"] = identity.picture
            if not user.is_verified:
                updates["is_verified"] = True
            user = self.store.update_user(user.id, **updates)
            await self.accounts.invalidate(user.id, user.email)
            logger.info("oauth_account_matched", user_id=user.id, provider=identity.provider, linked=linked)
            return user, False
        try:
            user = self.store.create_oauth_user(
                identity.email,
                identity.first_name,
                identity.last_name,
                role=role,
                provider=identity.provider,
                provider_user_id=identity.provider_uid,
                profile_image=identity.picture,
            )
        except ConstraintViolation:
            # Concurrent callback created it first
            user = self.store.get_user_by_email(identity.email)
            if not user:
                raise
            return user, False
        user = self.store.update_user(user.id, last_login=utcnow())
        logger.info("oauth_account_created", user_id=user.id, provider=identity.provider, role=role)
        return user, True

    async def issue_exchange_code(self, user: User, provider: str, *, is_new_user: bool) -> str:
        code = secrets.token_hex(32)
        ttl = self.settings.auth_code_ttl_seconds
        row = Session.new(user.id, code, ttl, device_type=EXCHANGE_CODE_DEVICE)
        self.store.create_session(row)
        await self.cache.set_json(
            f"auth_code:{code}",
            {"userId": user.id, "provider": provider, "isNewUser": is_new_user},
            ttl,
        )
        return code

    async def callback(
        self, provider: str, code: Optional[str], state: Optional[str], error: Optional[str] = None
    ) -> str:
        """Complete the provider round-trip and return the frontend redirect URL."""
        if error or not code or not state or provider not in OAUTH_PROVIDERS:
            logger.warning("oauth_callback_rejected", provider=provider, error=error)
            return self.failure_redirect()
        pending = await self.cache.pop_json(f"oauth_role:{state}")
        if not pending or pending.get("provider") != provider:
            logger.warning("oauth_state_invalid", provider=provider)
            return self.failure_redirect()
        role = pending.get("role")
        if role not in SELF_SERVICE_ROLES:
            role = Role.STUDENT.value

        identity = await self.fetch_identity(provider, code)
        if not identity:
            return self.failure_redirect()
        reconciled = await self.reconcile(identity, role)
        if reconciled is None:
            return self.failure_redirect()
        user, is_new = reconciled
        if not user.is_active or user.is_banned:
            logger.warning("oauth_account_inaccessible", user_id=user.id)
            return self.failure_redirect()
        exchange_code = await self.issue_exchange_code(user, provider, is_new_user=is_new)
        return self.success_redirect(exchange_code, provider)

    # -------------------------------------------------------------- exchange

    async def exchange(self, code: Optional[str], client: ClientInfo) -> Dict[str, Any]:
        if not code:
            raise ValidationError("Authorization code is required", error_code="MISSING_AUTH_CODE")
        cached = None
        try:
            cached = await self.cache.pop_json(f"auth_code:{code}")
        except CACHE_ERRORS as exc:
            logger.warning("auth_code_cache_unavailable", error=str(exc))
        row = self.store.get_session_by_token(code)
        redeemed = False
        if row is not None and row.device_type == EXCHANGE_CODE_DEVICE:
            # Deleting the durable row is the single-use gate
            redeemed = self.store.delete_session(code)
        if not redeemed or row.expires_at <= utcnow():
            logger.warning("auth_code_invalid", cached=cached is not None)
            raise AuthenticationError("Invalid or expired authorization code", error_code="INVALID_AUTH_CODE")

        user = self.store.get_user(row.user_id)
        if not user:
            raise AuthenticationError("Invalid or expired authorization code", error_code="INVALID_AUTH_CODE")
        ensure_account_usable(user, require_verified=False)
        user, session = await self.sessions.open(user, client)
        await self.accounts.invalidate(user.id, user.email)
        logger.info("auth_code_exchanged", user_id=user.id, provider=(cached or {}).get("provider"))
        return {
            "user": public_user(user),
            "token": session.token,
            "sessionInfo": {
                "expiresAt": session.expires_at.isoformat(),
                "deviceType": session.device_type,
                "ipAddress": session.ip_address,
            },
            "isNewUser": bool((cached or {}).get("isNewUser")),
            "provider": (cached or {}).get("provider"),
        }
