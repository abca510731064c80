from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from eduauth.config import Settings
from eduauth.logging import get_logger
from eduauth.service.accounts import (
    AccountDirectory,
    ensure_account_usable,
    normalize_email,
    public_user,
)
from eduauth.service.background import BackgroundRunner, gather_side_effects
from eduauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from eduauth.service.rate_limit import RateLimiter
from eduauth.service.sessions import AuthContext, ClientInfo, SessionRegistry
from eduauth.service.uploads import ImageStore, StoredImage
from eduauth.service.verification import OTPPurpose, VerificationService, is_valid_otp_format
from eduauth.storage.errors import ConstraintViolation
from eduauth.storage.models import AccountDeletion, Session, User, utcnow
from eduauth.storage.redis_cache import CACHE_ERRORS

logger = get_logger(__name__)

REACTIVATION_CACHE_TTL = 7 * 24 * 60 * 60
REACTIVATION_STATUS_TTL = 60 * 60
REACTIVATION_COOLDOWN = timedelta(days=30)
RECOVERY_WINDOW = timedelta(days=30)
EXPECTED_REVIEW_TIME = "3-5 business days"
DELETION_CONFIRMATION = "DELETE_MY_ACCOUNT"

GENERIC_RESET_MESSAGE = (
    "If an account with that email exists, a password reset code has been sent."
)

_NEXT_STEPS = {
    "PENDING": "Your request is being reviewed. We will email you once a decision is made.",
    "APPROVED": "Your account has been reactivated. You can log in again.",
    "REJECTED": "Your request was rejected. You may submit a new request with more details.",
}


@dataclass
class Outcome:
    """Result of an account operation, rendered into the response envelope."""

    message: str
    code: str
    data: Dict[str, Any] = field(default_factory=dict)
    status_code: int = 200
    meta: Dict[str, Any] = field(default_factory=dict)


def _session_info(session: Session) -> Dict[str, Any]:
    return {
        "expiresAt": session.expires_at.isoformat(),
        "deviceType": session.device_type,
        "ipAddress": session.ip_address,
    }


class AuthService:
    """Registration, verification, login and account lifecycle flows.

    The durable store is ground truth; account replicas, session mirrors and
    side effects (email, notifications, image cleanup) are best-effort and never
    fail a primary operation once its durable write has succeeded.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        accounts: AccountDirectory,
        sessions: SessionRegistry,
        verification: VerificationService,
        limiter: RateLimiter,
        email,
        notifications,
        images: ImageStore,
        background: BackgroundRunner,
    ) -> None:
        self.store = store
        self.settings = settings
        self.accounts = accounts
        self.sessions = sessions
        self.verification = verification
        self.limiter = limiter
        self.email = email
        self.notifications = notifications
        self.images = images
        self.background = background
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    # -------------------------------------------------------------- passwords

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False

    # ----------------------------------------------------------- registration

    async def _send_verification(self, user: User) -> Dict[str, Any]:
        otp, otp_minutes = await self.verification.issue_otp(user.email, OTPPurpose.REGISTRATION)
        link_token = await self.verification.issue_link_token(user.email)
        payload = {
            "firstName": user.first_name,
            "otp": otp,
            "token": link_token,
            "otpExpiresIn": otp_minutes,
        }
        return {
            "payload": payload,
            "otpExpiresIn": otp_minutes,
            "linkExpiresIn": self.settings.verification_link_ttl_minutes,
        }

    async def register(
        self,
        *,
        first_name: str,
        last_name: str,
        email: str,
        password: str,
        role: str,
        client: ClientInfo,
        profile_image=None,
    ) -> Outcome:
        email = normalize_email(email)
        stored_image: Optional[StoredImage] = None
        keep_image = False
        try:
            await self.limiter.enforce("register", client.ip_address or "unknown")
            if profile_image is not None:
                stored_image = await self.images.save(profile_image)

            existing = await self.accounts.by_email(email)
            if existing and existing.is_verified:
                raise ConflictError(
                    "An account with this email already exists",
                    error_code="USER_ALREADY_EXISTS",
                )
            if existing:
                return await self._reissue_verification(existing)

            pwd_hash, algo = self._hash_password(password)
            try:
                user = self.store.create_user(
                    email,
                    first_name.strip(),
                    last_name.strip(),
                    role=role,
                    password_hash=pwd_hash,
                    password_algo=algo,
                    profile_image=stored_image.url if stored_image else None,
                    profile_image_id=stored_image.public_id if stored_image else None,
                )
            except ConstraintViolation as exc:
                raise ConflictError(
                    "An account with this email already exists",
                    error_code="USER_ALREADY_EXISTS",
                ) from exc
            keep_image = True
            logger.info("user_registered", user_id=user.id, role=user.role)

            verification = await self._send_verification(user)
            effects = await gather_side_effects(
                {
                    "cache_warm": self.accounts.warm(user),
                    "verification_email": self.email.send_templated(
                        "verification", user.email, verification["payload"]
                    ),
                    "welcome_notification": self.notifications.create(
                        user.id,
                        "WELCOME",
                        "Welcome to Educademy",
                        "Verify your email to get started.",
                    ),
                }
            )
            return Outcome(
                message="Registration successful. Please verify your email.",
                code="REGISTRATION_SUCCESS",
                status_code=201,
                data={
                    "user": public_user(user),
                    "verification": {
                        "otpExpiresIn": verification["otpExpiresIn"],
                        "linkExpiresIn": verification["linkExpiresIn"],
                    },
                    "needsVerification": True,
                    "emailSent": effects.get("verification_email", False),
                },
            )
        finally:
            if stored_image and not keep_image:
                await self.images.delete(stored_image.public_id)

    async def _reissue_verification(self, user: User) -> Outcome:
        await self.limiter.enforce("otp_issue", user.email)
        verification = await self._send_verification(user)
        effects = await gather_side_effects(
            {
                "verification_email": self.email.send_templated(
                    "verification", user.email, verification["payload"]
                ),
            }
        )
        logger.info("verification_reissued", user_id=user.id)
        return Outcome(
            message="Account exists but is not verified. A new verification code has been sent.",
            code="VERIFICATION_RESENT",
            data={
                "user": public_user(user),
                "verification": {
                    "otpExpiresIn": verification["otpExpiresIn"],
                    "linkExpiresIn": verification["linkExpiresIn"],
                },
                "needsVerification": True,
                "emailSent": effects["verification_email"],
            },
        )

    # ----------------------------------------------------------- verification

    async def verify(
        self,
        *,
        client: ClientInfo,
        token: Optional[str] = None,
        email: Optional[str] = None,
        otp: Optional[str] = None,
    ) -> Outcome:
        await self.limiter.enforce("verify", client.ip_address or "unknown")
        if token:
            method = "token"
            email = await self.verification.peek_link_token(token)
            if not email:
                raise ValidationError(
                    "Invalid or expired verification link", error_code="INVALID_TOKEN"
                )
        elif email and otp:
            method = "otp"
            email = normalize_email(email)
            if not is_valid_otp_format(otp):
                raise ValidationError(
                    "OTP must be exactly 6 digits", error_code="INVALID_OTP_FORMAT"
                )
        else:
            raise ValidationError(
                "Provide either a verification token or email and OTP",
                error_code="MISSING_REQUIRED_FIELDS",
            )

        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        if user.is_verified:
            raise ValidationError("Email is already verified", error_code="ALREADY_VERIFIED")
        if not user.is_active or user.is_banned:
            raise ForbiddenError("Account is not active", error_code="ACCOUNT_INACTIVE")

        if method == "otp":
            check = await self.verification.verify_otp(email, otp, OTPPurpose.REGISTRATION)
            if not check.success:
                raise ValidationError(
                    check.message,
                    error_code="OTP_VERIFICATION_FAILED",
                    detail={
                        "reason": check.reason,
                        "remainingAttempts": check.remaining_attempts,
                    },
                )
        elif await self.verification.consume_link_token(token) is None:
            raise ValidationError(
                "Invalid or expired verification link", error_code="INVALID_TOKEN"
            )

        user, session = await self.sessions.open(user, client, mark_verified=True)
        await self.verification.delete_otp(email)
        await self.accounts.invalidate(user.id, user.email)
        logger.info("email_verified", user_id=user.id, method=method)
        await gather_side_effects(
            {
                "welcome_email": self.email.send_templated(
                    "welcome", user.email, {"firstName": user.first_name}
                ),
                "verified_notification": self.notifications.create(
                    user.id,
                    "ACCOUNT_VERIFIED",
                    "Email verified",
                    "Your email has been verified. Welcome aboard!",
                ),
            }
        )
        return Outcome(
            message="Email verified successfully",
            code="VERIFICATION_SUCCESS",
            data={
                "token": session.token,
                "user": public_user(user),
                "sessionInfo": _session_info(session),
            },
            meta={"isNewUser": True, "autoLogin": True, "verificationMethod": method},
        )

    # ------------------------------------------------------------------ login

    async def login(
        self,
        *,
        email: str,
        password: str,
        client: ClientInfo,
        bearer: Optional[str] = None,
    ) -> Outcome:
        if bearer and await self.sessions.authenticate(bearer):
            raise ValidationError("You are already logged in", error_code="ALREADY_AUTHENTICATED")
        await self.limiter.enforce("login", client.ip_address or "unknown")

        user = await self.accounts.by_email(email)
        if not user or not self.verify_password(user.id, password):
            logger.info("login_failed", ip=client.ip_address)
            raise AuthenticationError("Invalid email or password", error_code="INVALID_CREDENTIALS")
        # Status flags are gated on the durable record, not the replica
        user = await self.accounts.fresh(user.id) or user
        ensure_account_usable(user)

        user, session = await self.sessions.open(user, client)
        await self.accounts.invalidate(user.id, user.email)
        self.background.spawn(self.security_check(user, session), event="login_security_check")
        logger.info("login_success", user_id=user.id, device_type=session.device_type)
        return Outcome(
            message="Login successful",
            code="LOGIN_SUCCESS",
            data={
                "token": session.token,
                "user": public_user(user),
                "sessionInfo": _session_info(session),
            },
            meta={"loginMethod": "password"},
        )

    async def security_check(self, user: User, session: Session) -> bool:
        """Alert by email when a login comes from an unseen device and IP pair."""
        recent = [
            s for s in await self.sessions.recent_sessions(user.id) if s.id != session.id
        ]
        if not recent:
            return False
        known = {(s.device_type, s.ip_address) for s in recent}
        if (session.device_type, session.ip_address) in known:
            return False
        logger.info("login_new_device", user_id=user.id, device_type=session.device_type)
        return await self.email.send_templated(
            "login_alert",
            user.email,
            {
                "deviceType": session.device_type,
                "ipAddress": session.ip_address,
                "loginTime": session.created_at.isoformat(),
            },
        )

    async def logout(self, context: AuthContext) -> Outcome:
        result = await self.sessions.revoke(context.token, user_id=context.user.id)
        logger.info("logout", user_id=context.user.id, **result)
        return Outcome(message="Logged out successfully", code="LOGOUT_SUCCESS", data=result)

    # --------------------------------------------------------- password reset

    async def request_password_reset(self, *, email: str, client: ClientInfo) -> Outcome:
        email = normalize_email(email)
        await self.limiter.enforce("password_reset", client.ip_address or "unknown")
        await self.limiter.enforce("password_reset_email", email)

        user = self.store.get_user_by_email(email)
        if user and user.is_active and not user.is_banned:
            try:
                otp, minutes = await self.verification.issue_otp(email, OTPPurpose.PASSWORD_RESET)
            except CACHE_ERRORS as exc:
                # The response must not reveal that the account exists
                logger.error("password_reset_otp_failed", user_id=user.id, error=str(exc))
            else:
                await gather_side_effects(
                    {
                        "reset_email": self.email.send_templated(
                            "password_reset", email, {"otp": otp, "expiresIn": minutes}
                        )
                    }
                )
                logger.info("password_reset_requested", user_id=user.id)
        else:
            logger.info("password_reset_unknown_or_inaccessible")
        return Outcome(message=GENERIC_RESET_MESSAGE, code="PASSWORD_RESET_REQUESTED")

    async def confirm_password_reset(
        self, *, email: str, otp: str, new_password: str, client: ClientInfo
    ) -> Outcome:
        email = normalize_email(email)
        await self.limiter.enforce("password_reset_verify", client.ip_address or "unknown")
        if not is_valid_otp_format(otp):
            raise ValidationError("OTP must be exactly 6 digits", error_code="INVALID_OTP_FORMAT")
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        if not user.is_active or user.is_banned:
            raise ForbiddenError("Account is not accessible", error_code="ACCOUNT_INACCESSIBLE")

        check = await self.verification.verify_otp(email, otp, OTPPurpose.PASSWORD_RESET)
        if not check.success:
            raise ValidationError(
                check.message,
                error_code="OTP_VERIFICATION_FAILED",
                detail={"reason": check.reason, "remainingAttempts": check.remaining_attempts},
            )

        pwd_hash, algo = self._hash_password(new_password)
        self.store.save_password(user.id, pwd_hash, algo)
        invalidated = await self.sessions.invalidate_all(user.id)
        await self.accounts.invalidate(user.id, user.email)
        await self.limiter.reset("password_reset", client.ip_address or "unknown")
        await self.limiter.reset("password_reset_email", email)
        logger.info(
            "password_reset_completed",
            user_id=user.id,
            sessions_invalidated=invalidated["invalidatedCount"],
        )

        notification = await self.notifications.create(
            user.id,
            "SECURITY_ALERT",
            "Password changed",
            "Your password was changed and all sessions were signed out.",
            priority="HIGH",
            data={"sessionsInvalidated": invalidated["invalidatedCount"]},
            deliver_by=("socket", "email"),
            email_kind="password_changed",
            recipient=user.email,
        )
        return Outcome(
            message="Password reset successful. Please log in with your new password.",
            code="PASSWORD_RESET_SUCCESS",
            data={
                "passwordChanged": True,
                "sessionsInvalidated": invalidated["invalidatedCount"],
                "securityNotificationSent": notification is not None,
            },
        )

    # -------------------------------------------------------------------- OTP

    async def resend_otp(self, *, email: str, otp_type: str) -> Outcome:
        email = normalize_email(email)
        await self.limiter.enforce("otp_resend", email)
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        if not user.is_active or user.is_banned:
            raise ForbiddenError("Account is not accessible", error_code="ACCOUNT_INACCESSIBLE")

        if otp_type == "password_reset":
            otp, minutes = await self.verification.issue_otp(email, OTPPurpose.PASSWORD_RESET)
            effect = self.email.send_templated(
                "password_reset", email, {"otp": otp, "expiresIn": minutes}
            )
        else:
            if user.is_verified:
                raise ValidationError("Email is already verified", error_code="ALREADY_VERIFIED")
            verification = await self._send_verification(user)
            minutes = verification["otpExpiresIn"]
            effect = self.email.send_templated("verification", email, verification["payload"])
        effects = await gather_side_effects({"otp_email": effect})
        return Outcome(
            message="A new code has been sent to your email",
            code="OTP_RESENT",
            data={
                "emailSent": effects["otp_email"],
                "expiresIn": minutes,
                "otpType": otp_type,
                "remainingAttempts": self.settings.otp_max_attempts,
            },
        )

    async def otp_status(self, *, email: str, client: ClientInfo) -> Outcome:
        await self.limiter.enforce("otp_status", client.ip_address or "unknown")
        status = await self.verification.otp_status(normalize_email(email))
        return Outcome(message="OTP status retrieved", code="OTP_STATUS", data=status)

    # --------------------------------------------------------------- sessions

    async def list_sessions(self, context: AuthContext, *, page: int, limit: int) -> Outcome:
        await self.limiter.enforce("get_sessions", context.user.id)
        data = await self.sessions.list_sessions(
            context.user.id, current_token=context.token, page=page, limit=limit
        )
        return Outcome(message="Sessions retrieved", code="SESSIONS_RETRIEVED", data=data)

    async def invalidate_sessions(
        self, context: AuthContext, *, keep_current: bool, reason: Optional[str] = None
    ) -> Outcome:
        await self.limiter.enforce("invalidate_sessions", context.user.id)
        result = await self.sessions.invalidate_all(
            context.user.id, exclude_token=context.token if keep_current else None
        )
        await self.notifications.create(
            context.user.id,
            "SECURITY_ALERT",
            "Sessions signed out",
            f"{result['invalidatedCount']} session(s) were signed out.",
            priority="HIGH",
            data={"reason": reason or "user_requested", **result},
        )
        return Outcome(
            message="Sessions invalidated successfully",
            code="SESSIONS_INVALIDATED",
            data={
                "sessionsInvalidated": result["invalidatedCount"],
                "tokensBlacklisted": result["tokensBlacklisted"],
                "currentSessionKept": keep_current,
            },
        )

    # ----------------------------------------------------------- reactivation

    async def request_reactivation(
        self,
        *,
        reason: str,
        client: ClientInfo,
        email: Optional[str] = None,
        user_id: Optional[str] = None,
        additional_info: Optional[str] = None,
    ) -> Outcome:
        await self.limiter.enforce("reactivation_request", client.ip_address or "unknown")
        if email:
            user = self.store.get_user_by_email(normalize_email(email))
        elif user_id:
            user = self.store.get_user(user_id)
        else:
            raise ValidationError(
                "Email or user id is required", error_code="MISSING_REQUIRED_FIELDS"
            )
        if not user:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        if user.is_active and not user.is_banned:
            raise ValidationError("Account is already active", error_code="ACCOUNT_ALREADY_ACTIVE")
        if user.is_banned and user.banned_at and utcnow() - user.banned_at < REACTIVATION_COOLDOWN:
            raise ForbiddenError(
                "You cannot request reactivation yet",
                error_code="REACTIVATION_COOLDOWN_ACTIVE",
                detail={"canRequestAfter": (user.banned_at + REACTIVATION_COOLDOWN).isoformat()},
            )

        cache_key = f"reactivation_request:{user.id}"
        cached = None
        try:
            cached = await self.accounts.cache.get_json(cache_key)
        except CACHE_ERRORS as exc:
            logger.warning("reactivation_cache_read_failed", user_id=user.id, error=str(exc))
        if cached or self.store.get_latest_reactivation_request(user.id, status="PENDING"):
            raise ConflictError(
                "A reactivation request is already pending",
                error_code="REQUEST_ALREADY_EXISTS",
            )

        request = self.store.create_reactivation_request(
            user.id,
            reason,
            additional_info=additional_info,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        data = {
            "requestId": request.id,
            "status": request.status,
            "submittedAt": request.submitted_at.isoformat(),
            "expectedReviewTime": EXPECTED_REVIEW_TIME,
        }
        logger.info("reactivation_requested", user_id=user.id, request_id=request.id)

        effects: Dict[str, Any] = {
            "cache_replica": self.accounts.cache.set_json(cache_key, data, REACTIVATION_CACHE_TTL),
            "confirmation_email": self.email.send_templated(
                "reactivation_received", user.email, data
            ),
        }
        for admin_id in self.store.list_user_ids_by_role("ADMIN"):
            effects[f"admin_notification:{admin_id}"] = self.notifications.create(
                admin_id,
                "REACTIVATION_REQUEST",
                "New reactivation request",
                f"{user.full_name} requested account reactivation.",
                priority="HIGH",
                data={"requestId": request.id, "userId": user.id},
            )
        await gather_side_effects(effects)
        return Outcome(
            message="Reactivation request submitted successfully",
            code="REACTIVATION_REQUEST_SUBMITTED",
            status_code=201,
            data=data,
        )

    async def reactivation_status(self, *, user_id: str, client: ClientInfo) -> Outcome:
        await self.limiter.enforce("reactivation_status", client.ip_address or "unknown")
        cache_key = f"reactivation_status:{user_id}"
        try:
            cached = await self.accounts.cache.get_json(cache_key)
        except CACHE_ERRORS as exc:
            logger.warning("reactivation_cache_read_failed", user_id=user_id, error=str(exc))
            cached = None
        if cached:
            return Outcome(message="Reactivation status retrieved", code="REACTIVATION_STATUS", data=cached)

        request = self.store.get_latest_reactivation_request(user_id)
        if not request:
            raise NotFoundError("No reactivation request found", error_code="REQUEST_NOT_FOUND")
        user = self.store.get_user(user_id)
        data = {
            "requestId": request.id,
            "status": request.status,
            "submittedAt": request.submitted_at.isoformat(),
            "reviewedAt": request.reviewed_at.isoformat() if request.reviewed_at else None,
            "rejectionReason": request.rejection_reason,
            "accountStatus": {
                "isActive": bool(user and user.is_active),
                "isBanned": bool(user and user.is_banned),
            },
            "nextSteps": _NEXT_STEPS.get(request.status, ""),
        }
        try:
            await self.accounts.cache.set_json(cache_key, data, REACTIVATION_STATUS_TTL)
        except CACHE_ERRORS as exc:
            logger.warning("reactivation_cache_write_failed", user_id=user_id, error=str(exc))
        return Outcome(message="Reactivation status retrieved", code="REACTIVATION_STATUS", data=data)

    # --------------------------------------------------------- account deletion

    async def delete_account(
        self,
        context: AuthContext,
        *,
        password: str,
        reason: str,
        confirmation: str,
        client: ClientInfo,
    ) -> Outcome:
        user = context.user
        await self.limiter.enforce("account_deletion", user.id)
        if confirmation != DELETION_CONFIRMATION:
            raise ValidationError(
                f"Type {DELETION_CONFIRMATION} to confirm account deletion",
                error_code="DELETION_NOT_CONFIRMED",
            )
        if not self.verify_password(user.id, password):
            raise AuthenticationError("Incorrect password", error_code="INVALID_PASSWORD")

        now = utcnow()
        deletion = self.store.create_account_deletion(
            AccountDeletion(
                id=str(uuid.uuid4()),
                user_id=user.id,
                original_email=user.email,
                reason=reason,
                deleted_at=now,
                recovery_expires_at=now + RECOVERY_WINDOW,
                ip_address=client.ip_address,
            )
        )
        anonymized = self.store.update_user(
            user.id,
            is_active=False,
            email=f"deleted_{int(now.timestamp())}_{user.email}",
            first_name="Deleted",
            last_name="User",
            profile_image=None,
            profile_image_id=None,
        )
        invalidated = await self.sessions.invalidate_all(user.id)
        await self.accounts.invalidate(user.id, user.email, anonymized.email)
        logger.info(
            "account_deleted",
            user_id=user.id,
            sessions_invalidated=invalidated["invalidatedCount"],
        )
        await gather_side_effects(
            {
                "image_delete": self.images.delete(user.profile_image_id),
                "deletion_email": self.email.send_templated(
                    "account_deleted",
                    user.email,
                    {"recoveryExpiresAt": deletion.recovery_expires_at.isoformat()},
                ),
            }
        )
        return Outcome(
            message="Account deleted successfully",
            code="ACCOUNT_DELETED",
            data={
                "deletedAt": deletion.deleted_at.isoformat(),
                "recoveryExpiresAt": deletion.recovery_expires_at.isoformat(),
                "sessionsInvalidated": invalidated["invalidatedCount"],
            },
        )

    async def me(self, context: AuthContext) -> Outcome:
        return Outcome(
            message="User retrieved",
            code="USER_RETRIEVED",
            data={"user": public_user(context.user)},
        )
