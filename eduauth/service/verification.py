from __future__ import annotations

import hmac
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from eduauth.logging import get_logger

logger = get_logger(__name__)

_OTP_FORMAT = re.compile(r"^\d{6}$")


class OTPPurpose(str, Enum):
    REGISTRATION = "registration"
    PASSWORD_RESET = "password_reset"


@dataclass(frozen=True)
class OTPCheck:
    success: bool
    message: str
    reason: str
    remaining_attempts: Optional[int] = None


def is_valid_otp_format(value: Optional[str]) -> bool:
    return bool(value) and bool(_OTP_FORMAT.match(value))


def _iso(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


class VerificationService:
    """One-time codes and single-use email link tokens.

    At most one OTP (``otp:{email}``) and one link token per email are live at a
    time; issuing a new artifact overwrites the previous one. OTPs are deleted on
    success, on expiry, and when the attempt ceiling is reached.
    """

    def __init__(self, cache, settings, *, now: Callable[[], float] = time.time) -> None:
        self.cache = cache
        self.settings = settings
        self._now = now

    def _ttl_minutes(self, purpose: OTPPurpose) -> int:
        if purpose is OTPPurpose.PASSWORD_RESET:
            return self.settings.password_reset_otp_ttl_minutes
        return self.settings.registration_otp_ttl_minutes

    def generate_otp(self) -> str:
        length = self.settings.otp_length
        return "".join(str(secrets.randbelow(10)) for _ in range(length))

    @staticmethod
    def _attempts_key(email: str) -> str:
        return f"otp_attempts:{email}"

    async def issue_otp(self, email: str, purpose: OTPPurpose) -> tuple[str, int]:
        """Store a fresh OTP for ``email``; returns the code and its lifetime in minutes."""
        otp = self.generate_otp()
        minutes = self._ttl_minutes(purpose)
        now = self._now()
        payload = {
            "otp": otp,
            "purpose": purpose.value,
            "expiresAt": now + minutes * 60,
            "maxAttempts": self.settings.otp_max_attempts,
            "createdAt": now,
        }
        await self.cache.set_json(f"otp:{email}", payload, minutes * 60)
        await self.cache.delete(self._attempts_key(email))
        logger.info("otp_issued", email=email, purpose=purpose.value, ttl_minutes=minutes)
        return otp, minutes

    async def verify_otp(
        self, email: str, provided: str, purpose: Optional[OTPPurpose] = None
    ) -> OTPCheck:
        """Check ``provided`` against the live OTP.

        Every submission is counted with an atomic increment before the codes
        are compared, so concurrent guesses cannot share one attempt. The OTP
        entry itself is never rewritten here, only read and deleted.
        """
        key = f"otp:{email}"
        data = await self.cache.get_json(key)
        # A code issued for another purpose is treated as absent
        if not data or (purpose is not None and data.get("purpose") != purpose.value):
            return OTPCheck(False, "OTP not found or expired", "not_found")

        now = self._now()
        expires_at = float(data.get("expiresAt", 0))
        if now > expires_at:
            await self.delete_otp(email)
            return OTPCheck(False, "OTP has expired", "expired")

        max_attempts = int(data.get("maxAttempts", self.settings.otp_max_attempts))
        attempts = await self.cache.incr_counter(
            self._attempts_key(email), max(1, int(expires_at - now))
        )
        if attempts > max_attempts:
            await self.cache.delete(key)
            return OTPCheck(False, "Maximum OTP attempts exceeded", "exhausted")

        if hmac.compare_digest(str(data.get("otp", "")), str(provided)):
            # GETDEL so two concurrent correct submissions cannot both succeed
            consumed = await self.cache.pop_json(key)
            if consumed is None:
                return OTPCheck(False, "OTP not found or expired", "not_found")
            return OTPCheck(True, "OTP verified successfully", "verified")

        remaining = max_attempts - attempts
        if remaining <= 0:
            # The counter stays until it expires or a new code is issued
            await self.cache.delete(key)
            logger.warning("otp_attempts_exhausted", email=email)
            return OTPCheck(
                False, "Incorrect OTP. No attempts remaining", "mismatch", remaining_attempts=0
            )
        return OTPCheck(
            False,
            f"Incorrect OTP. {remaining} attempts remaining",
            "mismatch",
            remaining_attempts=remaining,
        )

    async def otp_status(self, email: str) -> dict:
        data = await self.cache.get_json(f"otp:{email}")
        if not data:
            return {
                "exists": False,
                "expired": False,
                "attempts": 0,
                "remainingAttempts": 0,
                "expiresAt": None,
                "canResend": True,
            }
        attempts = await self.cache.get_counter(self._attempts_key(email))
        max_attempts = int(data.get("maxAttempts", self.settings.otp_max_attempts))
        expired = self._now() > float(data.get("expiresAt", 0))
        remaining = max(0, max_attempts - attempts)
        return {
            "exists": True,
            "expired": expired,
            "attempts": attempts,
            "remainingAttempts": remaining,
            "expiresAt": _iso(float(data.get("expiresAt", 0))),
            "canResend": expired or remaining == 0,
        }

    async def delete_otp(self, email: str) -> None:
        await self.cache.delete(f"otp:{email}", self._attempts_key(email))

    async def issue_link_token(self, email: str) -> str:
        token = secrets.token_hex(32)
        minutes = self.settings.verification_link_ttl_minutes
        now = self._now()
        await self.cache.set_json(
            f"verification_token:{token}",
            {"email": email, "expiresAt": now + minutes * 60, "createdAt": now},
            minutes * 60,
        )
        return token

    async def consume_link_token(self, token: str) -> Optional[str]:
        """Return the email bound to ``token`` and delete it; None if unknown or expired."""
        data = await self.cache.pop_json(f"verification_token:{token}")
        if not data:
            return None
        if self._now() > float(data.get("expiresAt", 0)):
            return None
        return data.get("email")

    async def peek_link_token(self, token: str) -> Optional[str]:
        data = await self.cache.get_json(f"verification_token:{token}")
        if not data or self._now() > float(data.get("expiresAt", 0)):
            return None
        return data.get("email")
