from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import time
import uuid
from typing import Any, Callable, Optional

from eduauth.config import Settings
from eduauth.logging import get_logger

logger = get_logger(__name__)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class TokenManager:
    """Issues and verifies HS256 bearer tokens.

    Tokens are self-verifying; revocation before ``exp`` is handled by the
    blacklist in the session registry, never here.
    """

    clock_skew_leeway_seconds = 30

    def __init__(self, settings: Settings, *, now: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._now = now

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(
        self, *, user_id: str, email: str, role: str, session_id: str, ttl_seconds: int
    ) -> tuple[str, int]:
        """Mint a token; returns ``(token, exp)`` with ``exp`` in epoch seconds."""
        issued_at = int(self._now())
        exp = issued_at + int(ttl_seconds)
        payload = {
            "sub": user_id,
            "email": email,
            "role": role,
            "sid": session_id,
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": exp,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        return self.encode(payload), exp

    def decode(self, token: str, *, verify_exp: bool = True) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if verify_exp and exp <= self._now() - self.clock_skew_leeway_seconds:
            return None
        return payload

    def remaining_lifetime(self, payload: dict[str, Any]) -> int:
        """Seconds until the token's own ``exp``; zero or less once expired."""
        return math.ceil(float(payload.get("exp", 0)) - self._now())

    def revocation_ttl(self, payload: dict[str, Any]) -> int:
        """Blacklist TTL covering every instant at which ``decode`` still accepts the token."""
        remaining = self.remaining_lifetime(payload)
        if remaining + self.clock_skew_leeway_seconds <= 0:
            return 0
        return remaining + self.clock_skew_leeway_seconds
