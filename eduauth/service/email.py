from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, Optional, Tuple

from eduauth.logging import get_logger

logger = get_logger(__name__)

_HTML_SHELL = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .button {{ display: inline-block; background: #3b5bdb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        {content}
        <div class="footer">
            <p>{brand}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit SSL
    - Templated kinds (verification, password reset, welcome, security alerts,
      reactivation and deletion confirmations)
    - Fallback to logging when not configured (dev mode)
    """

    KINDS = (
        "verification",
        "password_reset",
        "welcome",
        "login_alert",
        "password_changed",
        "reactivation_received",
        "account_deleted",
    )

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Educademy",
        frontend_url: Optional[str] = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = (frontend_url or "http://localhost:5173").rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._templates: Dict[str, Callable[[Dict[str, Any]], Tuple[str, str, str]]] = {
            "verification": self._verification,
            "password_reset": self._password_reset,
            "welcome": self._welcome,
            "login_alert": self._login_alert,
            "password_changed": self._password_changed,
            "reactivation_received": self._reactivation_received,
            "account_deleted": self._account_deleted,
        }

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message over SMTP; returns False instead of raising."""
        if not self.is_configured:
            logger.info("email_dev_mode", recipient=to_email, subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds)
            else:
                server = smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout_seconds
                )
            with server:
                if self.smtp_use_tls:
                    server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, [to_email], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                _failure_event(exc),
                recipient=to_email,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                smtp_status=getattr(exc, "smtp_code", None),
                error=str(exc),
            )
            return False

        logger.info("email_sent", recipient=to_email, subject=subject)
        return True

    # ------------------------------------------------------------- templates

    def _render(self, heading: str, paragraphs: list[str]) -> str:
        content = "\n        ".join(f"<p>{p}</p>" for p in paragraphs)
        return _HTML_SHELL.format(heading=heading, content=content, brand=html.escape(self.from_name))

    def _verification(self, payload: Dict[str, Any]) -> Tuple[str, str, str]:
        name = html.escape(payload.get("firstName") or "there")
        otp = html.escape(str(payload.get("otp", "")))
        minutes = payload.get("otpExpiresIn", 10)
        link = f"{self.frontend_url}/verify-email?token={payload.get('token', '')}"
        html_body = self._render(
            "Verify your email",
            [
                f"Hi {name}, use this code to verify your {html.escape(self.from_name)} account:",
                f'<span class="code">{otp}</span>',
                f"The code expires in {minutes} minutes.",
                f'Or <a href="{html.escape(link)}" class="button">Verify Email</a>',
            ],
        )
        text_body = (
            f"Hi {payload.get('firstName') or 'there'},\n\n"
            f"Your verification code is {payload.get('otp', '')} (expires in {minutes} minutes).\n"
            f"Or verify with this link: {link}\n"
        )
        return "Verify your email address", html_body, text_body

    def _password_reset(self, payload: Dict[str, Any]) -> Tuple[str, str, str]:
        otp = str(payload.get("otp", ""))
        minutes = payload.get("expiresIn", 15)
        html_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Your code is:",
                f'<span class="code">{html.escape(otp)}</span>',
                f"The code expires in {minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
        )
        text_body = (
            f"Your password reset code is {otp} (expires in {minutes} minutes).\n\n"
            "If you didn't request this, you can safely ignore this email.\n"
        )
        return "Password reset code", html_body, text_body

    def _welcome(self, payload: Dict[str, Any]) -> Tuple[str, str, str]:
        name = payload.get("firstName") or "there"
        html_body = self._render(
            f"Welcome to {html.escape(self.from_name)}",
            [
                f"Hi {html.escape(name)}, your email is verified and your account is ready.",
                f'<a href="{self.frontend_url}/dashboard" class="button">Get started</a>',
            ],
        )
        return f"Welcome to {self.from_name}", html_body, f"Hi {name}, your account is ready.\n"

    def _login_alert(self, payload: Dict[str, Any]) -> Tuple[str, str, str]:
        device = payload.get("deviceType") or "unknown device"
        ip_address = payload.get("ipAddress") or "unknown"
        at = payload.get("loginTime") or ""
        html_body = self._render(
            "New sign-in to your account",
            [
                f"We noticed a sign-in from a new {html.escape(device)} ({html.escape(ip_address)}) at {html.escape(at)}.",
                "If this was you, no action is needed. Otherwise reset your password immediately.",
            ],
        )
        text_body = (
            f"New sign-in from {device} ({ip_address}) at {at}.\n"
            "If this wasn't you, reset your password immediately.\n"
        )
        return "New sign-in detected", html_body, text_body

    def _password_changed(self, payload: Dict[str, Any]) -> Tuple[str, str, str]:
        count = payload.get("sessionsInvalidated", 0)
        html_body = self._render(
            "Your password was changed",
            [
                "The password on your account was just changed.",
                f"For your security, {count} active session(s) were signed out.",
                "If you didn't make this change, contact support immediately.",
            ],
        )
        text_body = (
            "Your password was changed and all sessions were signed out.\n"
            "If you didn't make this change, contact support immediately.\n"
        )
        return "Your password was changed", html_body, text_body

    def _reactivation_received(self, payload: Dict[str, Any]) -> Tuple[str, str, str]:
        request_id = str(payload.get("requestId", ""))
        review = payload.get("expectedReviewTime", "3-5 business days")
        html_body = self._render(
            "Reactivation request received",
            [
                f"We received your account reactivation request (reference {html.escape(request_id)}).",
                f"Our team will review it within {html.escape(review)}.",
            ],
        )
        text_body = (
            f"We received your reactivation request {request_id}.\n"
            f"Expected review time: {review}.\n"
        )
        return "Reactivation request received", html_body, text_body

    def _account_deleted(self, payload: Dict[str, Any]) -> Tuple[str, str, str]:
        recovery = payload.get("recoveryExpiresAt") or ""
        html_body = self._render(
            "Your account was deleted",
            [
                "Your account has been deleted and all sessions were signed out.",
                f"You can contact support to recover it until {html.escape(recovery)}.",
            ],
        )
        text_body = f"Your account was deleted. Recovery is possible until {recovery}.\n"
        return "Your account has been deleted", html_body, text_body

    # ----------------------------------------------------------------- entry

    def render(self, kind: str, payload: Dict[str, Any]) -> Tuple[str, str, str]:
        try:
            template = self._templates[kind]
        except KeyError:
            raise ValueError(f"unknown email kind {kind!r}") from None
        return template(payload)

    async def send_templated(self, kind: str, recipient: str, payload: Dict[str, Any]) -> bool:
        """Render ``kind`` and send it from a worker thread with a bounded wait."""
        subject, html_body, text_body = self.render(kind, payload)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._send_email, recipient, subject, html_body, text_body),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                "email_timeout",
                kind=kind,
                recipient=recipient,
                timeout_seconds=self.timeout_seconds,
            )
            return False


def _failure_event(exc: BaseException) -> str:
    # SMTPException and ssl.SSLError are both OSError subclasses
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return "email_auth_failed"
    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        return "email_recipient_refused"
    if isinstance(exc, smtplib.SMTPException):
        return "email_smtp_error"
    if isinstance(exc, ssl.SSLError):
        return "email_ssl_error"
    return "email_connect_failed"
