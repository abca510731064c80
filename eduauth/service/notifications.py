from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, Optional

from eduauth.logging import get_logger
from eduauth.storage.models import Notification

logger = get_logger(__name__)


class NotificationService:
    """Durable in-app notifications with optional email delivery.

    ``create`` never raises: a failed write or delivery is logged and reported
    as ``None`` so callers can fire it alongside other side effects.
    """

    def __init__(self, store, email=None) -> None:
        self.store = store
        self.email = email

    async def create(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        *,
        priority: str = "NORMAL",
        data: Optional[Dict[str, Any]] = None,
        deliver_by: Iterable[str] = ("socket",),
        email_kind: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> Optional[Notification]:
        notification = Notification(
            id=str(uuid.uuid4()),
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            priority=priority,
            data=data,
        )
        try:
            saved = self.store.create_notification(notification)
        except Exception as exc:
            logger.warning(
                "notification_create_failed",
                user_id=user_id,
                type=type,
                error_type=type_name(exc),
                error=str(exc),
            )
            return None

        if "email" in deliver_by and self.email and email_kind and recipient:
            delivered = await self.email.send_templated(email_kind, recipient, data or {})
            if not delivered:
                logger.warning("notification_email_failed", user_id=user_id, type=type)
        logger.info("notification_created", user_id=user_id, type=type, priority=priority)
        return saved

    def list_for_user(self, user_id: str) -> list[Notification]:
        return self.store.list_notifications(user_id)


def type_name(exc: BaseException) -> str:
    return exc.__class__.__name__
