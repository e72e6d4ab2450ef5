"""Turn domain events into delivery actions: always push, elevated events also mail."""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, Iterable, List, Optional

from .dispatcher import QueueDispatcher
from .gateway import EVENT_NEW_ANNOUNCEMENT, EVENT_NEW_NOTIFICATION, PushGateway
from .logger import get_logger
from .models import NotificationEvent, NotificationType, normalise_priority, utc_now_epoch
from .persistence import Persistence
from .prometheus import NotifyMetrics

DEFAULT_TEMPLATE_NAME = "notification"
DEFAULT_SENDER_NAME = "System"
MAIL_SUBJECT_PREFIX = "Important notification: "


class NotificationOrchestrator:
    """Single entry point coordinating the push gateway and the mail queue.

    The persisted notification record is the source of truth: push and mail
    failures are logged and never roll it back.
    """

    def __init__(
        self,
        persistence: Persistence,
        gateway: PushGateway,
        dispatcher: QueueDispatcher,
        *,
        template_name: str = DEFAULT_TEMPLATE_NAME,
        metrics: NotifyMetrics | None = None,
        logger=None,
    ):
        self.persistence = persistence
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.template_name = template_name
        self.metrics = metrics or NotifyMetrics()
        self.logger = logger or get_logger()

    async def notify_user(
        self,
        user_id: str,
        type: str = NotificationType.MESSAGE.value,
        title: str = "",
        content: str = "",
        *,
        priority: Optional[str] = None,
        sender_id: Optional[str] = None,
        sender_name: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> NotificationEvent:
        """Persist a notification, push it live and queue a mail copy when elevated."""
        event = NotificationEvent(
            id=uuid.uuid4().hex,
            user_id=str(user_id),
            type=str(type),
            title=title,
            content=content,
            priority=normalise_priority(priority).label if priority is not None else None,
            sender_id=sender_id,
            sender_name=sender_name,
            data=json.dumps(data) if data else None,
            created_at=utc_now_epoch(),
        )
        await self._persist(event)

        try:
            await self.gateway.send_to_user(event.user_id, event.to_payload(), EVENT_NEW_NOTIFICATION)
        except Exception as exc:
            self.logger.warning("Live push of notification %s to user %s failed: %s", event.id, user_id, exc)

        if event.is_elevated:
            try:
                await self._enqueue_mail_copy(event)
            except Exception as exc:
                self.logger.error("Could not queue mail copy of notification %s: %s", event.id, exc)
        return event

    async def notify_users(
        self,
        user_ids: Iterable[str],
        type: str = NotificationType.MESSAGE.value,
        title: str = "",
        content: str = "",
        *,
        priority: Optional[str] = None,
        sender_id: Optional[str] = None,
        sender_name: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> List[NotificationEvent]:
        events = []
        for user_id in user_ids:
            events.append(
                await self.notify_user(
                    user_id,
                    type,
                    title,
                    content,
                    priority=priority,
                    sender_id=sender_id,
                    sender_name=sender_name,
                    data=data,
                )
            )
        return events

    async def publish_announcement(
        self,
        title: str,
        content: str,
        *,
        sender_id: Optional[str] = None,
        sender_name: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> NotificationEvent:
        """Persist an announcement and broadcast it to every connected session."""
        event = NotificationEvent(
            id=uuid.uuid4().hex,
            user_id=None,
            type=NotificationType.ANNOUNCEMENT.value,
            title=title,
            content=content,
            priority=normalise_priority(priority).label if priority is not None else None,
            sender_id=sender_id,
            sender_name=sender_name,
            created_at=utc_now_epoch(),
        )
        await self._persist(event)
        try:
            await self.gateway.broadcast(event.to_payload(), EVENT_NEW_ANNOUNCEMENT)
        except Exception as exc:
            self.logger.warning("Broadcast of announcement %s failed: %s", event.id, exc)
        return event

    async def _persist(self, event: NotificationEvent) -> None:
        await self.persistence.insert_notification(
            {
                "id": event.id,
                "user_id": event.user_id,
                "type": event.type,
                "title": event.title,
                "content": event.content,
                "priority": event.priority,
                "sender_id": event.sender_id,
                "sender_name": event.sender_name,
                "data": event.data,
                "is_read": event.is_read,
                "created_at": event.created_at,
            }
        )

    async def _enqueue_mail_copy(self, event: NotificationEvent) -> Optional[str]:
        """Queue the durable follow-up for an elevated event; returns the message id."""
        user = await self.persistence.get_user(event.user_id)
        email = (user or {}).get("email")
        if not email:
            self.metrics.inc_fallback_skipped()
            self.logger.warning(
                "No contact address for user %s, skipping mail copy of %s notification %s",
                event.user_id,
                event.priority,
                event.id,
            )
            return None

        template_data = {
            "username": (user or {}).get("username") or event.user_id,
            "title": event.title,
            "content": event.content,
            "senderName": event.sender_name or DEFAULT_SENDER_NAME,
            "priority": event.priority,
        }
        template = await self.persistence.find_active_template(self.template_name)
        if template is None:
            self.logger.debug("No active '%s' template, queueing plain content", self.template_name)
        msg_id = await self.dispatcher.enqueue(
            to=email,
            subject=f"{MAIL_SUBJECT_PREFIX}{event.title}",
            content=event.content,
            template_id=template["id"] if template else None,
            template_data=template_data if template else None,
            priority=event.priority,
        )
        self.logger.info("Queued mail copy %s of notification %s for user %s", msg_id, event.id, event.user_id)
        return msg_id
