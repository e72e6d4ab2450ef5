"""Domain types shared by the dispatcher, the push gateway and the orchestrator.

Models:
    - Priority: delivery priority of queued mail (lower value = more urgent)
    - MessageStatus: lifecycle states of a queued message
    - QueuedMessage: one durable, retryable unit of outbound mail
    - NotificationEvent: the user-facing record of "something happened"
    - Delivered / AttemptFailed: typed outcome of one delivery attempt
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Union


class Priority(IntEnum):
    """Priority of a queued message.

    Values sort ascending from most to least urgent, so selecting by
    priority "descending" is ``ORDER BY priority ASC`` in storage.
    """

    URGENT = 0
    HIGH = 1
    NORMAL = 2
    LOW = 3

    @property
    def label(self) -> str:
        return self.name.lower()


PRIORITY_LABELS = {p.value: p.label for p in Priority}
LABEL_TO_PRIORITY = {label: value for value, label in PRIORITY_LABELS.items()}
DEFAULT_PRIORITY = Priority.NORMAL
ELEVATED_PRIORITIES = frozenset({Priority.URGENT, Priority.HIGH})


def normalise_priority(value: Any, default: Any = DEFAULT_PRIORITY) -> Priority:
    """Coerce a user supplied priority (label, int or enum) into :class:`Priority`.

    Unknown labels fall back to ``default``; integers are clamped to the
    valid range.
    """
    if isinstance(default, Priority):
        fallback = default
    elif isinstance(default, str) and default.lower() in LABEL_TO_PRIORITY:
        fallback = Priority(LABEL_TO_PRIORITY[default.lower()])
    else:
        try:
            fallback = Priority(max(0, min(int(default), max(PRIORITY_LABELS))))
        except (TypeError, ValueError):
            fallback = DEFAULT_PRIORITY

    if value is None:
        return fallback
    if isinstance(value, Priority):
        return value
    if isinstance(value, str):
        key = value.strip().lower()
        if key in LABEL_TO_PRIORITY:
            return Priority(LABEL_TO_PRIORITY[key])
        try:
            value = int(key)
        except ValueError:
            return fallback
    try:
        number = int(value)
    except (TypeError, ValueError):
        return fallback
    return Priority(max(0, min(number, max(PRIORITY_LABELS))))


class MessageStatus(str, Enum):
    """Lifecycle of a queued message: pending -> processing -> sent | pending | failed."""

    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class NotificationType(str, Enum):
    MESSAGE = "message"
    ANNOUNCEMENT = "announcement"
    SYSTEM = "system"


def utc_now_epoch() -> int:
    """Return the current UTC timestamp as seconds since epoch."""
    return int(datetime.now(timezone.utc).timestamp())


def epoch_to_iso(value: Optional[int]) -> Optional[str]:
    """Render an epoch timestamp as ISO-8601 with a trailing ``Z``."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class QueuedMessage:
    """A unit of durable, retryable outbound mail."""

    id: str
    to: str
    subject: str
    content: str = ""
    template_id: Optional[str] = None
    template_data: Dict[str, Any] = field(default_factory=dict)
    priority: Priority = DEFAULT_PRIORITY
    scheduled_at: int = 0
    status: MessageStatus = MessageStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    last_error: Optional[str] = None
    sent_at: Optional[int] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "QueuedMessage":
        """Build a message from a ``queued_messages`` row mapping."""
        raw_data = row.get("template_data")
        if isinstance(raw_data, str) and raw_data:
            try:
                template_data = json.loads(raw_data)
            except json.JSONDecodeError:
                template_data = {}
        else:
            template_data = raw_data or {}
        return cls(
            id=row["id"],
            to=row["recipient"],
            subject=row["subject"],
            content=row.get("content") or "",
            template_id=row.get("template_id"),
            template_data=template_data,
            priority=normalise_priority(row.get("priority")),
            scheduled_at=int(row.get("scheduled_at") or 0),
            status=MessageStatus(row.get("status") or MessageStatus.PENDING.value),
            retry_count=int(row.get("retry_count") or 0),
            max_retries=int(row.get("max_retries") if row.get("max_retries") is not None else 3),
            last_error=row.get("last_error"),
            sent_at=row.get("sent_at"),
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "to": self.to,
            "subject": self.subject,
            "content": self.content,
            "template_id": self.template_id,
            "template_data": self.template_data,
            "priority": self.priority.label,
            "scheduled_at": self.scheduled_at,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "last_error": self.last_error,
            "sent_at": self.sent_at,
            "created_at": self.created_at,
        }


@dataclass
class NotificationEvent:
    """The logical notification, independent of the channel that delivers it."""

    id: str
    user_id: Optional[str]
    type: str
    title: str
    content: str
    priority: Optional[str] = None
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    data: Optional[str] = None
    created_at: int = field(default_factory=utc_now_epoch)
    is_read: bool = False

    @property
    def is_elevated(self) -> bool:
        """True for ``high`` and ``urgent`` events, which also get a mail copy."""
        if self.priority is None:
            return False
        return normalise_priority(self.priority, Priority.LOW) in ELEVATED_PRIORITIES

    def to_payload(self) -> Dict[str, Any]:
        """Return the wire payload pushed to connected clients."""
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "content": self.content,
            "priority": self.priority,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "createdAt": epoch_to_iso(self.created_at),
            "isRead": self.is_read,
        }


@dataclass(frozen=True)
class Delivered:
    """The mail transport accepted the message."""

    delivery_id: str


@dataclass(frozen=True)
class AttemptFailed:
    """The attempt failed; ``reason`` is stored as the message's ``last_error``."""

    reason: str


AttemptResult = Union[Delivered, AttemptFailed]


@dataclass(frozen=True)
class Identity:
    """Authenticated owner of a push connection."""

    user_id: str
    username: Optional[str] = None
