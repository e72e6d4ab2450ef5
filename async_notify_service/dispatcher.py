"""Queue dispatcher: drains the durable mail queue with priority and backoff."""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from .logger import get_logger
from .models import (
    ELEVATED_PRIORITIES,
    AttemptFailed,
    AttemptResult,
    Delivered,
    MessageStatus,
    QueuedMessage,
    normalise_priority,
)
from .persistence import Persistence
from .prometheus import NotifyMetrics
from .templates import TemplateNotFoundError, TemplateResolver, render_template
from .transport import MailTransport, describe_smtp_error

DEFAULT_INTERVAL = 30.0
DEFAULT_BATCH_SIZE = 10
DEFAULT_BACKOFF_BASE_MINUTES = 5
DEFAULT_MAX_RETRIES = 3
DEFAULT_URGENT_TRIGGER_DELAY = 1.0
DEFAULT_RETENTION_DAYS = 30
HOUSEKEEPING_INTERVAL = 150.0


def compute_backoff_seconds(retry_count: int, base_minutes: float = DEFAULT_BACKOFF_BASE_MINUTES) -> int:
    """
    Return the delay before the next attempt after the ``retry_count``-th failure.

    The delay is ``base_minutes * 2 ** retry_count`` minutes, so with the
    default base of 5 minutes successive retries wait 10, 20, 40... minutes.
    """
    return int(base_minutes * (2 ** max(0, int(retry_count))) * 60)


class QueueDispatcher:
    """Select due messages in priority order and drive their delivery state machine."""

    def __init__(
        self,
        persistence: Persistence,
        transport: MailTransport,
        *,
        templates: TemplateResolver | None = None,
        interval: float = DEFAULT_INTERVAL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        backoff_base_minutes: float = DEFAULT_BACKOFF_BASE_MINUTES,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        urgent_trigger_delay: float = DEFAULT_URGENT_TRIGGER_DELAY,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        metrics: NotifyMetrics | None = None,
        logger=None,
        clock: Callable[[], float] | None = None,
        test_mode: bool = False,
        log_delivery_activity: bool = False,
    ):
        """Prepare the collaborators; no background work starts until :meth:`start`."""
        self.persistence = persistence
        self.transport = transport
        self.templates = templates or TemplateResolver(persistence)
        self.metrics = metrics or NotifyMetrics()
        self.logger = logger or get_logger()
        self._clock = clock or time.time

        self._interval = max(0.05, float(interval))
        self._batch_size = max(1, int(batch_size))
        self._backoff_base_minutes = float(backoff_base_minutes)
        self._default_max_retries = max(1, int(default_max_retries))
        self._urgent_trigger_delay = max(0.0, float(urgent_trigger_delay))
        self._retention_days = int(retention_days)
        self._test_mode = bool(test_mode)
        self._log_delivery_activity = bool(log_delivery_activity)

        self._processing = False
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_dispatch: Optional[asyncio.Task] = None
        self._task_housekeeping: Optional[asyncio.Task] = None
        self._triggers: Set[asyncio.TimerHandle] = set()
        self._background: Set[asyncio.Task] = set()

    # --------------------------------------------------------------------- utils
    def _now(self) -> int:
        return int(self._clock())

    @property
    def is_processing(self) -> bool:
        """True while a dispatch cycle is in flight."""
        return self._processing

    @property
    def retention_days(self) -> int:
        return self._retention_days

    def _log_activity(self, msg: str, *args: Any) -> None:
        if self._log_delivery_activity:
            self.logger.info(msg, *args)
        else:
            self.logger.debug(msg, *args)

    async def init(self) -> None:
        """Initialise persistence and publish the current queue gauge."""
        await self.persistence.init_db()
        await self._refresh_queue_gauge()

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the periodic dispatch loop and SMTP housekeeping.

        Messages left in ``processing`` by a previous run are put back in the
        queue before the first cycle.
        """
        await self.init()
        recovered = await self.persistence.requeue_stale_processing(self._now())
        if recovered:
            self.logger.warning("Re-queued %d message(s) interrupted while processing", recovered)
            await self._refresh_queue_gauge()
        self._stop.clear()
        self._wake_event.clear()
        if self._test_mode:
            self.logger.info("Test mode: dispatch loop not started, use run-now to process the queue")
            return
        self._task_dispatch = asyncio.create_task(self._dispatch_loop(), name="queue-dispatch-loop")
        if hasattr(self.transport, "cleanup"):
            self._task_housekeeping = asyncio.create_task(self._housekeeping_loop(), name="smtp-cleanup-loop")
        self.logger.info(
            "Queue dispatcher started (interval=%ss, batch_size=%d)", self._interval, self._batch_size
        )

    async def stop(self) -> None:
        """Stop the background tasks and drop pending out-of-band triggers."""
        self._stop.set()
        self._wake_event.set()
        for handle in list(self._triggers):
            handle.cancel()
        self._triggers.clear()
        tasks = [task for task in [self._task_dispatch, self._task_housekeeping] if task]
        tasks.extend(self._background)
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task_dispatch = None
        self._task_housekeeping = None

    async def _dispatch_loop(self) -> None:
        """Run one cycle, then sleep for the interval or until woken, until stopped."""
        while not self._stop.is_set():
            try:
                await self.process_queue()
            except Exception as exc:  # pragma: no cover - defensive
                self.logger.exception("Unhandled error in dispatch loop: %s", exc)
            await self._wait_for_wakeup(self._interval)

    async def _housekeeping_loop(self) -> None:
        """Keep pooled SMTP connections healthy."""
        while not self._stop.is_set():
            await self._wait(HOUSEKEEPING_INTERVAL)
            if self._stop.is_set():
                return
            try:
                await self.transport.cleanup()
            except Exception as exc:
                self.logger.warning("SMTP pool cleanup failed: %s", exc)

    async def _wait(self, timeout: float) -> None:
        """Sleep for ``timeout`` seconds unless :meth:`stop` is called first."""
        try:
            async with asyncio.timeout(timeout):
                await self._stop.wait()
        except TimeoutError:
            return

    async def _wait_for_wakeup(self, timeout: float) -> None:
        """Pause the dispatch loop until the interval elapses or a trigger wakes it."""
        if self._stop.is_set():
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except TimeoutError:
            return
        finally:
            self._wake_event.clear()

    def _loop_running(self) -> bool:
        return self._task_dispatch is not None and not self._task_dispatch.done()

    async def _run_triggered_cycle(self) -> None:
        """Run one cycle outside the loop task and release its SMTP connection."""
        try:
            await self.process_queue()
        finally:
            release = getattr(self.transport, "release", None)
            if release is not None:
                try:
                    await release()
                except Exception as exc:
                    self.logger.warning("Could not release SMTP connection: %s", exc)

    def trigger_soon(self, delay: float | None = None) -> None:
        """Schedule one extra dispatch cycle ``delay`` seconds from now.

        With the dispatch loop running the trigger wakes it; otherwise the
        cycle runs in its own short-lived task.
        """
        if self._stop.is_set():
            return
        loop = asyncio.get_running_loop()
        delay = self._urgent_trigger_delay if delay is None else max(0.0, float(delay))
        handle: asyncio.TimerHandle

        def _fire() -> None:
            self._triggers.discard(handle)
            if self._loop_running():
                self._wake_event.set()
                return
            task = loop.create_task(self._run_triggered_cycle(), name="queue-dispatch-trigger")
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        handle = loop.call_later(delay, _fire)
        self._triggers.add(handle)

    # ------------------------------------------------------------------ commands
    async def enqueue(
        self,
        *,
        to: str,
        subject: str,
        content: Optional[str] = None,
        template_id: Optional[str] = None,
        template_data: Optional[Dict[str, Any]] = None,
        priority: Any = None,
        scheduled_at: int | float | datetime | None = None,
        max_retries: Optional[int] = None,
    ) -> str:
        """Store a new ``pending`` message and return its id.

        ``high`` and ``urgent`` messages also schedule an out-of-band cycle so
        they do not wait for the next periodic tick.
        """
        if not to:
            raise ValueError("missing recipient")
        if subject is None:
            raise ValueError("missing subject")
        msg_id = uuid.uuid4().hex
        priority_value = normalise_priority(priority)
        if isinstance(scheduled_at, datetime):
            scheduled_ts = int(scheduled_at.timestamp())
        elif scheduled_at is not None:
            scheduled_ts = int(scheduled_at)
        else:
            scheduled_ts = self._now()
        retries = self._default_max_retries if max_retries is None else max(1, int(max_retries))

        await self.persistence.insert_message(
            {
                "id": msg_id,
                "to": to,
                "subject": subject,
                "content": content or "",
                "template_id": template_id,
                "template_data": template_data or None,
                "priority": int(priority_value),
                "scheduled_at": scheduled_ts,
                "max_retries": retries,
            }
        )
        self._log_activity(
            "Queued message %s to %s (priority=%s)", msg_id, to, priority_value.label
        )
        await self._refresh_queue_gauge()

        if priority_value in ELEVATED_PRIORITIES:
            self.trigger_soon()
        return msg_id

    async def get_queue_stats(self) -> Dict[str, int]:
        """Return ``{pending, processing, sent, failed, total}`` counts."""
        counts = await self.persistence.count_by_status()
        stats = {status.value: int(counts.get(status.value, 0)) for status in MessageStatus}
        stats["total"] = sum(counts.values())
        return stats

    async def retry_failed(self, ids: Optional[Iterable[str]] = None) -> int:
        """Return ``failed`` messages (all, or only ``ids``) to the queue."""
        id_list = None if ids is None else list(ids)
        count = await self.persistence.reset_failed(id_list, self._now())
        self.logger.info("Re-queued %d failed message(s)", count)
        await self._refresh_queue_gauge()
        return count

    async def cleanup_sent(self, older_than_days: Optional[int] = None) -> int:
        """Delete ``sent`` messages older than the retention window."""
        days = self._retention_days if older_than_days is None else int(older_than_days)
        if days < 0:
            raise ValueError("older_than_days must be zero or positive")
        threshold = self._now() - days * 86400
        removed = await self.persistence.delete_sent_before(threshold)
        self.logger.info("Removed %d sent message(s) older than %d day(s)", removed, days)
        return removed

    async def list_messages(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = await self.persistence.list_messages(status=status)
        return [QueuedMessage.from_row(row).to_dict() for row in rows]

    async def get_message(self, msg_id: str) -> Optional[QueuedMessage]:
        row = await self.persistence.get_message(msg_id)
        return QueuedMessage.from_row(row) if row else None

    # ------------------------------------------------------------- dispatching
    async def process_queue(self) -> int:
        """Run one dispatch cycle and return how many messages were attempted.

        A call made while another cycle is in flight returns ``0`` without
        touching the queue.
        """
        if self._processing:
            self.logger.debug("Dispatch cycle already running, skipping trigger")
            return 0
        self._processing = True
        attempted = 0
        try:
            now_ts = self._now()
            rows = await self.persistence.fetch_due_messages(limit=self._batch_size, now_ts=now_ts)
            if not rows:
                return 0
            self.logger.info("Processing %d queued message(s)", len(rows))
            for row in rows:
                if await self._process_message(QueuedMessage.from_row(row)):
                    attempted += 1
        except Exception as exc:
            self.logger.exception("Dispatch cycle aborted: %s", exc)
        finally:
            self._processing = False
            await self._refresh_queue_gauge()
        return attempted

    async def _process_message(self, message: QueuedMessage) -> bool:
        """Attempt one message; no exception escapes to the cycle.

        Returns ``False`` when the message could not be claimed.
        """
        try:
            if not await self.persistence.mark_processing(message.id):
                self.logger.debug("Message %s is no longer pending, skipping", message.id)
                return False
            message.status = MessageStatus.PROCESSING
            result = await self._attempt(message)
        except Exception as exc:
            text, _ = describe_smtp_error(exc)
            result = AttemptFailed(text)
        try:
            await self._apply_result(message, result)
        except Exception as exc:
            self.logger.exception("Could not record outcome of message %s: %s", message.id, exc)
        return True

    async def _resolve_content(self, message: QueuedMessage) -> tuple[str, str]:
        """Return the final ``(subject, body)``, rendering the template if any."""
        if not message.template_id:
            return message.subject, message.content
        template = await self.templates.get_template(message.template_id)
        body = render_template(template["body"], message.template_data, escape=True)
        subject = message.subject
        if template.get("subject"):
            subject = render_template(template["subject"], message.template_data)
        return subject, body

    async def _attempt(self, message: QueuedMessage) -> AttemptResult:
        """Resolve content and call the transport, folding errors into a result."""
        try:
            subject, body = await self._resolve_content(message)
        except TemplateNotFoundError as exc:
            return AttemptFailed(str(exc))
        self._log_activity("Attempting delivery for message %s to %s", message.id, message.to)
        try:
            delivery_id = await self.transport.send(message.to, subject, body)
        except Exception as exc:
            text, _ = describe_smtp_error(exc)
            return AttemptFailed(text)
        return Delivered(str(delivery_id) if delivery_id is not None else "")

    async def _apply_result(self, message: QueuedMessage, result: AttemptResult) -> None:
        """Move the message to its next state according to the attempt outcome."""
        label = message.priority.label
        if isinstance(result, Delivered):
            sent_ts = self._now()
            await self.persistence.mark_sent(message.id, sent_ts)
            message.status = MessageStatus.SENT
            message.sent_at = sent_ts
            self.metrics.inc_sent(label)
            self._log_activity("Delivery succeeded for message %s (%s)", message.id, result.delivery_id)
            return

        if message.retry_count >= message.max_retries:
            await self.persistence.mark_failed(message.id, retry_count=message.retry_count, error=result.reason)
            message.status = MessageStatus.FAILED
            message.last_error = result.reason
            self.metrics.inc_failed(label)
            self.logger.error(
                "Message %s failed permanently after %d retries: %s",
                message.id,
                message.retry_count,
                result.reason,
            )
            return

        retry_count = message.retry_count + 1
        delay = compute_backoff_seconds(retry_count, self._backoff_base_minutes)
        scheduled_at = self._now() + delay
        await self.persistence.schedule_retry(
            message.id, retry_count=retry_count, scheduled_at=scheduled_at, error=result.reason
        )
        message.status = MessageStatus.PENDING
        message.retry_count = retry_count
        message.scheduled_at = scheduled_at
        message.last_error = result.reason
        self.metrics.inc_retried(label)
        self.logger.warning(
            "Delivery failed for message %s (retry %d/%d): %s - retrying in %ds",
            message.id,
            retry_count,
            message.max_retries,
            result.reason,
            delay,
        )

    async def _refresh_queue_gauge(self) -> None:
        """Refresh the metric describing queued messages."""
        try:
            count = await self.persistence.count_pending_messages()
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Failed to refresh queue gauge")
            return
        self.metrics.set_pending(count)
