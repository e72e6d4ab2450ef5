"""Wiring of the delivery components into one service object."""

from __future__ import annotations

from typing import Any, Mapping

from .auth import TokenVerifier
from .dispatcher import QueueDispatcher
from .gateway import PushGateway
from .logger import get_logger
from .orchestrator import NotificationOrchestrator
from .persistence import Persistence
from .prometheus import NotifyMetrics
from .smtp_pool import SmtpSettings
from .transport import MailTransport, SmtpMailTransport


class NotifyService:
    """Bundle of persistence, dispatcher, push gateway and orchestrator.

    The API layer and the CLI only talk to this object; the components share
    one :class:`NotifyMetrics` registry and one logger.
    """

    def __init__(
        self,
        persistence: Persistence,
        dispatcher: QueueDispatcher,
        gateway: PushGateway,
        orchestrator: NotificationOrchestrator,
        metrics: NotifyMetrics,
        logger=None,
    ):
        self.persistence = persistence
        self.dispatcher = dispatcher
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.metrics = metrics
        self.logger = logger or get_logger()

    @classmethod
    def from_settings(
        cls,
        settings: Mapping[str, Any],
        *,
        transport: MailTransport | None = None,
        metrics: NotifyMetrics | None = None,
        logger=None,
    ) -> "NotifyService":
        """Build every component from a settings mapping as returned by ``load_settings``."""
        logger = logger or get_logger()
        metrics = metrics or NotifyMetrics()
        secret = settings.get("jwt_secret")
        if not secret:
            raise ValueError("jwt_secret must be configured to accept push connections")

        persistence = Persistence(str(settings.get("db_path") or "/data/notify_service.db"))
        if transport is None:
            transport = SmtpMailTransport(
                SmtpSettings(
                    host=str(settings.get("smtp_host") or "localhost"),
                    port=int(settings.get("smtp_port") or 25),
                    user=settings.get("smtp_user"),
                    password=settings.get("smtp_password"),
                    use_tls=settings.get("smtp_use_tls"),
                ),
                sender=str(settings.get("smtp_sender") or "no-reply@localhost"),
                timeout=float(settings.get("smtp_timeout") or 30.0),
                logger=logger,
            )

        dispatcher_kwargs: dict[str, Any] = {}
        for key, name in (
            ("send_loop_interval", "interval"),
            ("batch_size", "batch_size"),
            ("backoff_base_minutes", "backoff_base_minutes"),
            ("default_max_retries", "default_max_retries"),
            ("urgent_trigger_delay", "urgent_trigger_delay"),
            ("retention_days", "retention_days"),
        ):
            if settings.get(key) is not None:
                dispatcher_kwargs[name] = settings[key]
        dispatcher = QueueDispatcher(
            persistence,
            transport,
            metrics=metrics,
            logger=logger,
            test_mode=bool(settings.get("test_mode")),
            log_delivery_activity=bool(settings.get("log_delivery_activity")),
            **dispatcher_kwargs,
        )

        verifier = TokenVerifier(str(secret), algorithms=settings.get("jwt_algorithms") or ("HS256",))
        gateway_kwargs: dict[str, Any] = {}
        if settings.get("maintenance_grace_seconds") is not None:
            gateway_kwargs["maintenance_grace_seconds"] = settings["maintenance_grace_seconds"]
        gateway = PushGateway(verifier, metrics=metrics, logger=logger, **gateway_kwargs)

        orchestrator = NotificationOrchestrator(
            persistence,
            gateway,
            dispatcher,
            template_name=str(settings.get("notification_template") or "notification"),
            metrics=metrics,
            logger=logger,
        )
        return cls(persistence, dispatcher, gateway, orchestrator, metrics, logger)

    async def init(self) -> None:
        """Create the schema without starting background work."""
        await self.dispatcher.init()

    async def start(self) -> None:
        await self.dispatcher.start()
        self.logger.info("Notify service started")

    async def stop(self) -> None:
        """Stop dispatching, close push sessions and release SMTP connections."""
        await self.dispatcher.stop()
        await self.gateway.shutdown()
        cleanup = getattr(self.dispatcher.transport, "cleanup", None)
        if cleanup is not None:
            await cleanup()
        self.logger.info("Notify service stopped")

    async def status(self) -> dict[str, Any]:
        return {
            "queue": await self.dispatcher.get_queue_stats(),
            "processing": self.dispatcher.is_processing,
            "push": self.gateway.stats(),
        }
