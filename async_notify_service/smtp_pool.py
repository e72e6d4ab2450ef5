"""Lightweight asyncio-friendly SMTP connection pool."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import aiosmtplib

from .logger import get_logger


@dataclass(frozen=True)
class SmtpSettings:
    """Connection parameters of the outbound SMTP relay."""

    host: str
    port: int = 25
    user: Optional[str] = None
    password: Optional[str] = None
    use_tls: Optional[bool] = None

    @property
    def tls(self) -> bool:
        """Implicit TLS, defaulting to on for port 465."""
        if self.use_tls is None:
            return int(self.port) == 465
        return bool(self.use_tls)


class SMTPPool:
    """Reuse SMTP connections per task to reduce connection overhead."""

    def __init__(self, ttl: int = 300, connect_timeout: float = 15.0, logger=None):
        """Create a pool whose idle connections expire after ``ttl`` seconds."""
        self.ttl = ttl
        self.connect_timeout = connect_timeout
        self.logger = logger or get_logger()
        self.pool: Dict[int, Tuple[aiosmtplib.SMTP, float, SmtpSettings]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, settings: SmtpSettings) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed."""
        smtp = aiosmtplib.SMTP(
            hostname=settings.host,
            port=int(settings.port),
            start_tls=False,
            use_tls=settings.tls,
            timeout=10.0,
        )

        async def _do_connect():
            await smtp.connect()
            if settings.user and settings.password:
                await smtp.login(settings.user, settings.password)

        await asyncio.wait_for(_do_connect(), timeout=self.connect_timeout)
        self.logger.debug("Opened SMTP connection to %s:%s", settings.host, settings.port)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection answers NOOP with 250."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except Exception:
            return False

    async def _close(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except Exception as exc:
            self.logger.debug("Ignoring error while closing SMTP connection: %s", exc)

    async def get_connection(self, settings: SmtpSettings) -> aiosmtplib.SMTP:
        """Return a pooled connection bound to the calling task."""
        task_id = id(asyncio.current_task())

        async with self.lock:
            entry = self.pool.get(task_id)

        if entry:
            smtp, last_used, params = entry
            fresh_enough = (time.time() - last_used) < self.ttl
            if params == settings and fresh_enough and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[task_id] = (smtp, time.time(), params)
                return smtp
            async with self.lock:
                self.pool.pop(task_id, None)
            await self._close(smtp)

        smtp = await self._connect(settings)
        async with self.lock:
            self.pool[task_id] = (smtp, time.time(), settings)
        return smtp

    async def discard(self) -> None:
        """Drop the calling task's connection, e.g. after a failed send."""
        task_id = id(asyncio.current_task())
        async with self.lock:
            entry = self.pool.pop(task_id, None)
        if entry:
            await self._close(entry[0])

    async def cleanup(self) -> None:
        """Close idle or broken connections still registered in the pool."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        expired: List[int] = []
        for task_id, (smtp, last_used, _params) in items:
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                expired.append(task_id)

        for task_id in expired:
            async with self.lock:
                entry = self.pool.pop(task_id, None)
            if entry:
                await self._close(entry[0])
