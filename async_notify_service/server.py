"""ASGI application entry point for uvicorn.

Usage:
    uvicorn async_notify_service.server:build_app --factory --host 0.0.0.0 --port 8000

Configuration comes from :func:`async_notify_service.config.load_settings`
(``GNS_CONFIG`` INI file plus ``GNS_*`` environment variables).
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Mapping

import uvicorn
from fastapi import FastAPI

from .api import create_app
from .config import load_settings
from .service import NotifyService


def build_app(settings: Mapping[str, Any] | None = None) -> FastAPI:
    """Create the service from ``settings`` and wrap it in a FastAPI app."""
    settings = settings if settings is not None else load_settings()
    service = NotifyService.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the notify service."""
        await service.start()
        yield
        await service.stop()

    return create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)


def run_server(settings: Mapping[str, Any]) -> None:
    """Serve the application in the foreground until interrupted."""
    app = build_app(settings)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
