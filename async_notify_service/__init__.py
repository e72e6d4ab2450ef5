"""Asynchronous notification delivery microservice.

This package delivers user notifications through two channels:

- A durable, priority-ordered outbound mail queue with exponential backoff
- A live websocket push gateway with per-user fan-out and named rooms
- A notification orchestrator that decides which channel(s) an event uses
- Prometheus metrics for monitoring
- FastAPI REST API for control, plus the ``/ws`` push endpoint
- SQLite persistence for reliability

Example:
    Basic usage with the FastAPI application::

        from async_notify_service.api import create_app
        from async_notify_service.service import NotifyService

        service = NotifyService.from_settings({"db_path": "/data/notify.db", "jwt_secret": "change-me"})
        app = create_app(service, api_token="secret")
"""

__version__ = "0.3.0"
