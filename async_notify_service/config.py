"""Settings loader: INI file first, ``GNS_*`` environment variables as fallback."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import List, Optional


def _split_list(value: Optional[str], default: List[str]) -> List[str]:
    if value is None:
        return list(default)
    items = [item.strip() for item in str(value).split(",") if item.strip()]
    return items or list(default)


def load_settings(config_path: str | os.PathLike | None = None) -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with GNS_):
      GNS_CONFIG - Path to config.ini file (default: config.ini)
      GNS_LOG_LEVEL - Logging level (default: INFO)
      GNS_DB_PATH - Database path (default: /data/notify_service.db)
      GNS_HOST - Server host (default: 0.0.0.0)
      GNS_PORT - Server port (default: 8000)
      GNS_API_TOKEN - API authentication token
      GNS_SMTP_HOST, GNS_SMTP_PORT, GNS_SMTP_USER, GNS_SMTP_PASSWORD,
      GNS_SMTP_USE_TLS, GNS_SMTP_SENDER, GNS_SMTP_TIMEOUT - Outbound relay
      GNS_SEND_LOOP_INTERVAL - Dispatch interval in seconds (default: 30)
      GNS_BATCH_SIZE - Messages attempted per cycle (default: 10)
      GNS_BACKOFF_BASE_MINUTES - Retry backoff base (default: 5)
      GNS_DEFAULT_MAX_RETRIES - Retry budget of new messages (default: 3)
      GNS_URGENT_TRIGGER_DELAY - Delay of the out-of-band cycle (default: 1.0)
      GNS_RETENTION_DAYS - Default age for cleanup-sent (default: 30)
      GNS_TEST_MODE - Do not start the dispatch loop (default: False)
      GNS_JWT_SECRET - Secret used to verify push credentials
      GNS_JWT_ALGORITHMS - Comma separated list (default: HS256)
      GNS_MAINTENANCE_GRACE_SECONDS - Delay before maintenance disconnect (default: 5)
      GNS_NOTIFICATION_TEMPLATE - Template name for mail copies (default: notification)
      GNS_LOG_DELIVERY_ACTIVITY - Log delivery activity (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [smtp] host, port, user, password, use_tls, sender, timeout
      [dispatch] interval_seconds, batch_size, backoff_base_minutes, default_max_retries,
                 urgent_trigger_delay, retention_days, test_mode
      [push] jwt_secret, jwt_algorithms, maintenance_grace_seconds, notification_template
      [logging] level, delivery_activity
    """
    path = Path(config_path) if config_path is not None else Path(os.getenv("GNS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return float(value)

    settings = {
        "db_path": get("storage", "db_path", os.getenv("GNS_DB_PATH", "/data/notify_service.db")),
        "http_host": get("server", "host", os.getenv("GNS_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("GNS_PORT"), default=8000),
        "api_token": get("server", "api_token", os.getenv("GNS_API_TOKEN")),
        "smtp_host": get("smtp", "host", os.getenv("GNS_SMTP_HOST", "localhost")),
        "smtp_port": get_int("smtp", "port", os.getenv("GNS_SMTP_PORT"), default=25),
        "smtp_user": get("smtp", "user", os.getenv("GNS_SMTP_USER")),
        "smtp_password": get("smtp", "password", os.getenv("GNS_SMTP_PASSWORD")),
        "smtp_use_tls": get_bool("smtp", "use_tls", os.getenv("GNS_SMTP_USE_TLS"), default=None),
        "smtp_sender": get("smtp", "sender", os.getenv("GNS_SMTP_SENDER", "no-reply@localhost")),
        "smtp_timeout": get_float("smtp", "timeout", os.getenv("GNS_SMTP_TIMEOUT"), default=30.0),
        "send_loop_interval": get_float(
            "dispatch", "interval_seconds", os.getenv("GNS_SEND_LOOP_INTERVAL"), default=30.0
        ),
        "batch_size": get_int("dispatch", "batch_size", os.getenv("GNS_BATCH_SIZE"), default=10),
        "backoff_base_minutes": get_float(
            "dispatch", "backoff_base_minutes", os.getenv("GNS_BACKOFF_BASE_MINUTES"), default=5.0
        ),
        "default_max_retries": get_int(
            "dispatch", "default_max_retries", os.getenv("GNS_DEFAULT_MAX_RETRIES"), default=3
        ),
        "urgent_trigger_delay": get_float(
            "dispatch", "urgent_trigger_delay", os.getenv("GNS_URGENT_TRIGGER_DELAY"), default=1.0
        ),
        "retention_days": get_int("dispatch", "retention_days", os.getenv("GNS_RETENTION_DAYS"), default=30),
        "test_mode": get_bool("dispatch", "test_mode", os.getenv("GNS_TEST_MODE"), False),
        "jwt_secret": get("push", "jwt_secret", os.getenv("GNS_JWT_SECRET")),
        "jwt_algorithms": _split_list(get("push", "jwt_algorithms", os.getenv("GNS_JWT_ALGORITHMS")), ["HS256"]),
        "maintenance_grace_seconds": get_float(
            "push", "maintenance_grace_seconds", os.getenv("GNS_MAINTENANCE_GRACE_SECONDS"), default=5.0
        ),
        "notification_template": get(
            "push", "notification_template", os.getenv("GNS_NOTIFICATION_TEMPLATE", "notification")
        ),
        "log_level": (get("logging", "level", os.getenv("GNS_LOG_LEVEL", "INFO")) or "INFO").upper(),
        "log_delivery_activity": get_bool(
            "logging",
            "delivery_activity",
            os.getenv("GNS_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    for key in ("api_token", "jwt_secret"):
        value = settings.get(key)
        if isinstance(value, str):
            value = value.strip() or None
        settings[key] = value
    return settings
