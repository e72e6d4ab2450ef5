"""Logging helpers for the async notify service."""

import logging

def get_logger(name: str = "AsyncNotifyService") -> logging.Logger:
    """Return the named :class:`logging.Logger` used by the service components.

    Handlers and levels are configured once via ``logging.basicConfig()`` in
    ``main.py``; this helper never attaches handlers of its own.
    """
    return logging.getLogger(name)
