import logging

from async_notify_service.config import load_settings
from async_notify_service.server import run_server


if __name__ == "__main__":
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, str(settings["log_level"]), logging.INFO),
        format='[%(asctime)s] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True  # Force reconfiguration to avoid duplicate handlers
    )
    run_server(settings)
