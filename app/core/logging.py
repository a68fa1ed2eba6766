import logging
import sys
import os
from typing import Optional

from app.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Per-request chatter from the HTTP client used for profiles and the mail relay
QUIET_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """
    Root logging for the API: stdout plus an optional file under LOG_DIR.
    An empty LOG_FILE keeps everything on stdout.
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    numeric = getattr(logging, level_name, logging.INFO)
    log_file = settings.LOG_FILE if log_file is None else log_file

    # Clear handlers left by a previous reload
    root = logging.getLogger()
    if root.handlers:
        root.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        os.makedirs(settings.LOG_DIR, exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join(settings.LOG_DIR, log_file), encoding="utf-8"))

    for handler in handlers:
        handler.setLevel(numeric)
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(numeric)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric, logging.WARNING))
