import logging
import os
from pathlib import Path
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"

# Third-party loggers that are too chatty at DEBUG
NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "websockets")


def _parse_level(value, default: int = logging.INFO) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default
    level = logging.getLevelName(text)
    if isinstance(level, int):
        return level
    try:
        return int(text)
    except ValueError:
        return default


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None, fmt: str = DEFAULT_FORMAT) -> None:
    """Configure the root logger with a console handler and an optional file handler.

    Safe to call more than once: previously installed handlers are replaced.
    """
    level = _parse_level(log_level)

    handlers = [logging.StreamHandler()]
    if log_file and log_file.strip():
        path = Path(os.path.expanduser(log_file))
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    formatter = logging.Formatter(fmt=fmt)
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logging.captureWarnings(True)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def short_token(token: Optional[str], keep: int = 8) -> str:
    """Shorten a room or share token for log lines; tokens grant room access."""
    if not token:
        return "-"
    return token[:keep] + "..." if len(token) > keep else token
