"""
logging_config.py - Centralized logging configuration.

Every module logs through `get_logger(__name__)` using structured
`event_name | key=value | ...` messages so pipeline runs can be grepped
stage by stage. `setup_logging` is called once by the CLI.
"""

from __future__ import annotations

import functools
import logging
import sys
from typing import Callable, TypeVar

T = TypeVar("T")

TEXT_FORMAT = "%(asctime)s [%(name)-14s] %(levelname)-7s %(message)s"
JSON_FORMAT = (
    '{"timestamp":"%(asctime)s","level":"%(levelname)s",'
    '"module":"%(name)s","thread":"%(threadName)s","message":"%(message)s"}'
)


def setup_logging(level: int = logging.INFO, json_format: bool = False) -> None:
    """Configure root logger with consistent formatting.

    Args:
        level: Logging level.
        json_format: If True, emit JSON-like log lines.
    """
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    formatter = logging.Formatter(
        JSON_FORMAT if json_format else TEXT_FORMAT,
        datefmt="%H:%M:%S",
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    # Cloud SDKs are chatty at DEBUG; keep their noise out of pipeline traces.
    for noisy in ("botocore", "boto3", "urllib3", "PIL"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)


def mask_secret(value: str | None) -> str:
    """Render a credential for log lines without leaking it."""
    if not value:
        return "<unset>"
    if len(value) <= 6:
        return "***"
    return f"{value[:3]}***{value[-2:]}"


def graceful(default_factory: Callable[[], T], log_level: int = logging.ERROR):
    """Decorator that catches exceptions and returns a default value.

    Reserved for advisory steps whose failure must never abort a pipeline
    run (image quality analysis). The failure is logged with its traceback
    and the default value carries a marker the caller can surface.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except (KeyboardInterrupt, SystemExit):
                raise
            except Exception as exc:
                logger = logging.getLogger(func.__module__)
                logger.log(
                    log_level,
                    "graceful_fallback | func=%s | error_type=%s | error=%s",
                    func.__name__,
                    type(exc).__name__,
                    exc,
                    exc_info=True,
                )
                return default_factory()

        return wrapper

    return decorator
