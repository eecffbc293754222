"""Logging configuration for AgriLens."""

import logging
import sys
from collections.abc import Iterable, MutableMapping
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from agrilens.config import get_settings

SECURITY_LOGGER_NAME = "agrilens.security.events"

_MASK_KEEP = 3


def mask_value(value: Any) -> Any:
    """Mask a single sensitive value.

    Strings longer than six characters keep their first and last three
    characters; shorter strings are fully starred. Anything else is
    replaced by a placeholder.
    """
    if isinstance(value, str):
        if len(value) > _MASK_KEEP * 2:
            return value[:_MASK_KEEP] + "*" * (len(value) - _MASK_KEEP * 2) + value[-_MASK_KEEP:]
        return "*" * len(value)
    return "[MASKED]"


def mask_sensitive(obj: Any, fields: Iterable[str]) -> Any:
    """Return a copy of *obj* with every sensitive key masked, recursively."""
    names = {f.lower() for f in fields}
    return _mask(obj, names)


def _mask(obj: Any, names: set[str]) -> Any:
    if isinstance(obj, dict):
        out: dict[Any, Any] = {}
        for key, value in obj.items():
            if isinstance(key, str) and key.lower() in names and value not in (None, ""):
                out[key] = mask_value(value)
            else:
                out[key] = _mask(value, names)
        return out
    if isinstance(obj, list | tuple):
        return type(obj)(_mask(item, names) for item in obj)
    return obj


def mask_sensitive_processor(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor applying :func:`mask_sensitive` to every event."""
    fields = get_settings().sensitive_fields
    if not fields:
        return event_dict
    masked: MutableMapping[str, Any] = mask_sensitive(dict(event_dict), fields)
    return masked


def setup_logging() -> None:
    """Configure structured logging with console, file and security outputs."""
    settings = get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_to_file:
        try:
            log_dir = Path(settings.log_directory)
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            # Fall back to console-only logging
            print(f"Warning: Could not create log directory: {e}", file=sys.stderr)
            settings.log_to_file = False

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=[],
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    logging.root.addHandler(console_handler)

    file_handler = None
    security_handler = None
    if settings.log_to_file:
        try:
            file_handler = RotatingFileHandler(
                filename=settings.log_file_path,
                maxBytes=settings.log_file_max_bytes,
                backupCount=settings.log_file_backup_count,
                encoding="utf-8",
            )
            file_handler.setLevel(log_level)
            logging.root.addHandler(file_handler)

            # Security events also land in their own file regardless of level
            security_handler = RotatingFileHandler(
                filename=settings.security_log_file_path,
                maxBytes=settings.log_file_max_bytes,
                backupCount=settings.log_file_backup_count,
                encoding="utf-8",
            )
            security_handler.setLevel(logging.INFO)
            logging.getLogger(SECURITY_LOGGER_NAME).addHandler(security_handler)
        except OSError as e:
            print(f"Warning: Could not setup file logging: {e}", file=sys.stderr)
            file_handler = None
            security_handler = None

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            mask_sensitive_processor,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Console: colored in dev, JSON in prod
    console_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            (
                structlog.dev.ConsoleRenderer(colors=True)  # type: ignore[list-item]
                if settings.is_development
                else structlog.processors.JSONRenderer()
            ),
        ]
    )
    console_handler.setFormatter(console_formatter)

    # Files: always JSON for easy parsing
    for handler in (file_handler, security_handler):
        if handler is None:
            continue
        handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    structlog.processors.JSONRenderer(),
                ]
            )
        )

    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
