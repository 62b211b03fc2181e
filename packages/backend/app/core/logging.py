from __future__ import annotations

import logging
from typing import Any

import structlog


_REDACTED_KEYS = ("password", "secret", "token", "code", "authorization", "pepper")


def _redact_sensitive(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        lowered = key.lower()
        if lowered in {"status_code", "error_code"}:
            continue
        if any(marker in lowered for marker in _REDACTED_KEYS):
            event_dict[key] = "***"
    return event_dict


def configure_logging(*, level: str = "INFO", json_output: bool = False) -> None:
    """Configure structlog once for the process.

    Production renders one JSON object per line; everything else gets the
    console renderer. Values under keys that look like credentials are masked
    before rendering.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=log_level)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
