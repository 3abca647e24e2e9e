"""Structured logging setup (structlog on top of a stdlib stream handler)."""
from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

_SENSITIVE_KEYS = {"token", "authorization", "private_key", "signing_key", "jwt", "password"}


def _redact_sensitive(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    def _scrub(value: Any) -> Any:
        if isinstance(value, dict):
            out = {}
            for key, item in value.items():
                lowered = str(key).lower()
                if lowered in _SENSITIVE_KEYS or any(
                    marker in lowered for marker in ("token", "authorization", "private_key")
                ):
                    out[key] = "[REDACTED]"
                else:
                    out[key] = _scrub(item)
            return out
        if isinstance(value, (list, tuple)):
            return [_scrub(item) for item in value]
        return value

    return _scrub(event_dict)


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            _redact_sensitive,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(numeric_level)
