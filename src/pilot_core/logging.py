from __future__ import annotations

import logging
import re
import sys
from collections.abc import Callable, Mapping
from typing import Any, TextIO


LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")

# Secret-looking assignments, e.g. echoed by the child server while it boots.
_SECRET_ASSIGNMENT = re.compile(r"(?i)(authorization|token|api_key|password|secret)=([^\s,;]+)")

RECORD_DEFAULTS: dict[str, Any] = {
    "component": "",
    "operation": "",
    "result": "",
    "pid": "",
    "port": "",
    "duration_ms": 0,
    "error_class": "",
}

STRUCTURED_LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s: "
    "component=%(component)s operation=%(operation)s result=%(result)s "
    "pid=%(pid)s port=%(port)s duration_ms=%(duration_ms)s error_class=%(error_class)s %(message)s"
)


def redact_secrets(message: str) -> str:
    return _SECRET_ASSIGNMENT.sub(r"\1=[redacted]", message)


class StructuredLogDefaultsFilter(logging.Filter):
    """Fills the structured fields the format string expects and masks secrets."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in RECORD_DEFAULTS.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def normalize_log_level(value: Any) -> str:
    candidate = str(value or "").strip().lower()
    if candidate in LOG_LEVEL_CHOICES:
        return candidate
    return "info"


def _level_number(level: str) -> int:
    return getattr(logging, normalize_log_level(level).upper(), logging.INFO)


def configure_structured_logger(logger: logging.Logger, *, level: str, stream: TextIO | None = None) -> None:
    """Route ``logger`` to a single structured stderr handler."""
    handler = logging.StreamHandler(stream if stream is not None else sys.__stderr__)
    handler.addFilter(StructuredLogDefaultsFilter())
    handler.setFormatter(logging.Formatter(STRUCTURED_LOG_FORMAT))
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(_level_number(level))
    logger.propagate = False


def configure_domain_log_levels(
    *,
    domains: Mapping[str, Any] | None,
    logger_prefix: str,
    normalize_level: Callable[[Any], str] = normalize_log_level,
) -> dict[str, str]:
    """Apply ``[logging.domains]`` overrides; returns the levels actually set."""
    applied: dict[str, str] = {}
    if not isinstance(domains, Mapping):
        return applied
    for domain, level_value in domains.items():
        name = str(domain or "").strip().lower()
        if not name:
            continue
        level = normalize_level(level_value)
        logging.getLogger(f"{logger_prefix}.{name}").setLevel(_level_number(level))
        applied[name] = level
    return applied
