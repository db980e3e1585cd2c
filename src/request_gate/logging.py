"""Logging for the request gate.

Gate and client log records carry their state as ``extra`` fields
(``gate``, ``status_code``, ``attempt``, ``backoff_ms``). The formatters here
render those fields, and ``DiagnosticFilter`` keeps the per-request debug
chatter quiet unless its tag is switched on.

Typical wiring::

    config = load_config()
    setup_logging_from_config(config)
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from request_gate.config import Config

# Extra fields rendered by both formatters, in display order
CONTEXT_FIELDS = ("gate", "status_code", "attempt", "backoff_ms")

PACKAGE_LOGGER = "request_gate"


class DiagnosticFilter(logging.Filter):
    """Drop tagged DEBUG records unless their tag is enabled.

    The gate tags its per-check debug lines with ``diagnostic_tag="gate"``
    and the clients with ``"client"``. Records above DEBUG or without a tag
    are never dropped. ``"*"`` enables every tag.
    """

    def __init__(self, enabled_tags: frozenset[str] | None = None) -> None:
        super().__init__()
        self.enabled_tags: frozenset[str] = enabled_tags or frozenset()
        self.allow_all: bool = "*" in self.enabled_tags

    def filter(self, record: logging.LogRecord) -> bool:
        tag: str | None = getattr(record, "diagnostic_tag", None)
        if record.levelno != logging.DEBUG or tag is None:
            return True
        return self.allow_all or tag in self.enabled_tags

    @classmethod
    def from_config_string(cls, tags_csv: str) -> DiagnosticFilter:
        """Build a filter from ``REQUEST_GATE_DIAGNOSTIC_TAGS`` syntax, e.g. ``"gate,client"``."""
        tags = frozenset(t.strip() for t in tags_csv.split(",") if t.strip())
        return cls(tags)


def _component(record: logging.LogRecord) -> str:
    # "request_gate.gate" -> "gate"
    return record.name.rsplit(".", 1)[-1]


def _context(record: logging.LogRecord) -> dict[str, Any]:
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)}


class StructuredFormatter(logging.Formatter):
    """Human-readable single-line format with gate context in brackets."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=UTC).strftime(
            "%Y-%m-%d %H:%M:%S.%f"
        )[:-3]
        parts = [timestamp, f"[{record.levelname:8}]", f"[{_component(record):8}]"]

        context = _context(record)
        if context:
            parts.append("[" + " ".join(f"{k}={v}" for k, v in context.items()) + "]")

        parts.append(record.getMessage())
        if record.exc_info:
            parts.append(self.formatException(record.exc_info))
        return " ".join(parts)


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "component": _component(record),
            "message": record.getMessage(),
            **_context(record),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


class ContextAdapter(logging.LoggerAdapter[logging.Logger]):
    """Adapter that merges fixed context (e.g. the gate name) into ``extra``."""

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs


class GateLogger(logging.Logger):
    """Logger that can bind context fields for every record it emits."""

    def with_context(self, **context: Any) -> ContextAdapter:
        return ContextAdapter(self, context)


logging.setLoggerClass(GateLogger)


def get_logger(name: str) -> GateLogger:
    """Get a ``GateLogger`` (typically for ``__name__``)."""
    return logging.getLogger(name)  # type: ignore[return-value]


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    replace_handlers: bool = True,
    diagnostic_tags: str = "",
) -> None:
    """Install a stderr handler on the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_format: Emit JSON instead of the structured text format.
        replace_handlers: Remove handlers already on the root logger first.
        diagnostic_tags: Tags whose DEBUG records are emitted, comma-separated.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter() if json_format else StructuredFormatter())
    handler.addFilter(DiagnosticFilter.from_config_string(diagnostic_tags))

    root_logger = logging.getLogger()
    if replace_handlers:
        for existing in root_logger.handlers[:]:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(numeric_level)

    logging.getLogger(PACKAGE_LOGGER).setLevel(numeric_level)


def setup_logging_from_config(config: Config, replace_handlers: bool = True) -> None:
    """Apply the ``REQUEST_GATE_LOG_*`` settings loaded by ``load_config``."""
    setup_logging(
        level=config.log_level,
        json_format=config.log_json,
        replace_handlers=replace_handlers,
        diagnostic_tags=config.diagnostic_tags,
    )
