"""Structured JSON log formatter and logging configuration.

Both the webhook service and the device agent run unattended, so their
logs are read by machines first.  :class:`JsonFormatter` emits one JSON
object per record (NDJSON) carrying ``service`` and ``version`` so a log
aggregator can tell the cloud process and each device apart.

Records logged with ``extra={"audit": {...}}`` (see
:class:`cadrelay._audit.LoggingAuditSink`) keep their audit fields as a
nested ``audit`` object instead of being flattened into the message.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any

from cadrelay._settings import LoggingSettings

_MEGABYTE = 1024 * 1024

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects (NDJSON).

    Fields: ``timestamp`` (ISO 8601, UTC), ``level``, ``logger``,
    ``message``, ``service``, ``version`` (omitted when empty),
    ``audit`` (when the record carries one), ``exception`` and
    ``stack_info`` (when present).

    Args:
        service: Process name included in every log line.
        version: Package version.  Omitted from output when empty.
    """

    def __init__(
        self,
        *,
        service: str = "",
        version: str = "",
    ) -> None:
        super().__init__()
        self._service = service
        self._version = version

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self._service,
        }

        if self._version:
            entry["version"] = self._version

        audit = getattr(record, "audit", None)
        if isinstance(audit, dict):
            entry["audit"] = audit

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(entry, default=str)


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
) -> None:
    """Configure the root logger from settings.

    Clears existing root handlers, installs a ``stderr`` stream handler
    and, when ``settings.file`` is set, a rotating file handler sized by
    ``settings.max_file_size_mb``.

    Args:
        settings: Logging configuration (level, format, file).
        service: Process name passed to :class:`JsonFormatter`,
            e.g. ``"cadrelay-webhook"`` or ``"cadrelay-device"``.
        version: Package version passed to :class:`JsonFormatter`.
    """
    root = logging.getLogger()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    if settings.format == "json":
        formatter: logging.Formatter = JsonFormatter(service=service, version=version)
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if settings.file is not None:
        file_handler = RotatingFileHandler(
            settings.file,
            maxBytes=settings.max_file_size_mb * _MEGABYTE,
            backupCount=settings.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(settings.level)

    # httpx logs every request at INFO; keep it to warnings unless debugging.
    if settings.level != "DEBUG":
        logging.getLogger("httpx").setLevel(logging.WARNING)
