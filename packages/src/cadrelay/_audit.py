"""Audit sink port and adapters.

Every dispatch and subscription decision is recorded as a structured
audit event.  Persisting those events is somebody else's job; this
module only defines the port and a few adapters:

- :class:`LoggingAuditSink` — writes each event to the ``cadrelay.audit``
  logger (default; the JSON log formatter keeps the fields structured)
- :class:`MemoryAuditSink` — test double that keeps events in a list
- :class:`NullAuditSink` — discards everything

Event shape::

    {
        "eventType": "dispatch_triggered",
        "timestampUtc": "2026-02-14T12:34:56.123000+00:00",
        "deviceId": "Relay-1",
        "via": "direct",
        "status": 200
    }

Recording is fire-and-forget: an audit failure is logged and never
propagated into the dispatch path.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from cadrelay._clock import utcnow

logger = logging.getLogger(__name__)

_audit_logger = logging.getLogger("cadrelay.audit")


@dataclass(frozen=True, slots=True)
class AuditEvent:
    """One recorded audit event."""

    event_type: str
    timestamp: datetime
    fields: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Flatten to the persisted shape (``eventType`` + fields)."""
        return {
            "eventType": self.event_type,
            "timestampUtc": self.timestamp.isoformat(),
            **self.fields,
        }

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        return json.dumps(self.to_dict(), default=str)


@runtime_checkable
class AuditSink(Protocol):
    """Port for structured audit records."""

    def record(self, event_type: str, fields: Mapping[str, Any] | None = None) -> None:
        """Record *event_type* with optional *fields*."""
        ...


@dataclass
class LoggingAuditSink:
    """Write audit events as INFO records on the ``cadrelay.audit`` logger."""

    clock: Callable[[], datetime] = field(default=utcnow, repr=False)

    def record(self, event_type: str, fields: Mapping[str, Any] | None = None) -> None:
        try:
            event = AuditEvent(event_type, self.clock(), dict(fields or {}))
            _audit_logger.info(
                "audit %s",
                event_type,
                extra={"audit": event.to_dict()},
            )
        except Exception:
            logger.exception("Failed to record audit event %s", event_type)


@dataclass
class MemoryAuditSink:
    """In-memory audit sink for tests."""

    events: list[AuditEvent] = field(default_factory=list)
    clock: Callable[[], datetime] = field(default=utcnow, repr=False)

    def record(self, event_type: str, fields: Mapping[str, Any] | None = None) -> None:
        self.events.append(AuditEvent(event_type, self.clock(), dict(fields or {})))

    @property
    def kinds(self) -> list[str]:
        """Event types in recording order."""
        return [event.event_type for event in self.events]

    def events_of(self, event_type: str) -> list[AuditEvent]:
        """Return every event of *event_type*."""
        return [event for event in self.events if event.event_type == event_type]

    def last(self, event_type: str) -> AuditEvent:
        """Return the most recent event of *event_type*.

        Raises:
            LookupError: If no such event was recorded.
        """
        matches = self.events_of(event_type)
        if not matches:
            msg = f"No audit event of type {event_type!r} (have {self.kinds})"
            raise LookupError(msg)
        return matches[-1]

    def clear(self) -> None:
        self.events.clear()


@dataclass
class NullAuditSink:
    """Audit sink that discards every event."""

    def record(self, event_type: str, fields: Mapping[str, Any] | None = None) -> None:  # noqa: ARG002
        logger.debug("NullAuditSink.record(%s) — discarded", event_type)
