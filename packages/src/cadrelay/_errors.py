"""Error types and structured error payloads.

Exception hierarchy::

    CadRelayError
    ├── ConfigurationError   missing or invalid settings
    ├── GraphError           mailbox provider returned an error
    └── TransportError       IoT Hub service call could not be made

Errors that reach a boundary which must not fail (the webhook endpoint,
the subscription timer) are converted into an :class:`ErrorPayload`::

    {
        "error_type": "graph_error",
        "message": "Graph GET /users/…/messages/… failed: 404 ErrorItemNotFound",
        "timestamp": "2026-02-14T12:34:56+00:00",
        "details": {}
    }

Callers supply an ``error_type_map`` for their own exception classes;
unmapped exceptions fall back to the generic ``"error"`` type.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime


class CadRelayError(Exception):
    """Base class for all cadrelay errors."""


class ConfigurationError(CadRelayError):
    """Required configuration is missing or malformed."""


class GraphError(CadRelayError):
    """The mailbox provider answered with a non-success status."""

    def __init__(
        self,
        method: str,
        path: str,
        status: int,
        code: str = "",
        message: str = "",
    ) -> None:
        self.method = method
        self.path = path
        self.status = status
        self.code = code
        detail = " ".join(part for part in (code, message) if part)
        super().__init__(f"Graph {method} {path} failed: {status} {detail}".rstrip())


class TransportError(CadRelayError):
    """A device command could not be delivered on any channel."""


DEFAULT_ERROR_TYPES: dict[type[Exception], str] = {
    ConfigurationError: "configuration_error",
    GraphError: "graph_error",
    TransportError: "transport_error",
}


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    """Immutable structured error description."""

    error_type: str
    message: str
    timestamp: str
    details: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Serialise to a plain dictionary."""
        return asdict(self)

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        return json.dumps(self.to_dict())


def build_error_payload(
    error: Exception,
    *,
    error_type_map: dict[type[Exception], str] | None = None,
    details: dict[str, object] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ErrorPayload:
    """Convert an exception into a structured :class:`ErrorPayload`.

    Looks up the exact class of the exception; subclasses are not matched.

    Args:
        error: The exception to convert.
        error_type_map: Mapping from exception types to ``error_type``
            strings.  Defaults to :data:`DEFAULT_ERROR_TYPES`.
        details: Additional context to attach.
        clock: Callable returning the timestamp; ``datetime.now(UTC)``
            when omitted.
    """
    resolved_map = DEFAULT_ERROR_TYPES if error_type_map is None else error_type_map
    now = clock() if clock is not None else datetime.now(UTC)
    return ErrorPayload(
        error_type=resolved_map.get(type(error), "error"),
        message=str(error),
        timestamp=now.isoformat(),
        details=details or {},
    )
