"""Public test-support utilities for cadrelay.

Re-exports test doubles and factories so that test suites can import
everything from a single ``cadrelay.testing`` namespace instead of
reaching into private modules.

Provided symbols:

- :class:`FakeClock` — deterministic monotonic + wall clock.
- :class:`MemoryAuditSink` — audit sink keeping events in memory.
- :class:`MockCommandTransport` — records device triggers.
- :class:`MockGraphClient` — in-memory mailbox provider.
- :class:`MockMqttClient` — in-memory MQTT double that records calls.
- :class:`MockOutput` — output port recording transitions.
- :class:`NullMqttClient` — silent no-op MQTT adapter.
- :func:`make_settings` — factory for ``Settings`` without ambient sources.
"""

from cadrelay._actuator import MockOutput
from cadrelay._audit import MemoryAuditSink
from cadrelay._graph import MockGraphClient
from cadrelay._iothub import MockCommandTransport
from cadrelay._mqtt import MockMqttClient, NullMqttClient
from cadrelay.testing._clock import FakeClock
from cadrelay.testing._settings import make_settings

__all__ = [
    "FakeClock",
    "MemoryAuditSink",
    "MockCommandTransport",
    "MockGraphClient",
    "MockMqttClient",
    "MockOutput",
    "NullMqttClient",
    "make_settings",
]
