"""Clock ports and the system adapter.

Two notions of time are used:

* **Monotonic** (:class:`ClockPort`) — for deadlines inside the device
  control loop and for uptime.  Immune to NTP steps; only differences
  between readings are meaningful.
* **Wall clock** (:class:`WallClockPort`) — epoch seconds, for token
  expiry.  Tokens are checked by the broker against real time, so the
  device must compare against real time too.

:class:`SystemClock` satisfies both.  Tests inject
:class:`cadrelay.testing.FakeClock`.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable


@runtime_checkable
class ClockPort(Protocol):
    """Monotonic clock for deadlines and uptime."""

    def now(self) -> float:
        """Return monotonic time in seconds from an arbitrary epoch."""
        ...


@runtime_checkable
class WallClockPort(Protocol):
    """Wall clock in seconds since the Unix epoch."""

    def time(self) -> float:
        """Return the current Unix time in seconds."""
        ...


class SystemClock:
    """Production clock wrapping ``time.monotonic()`` and ``time.time()``.

    Usage::

        clock = SystemClock()
        deadline = clock.now() + 30
        expiry = int(clock.time()) + 3600
    """

    def now(self) -> float:
        """Return monotonic time in seconds."""
        return time.monotonic()

    def time(self) -> float:
        """Return Unix time in seconds."""
        return time.time()


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(UTC)
