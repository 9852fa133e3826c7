"""Physical output port and the relay actuator.

The actuator drives one output (a relay coil on the reference hardware)
through :class:`OutputPort`.  Hardware adapters live outside this
package; :class:`NullOutput` and :class:`MockOutput` cover development
and tests.

An activation is bounded: assert, hold for ``pulse_duration`` (when
non-zero), release, then report a telemetry event::

    {
        "event": "relayActivated",
        "deviceId": "Relay-1",
        "timestamp": "2026-02-14T12:34:56.789Z",
        "uptimeMs": 123456,
        "subject": "DISPATCH-1 …",
        "reason": "CAD"
    }

There is no way to cancel a pulse once started.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from cadrelay._clock import ClockPort, utcnow

logger = logging.getLogger(__name__)

TelemetryCallback = Callable[[dict[str, Any]], Awaitable[None]]


@runtime_checkable
class OutputPort(Protocol):
    """A single binary output."""

    def set(self, active: bool) -> None: ...


@dataclass
class NullOutput:
    """Output that only logs transitions."""

    def set(self, active: bool) -> None:
        logger.debug("NullOutput.set(%s)", active)


@dataclass
class MockOutput:
    """Output that records every transition for assertions."""

    transitions: list[bool] = field(default_factory=list)
    fail: bool = False

    def set(self, active: bool) -> None:
        if self.fail:
            msg = "output fault"
            raise OSError(msg)
        self.transitions.append(active)

    @property
    def active(self) -> bool:
        return bool(self.transitions) and self.transitions[-1]


def format_timestamp(moment: datetime) -> str:
    """ISO 8601 UTC with millisecond precision and a ``Z`` suffix."""
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


@dataclass
class Actuator:
    """Relay driver with a fixed pulse.

    Args:
        device_id: Identity reported in telemetry.
        output: Output port to drive.
        clock: Monotonic clock for uptime.
        pulse_duration: Seconds to hold the output; ``0`` leaves it asserted
            for the hardware to latch/release on its own.
        telemetry: Async callback receiving each telemetry event.
    """

    device_id: str
    output: OutputPort
    clock: ClockPort
    pulse_duration: float = 0.5
    telemetry: TelemetryCallback | None = field(default=None, repr=False)
    wall_clock: Callable[[], datetime] = field(default=utcnow, repr=False)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)
    activations: int = field(default=0, init=False)
    _started_at: float = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._started_at = self.clock.now()

    def uptime_ms(self) -> int:
        return int((self.clock.now() - self._started_at) * 1000)

    async def activate(self, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Pulse the output and return the telemetry event.

        Raises:
            OSError: If the output port fails; the output is released
                on a best-effort basis first.
        """
        payload = payload or {}
        logger.info("Activating output on %s", self.device_id)
        try:
            self.output.set(True)
            if self.pulse_duration > 0:
                await self.sleep(self.pulse_duration)
                self.output.set(False)
        except OSError:
            logger.exception("Output fault on %s", self.device_id)
            try:
                self.output.set(False)
            except OSError:
                logger.exception("Could not release output on %s", self.device_id)
            raise

        self.activations += 1
        event: dict[str, Any] = {
            "event": "relayActivated",
            "deviceId": self.device_id,
            "timestamp": format_timestamp(self.wall_clock()),
            "uptimeMs": self.uptime_ms(),
        }
        for key in ("subject", "reason"):
            if key in payload:
                event[key] = payload[key]

        if self.telemetry is not None:
            try:
                await self.telemetry(event)
            except Exception:
                logger.exception("Failed to emit activation telemetry")
        return event
