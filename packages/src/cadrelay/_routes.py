"""Subject → device routing.

Configured routes are authoritative and tried in order; the first
pattern found (case-insensitively) anywhere in the subject wins.  Only
when nothing matches is the numeric convention consulted: a subject
containing ``DISPATCH-1``, ``DISPATCH-2`` or ``DISPATCH-3`` goes to the
first, second or third fallback device.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from cadrelay._settings import DispatchSettings

_NUMBERED = re.compile(r"DISPATCH-([123])", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class Route:
    pattern: str
    device_id: str

    def matches(self, subject: str) -> bool:
        return self.pattern.lower() in subject.lower()


class RouteTable:
    """Ordered routes plus the three numbered fallback devices.

    Routes with a blank pattern or device id are dropped on construction.

    Usage::

        table = RouteTable([Route("STATION 5", "Relay-2")], ["Relay-1", "Relay-2", "Relay-3"])
        table.resolve("Call for STATION 5")  # "Relay-2"
        table.resolve("DISPATCH-3 fire")     # "Relay-3"
    """

    def __init__(self, routes: Iterable[Route], fallback_devices: Sequence[str]) -> None:
        self.routes: tuple[Route, ...] = tuple(
            route for route in routes if route.pattern.strip() and route.device_id.strip()
        )
        if len(fallback_devices) != 3:
            msg = f"exactly three fallback devices are required, got {len(fallback_devices)}"
            raise ValueError(msg)
        self.fallback_devices: tuple[str, ...] = tuple(fallback_devices)

    @classmethod
    def from_settings(cls, settings: DispatchSettings) -> RouteTable:
        return cls(
            (Route(r.pattern, r.device_id) for r in settings.routes),
            settings.fallback_devices,
        )

    def resolve(self, subject: str | None) -> str | None:
        """Return the device for *subject*, or ``None`` when unmapped."""
        if not subject:
            return None
        for route in self.routes:
            if route.matches(subject):
                return route.device_id
        numbered = _NUMBERED.search(subject)
        if numbered is not None:
            return self.for_relay(numbered.group(1))
        return None

    def for_relay(self, number: str | int | None) -> str | None:
        """Map ``1``/``2``/``3`` to a fallback device; anything else is ``None``."""
        try:
            index = int(str(number).strip())
        except (TypeError, ValueError):
            return None
        if 1 <= index <= 3:
            return self.fallback_devices[index - 1]
        return None

    def __len__(self) -> int:
        return len(self.routes)
