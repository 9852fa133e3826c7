"""IoT Hub MQTT topic conventions (device side).

Topic layout::

    $iothub/methods/POST/{method}/?$rid={rid}        ← direct method request
    $iothub/methods/res/{status}/?$rid={rid}         → direct method response
    devices/{device}/messages/devicebound/{props}    ← cloud-to-device message
    devices/{device}/messages/events/                → telemetry

Some brokers and older firmware spell the correlation parameter ``rid``
instead of ``$rid``; both are accepted on the way in and the response
echoes the spelling of the request.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import parse_qsl, quote

METHODS_PREFIX = "$iothub/methods/POST/"


@dataclass(frozen=True, slots=True)
class MethodRequest:
    """A parsed direct-method request topic."""

    name: str
    request_id: str
    rid_key: str = "$rid"


def method_subscription() -> str:
    """Wildcard subscription for all direct-method requests."""
    return f"{METHODS_PREFIX}#"


def parse_method_request(topic: str) -> MethodRequest | None:
    """Parse ``$iothub/methods/POST/{name}/?$rid={rid}``.

    Returns:
        The method name and request id, or ``None`` when *topic* is not a
        direct-method request or carries no request id.
    """
    if not topic.startswith(METHODS_PREFIX):
        return None
    remainder = topic[len(METHODS_PREFIX) :]
    name, sep, query = remainder.partition("/?")
    if not sep or not name or "/" in name:
        return None
    params = dict(parse_qsl(query, keep_blank_values=True))
    for rid_key in ("$rid", "rid"):
        if params.get(rid_key):
            return MethodRequest(name=name, request_id=params[rid_key], rid_key=rid_key)
    return None


def method_response_topic(status: int, request: MethodRequest) -> str:
    """Response topic for *request* with HTTP-like *status*."""
    return f"$iothub/methods/res/{status}/?{request.rid_key}={request.request_id}"


def devicebound_prefix(device_id: str) -> str:
    return f"devices/{device_id}/messages/devicebound/"


def devicebound_subscription(device_id: str) -> str:
    """Subscription for cloud-to-device messages addressed to *device_id*."""
    return f"{devicebound_prefix(device_id)}#"


def is_devicebound(topic: str, device_id: str) -> bool:
    return topic.startswith(devicebound_prefix(device_id))


def devicebound_properties(topic: str, device_id: str) -> dict[str, str]:
    """Application properties url-encoded in the devicebound topic suffix."""
    suffix = topic[len(devicebound_prefix(device_id)) :]
    return dict(parse_qsl(suffix, keep_blank_values=True))


def telemetry_topic(device_id: str) -> str:
    """Device-to-cloud telemetry topic."""
    return f"devices/{device_id}/messages/events/"


def mqtt_username(host_name: str, device_id: str, api_version: str) -> str:
    """Username IoT Hub expects for a device connection."""
    return f"{host_name}/{quote(device_id, safe='')}/?api-version={api_version}"
