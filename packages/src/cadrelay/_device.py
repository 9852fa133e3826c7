"""Device agent: connectivity, command execution and credential renewal.

State machine::

    disconnected ──start──▶ connecting ──connect──▶ connected
         ▲                                            │  ▲
         │                                    command │  │ done
         └────────── connection lost / renew ─────────┤  │
                                                      ▼  │
                                                   actuating

One cooperative control loop (:meth:`DeviceAgent.run`) does all the
work.  Each iteration it

1. renews the credential when the monotonic renewal deadline has passed
   (stop transport → generate token → start transport),
2. waits up to ``tick`` seconds for the next inbound message and
   executes it.

Commands therefore run one at a time and block the loop for the pulse
duration.  The transport's own task only reconnects and queues inbound
messages; it never executes commands.

Inbound channels:

* direct methods — always answered on the response topic, ``404`` for an
  unknown method name and ``500`` when the actuator fails;
* cloud-to-device messages — ``{"cmd": "activateRelay", "payload": {…}}``
  envelopes are executed, anything else is logged and dropped.  There is
  nobody to answer on this channel.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from cadrelay._actuator import Actuator, NullOutput, OutputPort, format_timestamp
from cadrelay._clock import ClockPort, SystemClock, WallClockPort, utcnow
from cadrelay._credentials import CredentialManager, TokenStatus
from cadrelay._errors import ConfigurationError
from cadrelay._mqtt import MqttClient, MqttLifecycle, MqttMessageHandler, MqttPort
from cadrelay._settings import Settings
from cadrelay._topics import (
    MethodRequest,
    devicebound_subscription,
    is_devicebound,
    method_response_topic,
    method_subscription,
    mqtt_username,
    parse_method_request,
    telemetry_topic,
)

logger = logging.getLogger(__name__)


class DeviceState(StrEnum):
    """Connectivity/actuation state of the device agent."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ACTUATING = "actuating"


StateListener = Callable[[DeviceState], None]


@runtime_checkable
class DeviceTransport(MqttPort, MqttLifecycle, MqttMessageHandler, Protocol):
    """What the agent needs from its MQTT adapter."""


def _json_object(payload: str) -> dict[str, Any] | None:
    try:
        value = json.loads(payload) if payload.strip() else {}
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


@dataclass
class DeviceAgent:
    """Single-owner control loop for one device.

    Args:
        device_id: Device identity.
        transport: MQTT adapter; the agent registers its callbacks.
        credentials: Token holder; its token is the MQTT password.
        actuator: Executes the activation command.
        clock: Monotonic clock for the renewal deadline.
        token_lifetime: Seconds each token is valid.
        renew_margin: Renew this many seconds before expiry.
        renew_retry: Seconds before retrying a failed generation.
        tick: Upper bound on one wait for inbound messages.
        method_name: The one recognised command name.
    """

    device_id: str
    transport: DeviceTransport
    credentials: CredentialManager
    actuator: Actuator
    clock: ClockPort
    token_lifetime: int = 3600
    renew_margin: int = 300
    renew_retry: float = 60.0
    tick: float = 1.0
    method_name: str = "activateRelay"
    qos: int = 1
    state: DeviceState = field(default=DeviceState.DISCONNECTED, init=False)
    renew_at: float = field(default=0.0, init=False)
    _inbox: asyncio.Queue[tuple[str, str]] = field(
        default_factory=asyncio.Queue,
        init=False,
        repr=False,
    )
    _listeners: list[StateListener] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        self.transport.on_message(self._enqueue)
        self.transport.on_connection_change(self._on_connection_change)

    # -- State ---------------------------------------------------------------

    def on_state_change(self, listener: StateListener) -> None:
        """Register a listener called with every new state."""
        self._listeners.append(listener)

    def _set_state(self, state: DeviceState) -> None:
        if state == self.state:
            return
        logger.info("Device %s: %s -> %s", self.device_id, self.state, state)
        self.state = state
        for listener in self._listeners:
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")

    # -- Credential ----------------------------------------------------------

    def refresh_credential(self) -> TokenStatus:
        """Generate a token and schedule the next renewal deadline."""
        status = self.credentials.generate(self.token_lifetime)
        now = self.clock.now()
        if status is TokenStatus.OK:
            delay = self.token_lifetime - self.renew_margin
            if delay <= 0:
                delay = self.token_lifetime / 2
            self.renew_at = now + delay
        else:
            logger.error(
                "Token generation failed for %s (%s); retrying in %.0fs",
                self.device_id,
                status.name,
                self.renew_retry,
            )
            self.renew_at = now + self.renew_retry
        return status

    async def renew(self) -> TokenStatus:
        """Tear down the connection, regenerate the token, reconnect."""
        logger.info("Renewing credential for %s", self.device_id)
        await self.transport.stop()
        self._set_state(DeviceState.DISCONNECTED)
        status = self.refresh_credential()
        await self._connect()
        return status

    # -- Lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Subscribe, create the first token and connect."""
        await self.transport.subscribe(method_subscription())
        await self.transport.subscribe(devicebound_subscription(self.device_id))
        self.refresh_credential()
        await self._connect()

    async def _connect(self) -> None:
        self._set_state(DeviceState.CONNECTING)
        await self.transport.start()

    async def stop(self) -> None:
        await self.transport.stop()
        self._set_state(DeviceState.DISCONNECTED)

    async def step(self) -> None:
        """Run one control-loop iteration."""
        if self.clock.now() >= self.renew_at:
            await self.renew()
        try:
            topic, payload = await asyncio.wait_for(self._inbox.get(), timeout=self.tick)
        except TimeoutError:
            return
        await self.handle_message(topic, payload)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Run until *shutdown_event* is set."""
        await self.start()
        try:
            while not shutdown_event.is_set():
                await self.step()
        finally:
            await self.stop()

    # -- Transport callbacks -------------------------------------------------

    async def _enqueue(self, topic: str, payload: str) -> None:
        self._inbox.put_nowait((topic, payload))

    async def _on_connection_change(self, connected: bool) -> None:
        if not connected:
            self._set_state(DeviceState.DISCONNECTED)
            return
        if self.state != DeviceState.ACTUATING:
            self._set_state(DeviceState.CONNECTED)
        await self.publish_telemetry(
            {
                "event": "connectivity",
                "state": "connected",
                "deviceId": self.device_id,
                "timestamp": format_timestamp(utcnow()),
                "uptimeMs": self.actuator.uptime_ms(),
            },
        )

    # -- Commands ------------------------------------------------------------

    @property
    def pending(self) -> int:
        """Inbound messages waiting for the control loop."""
        return self._inbox.qsize()

    async def handle_message(self, topic: str, payload: str) -> None:
        """Route one inbound message to the matching channel handler."""
        request = parse_method_request(topic)
        if request is not None:
            await self._handle_method(request, payload)
        elif is_devicebound(topic, self.device_id):
            await self._handle_devicebound(payload)
        else:
            logger.debug("Ignoring message on %s", topic)

    async def _handle_method(self, request: MethodRequest, payload: str) -> None:
        if request.name != self.method_name:
            logger.warning("Unknown method %r (rid=%s)", request.name, request.request_id)
            await self._respond(request, 404, {"error": f"method '{request.name}' not found"})
            return

        body = _json_object(payload)
        try:
            event = await self._execute(body or {})
        except Exception as exc:
            logger.exception("Method %s failed", request.name)
            await self._respond(request, 500, {"ok": False, "error": str(exc)})
            return
        await self._respond(request, 200, {"ok": True, "event": event})

    async def _handle_devicebound(self, payload: str) -> None:
        envelope = _json_object(payload)
        if envelope is None or envelope.get("cmd") != self.method_name:
            logger.warning("Dropping unrecognised cloud-to-device message: %.200s", payload)
            return
        inner = envelope.get("payload")
        try:
            await self._execute(inner if isinstance(inner, dict) else {})
        except Exception:
            logger.exception("Cloud-to-device command failed")

    async def _execute(self, payload: dict[str, Any]) -> dict[str, Any]:
        self._set_state(DeviceState.ACTUATING)
        try:
            return await self.actuator.activate(payload)
        finally:
            self._set_state(
                DeviceState.CONNECTED if self.transport.is_connected else DeviceState.DISCONNECTED,
            )

    async def _respond(self, request: MethodRequest, status: int, body: dict[str, Any]) -> None:
        topic = method_response_topic(status, request)
        try:
            await self.transport.publish(topic, json.dumps(body), qos=self.qos)
        except Exception:
            logger.exception("Failed to publish method response to %s", topic)

    async def publish_telemetry(self, event: dict[str, Any]) -> None:
        """Publish *event* as device-to-cloud telemetry (fire-and-forget)."""
        topic = telemetry_topic(self.device_id)
        try:
            await self.transport.publish(topic, json.dumps(event), qos=self.qos)
        except Exception:
            logger.exception("Failed to publish telemetry to %s", topic)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


class _Clock(ClockPort, WallClockPort, Protocol):
    """Clock that is both monotonic and wall."""


def build_device_agent(
    settings: Settings,
    *,
    transport: DeviceTransport | None = None,
    output: OutputPort | None = None,
    clock: _Clock | None = None,
) -> DeviceAgent:
    """Compose a :class:`DeviceAgent` from settings.

    Raises:
        ConfigurationError: If device id, host or key are missing.
    """
    device = settings.device
    if not device.device_id or not device.host_name or device.device_key is None:
        msg = "device.device_id, device.host_name and device.device_key are required"
        raise ConfigurationError(msg)

    resolved_clock = clock if clock is not None else SystemClock()
    credentials = CredentialManager(
        host_name=device.host_name,
        device_id=device.device_id,
        device_key=device.device_key.get_secret_value(),
        clock=resolved_clock,
    )

    if transport is None:
        mqtt = settings.mqtt
        transport = MqttClient(
            settings=mqtt,
            client_id=mqtt.client_id or device.device_id,
            username=mqtt.username
            or mqtt_username(device.host_name, device.device_id, mqtt.api_version),
            password_provider=credentials.valid_token,
            host=mqtt.host or device.host_name,
        )

    actuator = Actuator(
        device_id=device.device_id,
        output=output if output is not None else NullOutput(),
        clock=resolved_clock,
        pulse_duration=device.pulse_duration,
    )
    agent = DeviceAgent(
        device_id=device.device_id,
        transport=transport,
        credentials=credentials,
        actuator=actuator,
        clock=resolved_clock,
        token_lifetime=device.token_lifetime,
        renew_margin=device.renew_margin,
        renew_retry=device.renew_retry,
        tick=device.tick,
        method_name=settings.dispatch.method_name,
        qos=settings.mqtt.qos,
    )
    actuator.telemetry = agent.publish_telemetry
    return agent
