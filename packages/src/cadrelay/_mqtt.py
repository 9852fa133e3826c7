"""MQTT client port and adapters (device side).

Provides :class:`MqttPort` (Protocol) and three implementations:

- :class:`MqttClient` — aiomqtt-based client with reconnection
- :class:`MockMqttClient` — test double that records calls
- :class:`NullMqttClient` — silent no-op adapter

Design decisions:

- aiomqtt imported lazily inside ``MqttClient._connection_loop()`` so the
  mock and null adapters work without aiomqtt installed
- Subscriptions tracked internally and restored on every connect
- The password comes from a provider called at each connect: IoT Hub
  binds the SAS token to the connection, so a renewed token only takes
  effect after ``stop()`` + ``start()``
- Connection changes are reported through callbacks so the owner can
  drive its own state machine
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from cadrelay._settings import MqttSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

MessageCallback = Callable[[str, str], Awaitable[None]]
"""Async callback receiving (topic, payload) for each inbound message."""

ConnectionCallback = Callable[[bool], Awaitable[None]]
"""Async callback receiving ``True`` on connect and ``False`` on loss."""

PasswordProvider = Callable[[], str | None]
"""Returns the credential to present on the next connect."""

# ---------------------------------------------------------------------------
# Ports (Protocols)
# ---------------------------------------------------------------------------


@runtime_checkable
class MqttPort(Protocol):
    """Port contract for MQTT publish/subscribe."""

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None: ...

    async def subscribe(self, topic: str) -> None: ...


@runtime_checkable
class MqttLifecycle(Protocol):
    """Adapters that own a connection which can be started and stopped."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    @property
    def is_connected(self) -> bool: ...


@runtime_checkable
class MqttMessageHandler(Protocol):
    """Adapters that deliver inbound messages and connection changes."""

    def on_message(self, callback: MessageCallback) -> None: ...

    def on_connection_change(self, callback: ConnectionCallback) -> None: ...


# ---------------------------------------------------------------------------
# Null adapter
# ---------------------------------------------------------------------------


@dataclass
class NullMqttClient:
    """Silent no-op MQTT adapter.

    Every method is a no-op that logs at DEBUG level.
    """

    async def publish(
        self,
        topic: str,
        payload: str,  # noqa: ARG002
        *,
        retain: bool = False,  # noqa: ARG002
        qos: int = 1,  # noqa: ARG002
    ) -> None:
        """Silently discard a publish request."""
        logger.debug("NullMqttClient.publish(%s) — discarded", topic)

    async def subscribe(self, topic: str) -> None:
        """Silently discard a subscribe request."""
        logger.debug("NullMqttClient.subscribe(%s) — discarded", topic)


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


@dataclass
class MockMqttClient:
    """In-memory test double that records MQTT interactions.

    Records publishes, subscriptions and lifecycle calls.  ``start()``
    connects immediately and reports the connection to callbacks; with
    ``fail_connect`` set it reports a refused connect as a disconnect.
    ``deliver()`` simulates inbound messages.
    """

    published: list[tuple[str, str, bool, int]] = field(
        default_factory=list,
    )
    subscriptions: list[str] = field(default_factory=list)
    start_count: int = 0
    stop_count: int = 0
    fail_connect: bool = False
    passwords: list[str | None] = field(default_factory=list)
    password_provider: PasswordProvider | None = field(default=None, repr=False)
    _connected: bool = field(default=False, init=False)
    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _connection_callbacks: list[ConnectionCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )

    # -- MqttPort methods --------------------------------------------------

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Record a publish call."""
        self.published.append((topic, payload, retain, qos))

    async def subscribe(self, topic: str) -> None:
        """Record a subscribe call."""
        self.subscriptions.append(topic)

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Record a start and connect, or report a refused connect."""
        self.start_count += 1
        if self.password_provider is not None:
            self.passwords.append(self.password_provider())
        await self.simulate_connection(connected=not self.fail_connect)

    async def stop(self) -> None:
        """Record a stop and report the disconnect."""
        self.stop_count += 1
        if self._connected:
            await self.simulate_connection(connected=False)

    @property
    def is_connected(self) -> bool:
        return self._connected

    # -- Callback registration ---------------------------------------------

    def on_message(self, callback: MessageCallback) -> None:
        """Register an inbound-message callback."""
        self._callbacks.append(callback)

    def on_connection_change(self, callback: ConnectionCallback) -> None:
        """Register a connection-change callback."""
        self._connection_callbacks.append(callback)

    # -- Test helpers -------------------------------------------------------

    async def deliver(self, topic: str, payload: str) -> None:
        """Simulate an inbound message by invoking all callbacks."""
        for cb in self._callbacks:
            await cb(topic, payload)

    async def simulate_connection(self, *, connected: bool) -> None:
        """Flip the connection state and notify callbacks."""
        self._connected = connected
        for cb in self._connection_callbacks:
            await cb(connected)

    @property
    def publish_count(self) -> int:
        """Number of recorded publishes."""
        return len(self.published)

    def reset(self) -> None:
        """Clear all recorded data and callbacks."""
        self.published.clear()
        self.subscriptions.clear()
        self.passwords.clear()
        self._callbacks.clear()
        self._connection_callbacks.clear()

    def get_messages_for(
        self,
        topic: str,
    ) -> list[tuple[str, bool, int]]:
        """Return ``(payload, retain, qos)`` tuples for *topic*."""
        return [
            (payload, retain, qos)
            for t, payload, retain, qos in self.published
            if t == topic
        ]


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


@dataclass
class MqttClient:
    """Production MQTT adapter backed by *aiomqtt*.

    Runs a background task that keeps a connection open and reconnects
    after ``settings.reconnect_interval`` on loss.  Each connect calls
    ``password_provider`` so the current credential is used.

    Args:
        settings: Broker connection settings.
        client_id: MQTT client identifier (the device id for IoT Hub).
        username: Username presented on connect.
        password_provider: Returns the password for the next connect.
    """

    settings: MqttSettings
    client_id: str
    username: str | None = None
    password_provider: PasswordProvider | None = field(default=None, repr=False)
    host: str = ""

    # internal state --------------------------------------------------------
    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _connection_callbacks: list[ConnectionCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _subscriptions: set[str] = field(
        default_factory=set,
        init=False,
        repr=False,
    )
    _client: Any = field(default=None, init=False, repr=False)
    _listen_task: asyncio.Task[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _connected: asyncio.Event = field(
        default_factory=asyncio.Event,
        init=False,
        repr=False,
    )
    _stopping: bool = field(default=False, init=False, repr=False)

    # -- MqttPort methods --------------------------------------------------

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Publish a message to the broker.

        Raises:
            RuntimeError: If the client is not connected.
        """
        if self._client is None:
            msg = "MqttClient is not connected"
            raise RuntimeError(msg)
        await self._client.publish(
            topic,
            payload,
            retain=retain,
            qos=qos,
        )
        logger.debug(
            "Published to %s (qos=%d, retain=%s)",
            topic,
            qos,
            retain,
        )

    async def subscribe(self, topic: str) -> None:
        """Subscribe to *topic*, restoring it after every reconnect."""
        self._subscriptions.add(topic)
        if self._client is not None:
            await self._client.subscribe(
                topic,
                qos=self.settings.qos,
            )

    # -- Callback registration ---------------------------------------------

    def on_message(self, callback: MessageCallback) -> None:
        """Register a callback for inbound messages."""
        self._callbacks.append(callback)

    def on_connection_change(self, callback: ConnectionCallback) -> None:
        """Register a callback for connect/disconnect transitions."""
        self._connection_callbacks.append(callback)

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Start the background connection loop."""
        if self._listen_task is not None and not self._listen_task.done():
            logger.debug("MqttClient.start() called while already running")
            return
        self._stopping = False
        self._listen_task = asyncio.create_task(
            self._connection_loop(),
        )

    async def stop(self) -> None:
        """Stop the connection loop and close the connection.

        Idempotent — safe to call multiple times.
        """
        self._stopping = True
        if self._listen_task is not None:
            self._listen_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listen_task
            self._listen_task = None
        self._client = None
        self._connected.clear()

    @property
    def is_connected(self) -> bool:
        """Whether the client is currently connected to the broker."""
        return self._connected.is_set()

    # -- Internal -----------------------------------------------------------

    def _tls_context(self) -> ssl.SSLContext | None:
        if not self.settings.tls:
            return None
        return ssl.create_default_context()

    async def _connection_loop(self) -> None:
        """Maintain a persistent connection with auto-reconnect."""
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttClient"
            raise RuntimeError(msg) from exc

        hostname = self.host or self.settings.host
        while not self._stopping:
            came_up = False
            try:
                password = (
                    self.password_provider() if self.password_provider is not None else None
                )
                async with aiomqtt.Client(
                    hostname=hostname,
                    port=self.settings.port,
                    username=self.username,
                    password=password,
                    identifier=self.client_id,
                    keepalive=self.settings.keepalive,
                    tls_context=self._tls_context(),
                ) as client:
                    self._client = client
                    try:
                        for topic in sorted(self._subscriptions):
                            await client.subscribe(
                                topic,
                                qos=self.settings.qos,
                            )

                        self._connected.set()
                        logger.info(
                            "MQTT connected to %s:%d as %s",
                            hostname,
                            self.settings.port,
                            self.client_id,
                        )
                        await self._notify_connection(connected=True)

                        async for message in client.messages:
                            await self._dispatch(message)
                    finally:
                        came_up = self._connected.is_set()
                        self._connected.clear()
                        self._client = None
                        if came_up:
                            await self._notify_connection(connected=False)

            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "MQTT connection lost, reconnecting in %.1fs",
                    self.settings.reconnect_interval,
                    exc_info=True,
                )
                # A refused connect is reported as a disconnect too.
                if not came_up:
                    await self._notify_connection(connected=False)
                await asyncio.sleep(
                    self.settings.reconnect_interval,
                )

    async def _notify_connection(self, *, connected: bool) -> None:
        for cb in self._connection_callbacks:
            try:
                await cb(connected)
            except Exception:
                logger.exception("Error in connection callback")

    async def _dispatch(self, message: Any) -> None:
        """Decode and fan-out an inbound message to callbacks."""
        topic = str(message.topic)

        if message.payload is None:
            logger.debug(
                "Skipping message with None payload on %s",
                topic,
            )
            return

        payload = (
            message.payload.decode("utf-8")
            if isinstance(message.payload, (bytes, bytearray))
            else str(message.payload)
        )

        for cb in self._callbacks:
            try:
                await cb(topic, payload)
            except Exception:
                logger.exception(
                    "Error in message callback for %s",
                    topic,
                )
