"""Unit tests for cadrelay._mqtt — MQTT port and adapters.

Test Techniques Used:
    - Specification-based Testing: Null and Mock publish/subscribe/lifecycle
    - Protocol Conformance: isinstance checks for MqttPort structural subtyping
    - State Transition Testing: MqttClient lifecycle (start/stop/reconnect)
    - Mock-based Isolation: aiomqtt patched via sys.modules for MqttClient
"""

from __future__ import annotations

import asyncio
import sys
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from cadrelay._mqtt import (
    MockMqttClient,
    MqttClient,
    MqttLifecycle,
    MqttMessageHandler,
    MqttPort,
    NullMqttClient,
)
from cadrelay._settings import MqttSettings

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mqtt_settings() -> MqttSettings:
    """Plain-TCP broker on localhost with fast reconnects."""
    return MqttSettings(host="localhost", port=1883, tls=False, reconnect_interval=0.05)


def _client(settings: MqttSettings, **kwargs: object) -> MqttClient:
    return MqttClient(settings=settings, client_id="Relay-1", **kwargs)  # type: ignore[arg-type]


async def _blocking_messages():
    """Block forever, yielding nothing."""
    await asyncio.Event().wait()
    yield  # pragma: no cover — makes this an async generator


@pytest.fixture
def mock_aiomqtt():
    """Mock aiomqtt module for testing MqttClient internals.

    Patches ``sys.modules`` so the lazy ``import aiomqtt`` inside
    ``_connection_loop()`` resolves to a controllable mock.  The mock
    ``messages`` property blocks until the task is cancelled, like a
    real connection waiting for inbound messages.
    """
    mock_module = MagicMock()

    mock_client_instance = AsyncMock()
    mock_client_instance.__aenter__ = AsyncMock(return_value=mock_client_instance)
    mock_client_instance.__aexit__ = AsyncMock(return_value=False)
    type(mock_client_instance).messages = property(lambda self: _blocking_messages())
    mock_client_instance.subscribe = AsyncMock()
    mock_client_instance.publish = AsyncMock()

    mock_module.Client.return_value = mock_client_instance
    mock_module.MqttError = type("MqttError", (Exception,), {})

    with patch.dict(sys.modules, {"aiomqtt": mock_module}):
        yield mock_module, mock_client_instance


def _flaky_module(calls: list[dict[str, object]]) -> MagicMock:
    """aiomqtt stand-in whose first connect is refused."""
    mock_module = MagicMock()
    mqtt_error = type("MqttError", (Exception,), {})
    mock_module.MqttError = mqtt_error

    def client_factory(**kwargs: object) -> AsyncMock:
        calls.append(kwargs)
        cm = AsyncMock()
        if len(calls) == 1:
            cm.__aenter__ = AsyncMock(side_effect=mqtt_error("refused"))
        else:
            cm.__aenter__ = AsyncMock(return_value=cm)
            type(cm).messages = property(lambda self: _blocking_messages())
            cm.subscribe = AsyncMock()
        cm.__aexit__ = AsyncMock(return_value=False)
        return cm

    mock_module.Client = client_factory
    return mock_module


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class TestMqttPortProtocol:
    """Protocol conformance checks for all adapters.

    Technique: Protocol Conformance — isinstance checks using
    ``runtime_checkable``.
    """

    def test_mqtt_client_satisfies_all_ports(self, mqtt_settings: MqttSettings) -> None:
        client = _client(mqtt_settings)
        assert isinstance(client, MqttPort)
        assert isinstance(client, MqttLifecycle)
        assert isinstance(client, MqttMessageHandler)

    def test_mock_mqtt_client_satisfies_all_ports(self) -> None:
        mock = MockMqttClient()
        assert isinstance(mock, MqttPort)
        assert isinstance(mock, MqttLifecycle)
        assert isinstance(mock, MqttMessageHandler)

    def test_null_mqtt_client_satisfies_port(self) -> None:
        assert isinstance(NullMqttClient(), MqttPort)

    def test_class_missing_publish_does_not_satisfy(self) -> None:
        class Incomplete:
            async def subscribe(self, topic: str) -> None: ...

        assert not isinstance(Incomplete(), MqttPort)


# ---------------------------------------------------------------------------
# NullMqttClient
# ---------------------------------------------------------------------------


class TestNullMqttClient:
    """Tests for the no-op null adapter.

    Technique: Specification-based Testing.
    """

    async def test_publish_and_subscribe_succeed_silently(self) -> None:
        client = NullMqttClient()
        await client.publish("t", "p")
        await client.subscribe("t/#")


# ---------------------------------------------------------------------------
# MockMqttClient
# ---------------------------------------------------------------------------


class TestMockMqttClientRecording:
    """Publish and subscribe recording.

    Technique: Specification-based Testing.
    """

    async def test_records_publish_tuple(self) -> None:
        mock = MockMqttClient()
        await mock.publish("devices/Relay-1/messages/events/", "{}", retain=False, qos=0)
        assert mock.published == [("devices/Relay-1/messages/events/", "{}", False, 0)]

    async def test_get_messages_for_filters_by_topic(self) -> None:
        mock = MockMqttClient()
        await mock.publish("a", "1")
        await mock.publish("b", "2", retain=True)
        await mock.publish("a", "3", qos=0)
        assert mock.get_messages_for("a") == [("1", False, 1), ("3", False, 0)]
        assert mock.publish_count == 3

    async def test_records_subscription(self) -> None:
        mock = MockMqttClient()
        await mock.subscribe("$iothub/methods/POST/#")
        assert mock.subscriptions == ["$iothub/methods/POST/#"]


class TestMockMqttClientLifecycle:
    """start/stop, connection callbacks and password capture.

    Technique: State Transition Testing.
    """

    async def test_start_connects_and_notifies(self) -> None:
        mock = MockMqttClient()
        seen: list[bool] = []

        async def on_change(connected: bool) -> None:
            seen.append(connected)

        mock.on_connection_change(on_change)
        await mock.start()
        await mock.stop()

        assert seen == [True, False]
        assert (mock.start_count, mock.stop_count) == (1, 1)
        assert not mock.is_connected

    async def test_fail_connect_stays_disconnected(self) -> None:
        mock = MockMqttClient(fail_connect=True)
        seen: list[bool] = []

        async def on_change(connected: bool) -> None:
            seen.append(connected)

        mock.on_connection_change(on_change)
        await mock.start()

        assert not mock.is_connected
        assert mock.start_count == 1
        assert seen == [False]

    async def test_password_provider_called_per_connect(self) -> None:
        tokens = iter(["first", None])
        mock = MockMqttClient(password_provider=lambda: next(tokens))
        await mock.start()
        await mock.stop()
        await mock.start()
        assert mock.passwords == ["first", None]


class TestMockMqttClientCallbacks:
    """Callback registration and delivery.

    Technique: Specification-based Testing.
    """

    async def test_deliver_invokes_callbacks_in_order(self) -> None:
        mock = MockMqttClient()
        order: list[tuple[int, str]] = []

        async def cb1(topic: str, _p: str) -> None:
            order.append((1, topic))

        async def cb2(topic: str, _p: str) -> None:
            order.append((2, topic))

        mock.on_message(cb1)
        mock.on_message(cb2)
        await mock.deliver("t", "p")
        assert order == [(1, "t"), (2, "t")]

    async def test_deliver_does_not_catch_callback_errors(self) -> None:
        """The mock raises through; the real client's ``_dispatch`` catches."""
        mock = MockMqttClient()

        async def cb_bad(_t: str, _p: str) -> None:
            msg = "boom"
            raise RuntimeError(msg)

        mock.on_message(cb_bad)
        with pytest.raises(RuntimeError, match="boom"):
            await mock.deliver("t", "p")

    async def test_reset_clears_all_state(self) -> None:
        mock = MockMqttClient()
        await mock.publish("t", "p")
        await mock.subscribe("s/#")
        mock.on_message(AsyncMock())
        mock.reset()

        assert mock.published == []
        assert mock.subscriptions == []
        assert mock._callbacks == []  # noqa: SLF001


# ---------------------------------------------------------------------------
# MqttClient — Lifecycle
# ---------------------------------------------------------------------------


class TestMqttClientLifecycle:
    """Tests for MqttClient start/stop lifecycle.

    Technique: State Transition Testing.
    """

    async def test_start_connects_and_notifies(
        self,
        mqtt_settings: MqttSettings,
        mock_aiomqtt: tuple[MagicMock, AsyncMock],
    ) -> None:
        client = _client(mqtt_settings)
        seen: list[bool] = []

        async def on_change(connected: bool) -> None:
            seen.append(connected)

        client.on_connection_change(on_change)
        await client.start()
        await asyncio.sleep(0.05)
        assert client.is_connected
        await client.stop()

        assert seen[0] is True
        assert client._listen_task is None  # noqa: SLF001
        assert client._client is None  # noqa: SLF001
        assert not client.is_connected

    async def test_stop_is_idempotent(self, mqtt_settings: MqttSettings) -> None:
        client = _client(mqtt_settings)
        await client.stop()
        await client.stop()

    async def test_second_start_is_ignored(
        self,
        mqtt_settings: MqttSettings,
        mock_aiomqtt: tuple[MagicMock, AsyncMock],
    ) -> None:
        client = _client(mqtt_settings)
        await client.start()
        task = client._listen_task  # noqa: SLF001
        await client.start()
        assert client._listen_task is task  # noqa: SLF001
        await client.stop()


# ---------------------------------------------------------------------------
# MqttClient — Connect (credentials & subscription restore)
# ---------------------------------------------------------------------------


class TestMqttClientConnect:
    """Connection parameters and subscription restore.

    Technique: Specification-based Testing.
    """

    async def test_connect_arguments(
        self,
        mqtt_settings: MqttSettings,
        mock_aiomqtt: tuple[MagicMock, AsyncMock],
    ) -> None:
        mock_module, _ = mock_aiomqtt
        client = _client(
            mqtt_settings,
            username="hub.azure-devices.net/Relay-1/?api-version=2021-04-12",
            password_provider=lambda: "SharedAccessSignature sr=x",
            host="hub.azure-devices.net",
        )
        await client.start()
        await asyncio.sleep(0.05)

        kwargs = mock_module.Client.call_args.kwargs
        assert kwargs["hostname"] == "hub.azure-devices.net"
        assert kwargs["identifier"] == "Relay-1"
        assert kwargs["username"] == "hub.azure-devices.net/Relay-1/?api-version=2021-04-12"
        assert kwargs["password"] == "SharedAccessSignature sr=x"
        assert kwargs["tls_context"] is None
        await client.stop()

    async def test_tls_context_when_enabled(self) -> None:
        client = _client(MqttSettings(tls=True))
        assert client._tls_context() is not None  # noqa: SLF001

    async def test_password_provider_consulted_on_every_connect(
        self,
        mqtt_settings: MqttSettings,
    ) -> None:
        calls: list[dict[str, object]] = []
        tokens = iter(["old", "new"])
        with patch.dict(sys.modules, {"aiomqtt": _flaky_module(calls)}):
            client = _client(mqtt_settings, password_provider=lambda: next(tokens))
            await client.start()
            await asyncio.sleep(0.3)
            await client.stop()

        assert [c["password"] for c in calls[:2]] == ["old", "new"]

    async def test_subscriptions_restored_on_reconnect(
        self,
        mqtt_settings: MqttSettings,
    ) -> None:
        calls: list[dict[str, object]] = []
        with patch.dict(sys.modules, {"aiomqtt": _flaky_module(calls)}):
            client = _client(mqtt_settings)
            await client.subscribe("$iothub/methods/POST/#")
            await client.start()
            await asyncio.sleep(0.3)

            assert len(calls) >= 2
            assert client.is_connected
            await client.stop()

    async def test_refused_connect_reported_as_disconnect(
        self,
        mqtt_settings: MqttSettings,
    ) -> None:
        calls: list[dict[str, object]] = []
        seen: list[bool] = []

        async def on_change(connected: bool) -> None:
            seen.append(connected)

        with patch.dict(sys.modules, {"aiomqtt": _flaky_module(calls)}):
            client = _client(mqtt_settings)
            client.on_connection_change(on_change)
            await client.start()
            await asyncio.sleep(0.3)
            await client.stop()

        assert seen[:2] == [False, True]


# ---------------------------------------------------------------------------
# MqttClient — Publish / Subscribe
# ---------------------------------------------------------------------------


class TestMqttClientPublishSubscribe:
    """Delegation to the live aiomqtt client.

    Technique: Specification-based Testing.
    """

    async def test_publish_raises_when_not_connected(self, mqtt_settings: MqttSettings) -> None:
        client = _client(mqtt_settings)
        with pytest.raises(RuntimeError, match="not connected"):
            await client.publish("t", "p")

    async def test_publish_via_internal_client(self, mqtt_settings: MqttSettings) -> None:
        client = _client(mqtt_settings)
        inner = AsyncMock()
        client._client = inner  # noqa: SLF001

        await client.publish("a/b", "payload", qos=0)
        inner.publish.assert_awaited_once_with("a/b", "payload", retain=False, qos=0)

    async def test_subscribe_tracks_and_forwards(self, mqtt_settings: MqttSettings) -> None:
        client = _client(mqtt_settings)
        inner = AsyncMock()
        client._client = inner  # noqa: SLF001

        await client.subscribe("t/1")
        assert "t/1" in client._subscriptions  # noqa: SLF001
        inner.subscribe.assert_awaited_once_with("t/1", qos=1)


# ---------------------------------------------------------------------------
# MqttClient — Dispatch
# ---------------------------------------------------------------------------


class TestMqttClientDispatch:
    """Tests for MqttClient._dispatch() message handling.

    Technique: Specification-based Testing.
    """

    async def test_dispatches_decoded_payload(self, mqtt_settings: MqttSettings) -> None:
        client = _client(mqtt_settings)
        cb = AsyncMock()
        client.on_message(cb)

        await client._dispatch(SimpleNamespace(topic="a/b", payload=b"hello"))  # noqa: SLF001
        cb.assert_awaited_once_with("a/b", "hello")

    async def test_skips_none_payload(self, mqtt_settings: MqttSettings) -> None:
        client = _client(mqtt_settings)
        cb = AsyncMock()
        client.on_message(cb)

        await client._dispatch(SimpleNamespace(topic="a/b", payload=None))  # noqa: SLF001
        cb.assert_not_awaited()

    async def test_error_in_callback_logged_not_crashed(self, mqtt_settings: MqttSettings) -> None:
        client = _client(mqtt_settings)

        async def bad_cb(_t: str, _p: str) -> None:
            msg = "boom"
            raise RuntimeError(msg)

        cb_ok = AsyncMock()
        client.on_message(bad_cb)
        client.on_message(cb_ok)

        await client._dispatch(SimpleNamespace(topic="t", payload=b"p"))  # noqa: SLF001
        cb_ok.assert_awaited_once_with("t", "p")
