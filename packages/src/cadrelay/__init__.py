"""cadrelay.

Turns new messages in a monitored mailbox into relay activations on
IoT Hub connected devices: webhook subscription upkeep, notification
routing, command dispatch with a durable fallback, and the device agent
that receives the commands.
"""

from importlib.metadata import PackageNotFoundError, version

from cadrelay._actuator import Actuator, MockOutput, NullOutput, OutputPort
from cadrelay._audit import (
    AuditEvent,
    AuditSink,
    LoggingAuditSink,
    MemoryAuditSink,
    NullAuditSink,
)
from cadrelay._clock import ClockPort, SystemClock, WallClockPort
from cadrelay._credentials import CredentialManager, TokenStatus, build_sas_token
from cadrelay._device import DeviceAgent, DeviceState, build_device_agent
from cadrelay._dispatch import DispatchExecutor, DispatchRequest
from cadrelay._errors import (
    CadRelayError,
    ConfigurationError,
    ErrorPayload,
    GraphError,
    TransportError,
    build_error_payload,
)
from cadrelay._graph import GraphClient, GraphPort, MockGraphClient
from cadrelay._iothub import (
    CommandTransport,
    DispatchResult,
    IotHubServiceClient,
    MockCommandTransport,
    TransportOutcome,
    TriggerPort,
)
from cadrelay._logging import JsonFormatter, configure_logging
from cadrelay._mqtt import (
    MessageCallback,
    MockMqttClient,
    MqttClient,
    MqttLifecycle,
    MqttMessageHandler,
    MqttPort,
    NullMqttClient,
)
from cadrelay._notifications import (
    MessageOnly,
    MessageRef,
    NotAMessage,
    NotificationRouter,
    ResourceParse,
    Unparseable,
    WebhookResponse,
    parse_resource,
)
from cadrelay._routes import Route, RouteTable
from cadrelay._settings import Settings, resolve_setting
from cadrelay._subscriptions import (
    Subscription,
    SubscriptionAction,
    SubscriptionManager,
    SubscriptionOutcome,
    SubscriptionTimer,
)

try:
    # Prefer the generated version file (setuptools_scm at build time)
    from cadrelay._version import __version__
except ImportError:
    try:
        # Fallback to installed package metadata
        __version__ = version("cadrelay")
    except PackageNotFoundError:
        # Last resort fallback for editable installs without metadata
        __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Actuator
    "Actuator",
    "MockOutput",
    "NullOutput",
    "OutputPort",
    # Audit
    "AuditEvent",
    "AuditSink",
    "LoggingAuditSink",
    "MemoryAuditSink",
    "NullAuditSink",
    # Clock
    "ClockPort",
    "SystemClock",
    "WallClockPort",
    # Credentials
    "CredentialManager",
    "TokenStatus",
    "build_sas_token",
    # Device
    "DeviceAgent",
    "DeviceState",
    "build_device_agent",
    # Dispatch
    "DispatchExecutor",
    "DispatchRequest",
    # Errors
    "CadRelayError",
    "ConfigurationError",
    "ErrorPayload",
    "GraphError",
    "TransportError",
    "build_error_payload",
    # Graph
    "GraphClient",
    "GraphPort",
    "MockGraphClient",
    # IoT Hub
    "CommandTransport",
    "DispatchResult",
    "IotHubServiceClient",
    "MockCommandTransport",
    "TransportOutcome",
    "TriggerPort",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # MQTT
    "MessageCallback",
    "MockMqttClient",
    "MqttClient",
    "MqttLifecycle",
    "MqttMessageHandler",
    "MqttPort",
    "NullMqttClient",
    # Notifications
    "MessageOnly",
    "MessageRef",
    "NotAMessage",
    "NotificationRouter",
    "ResourceParse",
    "Unparseable",
    "WebhookResponse",
    "parse_resource",
    # Routes
    "Route",
    "RouteTable",
    # Settings
    "Settings",
    "resolve_setting",
    # Subscriptions
    "Subscription",
    "SubscriptionAction",
    "SubscriptionManager",
    "SubscriptionOutcome",
    "SubscriptionTimer",
]
