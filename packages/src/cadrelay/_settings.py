"""Application configuration via pydantic-settings.

Configuration is loaded from environment variables (prefixed
``CADRELAY_``) and/or ``.env`` files.  Nested models use ``__`` as the
delimiter in env var names, e.g. ``CADRELAY_IOTHUB__HOST_NAME=hub.azure-devices.net``.

The schema covers both halves of the system:

* **Cloud** — mailbox provider (Graph), IoT Hub service access,
  subscription upkeep, dispatch routing, feature flags, API key.
* **Device** — identity, token lifetime and renewal margin, actuator
  pulse, MQTT broker connection.
* **Logging** — level, format, optional file sink, rotation.

Deployments that predate this package configured the cloud side with
``Section:Key`` (App Configuration) or ``Section__Key`` (app settings)
names.  Those are still honoured through :func:`resolve_setting`, which
is the single place that knows the precedence between the two styles.

All durations are in **seconds** unless the field name says otherwise.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
)
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

# -------------------------------------------------------------------
# Legacy key resolution
# -------------------------------------------------------------------


def resolve_setting(
    source: Mapping[str, Any],
    section: str,
    key: str,
) -> str | None:
    """Look up ``section``/``key`` across the legacy naming styles.

    Precedence (first non-blank value wins):

    1. nested mapping — ``source[section][key]``
    2. colon style — ``source["Section:Key"]``
    3. double-underscore style — ``source["Section__Key"]``

    Section and key are matched case-insensitively, so ``IoTHub:HostName``
    and ``iothub:hostname`` are the same setting.  Blank strings count as
    absent.

    Args:
        source: Any string-keyed mapping, typically ``os.environ``.
        section: Section name, e.g. ``"IoTHub"``.
        key: Key inside the section, e.g. ``"HostName"``.

    Returns:
        The resolved value, or ``None`` when no style supplies one.
    """
    folded = {str(k).lower(): v for k, v in source.items()}
    wanted_section = section.lower()
    wanted_key = key.lower()

    nested = folded.get(wanted_section)
    if isinstance(nested, Mapping):
        for nested_key, value in nested.items():
            if str(nested_key).lower() == wanted_key and _present(value):
                return str(value)

    for separator in (":", "__"):
        value = folded.get(f"{wanted_section}{separator}{wanted_key}")
        if _present(value):
            return str(value)
    return None


def _present(value: object) -> bool:
    return isinstance(value, str) and value.strip() != ""


def resolve_routes(source: Mapping[str, Any]) -> list[dict[str, str]]:
    """Collect the legacy ``Dispatch:Routes`` section as route dicts.

    Every child of the section is one route: the child key is the subject
    pattern and its value the device id, e.g.
    ``Dispatch__Routes__STATION 5=Relay-2``.  Children are read with the
    same style precedence as :func:`resolve_setting`; a pattern seen in an
    earlier style (compared case-insensitively) is not overridden by a
    later one.  Blank patterns or device ids are skipped.
    """
    candidates: list[tuple[str, object]] = []
    for key, value in source.items():
        if str(key).lower() == "dispatch" and isinstance(value, Mapping):
            for child_key, routes in value.items():
                if str(child_key).lower() == "routes" and isinstance(routes, Mapping):
                    candidates.extend((str(k), v) for k, v in routes.items())
    for separator in (":", "__"):
        prefix = f"dispatch{separator}routes{separator}"
        candidates.extend(
            (str(key)[len(prefix) :], value)
            for key, value in source.items()
            if str(key).lower().startswith(prefix)
        )

    routes: list[dict[str, str]] = []
    seen: set[str] = set()
    for pattern, device_id in candidates:
        if not _present(pattern) or not _present(device_id) or pattern.lower() in seen:
            continue
        seen.add(pattern.lower())
        routes.append({"pattern": pattern, "device_id": str(device_id).strip()})
    return routes


# Legacy (section, key) names for each field, keyed by our field path.
_LEGACY_KEYS: dict[str, dict[str, tuple[str, str]]] = {
    "iothub": {
        "host_name": ("IoTHub", "HostName"),
        "connection_string": ("IoTHub", "ConnectionString"),
    },
    "subscription": {
        "mailbox": ("Dispatch", "SharedMailbox"),
        "webhook_url": ("Dispatch", "WebhookUrl"),
        "lifecycle_webhook_url": ("Dispatch", "LifecycleWebhookUrl"),
        "use_rich_notifications": ("Dispatch", "UseRichNotifications"),
        "encryption_cert": ("Dispatch", "EncryptionCertBase64"),
        "encryption_cert_id": ("Dispatch", "EncryptionCertId"),
    },
    "features": {
        "dispatch_enabled": ("Features", "DispatchEnabled"),
    },
}


class LegacyKeySettingsSource(PydanticBaseSettingsSource):
    """Settings source for ``Section:Key`` / ``Section__Key`` names.

    Reads the process environment (or an explicit mapping) through
    :func:`resolve_setting` and returns a nested dict shaped like
    :class:`Settings`.
    """

    def __init__(
        self,
        settings_cls: type[BaseSettings],
        source: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(settings_cls)
        self._source = source if source is not None else os.environ

    def get_field_value(
        self,
        field: FieldInfo,  # noqa: ARG002
        field_name: str,
    ) -> tuple[Any, str, bool]:
        return self().get(field_name), field_name, True

    def __call__(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for section_field, keys in _LEGACY_KEYS.items():
            values = {
                name: value
                for name, (section, key) in keys.items()
                if (value := resolve_setting(self._source, section, key)) is not None
            }
            if values:
                data[section_field] = values
        routes = resolve_routes(self._source)
        if routes:
            data.setdefault("dispatch", {})["routes"] = routes
        return data


# -------------------------------------------------------------------
# Sub-models (BaseModel, NOT BaseSettings — nested via composition)
# -------------------------------------------------------------------


class GraphSettings(BaseModel):
    """Mailbox provider (Microsoft Graph) access.

    Environment variables::

        CADRELAY_GRAPH__TENANT_ID=contoso.onmicrosoft.com
        CADRELAY_GRAPH__CLIENT_ID=00000000-0000-0000-0000-000000000000
        CADRELAY_GRAPH__CLIENT_SECRET=secret
    """

    tenant_id: str = Field(default="", description="Directory (tenant) id.")
    client_id: str = Field(default="", description="App registration id.")
    client_secret: SecretStr | None = Field(
        default=None,
        description="Client secret for the client-credentials grant.",
    )
    base_url: str = Field(
        default="https://graph.microsoft.com/v1.0",
        description="Graph REST root.",
    )
    authority: str = Field(
        default="https://login.microsoftonline.com",
        description="Token authority root.",
    )
    timeout: Annotated[float, Field(gt=0)] = Field(
        default=10.0,
        description="Per-request timeout for Graph calls.",
    )


class IotHubSettings(BaseModel):
    """IoT Hub service-side access used to reach devices.

    Either ``connection_string`` (a service shared access policy) or
    ``host_name`` plus a policy key inside the connection string must be
    provided.
    """

    host_name: str = Field(
        default="",
        description="Hub host, e.g. ``myhub.azure-devices.net``.",
    )
    connection_string: SecretStr | None = Field(
        default=None,
        description=(
            "Service policy connection string "
            "(``HostName=…;SharedAccessKeyName=…;SharedAccessKey=…``)."
        ),
    )
    api_version: str = Field(default="2021-04-12")
    method_response_timeout: Annotated[int, Field(ge=5, le=300)] = Field(
        default=6,
        description="Seconds the hub waits for a direct method response.",
    )
    method_connect_timeout: Annotated[int, Field(ge=0, le=300)] = Field(
        default=6,
        description="Seconds the hub waits for the device to connect.",
    )
    message_expiry: Annotated[int, Field(gt=0)] = Field(
        default=60,
        description="Lifetime of fallback cloud-to-device messages.",
    )
    token_lifetime: Annotated[int, Field(gt=0)] = Field(
        default=3600,
        description="Lifetime of the service SAS token.",
    )


class SubscriptionSettings(BaseModel):
    """Webhook subscription upkeep against the mailbox provider."""

    mailbox: str = Field(default="", description="Watched shared mailbox.")
    webhook_url: str = Field(default="", description="Notification URL.")
    lifecycle_webhook_url: str | None = Field(
        default=None,
        description="Optional lifecycle notification URL.",
    )
    use_rich_notifications: bool = Field(
        default=False,
        description="Request resource data inline (needs a certificate).",
    )
    encryption_cert: SecretStr | None = Field(
        default=None,
        description="Base64 public certificate for rich notifications.",
    )
    encryption_cert_id: str = Field(default="cadrelay-cert")
    client_state: str = Field(
        default="cadrelay-alerts",
        description="Opaque value echoed by the provider in notifications.",
    )
    verify_client_state: bool = Field(
        default=False,
        description="Drop notifications whose clientState differs from ``client_state``.",
    )
    lifetime_minutes: Annotated[int, Field(gt=0)] | None = Field(
        default=None,
        description=(
            "Desired subscription lifetime.  ``None`` picks the "
            "conservative default for the notification mode."
        ),
    )
    interval: Annotated[float, Field(gt=0)] = Field(
        default=1800.0,
        description="Seconds between subscription checks.",
    )
    run_on_startup: bool = Field(default=True)


class RouteSettings(BaseModel):
    """One subject-substring → device mapping."""

    pattern: str
    device_id: str


class DispatchSettings(BaseModel):
    """Subject routing and mail handling after dispatch."""

    routes: list[RouteSettings] = Field(
        default_factory=list,
        description="Ordered routes; the first matching pattern wins.",
    )
    fallback_devices: Annotated[list[str], Field(min_length=3, max_length=3)] = Field(
        default_factory=lambda: ["Relay-1", "Relay-2", "Relay-3"],
        description="Devices for the DISPATCH-1/2/3 subject convention.",
    )
    default_mailbox: str | None = Field(
        default=None,
        description="Mailbox used when a notification only names a message.",
    )
    processed_folder: str = Field(default="Processed")
    method_name: str = Field(default="activateRelay")
    reason: str = Field(default="CAD")


class FeatureSettings(BaseModel):
    """Runtime kill switches."""

    dispatch_enabled: bool = Field(default=True)
    test_dispatch_enabled: bool = Field(default=True)


class ApiSettings(BaseModel):
    """Key guarding the administrative endpoints."""

    key: SecretStr | None = Field(default=None)


class DeviceSettings(BaseModel):
    """Device identity and control-loop timing.

    Environment variables::

        CADRELAY_DEVICE__DEVICE_ID=Relay-1
        CADRELAY_DEVICE__HOST_NAME=myhub.azure-devices.net
        CADRELAY_DEVICE__DEVICE_KEY=base64==
    """

    device_id: str = Field(default="")
    host_name: str = Field(default="")
    device_key: SecretStr | None = Field(default=None)
    token_lifetime: Annotated[int, Field(gt=0)] = Field(
        default=3600,
        description="Lifetime of each device SAS token.",
    )
    renew_margin: Annotated[int, Field(ge=0)] = Field(
        default=300,
        description="Renew this many seconds before the token expires.",
    )
    renew_retry: Annotated[float, Field(gt=0)] = Field(
        default=60.0,
        description="Delay before retrying a failed token generation.",
    )
    pulse_duration: Annotated[float, Field(ge=0)] = Field(
        default=0.5,
        description="How long the output is held per activation.",
    )
    tick: Annotated[float, Field(gt=0)] = Field(
        default=1.0,
        description="Control-loop wake-up interval.",
    )


class MqttSettings(BaseModel):
    """MQTT broker connection configuration (device side).

    For IoT Hub the broker is the hub itself; when ``host`` is empty the
    device ``host_name`` is used.  Username and password are derived from
    the device identity and its current token.
    """

    host: str = Field(
        default="",
        description="Broker hostname; empty means the device host_name.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=8883,
        description="MQTT broker port.",
    )
    tls: bool = Field(default=True)
    username: str | None = Field(
        default=None,
        description="Override the derived IoT Hub username.",
    )
    client_id: str = Field(
        default="",
        description="MQTT client identifier; empty means the device id.",
    )
    api_version: str = Field(default="2021-04-12")
    qos: Literal[0, 1] = Field(
        default=1,
        description="QoS for subscriptions and publishes.",
    )
    keepalive: Annotated[int, Field(gt=0)] = Field(default=60)
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Seconds to wait before reconnecting after connection loss.",
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    When ``file`` is set, logs are also written to a rotating file
    (size-based rotation, ``backup_count`` generations kept).  When
    ``None``, logs go to stderr only.

    ``format`` is ``"json"`` (structured lines for log aggregators) or
    ``"text"`` (timestamped lines for a terminal).
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format.",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for cadrelay.

    Source precedence (highest first): constructor arguments, prefixed
    environment variables, legacy ``Section:Key`` / ``Section__Key``
    names, the ``.env`` file, model defaults.

    Example ``.env``::

        CADRELAY_SUBSCRIPTION__MAILBOX=dispatch@contoso.com
        CADRELAY_SUBSCRIPTION__WEBHOOK_URL=https://relay.contoso.com/api/notifications
        CADRELAY_IOTHUB__CONNECTION_STRING=HostName=…;SharedAccessKeyName=service;SharedAccessKey=…
        CADRELAY_LOGGING__FORMAT=text
    """

    model_config = SettingsConfigDict(
        env_prefix="CADRELAY_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    graph: GraphSettings = Field(default_factory=GraphSettings)
    iothub: IotHubSettings = Field(default_factory=IotHubSettings)
    subscription: SubscriptionSettings = Field(default_factory=SubscriptionSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    features: FeatureSettings = Field(default_factory=FeatureSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    device: DeviceSettings = Field(default_factory=DeviceSettings)
    mqtt: MqttSettings = Field(default_factory=MqttSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            LegacyKeySettingsSource(settings_cls),
            dotenv_settings,
            file_secret_settings,
        )
