"""Cloud-side command transport over the IoT Hub service REST API.

Two delivery channels reach a device:

- **direct method** — synchronous request/response, answered by the
  device within ``method_response_timeout`` seconds;
- **cloud-to-device message** — queued by the hub and delivered when the
  device next listens, expiring after ``message_expiry`` seconds.

:class:`CommandTransport` tries the direct method first and falls back
to a cloud-to-device message on any failed outcome.  Failures travel as
:class:`TransportOutcome` values, never as exceptions; only a failure of
the fallback itself raises :class:`~cadrelay._errors.TransportError`.

Authentication uses a service SAS token derived from the hub connection
string, cached until shortly before it expires.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from cadrelay._clock import SystemClock, WallClockPort
from cadrelay._credentials import build_sas_token
from cadrelay._errors import ConfigurationError, TransportError
from cadrelay._http import LazyClient
from cadrelay._settings import IotHubSettings

logger = logging.getLogger(__name__)

# Reuse a service token until this many seconds before its expiry.
TOKEN_REFRESH_MARGIN = 300

# Extra client-side slack on top of the hub's own method timeouts.
_HTTP_SLACK = 5.0


# ---------------------------------------------------------------------------
# Connection string
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ConnectionString:
    """Parsed ``HostName=…;SharedAccessKeyName=…;SharedAccessKey=…``."""

    host_name: str
    key_name: str
    key: str = field(repr=False)

    @classmethod
    def parse(cls, value: str) -> ConnectionString:
        """Parse a service policy connection string.

        Keys are matched case-insensitively; values may contain ``=``
        (base64 padding).

        Raises:
            ConfigurationError: If any of the three parts is missing.
        """
        parts: dict[str, str] = {}
        for segment in value.split(";"):
            if "=" not in segment:
                continue
            name, _, part = segment.partition("=")
            parts[name.strip().lower()] = part.strip()
        try:
            return cls(
                host_name=parts["hostname"],
                key_name=parts["sharedaccesskeyname"],
                key=parts["sharedaccesskey"],
            )
        except KeyError as exc:
            msg = f"IoT Hub connection string is missing {exc.args[0]!r}"
            raise ConfigurationError(msg) from None


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TransportOutcome:
    """Result of one delivery attempt.

    ``status`` is the HTTP status reported by the hub (or by the device
    for a direct method), ``0`` when no answer was received.
    ``retryable`` separates transient conditions (device offline,
    timeouts, throttling, 5xx) from ones another attempt will not fix
    (authorisation, malformed request, device-side failure).
    """

    ok: bool
    status: int
    retryable: bool = False
    reason: str = ""
    body: Any = None

    @classmethod
    def success(cls, status: int, body: Any = None) -> TransportOutcome:
        return cls(ok=True, status=status, body=body)

    @classmethod
    def failure(cls, status: int, reason: str, *, retryable: bool) -> TransportOutcome:
        return cls(ok=False, status=status, retryable=retryable, reason=reason)


Via = Literal["direct", "fallback"]


@dataclass(frozen=True, slots=True)
class DispatchResult:
    """Which channel carried a command, and the status it produced.

    ``terminal`` is ``True`` when the device answered synchronously and
    ``False`` when the command was only queued for later delivery.
    """

    via: Via
    status: int
    terminal: bool

    def to_dict(self) -> dict[str, Any]:
        return {"via": self.via, "status": self.status, "terminal": self.terminal}


def classify_failure(status: int) -> tuple[str, bool]:
    """Map a non-success hub status to ``(reason, retryable)``."""
    if status == 404:
        return "device_not_found_or_offline", True
    if status in (401, 403):
        return "unauthorized", False
    if status in (408, 504):
        return "timeout", True
    if status == 429:
        return "throttled", True
    if status >= 500:
        return "hub_error", True
    return "rejected", False


# ---------------------------------------------------------------------------
# Service REST client
# ---------------------------------------------------------------------------


@dataclass
class IotHubServiceClient:
    """Minimal IoT Hub service REST client.

    Args:
        settings: Hub access settings; ``connection_string`` is required,
            ``host_name`` overrides the host inside it.
        clock: Wall clock for token and message expiry.
        transport: Optional httpx transport (tests pass a
            ``httpx.MockTransport``).
    """

    settings: IotHubSettings
    clock: WallClockPort = field(default_factory=SystemClock)
    transport: httpx.AsyncBaseTransport | None = field(default=None, repr=False)
    http: LazyClient = field(init=False, repr=False)
    _connection: ConnectionString | None = field(default=None, init=False, repr=False)
    _token: str | None = field(default=None, init=False, repr=False)
    _token_expiry: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        self.http = LazyClient(self._build_client, name="iothub")

    def _build_client(self) -> httpx.AsyncClient:
        timeout = (
            self.settings.method_response_timeout
            + self.settings.method_connect_timeout
            + _HTTP_SLACK
        )
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    async def aclose(self) -> None:
        await self.http.aclose()

    # -- Auth ----------------------------------------------------------------

    @property
    def connection(self) -> ConnectionString:
        if self._connection is None:
            secret = self.settings.connection_string
            if secret is None or not secret.get_secret_value().strip():
                msg = "iothub.connection_string is required"
                raise ConfigurationError(msg)
            self._connection = ConnectionString.parse(secret.get_secret_value())
        return self._connection

    @property
    def host_name(self) -> str:
        return self.settings.host_name or self.connection.host_name

    def service_token(self) -> str:
        """Return the cached service token, minting a new one when due."""
        now = int(self.clock.time())
        if self._token is not None and now < self._token_expiry - TOKEN_REFRESH_MARGIN:
            return self._token
        conn = self.connection
        expiry = now + self.settings.token_lifetime
        try:
            self._token = build_sas_token(self.host_name, conn.key, expiry, conn.key_name)
        except ValueError as exc:
            msg = f"IoT Hub shared access key is invalid: {exc}"
            raise ConfigurationError(msg) from exc
        self._token_expiry = expiry
        logger.debug("Minted IoT Hub service token (policy=%s)", conn.key_name)
        return self._token

    def _url(self, path: str) -> str:
        return f"https://{self.host_name}{path}?api-version={self.settings.api_version}"

    # -- Channels ------------------------------------------------------------

    async def invoke_method(
        self,
        device_id: str,
        method: str,
        payload: Any,
    ) -> TransportOutcome:
        """Invoke *method* on *device_id* and wait for its answer."""
        body = {
            "methodName": method,
            "responseTimeoutInSeconds": self.settings.method_response_timeout,
            "connectTimeoutInSeconds": self.settings.method_connect_timeout,
            "payload": payload,
        }
        try:
            client = await self.http.get()
            response = await client.post(
                self._url(f"/twins/{quote(device_id, safe='')}/methods"),
                json=body,
                headers={"Authorization": self.service_token()},
            )
        except httpx.TimeoutException as exc:
            return TransportOutcome.failure(0, f"timeout: {exc}", retryable=True)
        except httpx.HTTPError as exc:
            return TransportOutcome.failure(0, f"communication_error: {exc}", retryable=True)

        if response.status_code >= 400:
            reason, retryable = classify_failure(response.status_code)
            return TransportOutcome.failure(response.status_code, reason, retryable=retryable)

        try:
            result = response.json()
        except ValueError:
            result = {}
        if not isinstance(result, dict):
            return TransportOutcome.failure(response.status_code, "bad_response", retryable=False)
        try:
            device_status = int(result.get("status", response.status_code))
        except (TypeError, ValueError):
            return TransportOutcome.failure(response.status_code, "bad_response", retryable=False)
        if device_status >= 400:
            return TransportOutcome.failure(device_status, "device_error", retryable=False)
        return TransportOutcome.success(device_status, result.get("payload"))

    async def send_message(
        self,
        device_id: str,
        body: Any,
        properties: dict[str, str] | None = None,
    ) -> TransportOutcome:
        """Queue a cloud-to-device message with full delivery feedback."""
        expires = datetime.fromtimestamp(self.clock.time() + self.settings.message_expiry, UTC)
        headers = {
            "Authorization": self.service_token(),
            "Content-Type": "application/json",
            "iothub-ack": "full",
            "iothub-expiry": expires.isoformat().replace("+00:00", "Z"),
        }
        for name, value in (properties or {}).items():
            headers[f"iothub-app-{name}"] = value
        try:
            client = await self.http.get()
            response = await client.post(
                self._url(f"/devices/{quote(device_id, safe='')}/messages/deviceBound"),
                content=json.dumps(body),
                headers=headers,
            )
        except httpx.HTTPError as exc:
            return TransportOutcome.failure(0, f"communication_error: {exc}", retryable=True)
        if response.status_code >= 400:
            reason, retryable = classify_failure(response.status_code)
            return TransportOutcome.failure(response.status_code, reason, retryable=retryable)
        return TransportOutcome.success(response.status_code)


# ---------------------------------------------------------------------------
# TriggerCommand abstraction
# ---------------------------------------------------------------------------


@runtime_checkable
class TriggerPort(Protocol):
    """Deliver one activation command to a device."""

    async def trigger(self, device_id: str, payload: dict[str, Any]) -> DispatchResult: ...


@runtime_checkable
class ServiceChannels(Protocol):
    """The two raw channels :class:`CommandTransport` composes."""

    async def invoke_method(self, device_id: str, method: str, payload: Any) -> TransportOutcome: ...

    async def send_message(
        self,
        device_id: str,
        body: Any,
        properties: dict[str, str] | None = None,
    ) -> TransportOutcome: ...


@dataclass
class CommandTransport:
    """Direct method with cloud-to-device fallback.

    Args:
        channels: Raw hub channels, usually an :class:`IotHubServiceClient`.
        method_name: Command name used on both channels.
        source: Value of the ``source`` property on fallback messages.
    """

    channels: ServiceChannels
    method_name: str = "activateRelay"
    source: str = "CAD"

    async def trigger(self, device_id: str, payload: dict[str, Any]) -> DispatchResult:
        """Deliver *payload* to *device_id*.

        Raises:
            TransportError: If the direct method failed and the fallback
                message could not be queued either.
        """
        direct = await self.channels.invoke_method(device_id, self.method_name, payload)
        if direct.ok:
            logger.info("Direct method on %s returned %d", device_id, direct.status)
            return DispatchResult(via="direct", status=direct.status, terminal=True)

        log = logger.warning if direct.retryable else logger.error
        log(
            "Direct method on %s failed (status=%d, reason=%s); falling back to message",
            device_id,
            direct.status,
            direct.reason,
        )

        queued = await self.channels.send_message(
            device_id,
            {"cmd": self.method_name, "payload": payload},
            {"source": self.source, "command": self.method_name},
        )
        if not queued.ok:
            msg = (
                f"Could not deliver {self.method_name} to {device_id}: "
                f"direct {direct.status} {direct.reason}, "
                f"fallback {queued.status} {queued.reason}"
            )
            raise TransportError(msg)
        logger.info("Queued cloud-to-device command for %s", device_id)
        return DispatchResult(via="fallback", status=202, terminal=False)

    async def aclose(self) -> None:
        closer = getattr(self.channels, "aclose", None)
        if closer is not None:
            await closer()


def build_command_transport(
    settings: IotHubSettings,
    *,
    method_name: str = "activateRelay",
    source: str = "CAD",
) -> CommandTransport:
    """Compose the production transport from settings."""
    return CommandTransport(
        channels=IotHubServiceClient(settings),
        method_name=method_name,
        source=source,
    )


# ---------------------------------------------------------------------------
# Test double
# ---------------------------------------------------------------------------


@dataclass
class MockCommandTransport:
    """Records every trigger and answers with a configurable result.

    Set ``error`` to make :meth:`trigger` raise.
    """

    result: DispatchResult = field(
        default_factory=lambda: DispatchResult(via="direct", status=200, terminal=True),
    )
    error: Exception | None = None
    triggers: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    async def trigger(self, device_id: str, payload: dict[str, Any]) -> DispatchResult:
        self.triggers.append((device_id, payload))
        if self.error is not None:
            raise self.error
        return self.result

    @property
    def devices(self) -> list[str]:
        return [device_id for device_id, _ in self.triggers]

    async def aclose(self) -> None:
        return None
