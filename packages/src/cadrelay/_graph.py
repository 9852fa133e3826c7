"""Mailbox provider port and adapters (Microsoft Graph).

Only the small slice of Graph this system needs is modelled:

- subscriptions: list, create, update (renew)
- messages: read a projection, mark read, move
- mail folders: find by display name, create under the mailbox root

Provides :class:`GraphPort` (Protocol) and two implementations:

- :class:`GraphClient` — httpx-based REST client using the OAuth2
  client-credentials grant
- :class:`MockGraphClient` — in-memory double that records calls

Non-2xx answers raise :class:`~cadrelay._errors.GraphError`.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from cadrelay._clock import ClockPort, SystemClock
from cadrelay._errors import ConfigurationError, GraphError
from cadrelay._http import LazyClient
from cadrelay._settings import GraphSettings

logger = logging.getLogger(__name__)

GRAPH_SCOPE = "https://graph.microsoft.com/.default"

# Refresh access tokens this many seconds before they expire.
_TOKEN_SKEW = 60.0


@runtime_checkable
class GraphPort(Protocol):
    """Port contract for the mailbox provider."""

    async def list_subscriptions(self) -> list[dict[str, Any]]: ...

    async def create_subscription(self, body: dict[str, Any]) -> dict[str, Any]: ...

    async def update_subscription(
        self,
        subscription_id: str,
        body: dict[str, Any],
    ) -> dict[str, Any]: ...

    async def get_message(
        self,
        user_id: str,
        message_id: str,
        select: tuple[str, ...] = ("subject",),
    ) -> dict[str, Any]: ...

    async def mark_read(self, user_id: str, message_id: str) -> None: ...

    async def find_folder(self, user_id: str, display_name: str) -> dict[str, Any] | None: ...

    async def create_folder(self, user_id: str, display_name: str) -> dict[str, Any]: ...

    async def move_message(
        self,
        user_id: str,
        message_id: str,
        destination_id: str,
    ) -> dict[str, Any]: ...


def _seg(value: str) -> str:
    """URL-encode one path segment (``@`` kept for UPNs)."""
    return quote(value, safe="@")


def _odata_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


# ---------------------------------------------------------------------------
# Token provider
# ---------------------------------------------------------------------------


@dataclass
class ClientCredentialsTokenProvider:
    """Caches an app-only Graph access token.

    The token is fetched from ``{authority}/{tenant}/oauth2/v2.0/token``
    and reused until shortly before it expires.
    """

    settings: GraphSettings
    http: LazyClient
    clock: ClockPort = field(default_factory=SystemClock)
    _token: str | None = field(default=None, init=False, repr=False)
    _expires_at: float = field(default=0.0, init=False, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    async def token(self) -> str:
        if self._token is not None and self.clock.now() < self._expires_at:
            return self._token
        async with self._lock:
            if self._token is None or self.clock.now() >= self._expires_at:
                await self._refresh()
        assert self._token is not None  # noqa: S101
        return self._token

    async def _refresh(self) -> None:
        s = self.settings
        if not s.tenant_id or not s.client_id or s.client_secret is None:
            msg = "graph.tenant_id, graph.client_id and graph.client_secret are required"
            raise ConfigurationError(msg)
        client = await self.http.get()
        url = f"{s.authority.rstrip('/')}/{s.tenant_id}/oauth2/v2.0/token"
        response = await client.post(
            url,
            data={
                "client_id": s.client_id,
                "client_secret": s.client_secret.get_secret_value(),
                "scope": GRAPH_SCOPE,
                "grant_type": "client_credentials",
            },
        )
        if response.status_code >= 400:
            raise GraphError("POST", "/oauth2/v2.0/token", response.status_code, "token_request_failed")
        data = response.json()
        self._token = data["access_token"]
        lifetime = float(data.get("expires_in", 3600))
        self._expires_at = self.clock.now() + max(lifetime - _TOKEN_SKEW, 0.0)
        logger.info("Acquired Graph access token (expires in %.0fs)", lifetime)


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


@dataclass
class GraphClient:
    """Graph REST adapter.

    Args:
        settings: Graph connection settings.
        token: Async callable returning a bearer token.  Defaults to a
            :class:`ClientCredentialsTokenProvider` built from *settings*.
        transport: Optional httpx transport (tests pass a
            ``httpx.MockTransport``).
    """

    settings: GraphSettings
    token: Callable[[], Awaitable[str]] | None = None
    transport: httpx.AsyncBaseTransport | None = field(default=None, repr=False)
    http: LazyClient = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.http = LazyClient(self._build_client, name="graph")
        if self.token is None:
            self.token = ClientCredentialsTokenProvider(self.settings, self.http).token

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.timeout,
            transport=self.transport,
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        assert self.token is not None  # noqa: S101
        bearer = await self.token()
        client = await self.http.get()
        url = path if path.startswith("https://") else f"{self.settings.base_url.rstrip('/')}{path}"
        response = await client.request(
            method,
            url,
            params=params,
            json=json,
            headers={"Authorization": f"Bearer {bearer}"},
        )
        if response.status_code >= 400:
            code, message = "", ""
            try:
                error = response.json().get("error", {})
                code, message = error.get("code", ""), error.get("message", "")
            except ValueError:
                message = response.text[:200]
            raise GraphError(method, path, response.status_code, code, message)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    # -- Subscriptions -------------------------------------------------------

    async def list_subscriptions(self) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        path: str | None = "/subscriptions"
        while path is not None:
            page = await self._request("GET", path)
            items.extend(page.get("value", []))
            path = page.get("@odata.nextLink")
        return items

    async def create_subscription(self, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/subscriptions", json=body)

    async def update_subscription(
        self,
        subscription_id: str,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        return await self._request("PATCH", f"/subscriptions/{_seg(subscription_id)}", json=body)

    # -- Messages ------------------------------------------------------------

    async def get_message(
        self,
        user_id: str,
        message_id: str,
        select: tuple[str, ...] = ("subject",),
    ) -> dict[str, Any]:
        return await self._request(
            "GET",
            f"/users/{_seg(user_id)}/messages/{_seg(message_id)}",
            params={"$select": ",".join(select)},
        )

    async def mark_read(self, user_id: str, message_id: str) -> None:
        await self._request(
            "PATCH",
            f"/users/{_seg(user_id)}/messages/{_seg(message_id)}",
            json={"isRead": True},
        )

    async def move_message(
        self,
        user_id: str,
        message_id: str,
        destination_id: str,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/users/{_seg(user_id)}/messages/{_seg(message_id)}/move",
            json={"destinationId": destination_id},
        )

    # -- Folders -------------------------------------------------------------

    async def find_folder(self, user_id: str, display_name: str) -> dict[str, Any] | None:
        page = await self._request(
            "GET",
            f"/users/{_seg(user_id)}/mailFolders",
            params={"$filter": f"displayName eq {_odata_literal(display_name)}"},
        )
        for folder in page.get("value", []):
            if str(folder.get("displayName", "")).lower() == display_name.lower():
                return folder
        return None

    async def create_folder(self, user_id: str, display_name: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/users/{_seg(user_id)}/mailFolders",
            json={"displayName": display_name},
        )


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


@dataclass
class MockGraphClient:
    """In-memory Graph double.

    Messages are keyed by ``(user_id, message_id)``.  Every call is
    appended to ``calls`` as ``(operation, args)``.  ``failures`` maps an
    operation name to an exception raised on the next calls to it.
    """

    subscriptions: dict[str, dict[str, Any]] = field(default_factory=dict)
    messages: dict[tuple[str, str], dict[str, Any]] = field(default_factory=dict)
    folders: dict[str, dict[str, str]] = field(default_factory=dict)
    failures: dict[str, Exception] = field(default_factory=dict)
    calls: list[tuple[str, tuple[Any, ...]]] = field(default_factory=list)
    closed: bool = False
    _ids: itertools.count[int] = field(default_factory=lambda: itertools.count(1), init=False, repr=False)

    # -- Test helpers --------------------------------------------------------

    def add_message(self, user_id: str, message_id: str, subject: str) -> None:
        self.messages[(user_id, message_id)] = {
            "id": message_id,
            "subject": subject,
            "isRead": False,
            "parentFolderId": "inbox",
        }

    def add_subscription(self, **fields: Any) -> dict[str, Any]:
        sub = {"id": f"sub-{next(self._ids)}", "changeType": "created", **fields}
        self.subscriptions[sub["id"]] = sub
        return sub

    async def aclose(self) -> None:
        self.closed = True

    def calls_to(self, operation: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == operation]

    def _call(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))
        failure = self.failures.get(operation)
        if failure is not None:
            raise failure

    def _message(self, user_id: str, message_id: str) -> dict[str, Any]:
        try:
            return self.messages[(user_id, message_id)]
        except KeyError:
            path = f"/users/{user_id}/messages/{message_id}"
            raise GraphError("GET", path, 404, "ErrorItemNotFound") from None

    # -- GraphPort -----------------------------------------------------------

    async def list_subscriptions(self) -> list[dict[str, Any]]:
        self._call("list_subscriptions")
        return [dict(sub) for sub in self.subscriptions.values()]

    async def create_subscription(self, body: dict[str, Any]) -> dict[str, Any]:
        self._call("create_subscription", body)
        return dict(self.add_subscription(**body))

    async def update_subscription(
        self,
        subscription_id: str,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        self._call("update_subscription", subscription_id, body)
        if subscription_id not in self.subscriptions:
            raise GraphError("PATCH", f"/subscriptions/{subscription_id}", 404, "ResourceNotFound")
        self.subscriptions[subscription_id].update(body)
        return dict(self.subscriptions[subscription_id])

    async def get_message(
        self,
        user_id: str,
        message_id: str,
        select: tuple[str, ...] = ("subject",),
    ) -> dict[str, Any]:
        self._call("get_message", user_id, message_id, select)
        message = self._message(user_id, message_id)
        return {key: message[key] for key in ("id", *select) if key in message}

    async def mark_read(self, user_id: str, message_id: str) -> None:
        self._call("mark_read", user_id, message_id)
        self._message(user_id, message_id)["isRead"] = True

    async def find_folder(self, user_id: str, display_name: str) -> dict[str, Any] | None:
        self._call("find_folder", user_id, display_name)
        for name, folder_id in self.folders.get(user_id, {}).items():
            if name.lower() == display_name.lower():
                return {"id": folder_id, "displayName": name}
        return None

    async def create_folder(self, user_id: str, display_name: str) -> dict[str, Any]:
        self._call("create_folder", user_id, display_name)
        folder_id = f"folder-{next(self._ids)}"
        self.folders.setdefault(user_id, {})[display_name] = folder_id
        return {"id": folder_id, "displayName": display_name}

    async def move_message(
        self,
        user_id: str,
        message_id: str,
        destination_id: str,
    ) -> dict[str, Any]:
        self._call("move_message", user_id, message_id, destination_id)
        message = self._message(user_id, message_id)
        message["parentFolderId"] = destination_id
        return dict(message)
