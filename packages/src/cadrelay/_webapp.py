"""HTTP surface (FastAPI).

Routes::

    GET|POST /api/notifications   webhook (anonymous; the provider calls it)
    GET      /api/subscriptions   list provider subscriptions (API key)
    GET      /api/test-relay      fire a test command (feature flag)
    GET      /api/config-probe    which settings are present (API key)

The API key is accepted from the ``x-functions-key`` header or the
``code`` query parameter.  With no key configured the guarded routes
answer 401.

:func:`create_app` wires the collaborators from settings; tests inject
doubles for any of them.  The lifespan starts the subscription timer and
closes outbound HTTP clients on shutdown.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

from cadrelay._audit import AuditSink, LoggingAuditSink
from cadrelay._clock import utcnow
from cadrelay._dispatch import DispatchExecutor
from cadrelay._errors import TransportError
from cadrelay._graph import GraphClient, GraphPort
from cadrelay._iothub import TriggerPort, build_command_transport
from cadrelay._notifications import NotificationRouter
from cadrelay._routes import RouteTable
from cadrelay._settings import Settings
from cadrelay._subscriptions import (
    SubscriptionManager,
    SubscriptionTimer,
    list_subscriptions_payload,
)

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the HTTP handlers and the timer share."""

    settings: Settings
    graph: GraphPort
    transport: TriggerPort
    audit: AuditSink
    routes: RouteTable
    executor: DispatchExecutor
    router: NotificationRouter
    subscriptions: SubscriptionManager
    timer: SubscriptionTimer

    async def aclose(self) -> None:
        await self.timer.stop()
        for resource in (self.graph, self.transport):
            closer = getattr(resource, "aclose", None)
            if closer is None:
                continue
            try:
                await closer()
            except Exception:
                logger.exception("Failed to close %s", type(resource).__name__)


def build_services(
    settings: Settings,
    *,
    graph: GraphPort | None = None,
    transport: TriggerPort | None = None,
    audit: AuditSink | None = None,
    now: Callable[[], datetime] = utcnow,
) -> Services:
    """Compose the cloud-side collaborators from *settings*."""
    resolved_audit = audit if audit is not None else LoggingAuditSink()
    resolved_graph = graph if graph is not None else GraphClient(settings.graph)
    resolved_transport = (
        transport
        if transport is not None
        else build_command_transport(
            settings.iothub,
            method_name=settings.dispatch.method_name,
            source=settings.dispatch.reason,
        )
    )
    routes = RouteTable.from_settings(settings.dispatch)
    executor = DispatchExecutor(
        graph=resolved_graph,
        transport=resolved_transport,
        routes=routes,
        audit=resolved_audit,
        dispatch_enabled=settings.features.dispatch_enabled,
        processed_folder=settings.dispatch.processed_folder,
        reason=settings.dispatch.reason,
    )
    sub = settings.subscription
    router = NotificationRouter(
        dispatch=executor.execute,
        audit=resolved_audit,
        default_mailbox=settings.dispatch.default_mailbox or sub.mailbox or None,
        client_state=sub.client_state if sub.verify_client_state else None,
    )
    manager = SubscriptionManager(
        settings=sub,
        graph=resolved_graph,
        audit=resolved_audit,
        clock=now,
    )
    timer = SubscriptionTimer(manager, interval=sub.interval, run_on_startup=sub.run_on_startup)
    return Services(
        settings=settings,
        graph=resolved_graph,
        transport=resolved_transport,
        audit=resolved_audit,
        routes=routes,
        executor=executor,
        router=router,
        subscriptions=manager,
        timer=timer,
    )


def _present(value: Any) -> bool:
    if value is None:
        return False
    if hasattr(value, "get_secret_value"):
        value = value.get_secret_value()
    return bool(str(value).strip())


def config_probe_payload(settings: Settings) -> dict[str, Any]:
    """Presence flags for the settings operators usually get wrong."""
    return {
        "graphTenantIdPresent": _present(settings.graph.tenant_id),
        "graphClientIdPresent": _present(settings.graph.client_id),
        "graphClientSecretPresent": _present(settings.graph.client_secret),
        "iotHubHostNamePresent": _present(settings.iothub.host_name),
        "iotHubConnectionStringPresent": _present(settings.iothub.connection_string),
        "mailboxPresent": _present(settings.subscription.mailbox),
        "webhookUrlPresent": _present(settings.subscription.webhook_url),
        "lifecycleWebhookUrlPresent": _present(settings.subscription.lifecycle_webhook_url),
        "encryptionCertPresent": _present(settings.subscription.encryption_cert),
        "richNotificationsRequested": settings.subscription.use_rich_notifications,
        "dispatchEnabled": settings.features.dispatch_enabled,
        "testDispatchEnabled": settings.features.test_dispatch_enabled,
        "routeCount": len(settings.dispatch.routes),
    }


def create_app(
    settings: Settings | None = None,
    *,
    graph: GraphPort | None = None,
    transport: TriggerPort | None = None,
    audit: AuditSink | None = None,
    now: Callable[[], datetime] = utcnow,
    start_timer: bool = True,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Root settings; loaded from the environment when omitted.
        graph: Mailbox provider override.
        transport: Device command transport override.
        audit: Audit sink override.
        now: UTC clock for subscription expiry.
        start_timer: Start the subscription timer in the lifespan.
    """
    resolved = settings if settings is not None else Settings()
    services = build_services(resolved, graph=graph, transport=transport, audit=audit, now=now)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if start_timer:
            services.timer.start()
            logger.info("Subscription timer started (every %.0fs)", services.timer.interval)
        try:
            yield
        finally:
            await services.aclose()

    app = FastAPI(title="cadrelay", lifespan=lifespan)
    app.state.services = services

    def require_api_key(
        x_functions_key: Annotated[str | None, Header()] = None,
        code: Annotated[str | None, Query()] = None,
    ) -> None:
        configured = resolved.api.key
        if configured is None or not configured.get_secret_value():
            raise HTTPException(status_code=401, detail="api key not configured")
        supplied = x_functions_key or code
        if not supplied or not hmac.compare_digest(
            supplied.encode(),
            configured.get_secret_value().encode(),
        ):
            raise HTTPException(status_code=401, detail="invalid api key")

    @app.api_route("/api/notifications", methods=["GET", "POST"])
    async def notifications(request: Request) -> Response:
        body = await request.body()
        result = await services.router.handle(request.method, dict(request.query_params), body)
        return Response(content=result.body, status_code=result.status, media_type=result.media_type)

    @app.get("/api/subscriptions", dependencies=[Depends(require_api_key)])
    async def subscriptions() -> Response:
        try:
            payload = await list_subscriptions_payload(services.graph)
        except Exception as exc:
            logger.exception("Failed to list subscriptions")
            return JSONResponse({"error": str(exc)}, status_code=500)
        return JSONResponse(payload)

    @app.get("/api/test-relay")
    async def test_relay(
        device_id: Annotated[str | None, Query(alias="deviceId")] = None,
        relay: str | None = None,
    ) -> Response:
        features = resolved.features
        if not (features.dispatch_enabled and features.test_dispatch_enabled):
            return JSONResponse({"error": "dispatch_disabled"}, status_code=403)
        target = device_id or services.routes.for_relay(relay)
        if not target:
            return JSONResponse({"error": "deviceId_or_relay_required"}, status_code=400)

        payload = {"subject": f"TEST-DISPATCH-{relay or '?'}", "reason": "HTTP"}
        try:
            result = await services.transport.trigger(target, payload)
        except TransportError as exc:
            logger.error("Test relay for %s failed: %s", target, exc)
            services.audit.record("test_relay_failed", {"deviceId": target, "error": str(exc)})
            return JSONResponse({"deviceId": target, "error": str(exc)}, status_code=502)
        logger.info("Test relay for %s via %s", target, result.via)
        services.audit.record(
            "test_relay",
            {"deviceId": target, "via": result.via, "status": result.status},
        )
        return JSONResponse({"deviceId": target, "via": result.via, "status": result.status})

    @app.get("/api/config-probe", dependencies=[Depends(require_api_key)])
    async def config_probe() -> dict[str, Any]:
        return config_probe_payload(resolved)

    return app
