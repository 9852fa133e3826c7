"""Webhook subscription upkeep.

The mailbox provider only delivers change notifications while a
subscription exists, and subscriptions expire.  :class:`SubscriptionManager`
is run on a fixed interval by :class:`SubscriptionTimer` and keeps exactly
one live subscription for (watched resource, notification URL):

- none found → create one;
- found, expiring within the renewal threshold → extend it;
- found and healthy → leave it alone.

Every run ends in exactly one audit record and never raises.  A gap only
opens if the manager itself is down for longer than
``lifetime - threshold``.

Two notification modes exist.  *Basic* notifications carry identifiers
only.  *Enriched* notifications carry encrypted resource data and need a
certificate; providers cap their lifetime much lower, so the defaults
differ:

===========  ==============  =================
mode         lifetime (min)  threshold (min)
===========  ==============  =================
basic        10070           120
enriched     1430            30
===========  ==============  =================
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any
from urllib.parse import urlsplit

from cadrelay._audit import AuditSink, LoggingAuditSink
from cadrelay._clock import utcnow
from cadrelay._errors import DEFAULT_ERROR_TYPES, GraphError, build_error_payload
from cadrelay._graph import GraphPort
from cadrelay._settings import SubscriptionSettings

logger = logging.getLogger(__name__)

BASIC_LIFETIME_MINUTES = 10070
ENRICHED_LIFETIME_MINUTES = 1430
BASIC_THRESHOLD_MINUTES = 120
ENRICHED_THRESHOLD_MINUTES = 30

ENRICHED_SELECT = "subject,from,receivedDateTime"


def validate_notification_url(url: str | None) -> str | None:
    """Return ``None`` for an absolute HTTPS URL, else the failure reason."""
    if url is None or not url.strip():
        return "empty"
    parts = urlsplit(url.strip())
    if not parts.scheme:
        return "not_absolute"
    if parts.scheme.lower() != "https":
        return "not_https"
    if not parts.hostname:
        return "missing_host"
    return None


def normalize_resource(resource: str | None) -> str:
    """Cut *resource* after its first ``/messages`` so query variants compare equal."""
    if resource is None or not resource.strip():
        return ""
    resource = resource.strip()
    index = resource.lower().find("/messages")
    if index >= 0:
        return resource[: index + len("/messages")]
    return resource


def inbox_resource(mailbox: str, *, enriched: bool = False) -> str:
    resource = f"/users/{mailbox}/mailFolders('inbox')/messages"
    if enriched:
        resource += f"?$select={ENRICHED_SELECT}"
    return resource


def _format_expiry(moment: datetime) -> str:
    return moment.isoformat(timespec="seconds").replace("+00:00", "Z")


def _parse_expiry(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    text = value.replace("Z", "+00:00")
    # Graph emits up to seven fractional digits; fromisoformat takes six.
    if "." in text:
        head, _, tail = text.partition(".")
        digits = "".join(ch for ch in tail if ch.isdigit())
        zone = tail[len(digits) :]
        text = f"{head}.{digits[:6].ljust(6, '0')}{zone}"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class Subscription:
    """Provider subscription as seen by this package."""

    id: str
    resource: str
    notification_url: str
    change_type: str = "created"
    lifecycle_notification_url: str | None = None
    expiration: datetime | None = None
    include_resource_data: bool = False
    encryption_certificate_id: str | None = None
    client_state: str | None = None

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> Subscription:
        return cls(
            id=str(data.get("id", "")),
            resource=data.get("resource") or "",
            notification_url=data.get("notificationUrl") or "",
            change_type=data.get("changeType") or "",
            lifecycle_notification_url=data.get("lifecycleNotificationUrl"),
            expiration=_parse_expiry(data.get("expirationDateTime")),
            include_resource_data=bool(data.get("includeResourceData")),
            encryption_certificate_id=data.get("encryptionCertificateId"),
            client_state=data.get("clientState"),
        )

    def matches(self, resource: str, notification_url: str) -> bool:
        return (
            normalize_resource(self.resource).lower() == normalize_resource(resource).lower()
            and self.notification_url.strip().lower() == notification_url.strip().lower()
        )

    def remaining(self, now: datetime) -> timedelta | None:
        if self.expiration is None:
            return None
        return self.expiration - now

    def to_listing(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "resource": self.resource,
            "changeType": self.change_type,
            "notificationUrl": self.notification_url,
            "lifecycleNotificationUrl": self.lifecycle_notification_url,
            "includeResourceData": self.include_resource_data,
            "encryptionCertificateId": self.encryption_certificate_id,
            "expirationDateTime": (
                _format_expiry(self.expiration) if self.expiration is not None else None
            ),
            "clientState": self.client_state,
        }


class SubscriptionAction(StrEnum):
    CREATED = "created"
    RENEWED = "renewed"
    OK = "ok"
    INVALID = "invalid"
    MISSING = "missing"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class SubscriptionOutcome:
    action: SubscriptionAction
    subscription: Subscription | None = None
    reason: str = ""


@dataclass
class SubscriptionManager:
    """One-shot reconciliation of the provider subscription.

    Args:
        settings: Subscription settings.
        graph: Mailbox provider port.
        audit: Audit sink.
        clock: Returns the current UTC datetime.
    """

    settings: SubscriptionSettings
    graph: GraphPort
    audit: AuditSink = field(default_factory=LoggingAuditSink)
    clock: Callable[[], datetime] = field(default=utcnow, repr=False)

    @property
    def enriched(self) -> bool:
        """Enriched mode is used only when requested *and* a certificate is set."""
        cert = self.settings.encryption_cert
        return self.settings.use_rich_notifications and cert is not None and bool(
            cert.get_secret_value().strip(),
        )

    @property
    def lifetime(self) -> timedelta:
        if self.settings.lifetime_minutes is not None:
            return timedelta(minutes=self.settings.lifetime_minutes)
        minutes = ENRICHED_LIFETIME_MINUTES if self.enriched else BASIC_LIFETIME_MINUTES
        return timedelta(minutes=minutes)

    @property
    def threshold(self) -> timedelta:
        minutes = ENRICHED_THRESHOLD_MINUTES if self.enriched else BASIC_THRESHOLD_MINUTES
        return timedelta(minutes=minutes)

    def _enrichment_fields(self) -> dict[str, Any]:
        if not self.enriched:
            return {}
        assert self.settings.encryption_cert is not None  # noqa: S101
        return {
            "includeResourceData": True,
            "encryptionCertificate": self.settings.encryption_cert.get_secret_value(),
            "encryptionCertificateId": self.settings.encryption_cert_id,
        }

    async def sync(self) -> SubscriptionOutcome:
        """Create, renew or confirm the subscription.  Never raises."""
        s = self.settings
        missing = [
            name
            for name, value in (("mailbox", s.mailbox), ("webhookUrl", s.webhook_url))
            if not value.strip()
        ]
        if missing:
            logger.warning("Subscription settings missing: %s", ", ".join(missing))
            self.audit.record("subscription_config_missing", {"missing": missing})
            return SubscriptionOutcome(SubscriptionAction.MISSING, reason=",".join(missing))

        urls = [("webhookUrl", s.webhook_url)]
        if s.lifecycle_webhook_url:
            urls.append(("lifecycleWebhookUrl", s.lifecycle_webhook_url))
        for name, url in urls:
            reason = validate_notification_url(url)
            if reason is not None:
                logger.error("Invalid %s %r: %s", name, url, reason)
                self.audit.record(
                    "subscription_config_invalid",
                    {"setting": name, "url": url, "reason": reason},
                )
                return SubscriptionOutcome(SubscriptionAction.INVALID, reason=reason)

        if s.use_rich_notifications and not self.enriched:
            logger.warning("Rich notifications requested without a certificate; using basic mode")

        try:
            return await self._reconcile()
        except Exception as exc:
            logger.exception("Subscription upkeep failed")
            payload = build_error_payload(exc, error_type_map=DEFAULT_ERROR_TYPES)
            fields: dict[str, Any] = {"error": payload.message, "errorType": payload.error_type}
            if isinstance(exc, GraphError):
                fields["status"] = exc.status
            self.audit.record("subscription_error", fields)
            return SubscriptionOutcome(SubscriptionAction.ERROR, reason=payload.message)

    async def _reconcile(self) -> SubscriptionOutcome:
        s = self.settings
        enriched = self.enriched
        resource = inbox_resource(s.mailbox, enriched=enriched)

        existing = [Subscription.from_graph(item) for item in await self.graph.list_subscriptions()]
        match = next((sub for sub in existing if sub.matches(resource, s.webhook_url)), None)
        now = self.clock()
        expiry = _format_expiry(now + self.lifetime)

        if match is None:
            body: dict[str, Any] = {
                "changeType": "created",
                "resource": resource,
                "notificationUrl": s.webhook_url,
                "expirationDateTime": expiry,
                "clientState": s.client_state,
            }
            if s.lifecycle_webhook_url:
                body["lifecycleNotificationUrl"] = s.lifecycle_webhook_url
            body.update(self._enrichment_fields())
            created = Subscription.from_graph(await self.graph.create_subscription(body))
            logger.info("Created subscription %s (expires %s)", created.id, expiry)
            self.audit.record(
                "subscription_created",
                {"subscriptionId": created.id, "expires": expiry, "enriched": enriched},
            )
            return SubscriptionOutcome(SubscriptionAction.CREATED, created)

        remaining = match.remaining(now)
        if remaining is None or remaining < self.threshold:
            update: dict[str, Any] = {"expirationDateTime": expiry}
            update.update(self._enrichment_fields())
            if enriched:
                update["resource"] = resource
            await self.graph.update_subscription(match.id, update)
            logger.info("Renewed subscription %s (expires %s)", match.id, expiry)
            self.audit.record("subscription_renewed", {"subscriptionId": match.id, "expires": expiry})
            return SubscriptionOutcome(SubscriptionAction.RENEWED, match)

        current = _format_expiry(match.expiration) if match.expiration is not None else None
        self.audit.record("subscription_ok", {"subscriptionId": match.id, "expires": current})
        return SubscriptionOutcome(SubscriptionAction.OK, match)


@dataclass
class SubscriptionTimer:
    """Run :meth:`SubscriptionManager.sync` every ``interval`` seconds.

    One failed run never stops the timer.
    """

    manager: SubscriptionManager
    interval: float = 1800.0
    run_on_startup: bool = True
    runs: int = field(default=0, init=False)
    _task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)

    async def run(self) -> None:
        if not self.run_on_startup:
            await asyncio.sleep(self.interval)
        while True:
            try:
                outcome = await self.manager.sync()
                logger.debug("Subscription check finished: %s", outcome.action)
            except Exception:
                logger.exception("Subscription check raised")
            self.runs += 1
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="subscription-timer")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def list_subscriptions_payload(graph: GraphPort) -> dict[str, Any]:
    """Listing-endpoint body: ``{"count": n, "items": [...]}``."""
    items = [Subscription.from_graph(item).to_listing() for item in await graph.list_subscriptions()]
    return {"count": len(items), "items": items}
