"""Webhook notification router.

Turns one webhook delivery from the mailbox provider into zero or more
dispatches.  The router is stateless: every call is independent and may
run concurrently with others.

Handling order:

1. validation handshake (``validationToken`` in the query, or in a POST
   JSON body) → echo the token as ``text/plain``, nothing else runs;
2. empty body → 400 ``{"error": "empty_body"}``;
3. body that is not JSON → 400 ``{"error": "invalid_json"}``;
4. each item of ``value`` is handled on its own; a failing item never
   aborts the batch;
5. anything unexpected → 200 ``{"ok": false, "error": {...}}``.  The
   endpoint never answers 5xx, because the provider disables
   subscriptions whose deliveries keep failing.

Resource strings come in two grammars, both accepted::

    Users/{user}/Messages/{message}                     path style
    users('{user}')/mailFolders('inbox')/messages('{message}')   call style
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias
from urllib.parse import unquote

from cadrelay._audit import AuditSink, LoggingAuditSink
from cadrelay._errors import build_error_payload

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Resource parsing
# ---------------------------------------------------------------------------

PATH_STYLE = re.compile(
    r"^/?users/(?P<user>[^/(]+)/(?:.*/)?messages/(?P<message>[^/?(]+)",
    re.IGNORECASE,
)
CALL_STYLE = re.compile(
    r"^/?users\('(?P<user>[^']+)'\)/(?:.*/)?messages\('(?P<message>[^']+)'\)",
    re.IGNORECASE,
)
_MESSAGE_ONLY = (
    re.compile(r"(?:^|/)messages/(?P<message>[^/?(]+)", re.IGNORECASE),
    re.compile(r"(?:^|/)messages\('(?P<message>[^']+)'\)", re.IGNORECASE),
)
_REFERENCES_MESSAGE = re.compile(r"(?:^|/)messages(?:/|\()", re.IGNORECASE)
_USER_ONLY = (
    re.compile(r"^/?users/(?P<user>[^/(]+)/", re.IGNORECASE),
    re.compile(r"^/?users\('(?P<user>[^']+)'\)/", re.IGNORECASE),
)

Style = Literal["path", "call", "mixed", "inline", "default"]


@dataclass(frozen=True, slots=True)
class MessageRef:
    """A fully resolved (user, message) pair."""

    user_id: str
    message_id: str
    style: Style


@dataclass(frozen=True, slots=True)
class MessageOnly:
    """A message id with no mailbox identity."""

    message_id: str


@dataclass(frozen=True, slots=True)
class NotAMessage:
    """The resource names something other than a single message."""

    resource: str


@dataclass(frozen=True, slots=True)
class Unparseable:
    """The resource mentions messages but no identifier could be read."""

    resource: str


ResourceParse: TypeAlias = MessageRef | MessageOnly | NotAMessage | Unparseable


def parse_resource(resource: str | None) -> ResourceParse:
    """Parse a notification ``resource`` string.

    Path style is tried first, then call style, then the message-only
    forms.  A message-only match keeps a leading ``users/{id}`` or
    ``users('{id}')`` segment, so mixed spellings still resolve.
    Identifiers are URL-unquoted.
    """
    text = (resource or "").strip()
    if not _REFERENCES_MESSAGE.search(text):
        return NotAMessage(text)
    match = PATH_STYLE.match(text)
    if match is not None:
        return MessageRef(unquote(match.group("user")), unquote(match.group("message")), "path")
    match = CALL_STYLE.match(text)
    if match is not None:
        return MessageRef(unquote(match.group("user")), unquote(match.group("message")), "call")
    for pattern in _MESSAGE_ONLY:
        match = pattern.search(text)
        if match is not None:
            message_id = unquote(match.group("message"))
            for user_pattern in _USER_ONLY:
                user = user_pattern.match(text)
                if user is not None:
                    return MessageRef(unquote(user.group("user")), message_id, "mixed")
            return MessageOnly(message_id)
    return Unparseable(text)


def _text(value: Any) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None


def resolve_notification(item: Mapping[str, Any], default_mailbox: str | None = None) -> ResourceParse:
    """Resolve one resource notification to a (user, message) pair.

    Inline ``resourceData`` wins, then the ``resource`` string, then the
    default mailbox when only a message id is known.
    """
    user_id: str | None = None
    message_id: str | None = None

    data = item.get("resourceData")
    if isinstance(data, Mapping):
        message_id = _text(data.get("id"))
        user_id = _text(data.get("userId"))
        if user_id and message_id:
            return MessageRef(user_id, message_id, "inline")
        odata_id = _text(data.get("@odata.id"))
        if odata_id is not None:
            parsed = parse_resource(odata_id)
            if isinstance(parsed, MessageRef):
                return MessageRef(user_id or parsed.user_id, message_id or parsed.message_id, "inline")

    resource = _text(item.get("resource"))
    if resource is not None:
        parsed = parse_resource(resource)
        if isinstance(parsed, MessageRef):
            return MessageRef(user_id or parsed.user_id, message_id or parsed.message_id, parsed.style)
        if isinstance(parsed, NotAMessage):
            return parsed
        if isinstance(parsed, MessageOnly):
            message_id = message_id or parsed.message_id
        elif message_id is None:
            return parsed
    elif message_id is None:
        return Unparseable("")

    if user_id is not None:
        return MessageRef(user_id, message_id, "inline")
    if default_mailbox:
        return MessageRef(default_mailbox, message_id, "default")
    return MessageOnly(message_id)


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class WebhookResponse:
    status: int
    body: str
    media_type: str = "application/json"

    @classmethod
    def json(cls, status: int, payload: Mapping[str, Any]) -> WebhookResponse:
        return cls(status, json.dumps(payload))

    @classmethod
    def text(cls, body: str) -> WebhookResponse:
        return cls(200, body, "text/plain")


DispatchCallback = Callable[[str, str], Awaitable[Any]]


def _validation_token(method: str, query: Mapping[str, str], body: str) -> str | None:
    token = query.get("validationToken")
    if token:
        return token
    if method.upper() != "POST" or not body.strip():
        return None
    try:
        document = json.loads(body)
    except ValueError:
        return None
    if isinstance(document, dict):
        token = document.get("validationToken")
        if isinstance(token, str) and token:
            return token
    return None


@dataclass
class NotificationRouter:
    """Webhook handler.

    Args:
        dispatch: Called with ``(user_id, message_id)`` for every resolved
            item, usually :meth:`DispatchExecutor.execute`.
        audit: Audit sink.
        default_mailbox: Mailbox assumed when only a message id is known.
        client_state: When set, items carrying a different ``clientState``
            are dropped.
    """

    dispatch: DispatchCallback
    audit: AuditSink = field(default_factory=LoggingAuditSink)
    default_mailbox: str | None = None
    client_state: str | None = None

    async def handle(
        self,
        method: str,
        query: Mapping[str, str],
        body: bytes | str,
    ) -> WebhookResponse:
        """Handle one webhook request."""
        text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body

        token = _validation_token(method, query, text)
        if token is not None:
            logger.info("Webhook validation handshake")
            self.audit.record("webhook_validation", {"tokenLength": len(token)})
            return WebhookResponse.text(token)

        if not text.strip():
            logger.warning("Empty notification body")
            self.audit.record("webhook_empty")
            return WebhookResponse.json(400, {"error": "empty_body"})

        try:
            document = json.loads(text)
        except ValueError as exc:
            logger.error("Notification body is not JSON: %s", exc)
            self.audit.record("webhook_invalid_json", {"error": str(exc)})
            return WebhookResponse.json(400, {"error": "invalid_json"})

        try:
            await self._process(document)
        except Exception as exc:
            logger.exception("Notification batch failed")
            payload = build_error_payload(exc)
            self.audit.record("webhook_error", {"error": str(exc), "errorType": payload.error_type})
            return WebhookResponse.json(200, {"ok": False, "error": payload.to_dict()})

        return WebhookResponse.json(200, {"ok": True})

    async def _process(self, document: Any) -> None:
        items = document.get("value") if isinstance(document, dict) else None
        if not isinstance(items, list):
            logger.debug("Notification without a value array")
            return
        for index, item in enumerate(items):
            try:
                await self._process_item(item)
            except Exception as exc:
                logger.exception("Notification item %d failed", index)
                self.audit.record("webhook_item_error", {"index": index, "error": str(exc)})

    async def _process_item(self, item: Any) -> None:
        if not isinstance(item, Mapping):
            self.audit.record("missing_ids", {"reason": "not_an_object"})
            return

        lifecycle = item.get("lifecycleEvent")
        if isinstance(lifecycle, str) and lifecycle:
            logger.info("Lifecycle event %s", lifecycle)
            self.audit.record(
                "graph_lifecycle",
                {"event": lifecycle, "subscriptionId": item.get("subscriptionId")},
            )
            return

        if self.client_state is not None and item.get("clientState") != self.client_state:
            logger.warning("Dropping notification with unexpected clientState")
            self.audit.record(
                "client_state_mismatch",
                {"subscriptionId": item.get("subscriptionId")},
            )
            return

        resolved = resolve_notification(item, self.default_mailbox)
        match resolved:
            case MessageRef(user_id=user_id, message_id=message_id, style=style):
                logger.debug("Resolved message %s (%s style)", message_id, style)
                await self.dispatch(user_id, message_id)
            case NotAMessage(resource=resource):
                self.audit.record("skip_non_message", {"resource": resource})
            case MessageOnly(message_id=message_id):
                self.audit.record("missing_ids", {"messageId": message_id, "reason": "no_user"})
            case Unparseable(resource=resource):
                self.audit.record("missing_ids", {"resource": resource, "reason": "unparseable"})
