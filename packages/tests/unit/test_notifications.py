"""Unit tests for cadrelay._notifications — webhook notification router.

Test Techniques Used:
    - Specification-based Testing: Validation handshake and error bodies
    - Equivalence Partitioning: Path style / call style / message-only /
      non-message resources
    - Decision Table: inline resourceData vs resource string vs default mailbox
    - Fault Isolation: One failing item never aborts the batch
"""

from __future__ import annotations

import json
from typing import Any

import pytest

from cadrelay._audit import MemoryAuditSink
from cadrelay._notifications import (
    MessageOnly,
    MessageRef,
    NotAMessage,
    NotificationRouter,
    Unparseable,
    WebhookResponse,
    parse_resource,
    resolve_notification,
)


class _Dispatch:
    """Records ``(user_id, message_id)`` pairs; optionally fails on one id."""

    def __init__(self, fail_on: str | None = None) -> None:
        self.calls: list[tuple[str, str]] = []
        self.fail_on = fail_on

    async def __call__(self, user_id: str, message_id: str) -> None:
        self.calls.append((user_id, message_id))
        if message_id == self.fail_on:
            msg = f"cannot dispatch {message_id}"
            raise RuntimeError(msg)


@pytest.fixture
def dispatch() -> _Dispatch:
    return _Dispatch()


@pytest.fixture
def router(dispatch: _Dispatch, audit: MemoryAuditSink) -> NotificationRouter:
    return NotificationRouter(dispatch=dispatch, audit=audit)


def _body(*items: Any) -> str:
    return json.dumps({"value": list(items)})


# ---------------------------------------------------------------------------
# Resource parsing
# ---------------------------------------------------------------------------


class TestParseResource:
    """Technique: Equivalence Partitioning."""

    def test_path_style(self) -> None:
        assert parse_resource("Users/u-1/Messages/m-1") == MessageRef("u-1", "m-1", "path")

    def test_path_style_with_folder(self) -> None:
        parsed = parse_resource("/users/dispatch@contoso.com/mailFolders/inbox/messages/AAMk%3D")
        assert parsed == MessageRef("dispatch@contoso.com", "AAMk=", "path")

    def test_call_style(self) -> None:
        parsed = parse_resource("users('u-1')/mailFolders('inbox')/messages('m-1')")
        assert parsed == MessageRef("u-1", "m-1", "call")

    def test_path_and_call_styles_yield_same_ids(self) -> None:
        path = parse_resource("Users/u-1/Messages/m-1")
        call = parse_resource("users('u-1')/messages('m-1')")
        assert isinstance(path, MessageRef)
        assert isinstance(call, MessageRef)
        assert (path.user_id, path.message_id) == (call.user_id, call.message_id)

    @pytest.mark.parametrize(
        "resource",
        ["users/u-1/messages('m-1')", "users('u-1')/mailFolders/inbox/messages/m-1"],
    )
    def test_mixed_styles_keep_user(self, resource: str) -> None:
        assert parse_resource(resource) == MessageRef("u-1", "m-1", "mixed")

    @pytest.mark.parametrize("resource", ["messages/m-9", "me/messages('m-9')"])
    def test_message_only(self, resource: str) -> None:
        assert parse_resource(resource) == MessageOnly("m-9")

    @pytest.mark.parametrize("resource", ["Users/u-1/Events/e-1", "", None, "users/u/messagesX"])
    def test_not_a_message(self, resource: str | None) -> None:
        assert isinstance(parse_resource(resource), NotAMessage)

    def test_unparseable(self) -> None:
        assert parse_resource("users/u/messages/") == Unparseable("users/u/messages/")


class TestResolveNotification:
    """Technique: Decision Table."""

    def test_inline_ids_win(self) -> None:
        item = {
            "resource": "Users/other/Messages/other",
            "resourceData": {"id": "m-1", "userId": "u-1"},
        }
        assert resolve_notification(item) == MessageRef("u-1", "m-1", "inline")

    def test_odata_id_fills_gaps(self) -> None:
        item = {"resourceData": {"id": "m-1", "@odata.id": "Users/u-1/Messages/m-1"}}
        assert resolve_notification(item) == MessageRef("u-1", "m-1", "inline")

    def test_resource_string_used(self) -> None:
        item = {"resource": "users('u-1')/messages('m-1')"}
        assert resolve_notification(item) == MessageRef("u-1", "m-1", "call")

    def test_default_mailbox_for_message_only(self) -> None:
        item = {"resource": "messages/m-1"}
        assert resolve_notification(item, "dispatch@contoso.com") == MessageRef(
            "dispatch@contoso.com",
            "m-1",
            "default",
        )

    def test_mixed_resource_user_beats_default_mailbox(self) -> None:
        item = {"resource": "users/u-1/messages('m-1')"}
        assert resolve_notification(item, "dispatch@contoso.com") == MessageRef("u-1", "m-1", "mixed")

    def test_message_only_without_default(self) -> None:
        assert resolve_notification({"resourceData": {"id": "m-1"}}) == MessageOnly("m-1")

    def test_nothing_to_go_on(self) -> None:
        assert resolve_notification({}) == Unparseable("")


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class TestValidationHandshake:
    """The token is echoed verbatim and nothing else happens.

    Technique: Specification-based Testing.
    """

    async def test_query_token_echoed_as_plain_text(
        self,
        router: NotificationRouter,
        dispatch: _Dispatch,
        audit: MemoryAuditSink,
    ) -> None:
        token = "Validation: Token with spaces & symbols <>"

        response = await router.handle("POST", {"validationToken": token}, _body({"resource": "Users/u/Messages/m"}))

        assert response == WebhookResponse(200, token, "text/plain")
        assert dispatch.calls == []
        assert audit.kinds == ["webhook_validation"]
        assert audit.last("webhook_validation").fields == {"tokenLength": len(token)}

    async def test_get_handshake(self, router: NotificationRouter) -> None:
        response = await router.handle("GET", {"validationToken": "abc"}, b"")
        assert (response.status, response.body, response.media_type) == (200, "abc", "text/plain")

    async def test_body_token_on_post(self, router: NotificationRouter) -> None:
        response = await router.handle("POST", {}, json.dumps({"validationToken": "xyz"}))
        assert response.body == "xyz"
        assert response.media_type == "text/plain"


class TestBadBodies:
    """Technique: Error Condition Testing."""

    @pytest.mark.parametrize("body", [b"", b"   \n"])
    async def test_empty_body(
        self,
        router: NotificationRouter,
        audit: MemoryAuditSink,
        body: bytes,
    ) -> None:
        response = await router.handle("POST", {}, body)

        assert response.status == 400
        assert json.loads(response.body) == {"error": "empty_body"}
        assert audit.kinds == ["webhook_empty"]

    async def test_invalid_json(self, router: NotificationRouter, audit: MemoryAuditSink) -> None:
        response = await router.handle("POST", {}, b"{not json")

        assert response.status == 400
        assert json.loads(response.body) == {"error": "invalid_json"}
        assert audit.kinds == ["webhook_invalid_json"]
        assert audit.last("webhook_invalid_json").fields["error"]

    async def test_unexpected_failure_still_answers_200(
        self,
        router: NotificationRouter,
        audit: MemoryAuditSink,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def explode(_document: Any) -> None:
            msg = "boom"
            raise RuntimeError(msg)

        monkeypatch.setattr(router, "_process", explode)

        response = await router.handle("POST", {}, _body())

        assert response.status == 200
        body = json.loads(response.body)
        assert body["ok"] is False
        assert body["error"]["message"] == "boom"
        assert audit.kinds == ["webhook_error"]

    async def test_body_without_value_is_ok(self, router: NotificationRouter, dispatch: _Dispatch) -> None:
        response = await router.handle("POST", {}, b'{"something": 1}')
        assert json.loads(response.body) == {"ok": True}
        assert dispatch.calls == []


class TestItems:
    """Per-item routing.

    Technique: Equivalence Partitioning.
    """

    async def test_both_styles_dispatch(self, router: NotificationRouter, dispatch: _Dispatch) -> None:
        await router.handle(
            "POST",
            {},
            _body(
                {"resource": "Users/u-1/Messages/m-1"},
                {"resource": "users('u-1')/messages('m-2')"},
            ),
        )
        assert dispatch.calls == [("u-1", "m-1"), ("u-1", "m-2")]

    async def test_lifecycle_event_recorded_not_dispatched(
        self,
        router: NotificationRouter,
        dispatch: _Dispatch,
        audit: MemoryAuditSink,
    ) -> None:
        await router.handle(
            "POST",
            {},
            _body({"lifecycleEvent": "reauthorizationRequired", "subscriptionId": "sub-1"}),
        )
        assert dispatch.calls == []
        assert audit.last("graph_lifecycle").fields == {
            "event": "reauthorizationRequired",
            "subscriptionId": "sub-1",
        }

    async def test_non_message_skipped(self, router: NotificationRouter, audit: MemoryAuditSink) -> None:
        await router.handle("POST", {}, _body({"resource": "Users/u-1/Events/e-1"}))
        assert audit.last("skip_non_message").fields == {"resource": "Users/u-1/Events/e-1"}

    async def test_missing_ids_reasons(self, router: NotificationRouter, audit: MemoryAuditSink) -> None:
        await router.handle(
            "POST",
            {},
            _body({"resource": "messages/m-1"}, {"resource": "users/u/messages/"}, "scalar"),
        )
        reasons = [event.fields["reason"] for event in audit.events_of("missing_ids")]
        assert reasons == ["no_user", "unparseable", "not_an_object"]

    async def test_default_mailbox_applies(self, dispatch: _Dispatch, audit: MemoryAuditSink) -> None:
        router = NotificationRouter(dispatch=dispatch, audit=audit, default_mailbox="dispatch@contoso.com")
        await router.handle("POST", {}, _body({"resourceData": {"id": "m-1"}}))
        assert dispatch.calls == [("dispatch@contoso.com", "m-1")]

    async def test_failing_item_does_not_abort_batch(self, audit: MemoryAuditSink) -> None:
        dispatch = _Dispatch(fail_on="m-1")
        router = NotificationRouter(dispatch=dispatch, audit=audit)

        response = await router.handle(
            "POST",
            {},
            _body({"resource": "Users/u/Messages/m-1"}, {"resource": "Users/u/Messages/m-2"}),
        )

        assert json.loads(response.body) == {"ok": True}
        assert dispatch.calls == [("u", "m-1"), ("u", "m-2")]
        assert audit.last("webhook_item_error").fields["index"] == 0


class TestClientState:
    """Optional clientState verification.

    Technique: Decision Table.
    """

    async def test_mismatch_dropped(self, dispatch: _Dispatch, audit: MemoryAuditSink) -> None:
        router = NotificationRouter(dispatch=dispatch, audit=audit, client_state="secret")

        await router.handle(
            "POST",
            {},
            _body(
                {"resource": "Users/u/Messages/m-1", "clientState": "wrong", "subscriptionId": "s"},
                {"resource": "Users/u/Messages/m-2", "clientState": "secret"},
            ),
        )

        assert dispatch.calls == [("u", "m-2")]
        assert audit.last("client_state_mismatch").fields == {"subscriptionId": "s"}

    async def test_unchecked_by_default(self, router: NotificationRouter, dispatch: _Dispatch) -> None:
        await router.handle("POST", {}, _body({"resource": "Users/u/Messages/m-1", "clientState": "x"}))
        assert dispatch.calls == [("u", "m-1")]
