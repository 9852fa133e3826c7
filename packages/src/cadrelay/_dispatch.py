"""Dispatch executor: message → device command → mail housekeeping.

For one (user, message) pair:

1. fetch the subject (``$select=subject``);
2. resolve the device through the :class:`~cadrelay._routes.RouteTable`
   (``no_device_mapping`` stops here, the message is left untouched);
3. honour the kill switch (``dispatch_disabled`` stops here, after
   resolution and before any transport call);
4. trigger the command and record ``dispatch_triggered``;
5. mark the message read, then move it to the processed folder,
   creating that folder under the mailbox root when it does not exist.

Step 5 is idempotent and never undoes step 4: a failed move is recorded
as ``message_move_failed`` and the command is not re-sent.  Any other
exception is recorded as ``dispatch_error``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from cadrelay._audit import AuditSink, LoggingAuditSink
from cadrelay._errors import GraphError, build_error_payload
from cadrelay._graph import GraphPort
from cadrelay._iothub import DispatchResult, TriggerPort
from cadrelay._routes import RouteTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DispatchRequest:
    """One command bound for a device, with the message it came from."""

    device_id: str
    subject: str
    reason: str
    user_id: str
    message_id: str

    @property
    def payload(self) -> dict[str, Any]:
        return {"subject": self.subject, "reason": self.reason}


@dataclass
class DispatchExecutor:
    """Executes dispatches for resolved notifications.

    Args:
        graph: Mailbox provider.
        transport: Device command transport.
        routes: Subject routing table.
        audit: Audit sink.
        dispatch_enabled: Global kill switch.
        processed_folder: Display name of the folder handled messages go to.
        reason: Reason code sent with every command.
    """

    graph: GraphPort
    transport: TriggerPort
    routes: RouteTable
    audit: AuditSink = field(default_factory=LoggingAuditSink)
    dispatch_enabled: bool = True
    processed_folder: str = "Processed"
    reason: str = "CAD"

    async def execute(self, user_id: str, message_id: str) -> DispatchResult | None:
        """Dispatch the command for one message.

        Returns:
            The transport result, or ``None`` when nothing was sent.
        """
        try:
            return await self._execute(user_id, message_id)
        except Exception as exc:
            logger.exception("Dispatch failed for message %s", message_id)
            payload = build_error_payload(exc)
            self.audit.record(
                "dispatch_error",
                {
                    "userId": user_id,
                    "messageId": message_id,
                    "error": str(exc),
                    "errorType": payload.error_type,
                },
            )
            return None

    async def _execute(self, user_id: str, message_id: str) -> DispatchResult | None:
        message = await self.graph.get_message(user_id, message_id, ("subject",))
        subject = message.get("subject") or ""

        device_id = self.routes.resolve(subject)
        if device_id is None:
            logger.info("No device mapped for subject %r", subject)
            self.audit.record(
                "no_device_mapping",
                {"userId": user_id, "messageId": message_id, "subject": subject},
            )
            return None

        if not self.dispatch_enabled:
            logger.warning("Dispatch disabled; not triggering %s", device_id)
            self.audit.record(
                "dispatch_disabled",
                {"messageId": message_id, "subject": subject, "deviceId": device_id},
            )
            return None

        request = DispatchRequest(device_id, subject, self.reason, user_id, message_id)
        result = await self.transport.trigger(request.device_id, request.payload)
        self.audit.record(
            "dispatch_triggered",
            {
                "userId": user_id,
                "messageId": message_id,
                "subject": subject,
                "deviceId": device_id,
                "via": result.via,
                "status": result.status,
            },
        )

        await self.graph.mark_read(user_id, message_id)
        await self._move_to_processed(user_id, message_id)
        return result

    async def _move_to_processed(self, user_id: str, message_id: str) -> None:
        try:
            folder_id = await self._processed_folder_id(user_id)
            await self.graph.move_message(user_id, message_id, folder_id)
        except Exception as exc:
            logger.warning("Could not move message %s: %s", message_id, exc)
            self.audit.record(
                "message_move_failed",
                {"messageId": message_id, "error": str(exc)},
            )
            return
        self.audit.record("message_moved", {"messageId": message_id, "folderId": folder_id})

    async def _processed_folder_id(self, user_id: str) -> str:
        folder = await self.graph.find_folder(user_id, self.processed_folder)
        if folder is not None:
            return str(folder["id"])
        try:
            folder = await self.graph.create_folder(user_id, self.processed_folder)
        except GraphError:
            # Another delivery may have created it in the meantime.
            folder = await self.graph.find_folder(user_id, self.processed_folder)
            if folder is None:
                raise
            return str(folder["id"])
        self.audit.record(
            "processed_folder_created",
            {"userId": user_id, "folderId": folder["id"], "displayName": self.processed_folder},
        )
        return str(folder["id"])
