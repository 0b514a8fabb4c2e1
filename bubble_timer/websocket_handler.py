"""
Transport Protocol Handler.

Per (user, device) the lifecycle is DISCONNECTED -> CONNECTED -> DISCONNECTED;
only the connection id in the Connection Directory records it. Each call handles
one event and returns the reply frame `{"statusCode": ..., "body": {...}}`, or
None when the event gets no reply.

Message types:
- ping: pong reply, no state change
- acknowledge: no reply
- activeTimerList: relayed to the user's other devices
- stopTimer / updateTimer: handed to the fanout engine
- anything else: accepted as a no-op
"""

import json
import logging
import uuid
from collections.abc import Awaitable, Callable

from pydantic import ValidationError as PydanticValidationError

from bubble_timer.connections import ConnectionDirectory
from bubble_timer.errors import DependencyError, ValidationError
from bubble_timer.fanout import FanoutEngine
from bubble_timer.models import (
    Connection,
    Envelope,
    MessageData,
    StopTimerMessage,
    UpdateTimerMessage,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

Frame = dict
MessageHandler = Callable[[MessageData, str, str], Awaitable[Frame | None]]


def make_frame(status_code: int, body: dict) -> Frame:
    return {"statusCode": status_code, "body": body}


def parse_envelope(raw: str) -> MessageData:
    """Parse `{"data": {"type": ...}}`. Raises ValidationError on anything else."""
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        raise ValidationError("Invalid JSON in message body") from None
    if not isinstance(parsed, dict) or not isinstance(parsed.get("data"), dict):
        raise ValidationError("Data object is required in message body", "data")
    try:
        return Envelope.model_validate(parsed).data
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(e) from None


def _parse(model, data: MessageData):
    try:
        return model.model_validate(data.model_extra or {})
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(e) from None


class WebSocketHandler:
    def __init__(self, connections: ConnectionDirectory, engine: FanoutEngine):
        self.connections = connections
        self.engine = engine
        self._handlers: dict[str, MessageHandler] = {
            "ping": self._handle_ping,
            "acknowledge": self._handle_acknowledge,
            "activeTimerList": self._handle_active_timer_list,
            "stopTimer": self._handle_stop_timer,
            "updateTimer": self._handle_update_timer,
        }

    # ============================================================
    # LIFECYCLE
    # ============================================================

    async def handle_connect(self, connection_id: str, user_id: str, device_id: str) -> Frame:
        try:
            await self.connections.update_connection(
                Connection(user_id=user_id, device_id=device_id, connection_id=connection_id)
            )
        except DependencyError as e:
            return make_frame(e.status_code, {"error": "Failed to register connection"})

        logger.info(
            "WebSocket connection %s established for user %s device %s",
            connection_id,
            user_id,
            device_id,
        )
        return make_frame(200, {"status": "connected", "connectionId": connection_id})

    async def handle_disconnect(
        self, connection_id: str, user_id: str | None = None, device_id: str | None = None
    ) -> Frame:
        """
        Clear the connection id. Without a user, the connection id is looked up.

        A device that already reconnected under a new connection id keeps it.
        """
        if not user_id:
            connection = await self.connections.get_connection_by_id(connection_id)
            if connection is None:
                logger.warning("No connection found for disconnect of %s", connection_id)
                return make_frame(200, {"status": "disconnected"})
            user_id, device_id = connection.user_id, connection.device_id

        if not await self.connections.clear_connection(user_id, device_id or "", connection_id):
            return make_frame(500, {"error": "Failed to clear connection"})

        logger.info("WebSocket connection %s closed for user %s", connection_id, user_id)
        return make_frame(200, {"status": "disconnected"})

    async def handle_message(
        self, connection_id: str, user_id: str, device_id: str, raw: str
    ) -> Frame | None:
        """
        Dispatch one inbound message.

        A malformed envelope raises ValidationError. Failures inside a dispatched
        handler are turned into an error frame; the connection stays open.
        """
        data = parse_envelope(raw)
        handler = self._handlers.get(data.type, self._handle_unknown)
        logger.debug(
            "Message %s from user %s device %s on %s", data.type, user_id, device_id, connection_id
        )
        try:
            return await handler(data, user_id, device_id)
        except ValidationError as e:
            logger.warning("Rejected %s message from user %s: %s", data.type, user_id, e)
            return make_frame(e.status_code, e.to_dict())
        except Exception:
            logger.exception("Failed to process %s message from user %s", data.type, user_id)
            return make_frame(500, {"error": "Internal server error"})

    # ============================================================
    # MESSAGE HANDLERS
    # ============================================================

    @staticmethod
    def _relay_payload(data: MessageData) -> dict:
        """The message as recipients see it, with a message id."""
        payload = data.model_dump(by_alias=True, exclude_none=True)
        payload["messageId"] = data.message_id or uuid.uuid4().hex
        return payload

    async def _handle_ping(self, data: MessageData, user_id: str, device_id: str) -> Frame:
        now = utc_now_iso()
        timestamp = (data.model_extra or {}).get("timestamp") or now
        return make_frame(200, {"type": "pong", "timestamp": timestamp, "serverTimestamp": now})

    async def _handle_acknowledge(self, data: MessageData, user_id: str, device_id: str) -> None:
        logger.debug("Message %s acknowledged by user %s", data.message_id, user_id)
        return None

    async def _handle_active_timer_list(
        self, data: MessageData, user_id: str, device_id: str
    ) -> Frame:
        payload = self._relay_payload(data)
        await self.engine.broadcast_to_user(user_id, payload, exclude_device_id=device_id)
        return make_frame(200, {"status": "success", "messageId": payload["messageId"]})

    async def _handle_stop_timer(self, data: MessageData, user_id: str, device_id: str) -> Frame:
        message = _parse(StopTimerMessage, data)
        payload = self._relay_payload(data)
        await self.engine.stop_timer(
            message.timer_id,
            user_id,
            timer_data=message.timer,
            frame=payload,
            exclude_device_id=device_id,
        )
        return make_frame(200, {"status": "success", "messageId": payload["messageId"]})

    async def _handle_update_timer(self, data: MessageData, user_id: str, device_id: str) -> Frame:
        message = _parse(UpdateTimerMessage, data)
        payload = self._relay_payload(data)
        await self.engine.update_timer(
            message.timer,
            user_id,
            share_with=message.share_with,
            frame=payload,
            exclude_device_id=device_id,
        )
        return make_frame(200, {"status": "success", "messageId": payload["messageId"]})

    async def _handle_unknown(self, data: MessageData, user_id: str, device_id: str) -> Frame:
        # Unrecognized types are a no-op success, never an error
        logger.info("Ignoring message type %s from user %s", data.type, user_id)
        return make_frame(200, {"status": "success"})
