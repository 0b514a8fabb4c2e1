"""
Connection Directory and live socket registry.

The directory persists `(user_id, device_id) -> connection_id` rows. A row
outlives its connection: disconnecting only clears `connection_id`, so the
device stays known for reconnects. The registry maps a live connection id to
the WebSocket that serves it in this process.
"""

import contextlib
import logging

from fastapi import WebSocket

from bubble_timer.errors import DependencyError
from bubble_timer.models import Connection
from bubble_timer.storage import Item, MemoryTable

logger = logging.getLogger(__name__)

CONNECTION_ID_INDEX = "ConnectionIdIndex"


def _item_to_connection(item: Item) -> Connection:
    return Connection(
        user_id=item["user_id"],
        device_id=item["device_id"],
        connection_id=item.get("connection_id"),
    )


class ConnectionDirectory:
    def __init__(self, table: MemoryTable):
        self.table = table

    async def update_connection(self, connection: Connection) -> None:
        """
        Set or clear the connection id of a device.

        Raises DependencyError when the table write fails; connect and
        disconnect have no degraded outcome.
        """
        key = {"user_id": connection.user_id, "device_id": connection.device_id}
        try:
            if connection.connection_id:
                # A connection id identifies exactly one device
                holders = await self.table.query_index(
                    CONNECTION_ID_INDEX, connection.connection_id
                )
                for holder in holders:
                    holder_key = {"user_id": holder["user_id"], "device_id": holder["device_id"]}
                    if holder_key != key:
                        await self.table.update(holder_key, {}, remove=("connection_id",))
                await self.table.update(key, {"connection_id": connection.connection_id})
            else:
                await self.table.update(key, {}, remove=("connection_id",))
        except Exception as e:
            logger.exception(
                "Failed to update connection for user %s device %s",
                connection.user_id,
                connection.device_id,
            )
            raise DependencyError("Failed to update connection", "update_connection") from e

    async def clear_connection(
        self, user_id: str, device_id: str, connection_id: str | None = None
    ) -> bool:
        """
        Best-effort variant of a disconnect, used to drop stale connections.

        With `connection_id`, the row is only cleared while it still holds that
        id, so a device that already reconnected keeps its new connection.
        """
        try:
            if connection_id:
                current = await self.get_connection(user_id, device_id)
                if current is None or current.connection_id != connection_id:
                    return True
            await self.update_connection(Connection(user_id=user_id, device_id=device_id))
        except DependencyError:
            return False
        return True

    async def get_connection(self, user_id: str, device_id: str) -> Connection | None:
        try:
            item = await self.table.get({"user_id": user_id, "device_id": device_id})
        except Exception:
            logger.exception("Failed to read connection for user %s device %s", user_id, device_id)
            return None
        return _item_to_connection(item) if item else None

    async def get_connection_by_id(self, connection_id: str) -> Connection | None:
        try:
            items = await self.table.query_index(CONNECTION_ID_INDEX, connection_id)
        except Exception:
            logger.exception("Failed to look up connection %s", connection_id)
            return None
        if not items:
            return None
        if len(items) > 1:
            logger.warning("Connection %s is held by %d devices", connection_id, len(items))
        return _item_to_connection(items[0])

    async def get_connections_by_user(self, user_id: str) -> list[Connection]:
        """Every registered device of a user, connected or not."""
        try:
            items = await self.table.query(user_id)
        except Exception:
            logger.exception("Failed to read connections for user %s", user_id)
            return []
        return [_item_to_connection(item) for item in items]

    async def get_live_connections(self, user_id: str) -> list[Connection]:
        return [c for c in await self.get_connections_by_user(user_id) if c.connection_id]


class ConnectionGoneError(Exception):
    """The connection id has no live socket behind it."""


class SocketRegistry:
    """Live WebSockets of this process, addressed by connection id."""

    def __init__(self):
        self.sockets: dict[str, WebSocket] = {}

    def register(self, connection_id: str, websocket: WebSocket):
        self.sockets[connection_id] = websocket

    def unregister(self, connection_id: str):
        self.sockets.pop(connection_id, None)

    async def post_to_connection(self, connection_id: str, data: dict):
        websocket = self.sockets.get(connection_id)
        if websocket is None:
            raise ConnectionGoneError(connection_id)
        try:
            await websocket.send_json(data)
        except Exception:
            self.unregister(connection_id)
            # Closing ends the socket's receive loop so the client reconnects
            with contextlib.suppress(Exception):
                await websocket.close(code=1011, reason="Send failed")
            raise

    def __len__(self) -> int:
        return len(self.sockets)
