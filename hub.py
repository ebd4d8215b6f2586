import asyncio
import json
from typing import Dict, Iterable, Tuple

from fastapi import WebSocket

from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionHub:
    """Live WebSocket connections of this process, keyed by connection id."""

    def __init__(self):
        self.connections: Dict[str, WebSocket] = {}

    def __len__(self) -> int:
        return len(self.connections)

    def register(self, connection_id: str, websocket: WebSocket):
        self.connections[connection_id] = websocket
        logger.debug(f"Registered connection {connection_id} ({len(self.connections)} open)")

    def unregister(self, connection_id: str):
        if self.connections.pop(connection_id, None) is not None:
            logger.debug(f"Unregistered connection {connection_id} ({len(self.connections)} open)")

    async def send(self, connection_id: str, message: dict) -> bool:
        websocket = self.connections.get(connection_id)
        if websocket is None:
            return False
        try:
            await websocket.send_text(json.dumps(message))
            return True
        except Exception as e:
            logger.warning(f"Error sending to connection {connection_id}, dropping it: {e}")
            self.unregister(connection_id)
            return False

    async def deliver(self, notices: Iterable[Tuple[str, str, dict]]):
        """Send queued notices, in order per connection, all connections concurrently."""
        per_connection: Dict[str, list] = {}
        for connection_id, event, payload in notices:
            per_connection.setdefault(connection_id, []).append({"type": event, "payload": payload})
        if not per_connection:
            return

        async def send_all(connection_id: str, messages: list):
            for message in messages:
                if not await self.send(connection_id, message):
                    break

        await asyncio.gather(
            *(send_all(cid, msgs) for cid, msgs in per_connection.items()),
            return_exceptions=True,
        )
        logger.debug(f"Delivered notices to {len(per_connection)} connection(s)")
