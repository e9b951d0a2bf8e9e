import logging
from typing import List
from fastapi import WebSocket

logger = logging.getLogger(__name__)

class ConnectionManager:
    def __init__(self, name: str = "default"):
        self.name = name
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info("%s socket connected. Total connections: %d", self.name, len(self.active_connections))

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info("%s socket disconnected. Total connections: %d", self.name, len(self.active_connections))

    async def broadcast(self, message: dict):
        """Broadcast message to all connected WebSocket clients."""
        if not self.active_connections:
            logger.debug("No active %s sockets to broadcast to", self.name)
            return

        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.warning("%s broadcast error: %s", self.name, e)
                # Remove bad connection
                self.disconnect(connection)

    async def send_personal_message(self, message: dict, websocket: WebSocket):
        """Send message to a specific WebSocket client."""
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.warning("%s personal message error: %s", self.name, e)
            self.disconnect(websocket)
