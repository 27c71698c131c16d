from typing import Dict
from fastapi import WebSocket
import logging

logger = logging.getLogger(__name__)

class ConnectionManager:
    def __init__(self):
        # Map verification attempt id -> WebSocket connection
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket, attempt_id: str):
        await websocket.accept()
        self.active_connections[attempt_id] = websocket
        logger.info(f"WebSocket connected for attempt: {attempt_id}")

    def disconnect(self, attempt_id: str):
        if attempt_id in self.active_connections:
            del self.active_connections[attempt_id]
            logger.info(f"WebSocket disconnected for attempt: {attempt_id}")

    async def send_message(self, message: dict, attempt_id: str) -> bool:
        websocket = self.active_connections.get(attempt_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.warning(f"Failed to send to attempt {attempt_id}: {e}")
            self.disconnect(attempt_id)
            return False
        return True

manager = ConnectionManager()
