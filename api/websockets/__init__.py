"""WebSocket endpoints for real-time notifications."""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from typing import Dict, Set, Any
from datetime import datetime
import logging

from chain import normalize_address
from errors import InvalidArgument
from notifications import NotificationDispatcher

# Configure logging
logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/ws",
    tags=["WebSocket"]
)


class ConnectionManager:
    """Tracks open notification sockets per account address."""

    def __init__(self):
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, address: str):
        """Accept connection and add to active connections."""
        await websocket.accept()
        self.active_connections.setdefault(address, set()).add(websocket)
        logger.info(f"New notification connection for {address}")

    def disconnect(self, websocket: WebSocket, address: str):
        """Remove connection from active connections."""
        connections = self.active_connections.get(address)
        if not connections:
            return
        connections.discard(websocket)
        if not connections:
            del self.active_connections[address]
        logger.info(f"Notification connection closed for {address}")

    async def send(self, address: str, message: Dict[str, Any]) -> int:
        """Send a message to every socket of an address.

        Returns:
            Number of sockets the message reached
        """
        dead_connections = set()
        delivered = 0

        for connection in list(self.active_connections.get(address, ())):
            try:
                await connection.send_json(message)
                delivered += 1
            except Exception as e:
                logger.error(f"Failed to send to connection: {e}")
                dead_connections.add(connection)

        # Clean up dead connections
        for dead in dead_connections:
            self.disconnect(dead, address)
        return delivered


class WebSocketDispatcher(NotificationDispatcher):
    """Pushes reconciliation outcomes to the recipient's open sockets."""

    def __init__(self, connections: ConnectionManager):
        self.connections = connections

    async def notify(self, recipient: str, topic: str, payload: Dict[str, Any], success: bool) -> None:
        delivered = await self.connections.send(recipient, {
            "type": "notification",
            "topic": topic,
            "success": success,
            "data": payload,
            "timestamp": datetime.utcnow().isoformat()
        })
        logger.debug(f"Notification {topic} reached {delivered} socket(s) of {recipient}")


# Create connection manager instance
manager = ConnectionManager()


@router.websocket("/notifications/{address}")
async def notifications_endpoint(websocket: WebSocket, address: str):
    """WebSocket endpoint for an account's reconciliation notifications."""
    try:
        address = normalize_address(address)
    except InvalidArgument:
        await websocket.close(code=1008, reason="Invalid address")
        return

    await manager.connect(websocket, address)
    try:
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                logger.debug(f"Ignoring malformed message from {address}")
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue
            if isinstance(data, dict) and data.get("type") == "ping":
                await websocket.send_json({
                    "type": "pong",
                    "timestamp": datetime.utcnow().isoformat()
                })
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket, address)


# Export the router and dispatcher
__all__ = ['router', 'manager', 'ConnectionManager', 'WebSocketDispatcher']
