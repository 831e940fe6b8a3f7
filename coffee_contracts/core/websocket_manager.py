"""In-process registry of websocket watchers per contract."""

import logging

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ContractWatchers:
    """Keeps ``contract_id -> [(user_id, WebSocket)]`` and fans out updates."""

    def __init__(self) -> None:
        self.active_connections: dict[int, list[tuple[int, WebSocket]]] = {}

    async def connect(self, contract_id: int, user_id: int, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.setdefault(contract_id, []).append((user_id, websocket))
        logger.info(
            "Watcher connected",
            extra={"contract_id": contract_id, "user_id": user_id,
                   "watchers": len(self.active_connections[contract_id])},
        )

    def disconnect(self, contract_id: int, user_id: int, websocket: WebSocket) -> None:
        connections = self.active_connections.get(contract_id)
        if not connections:
            return
        try:
            connections.remove((user_id, websocket))
        except ValueError:
            return
        if not connections:
            del self.active_connections[contract_id]

    async def publish(self, contract) -> int:
        """Send the committed status of a contract to everyone watching it.

        Must be called after the transaction commits. Dead sockets are dropped.
        """
        connections = list(self.active_connections.get(contract.id, []))
        message = {
            "type": "contract.updated",
            "contract_id": contract.id,
            "status": contract.status,
            "version": contract.version,
        }
        delivered = 0
        for user_id, websocket in connections:
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception:
                logger.warning("Dropping dead watcher %s on contract %s", user_id, contract.id)
                self.disconnect(contract.id, user_id, websocket)
        return delivered


watchers = ContractWatchers()
