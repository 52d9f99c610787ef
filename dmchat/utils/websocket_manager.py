from typing import Dict, List

from fastapi import WebSocket

from dmchat.utils.broker import Connection


class ConnectionManager:
    """Live WebSocket connections per user; a user is online while any remain."""

    def __init__(self) -> None:
        self.active_connections: Dict[str, List[Connection]] = {}

    async def connect(self, user_id: str, websocket: WebSocket) -> Connection:
        await websocket.accept()
        connection = Connection(user_id)
        if user_id not in self.active_connections:
            self.active_connections[user_id] = []
        self.active_connections[user_id].append(connection)
        return connection

    def disconnect(self, connection: Connection) -> int:
        """Forget a connection; returns how many the user still has open."""
        user_id = connection.user_id
        if user_id in self.active_connections:
            try:
                self.active_connections[user_id].remove(connection)
            except ValueError:
                pass
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]
        return len(self.active_connections.get(user_id, []))

    def connection_count(self, user_id: str) -> int:
        return len(self.active_connections.get(user_id, []))

    def is_connected(self, user_id: str) -> bool:
        return self.connection_count(user_id) > 0
