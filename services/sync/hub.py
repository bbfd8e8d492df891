"""WebSocket connection manager for live presentation followers."""

from __future__ import annotations

import asyncio
from typing import Any, Dict
from uuid import uuid4

from fastapi import WebSocket

from services.identity import Identity
from services.store import DocumentStore
from services.sync.engine import SyncEngine
from shared.enums import SyncStatus
from shared.models import AnnotationView, PresentationState
from shared.utils import setup_logging

logger = setup_logging("live-hub")


class WebSocketSyncController:
    """SyncController that turns engine events into JSON messages for one socket.

    Engine callbacks are synchronous, so messages go through a queue that a
    sender task drains onto the socket in order.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def presentation_changed(self, presentation: PresentationState | None) -> None:
        payload = presentation.model_dump(mode="json", by_alias=True) if presentation else None
        self.queue.put_nowait({"event": "presentation", "presentation": payload})

    def annotations_changed(self, view: AnnotationView | None) -> None:
        payload = view.model_dump(mode="json", by_alias=True) if view else None
        self.queue.put_nowait({"event": "annotations", "annotations": payload})

    def status_changed(self, status: SyncStatus, detail: str | None = None) -> None:
        self.queue.put_nowait({"event": "status", "status": SyncStatus(status).value, "detail": detail})

    def send(self, message: dict[str, Any]) -> None:
        self.queue.put_nowait(message)

    async def pump(self) -> None:
        """Forward queued messages until cancelled."""
        while True:
            message = await self.queue.get()
            try:
                await self.websocket.send_json(message)
            finally:
                self.queue.task_done()

    async def flush(self) -> None:
        await self.queue.join()


class _Connection:
    def __init__(self, websocket: WebSocket, controller: WebSocketSyncController, engine: SyncEngine) -> None:
        self.websocket = websocket
        self.controller = controller
        self.engine = engine
        self.sender: asyncio.Task | None = None


class LiveConnectionManager:
    """Track WebSocket connections, each owning its own SyncEngine."""

    def __init__(self, store: DocumentStore | None = None) -> None:
        self.store = store
        self._connections: Dict[str, _Connection] = {}
        self._lock = asyncio.Lock()

    def bind(self, store: DocumentStore) -> None:
        self.store = store

    async def connect(self, websocket: WebSocket, identity: Identity, client_id: str | None = None) -> str:
        """Accept WebSocket connection and register client."""
        if self.store is None:
            raise RuntimeError("Connection manager has no store")
        client_key = client_id or str(uuid4())
        await websocket.accept()
        controller = WebSocketSyncController(websocket)
        connection = _Connection(websocket, controller, SyncEngine(self.store, controller, identity=identity))
        connection.sender = asyncio.create_task(self._pump(client_key, controller))
        async with self._lock:
            self._connections[client_key] = connection
        logger.info("Live client %s connected as %s", client_key, identity.user_id)
        return client_key

    async def disconnect(self, client_id: str) -> None:
        """Remove client connection and close its subscriptions."""
        async with self._lock:
            connection = self._connections.pop(client_id, None)
        if connection is None:
            return
        connection.engine.close()
        if connection.sender is not None and connection.sender is not asyncio.current_task():
            connection.sender.cancel()
        try:
            await connection.websocket.close()
        except RuntimeError as exc:
            logger.debug(f"Socket for {client_id} already closed: {exc}")
        logger.info("Live client %s disconnected", client_id)

    def send(self, client_id: str, message: dict[str, Any]) -> None:
        """Queue a message for one client behind any pending engine events."""
        connection = self._connections.get(client_id)
        if connection is not None:
            connection.controller.send(message)

    def engine(self, client_id: str) -> SyncEngine:
        connection = self._connections.get(client_id)
        if connection is None:
            raise RuntimeError("Client not connected")
        return connection.engine

    async def handle_message(self, client_id: str, message: dict[str, Any]) -> None:
        """Apply one client action: join, follow, leave or ping."""
        connection = self._connections.get(client_id)
        if connection is None:
            raise RuntimeError("Client not connected")

        action = message.get("action")
        course_id = message.get("courseId")
        engine = connection.engine

        if action == "ping":
            connection.controller.send({"event": "pong"})
        elif action == "leave":
            engine.leave()
        elif action == "join" and course_id:
            await engine.join_course(course_id)
        elif action == "follow" and course_id and message.get("presentationId"):
            await engine.follow(course_id, message["presentationId"])
        else:
            connection.controller.send({"event": "error", "detail": f"Unsupported message: {action!r}"})

    async def broadcast_system_message(self, message: dict[str, Any]) -> None:
        """Broadcast a message to all connected clients."""
        async with self._lock:
            recipients = list(self._connections.values())
        for connection in recipients:
            connection.controller.send(message)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def reset(self) -> None:
        """Close every connection (primarily for tests)."""
        async with self._lock:
            client_ids = list(self._connections)
        for client_id in client_ids:
            await self.disconnect(client_id)

    async def _pump(self, client_id: str, controller: WebSocketSyncController) -> None:
        try:
            await controller.pump()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(f"Dropping live client {client_id}: {exc}")
            await self.disconnect(client_id)


# Shared manager instance
live_manager = LiveConnectionManager()
