"""WebSocket Manager for live execution progress."""

import asyncio
import json
import uuid
from typing import Dict, Set, Any, Optional
from queue import Queue, Empty
from fastapi import WebSocket, WebSocketDisconnect

from ..models.core import ExecutionRecord, JournalEvent, utc_now
from .logging import get_logger

logger = get_logger(__name__)


class WebSocketConnection:
    """A WebSocket connection and the executions it follows."""

    def __init__(self, websocket: WebSocket, connection_id: str):
        self.websocket = websocket
        self.connection_id = connection_id
        self.connected_at = utc_now()
        self.subscribed_executions: Set[str] = set()
        self.is_active = True


class WebSocketManager:
    """
    Fans journal events out to subscribed WebSocket clients.

    Orchestrators run on their own threads, so they hand events over through
    a thread-safe queue (``on_journal_event``); an asyncio task on the server
    loop drains it and performs the sends.
    """

    def __init__(self, max_connections: int = 100):
        self.max_connections = max_connections
        self._connections: Dict[str, WebSocketConnection] = {}
        self._execution_subscribers: Dict[str, Set[str]] = {}
        self._broadcast_lock: Optional[asyncio.Lock] = None

        self._broadcast_queue: Queue = Queue()
        self._queue_processor_task: Optional[asyncio.Task] = None
        self._processing_broadcasts = False

        logger.info("WebSocketManager initialized")

    async def connect(self, websocket: WebSocket) -> Optional[str]:
        """Accept a connection; returns None when the connection limit is reached."""
        await websocket.accept()

        if self.get_connection_count() >= self.max_connections:
            await websocket.send_text(json.dumps({
                "event_type": "error",
                "message": "Too many WebSocket connections"
            }))
            await websocket.close(code=1013)
            logger.warning("Rejected WebSocket connection: limit reached")
            return None

        connection_id = str(uuid.uuid4())
        self._connections[connection_id] = WebSocketConnection(websocket, connection_id)

        logger.info(f"WebSocket connection established: {connection_id}")

        await self._send_to_connection(connection_id, {
            "event_type": "connection_established",
            "connection_id": connection_id,
            "timestamp": utc_now().isoformat(),
            "message": "WebSocket connection established successfully"
        })

        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return

        connection.is_active = False
        for execution_id in list(connection.subscribed_executions):
            self._unsubscribe(connection_id, execution_id)

        del self._connections[connection_id]
        logger.info(f"WebSocket connection disconnected and cleaned up: {connection_id}")

    async def subscribe(self, connection_id: str, execution_id: str) -> bool:
        """
        Subscribe a connection to the journal events of an execution.

        Args:
            connection_id: ID of the WebSocket connection
            execution_id: Execution to follow

        Returns:
            True if subscription was successful, False otherwise
        """
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            logger.warning(f"Attempted to subscribe unknown or inactive connection: {connection_id}")
            return False

        connection.subscribed_executions.add(execution_id)
        self._execution_subscribers.setdefault(execution_id, set()).add(connection_id)

        logger.info(f"Connection {connection_id} subscribed to execution {execution_id}")

        await self._send_to_connection(connection_id, {
            "event_type": "subscription_confirmed",
            "execution_id": execution_id,
            "timestamp": utc_now().isoformat(),
            "message": f"Subscribed to execution {execution_id}"
        })
        return True

    async def unsubscribe(self, connection_id: str, execution_id: str) -> bool:
        return self._unsubscribe(connection_id, execution_id)

    def _unsubscribe(self, connection_id: str, execution_id: str) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False

        connection.subscribed_executions.discard(execution_id)
        subscribers = self._execution_subscribers.get(execution_id)
        if subscribers is not None:
            subscribers.discard(connection_id)
            if not subscribers:
                del self._execution_subscribers[execution_id]

        logger.info(f"Connection {connection_id} unsubscribed from execution {execution_id}")
        return True

    async def broadcast_execution_event(self, execution_id: str, event_type: str, data: Dict[str, Any]) -> None:
        """Send an event to every subscriber of an execution."""
        if execution_id not in self._execution_subscribers:
            return

        if self._broadcast_lock is None:
            self._broadcast_lock = asyncio.Lock()

        async with self._broadcast_lock:
            event = {
                "event_type": event_type,
                "execution_id": execution_id,
                "timestamp": utc_now().isoformat(),
                "data": data
            }

            subscribers = self._execution_subscribers.get(execution_id, set()).copy()
            disconnected = []
            for connection_id in subscribers:
                if not await self._send_to_connection(connection_id, event):
                    disconnected.append(connection_id)

            for connection_id in disconnected:
                await self.disconnect(connection_id)

            logger.debug(f"Broadcasted {event_type} for execution {execution_id} to {len(subscribers)} subscribers")

    async def _send_to_connection(self, connection_id: str, data: Dict[str, Any]) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            return False

        try:
            await connection.websocket.send_text(json.dumps(data, default=str))
            return True
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected during send: {connection_id}")
            connection.is_active = False
            return False
        except Exception as e:
            logger.error(f"Error sending WebSocket message to {connection_id}: {str(e)}")
            connection.is_active = False
            return False

    async def send_to_connection(self, connection_id: str, data: Dict[str, Any]) -> bool:
        return await self._send_to_connection(connection_id, data)

    def get_connection_count(self) -> int:
        return len([conn for conn in self._connections.values() if conn.is_active])

    def get_subscriber_count(self, execution_id: str) -> int:
        return len(self._execution_subscribers.get(execution_id, set()))

    def get_connection_info(self) -> Dict[str, Any]:
        active_connections = [
            {
                "connection_id": conn_id,
                "connected_at": conn.connected_at.isoformat(),
                "subscribed_executions": sorted(conn.subscribed_executions)
            }
            for conn_id, conn in self._connections.items()
            if conn.is_active
        ]
        return {
            "total_connections": len(active_connections),
            "connections": active_connections,
            "execution_subscribers": {
                execution_id: len(subscribers)
                for execution_id, subscribers in self._execution_subscribers.items()
            }
        }

    # ------------------------------------------------------------------
    # Thread hand-off
    # ------------------------------------------------------------------

    def on_journal_event(self, event: JournalEvent, record: ExecutionRecord) -> None:
        """Progress listener registered on orchestrators; safe to call from any thread."""
        self._broadcast_queue.put((event.execution_id, "journal_event", {
            "sequence": event.sequence,
            "kind": event.kind.value,
            "timestamp": event.timestamp.isoformat(),
            "payload": event.payload,
            "status": record.status.value,
            "completed_nodes": record.completed_nodes,
            "current_nodes": record.current_nodes,
        }))

    def start_broadcast_processor(self):
        """Start draining the queue on the running event loop."""
        if not self._processing_broadcasts:
            self._processing_broadcasts = True
            self._queue_processor_task = asyncio.create_task(self._process_broadcast_queue())
            logger.info("WebSocket broadcast processor started")

    def stop_broadcast_processor(self):
        self._processing_broadcasts = False
        if self._queue_processor_task:
            self._queue_processor_task.cancel()
            self._queue_processor_task = None
            logger.info("WebSocket broadcast processor stopped")

    async def _process_broadcast_queue(self):
        while self._processing_broadcasts:
            try:
                try:
                    execution_id, event_type, data = self._broadcast_queue.get_nowait()
                except Empty:
                    await asyncio.sleep(0.05)
                    continue
                await self.broadcast_execution_event(execution_id, event_type, data)
                self._broadcast_queue.task_done()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error processing broadcast queue: {str(e)}")
                await asyncio.sleep(0.1)
