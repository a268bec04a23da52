"""Real-time job events pushed to connected clients.

Delivery is best-effort: the job store stays the source of truth and clients
re-fetch state after reconnecting.
"""

import asyncio
from typing import Any, Protocol
from uuid import UUID

import structlog

from genflow.core.timezone import utcnow
from genflow.models.job import JobState

logger = structlog.get_logger(__name__)


class EventConnection(Protocol):
    """Transport for one live client (FastAPI WebSocket satisfies this)."""

    async def send_json(self, data: Any) -> None: ...


class EventPublisher:
    """Registry of live connections keyed by owner."""

    def __init__(self, send_timeout: float = 5.0):
        self.send_timeout = send_timeout
        self._connections: dict[str, list[EventConnection]] = {}

    def connect(self, owner: str, connection: EventConnection) -> None:
        connections = self._connections.setdefault(owner, [])
        if not any(existing is connection for existing in connections):
            connections.append(connection)
        logger.debug("events.connected", owner=owner, connections=len(self._connections[owner]))

    def disconnect(self, owner: str, connection: EventConnection) -> None:
        connections = self._connections.get(owner)
        if connections is None:
            return
        remaining = [existing for existing in connections if existing is not connection]
        if remaining:
            self._connections[owner] = remaining
        else:
            del self._connections[owner]

    def connection_count(self, owner: str | None = None) -> int:
        if owner is not None:
            return len(self._connections.get(owner, ()))
        return sum(len(connections) for connections in self._connections.values())

    async def publish(
        self,
        owner: str,
        job_id: UUID,
        state: JobState,
        payload: dict[str, Any] | None = None,
    ) -> int:
        """Push a job event to every connection of owner.

        Returns:
            Number of connections the event was delivered to (0 when the owner
            has no live connection, which is not an error)
        """
        connections = list(self._connections.get(owner, ()))
        if not connections:
            return 0

        message = {
            "type": "job.update",
            "job_id": str(job_id),
            "state": state.value,
            "timestamp": utcnow().isoformat(),
            **(payload or {}),
        }

        delivered = 0
        for connection in connections:
            try:
                await asyncio.wait_for(connection.send_json(message), timeout=self.send_timeout)
                delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "events.delivery_failed",
                    owner=owner,
                    job_id=str(job_id),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self.disconnect(owner, connection)
        return delivered
