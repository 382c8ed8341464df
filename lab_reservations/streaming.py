# streaming.py
import asyncio
import enum
import json
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from lab_reservations.auth import User
from lab_reservations.broadcast import BroadcastRegistry
from lab_reservations.config import HEARTBEAT_INTERVAL
from lab_reservations.data_models import BroadcastClient, serialize, utcnow

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class StreamState(str, enum.Enum):
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    CLOSED = "CLOSED"


def format_event(envelope: dict) -> str:
    """Frame an envelope as a server-sent event named after its type."""
    payload = json.dumps(serialize(envelope), ensure_ascii=False)
    return f"event: {envelope.get('type', 'message')}\ndata: {payload}\n\n"


class StreamingEndpoint:
    """One admin's live-update connection.

    Envelopes from the registry and heartbeats from a timer task share a
    queue; ``events()`` drains it for the HTTP response. The connection is
    closed when the transport cancels or closes the generator.
    """

    def __init__(self, registry: BroadcastRegistry, user: User,
                 snapshot: Optional[Callable[[], Awaitable[List[dict]]]] = None,
                 heartbeat_interval: float = HEARTBEAT_INTERVAL, max_queued: int = 100):
        self.registry = registry
        self.user = user
        self.client_id = user.username
        self.snapshot = snapshot
        self.heartbeat_interval = heartbeat_interval
        self.state = StreamState.CONNECTING
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queued)
        self._client: Optional[BroadcastClient] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    def deliver(self, envelope: dict) -> None:
        # Raises QueueFull for a stalled reader, which the registry counts as a failure
        self._queue.put_nowait(envelope)

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                self.deliver({"type": "heartbeat", "timestamp": utcnow()})
            except asyncio.QueueFull:
                # Reader is behind; drop this beat and keep the timer running
                logger.debug("Skipped heartbeat for %s, queue full", self.client_id)

    async def open(self) -> None:
        self._client = await self.registry.add_client(self.client_id, self.deliver)
        self.state = StreamState.OPEN
        self.deliver({
            "type": "connected",
            "clientId": self.client_id,
            "user": {"username": self.user.username, "full_name": self.user.full_name, "role": self.user.role},
        })
        if self.snapshot is not None:
            try:
                reservations = await self.snapshot()
            except Exception:
                logger.error("Could not load initial reservations for %s", self.client_id, exc_info=True)
            else:
                self.deliver({"type": "initial", "reservations": reservations})
        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        logger.info("Stream opened for %s", self.client_id)

    async def close(self) -> None:
        if self.state == StreamState.CLOSED:
            return
        self.state = StreamState.CLOSED
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        await self.registry.remove_client(self.client_id, self._client)
        logger.info("Stream closed for %s", self.client_id)

    async def receive(self) -> dict:
        """Wait for the next envelope queued for this connection."""
        return await self._queue.get()

    async def events(self) -> AsyncIterator[str]:
        await self.open()
        try:
            while True:
                yield format_event(await self.receive())
        finally:
            await self.close()
