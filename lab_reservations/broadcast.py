# broadcast.py
import asyncio
import inspect
import logging
from typing import Dict, List, Optional

from lab_reservations.config import MAX_DELIVERY_FAILURES
from lab_reservations.data_models import BroadcastClient, Deliver

logger = logging.getLogger(__name__)


class BroadcastRegistry:
    """In-memory fan-out of events to connected admin sessions.

    One instance lives for the whole process; it is created at startup and
    handed to every handler that needs it. The client map is only touched
    under ``self._lock``; callbacks run outside it so a callback may call
    back into the registry.
    """

    def __init__(self, max_failures: int = MAX_DELIVERY_FAILURES):
        self.max_failures = max_failures
        self._clients: Dict[str, BroadcastClient] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._clients

    def client_ids(self) -> List[str]:
        return list(self._clients)

    async def add_client(self, client_id: str, deliver: Deliver) -> BroadcastClient:
        client = BroadcastClient(client_id=client_id, deliver=deliver)
        async with self._lock:
            replaced = client_id in self._clients
            self._clients[client_id] = client
        logger.info("Client %s %s (%d connected)", client_id,
                    "re-registered" if replaced else "registered", len(self._clients))
        return client

    async def remove_client(self, client_id: str, client: Optional[BroadcastClient] = None) -> bool:
        """Deregister a client. Unknown ids are ignored.

        When ``client`` is given, the entry is only removed if it is still that
        registration, so a stale connection cannot evict its replacement.
        """
        async with self._lock:
            current = self._clients.get(client_id)
            if current is None or (client is not None and current is not client):
                return False
            del self._clients[client_id]
        logger.info("Client %s removed (%d connected)", client_id, len(self._clients))
        return True

    async def broadcast(self, envelope: dict) -> int:
        """Deliver ``envelope`` to every client; returns the number of successful deliveries."""
        async with self._lock:
            snapshot = list(self._clients.values())

        delivered = 0
        for client in snapshot:
            if await self._deliver(client, envelope):
                delivered += 1
        return delivered

    async def send_to_client(self, client_id: str, envelope: dict) -> bool:
        async with self._lock:
            client = self._clients.get(client_id)
        if client is None:
            return False
        return await self._deliver(client, envelope)

    async def _deliver(self, client: BroadcastClient, envelope: dict) -> bool:
        try:
            result = client.deliver(envelope)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("Delivery to client %s failed", client.client_id, exc_info=True)
            await self._record_failure(client)
            return False

        async with self._lock:
            client.failures = 0
        return True

    async def _record_failure(self, client: BroadcastClient) -> None:
        async with self._lock:
            # The client may have reconnected or gone away while we were delivering
            if self._clients.get(client.client_id) is not client:
                return
            client.failures += 1
            if client.failures < self.max_failures:
                return
            del self._clients[client.client_id]
        logger.warning("Client %s dropped after %d consecutive delivery failures",
                       client.client_id, client.failures)
