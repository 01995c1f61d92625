"""
Broadcast Hub

Owns the set of connected viewers and delivers structure, file change and
error messages to them. Each client has a bounded outbound queue drained by
its own writer task, so a slow or dead connection never holds up delivery
to anyone else.
"""

import asyncio
import json
import logging
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config.settings import CLIENT_QUEUE_SIZE
from core.exceptions import DeliveryFailure

logger = logging.getLogger(__name__)

MESSAGE_STRUCTURE = 'structure'
MESSAGE_FILE_CHANGE = 'fileChange'
MESSAGE_ERROR = 'error'


def structure_message(tree) -> Dict[str, Any]:
    """Snapshot message for a TreeNode root."""
    return {'type': MESSAGE_STRUCTURE, 'content': tree.to_dict()}


def file_change_message(path: str, count: int = 1) -> Dict[str, Any]:
    return {'type': MESSAGE_FILE_CHANGE, 'file': path, 'count': count}


def error_message(message: str) -> Dict[str, Any]:
    return {'type': MESSAGE_ERROR, 'message': message}


class ConnectionState(str, Enum):
    OPEN = 'open'
    CLOSING = 'closing'
    CLOSED = 'closed'


class Client:
    """
    One connected viewer.

    ``transport`` is anything with an async ``send_text(str)`` and optionally
    an async ``close()`` (a Starlette WebSocket in production).
    """

    def __init__(self, transport, client_id: Optional[str] = None, queue_size: int = CLIENT_QUEUE_SIZE):
        self.id = client_id or f"client-{uuid.uuid4().hex[:12]}"
        self.transport = transport
        self.connection_state = ConnectionState.OPEN
        self.primed = False  # set once the first structure message is queued
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

    def __repr__(self):
        return f"<Client {self.id} {self.connection_state.value}>"

    @property
    def is_open(self) -> bool:
        return self.connection_state is ConnectionState.OPEN

    def deliver(self, message: Dict[str, Any]):
        """Queue a message for the writer task, raising DeliveryFailure if it cannot be."""
        if not self.is_open:
            raise DeliveryFailure(self.id, f"connection {self.connection_state.value}")
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            raise DeliveryFailure(self.id, "outbound queue full")
        if message.get('type') == MESSAGE_STRUCTURE:
            self.primed = True

    async def pump(self):
        """Write queued messages to the transport in order until cancelled or a send fails."""
        while True:
            message = await self.queue.get()
            await self.transport.send_text(json.dumps(message))

    async def close(self):
        if self.connection_state is ConnectionState.CLOSED:
            return
        self.connection_state = ConnectionState.CLOSING
        close = getattr(self.transport, 'close', None)
        if close is not None:
            try:
                await close()
            except Exception as e:
                # Transport already gone
                logger.debug(f"[HUB] Close of {self.id} failed: {e}")
        self.connection_state = ConnectionState.CLOSED


class BroadcastHub:
    """
    Concurrency-safe registry of connected clients.

    Registration, unregistration and broadcasts may interleave freely; the
    client map is guarded by an asyncio lock and every fan-out iterates over
    a copy taken under that lock.
    """

    def __init__(self, on_register: Optional[Callable[[str], Awaitable[None]]] = None):
        """
        Args:
            on_register: Coroutine called with the new client id right after
                registration; the Root Manager uses it to send the first snapshot.
        """
        self._clients: Dict[str, Client] = {}
        self._writers: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self.on_register = on_register

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def client_ids(self) -> List[str]:
        return list(self._clients)

    def get(self, client_id: str) -> Optional[Client]:
        return self._clients.get(client_id)

    async def register(self, client: Client) -> Client:
        """Add a client, start its writer and send it the current snapshot."""
        async with self._lock:
            self._clients[client.id] = client
            self._writers[client.id] = asyncio.create_task(self._run_writer(client), name=f"writer-{client.id}")
        logger.info(f"[HUB] Client connected: {client.id} (total: {len(self._clients)})")

        if self.on_register is not None:
            try:
                await self.on_register(client.id)
            except Exception as e:
                logger.error(f"[HUB] Initial snapshot for {client.id} failed: {e}")
                self.send_to(client.id, error_message('Failed to load project structure'))
        return client

    async def unregister(self, client_id: str):
        """Remove a client and close its connection. Unknown ids are ignored."""
        async with self._lock:
            client = self._detach(client_id)
        if client is None:
            return
        await client.close()
        logger.info(f"[HUB] Client disconnected: {client_id} (total: {len(self._clients)})")

    def broadcast(self, message: Dict[str, Any]) -> int:
        """
        Queue a message for every registered client.

        Clients that have not received their first structure message yet
        only receive structure messages. A client whose delivery fails is
        dropped; the failure never reaches the caller.

        Returns:
            Number of clients the message was queued for
        """
        is_structure = message.get('type') == MESSAGE_STRUCTURE
        delivered = 0
        failed = []

        for client in list(self._clients.values()):
            if not is_structure and not client.primed:
                continue
            try:
                client.deliver(message)
                delivered += 1
            except DeliveryFailure as e:
                logger.warning(f"[HUB] {e}")
                failed.append(client.id)
            except Exception as e:
                logger.warning(f"[HUB] Failed to notify client {client.id}: {e}")
                failed.append(client.id)

        for client_id in failed:
            self._drop(client_id)

        logger.debug(f"[HUB] Broadcast {message.get('type')} to {delivered} clients")
        return delivered

    def send_to(self, client_id: str, message: Dict[str, Any]) -> bool:
        """Queue a message for one client; a failing client is dropped."""
        client = self._clients.get(client_id)
        if client is None:
            logger.debug(f"[HUB] send_to unknown client {client_id}")
            return False
        try:
            client.deliver(message)
            return True
        except Exception as e:
            logger.warning(f"[HUB] Failed to notify client {client_id}: {e}")
            self._drop(client_id)
            return False

    async def close_all(self):
        """Disconnect every client (used on shutdown)."""
        for client_id in self.client_ids():
            await self.unregister(client_id)

    def _detach(self, client_id: str) -> Optional[Client]:
        client = self._clients.pop(client_id, None)
        writer = self._writers.pop(client_id, None)
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
        return client

    def _drop(self, client_id: str):
        client = self._detach(client_id)
        if client is None:
            return
        client.connection_state = ConnectionState.CLOSING
        # Broadcasts are synchronous, so closing the transport runs as its own task
        asyncio.ensure_future(client.close())
        logger.info(f"[HUB] Dropped client {client_id} (total: {len(self._clients)})")

    async def _run_writer(self, client: Client):
        try:
            await client.pump()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[HUB] Delivery to {client.id} failed: {e}")
            await self.unregister(client.id)
