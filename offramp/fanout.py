"""
Notification Fanout: pushes transaction lifecycle events to every connected
real-time client.

Delivery is best-effort: no acknowledgment, no retry. A client whose send
fails or times out is dropped from the subscriber set and closed; the broadcast
carries on for everyone else. Sends to one client are serialized so that client
sees events in publish order.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from contextlib import suppress
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Tuple

from offramp.models import Transaction

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_UPDATED = "transaction_updated"
    PAYMENT_INITIATED = "payment_initiated"


def transaction_created(transaction: Transaction) -> Dict[str, Any]:
    return {
        "type": EventType.TRANSACTION_CREATED.value,
        "transaction": transaction.model_dump(mode="json", by_alias=True),
    }


def transaction_updated(transaction: Transaction) -> Dict[str, Any]:
    return {
        "type": EventType.TRANSACTION_UPDATED.value,
        "transaction": transaction.model_dump(mode="json", by_alias=True),
    }


def payment_initiated(merchant_tx_id: str, provider_response: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": EventType.PAYMENT_INITIATED.value,
        "transaction_id": merchant_tx_id,
        "onmeta_data": provider_response,
    }


class ClientHandle(Protocol):
    async def send_text(self, data: str) -> None:
        ...

    async def close(self, code: int = 1000) -> None:
        ...


class EventPublisher(ABC):
    """What the core components see: somewhere to publish lifecycle events."""

    @abstractmethod
    async def publish(self, event: Dict[str, Any]) -> None:
        ...


class NotificationFanout(EventPublisher):

    def __init__(self, send_timeout: float = 5.0):
        self.send_timeout = send_timeout
        # Keyed by id(): WebSocket objects are Mappings and not hashable
        self._clients: Dict[int, Tuple[ClientHandle, asyncio.Lock]] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._clients)

    def is_subscribed(self, client: ClientHandle) -> bool:
        return id(client) in self._clients

    def subscribe(self, client: ClientHandle) -> None:
        if id(client) not in self._clients:
            self._clients[id(client)] = (client, asyncio.Lock())
            logger.info("Client subscribed", extra={"subscribers": len(self._clients)})

    def unsubscribe(self, client: ClientHandle) -> None:
        if self._clients.pop(id(client), None) is not None:
            logger.info("Client unsubscribed", extra={"subscribers": len(self._clients)})

    async def _send(self, client: ClientHandle, lock: asyncio.Lock, data: str, event_type: Optional[str]) -> bool:
        try:
            async with lock:
                await asyncio.wait_for(client.send_text(data), timeout=self.send_timeout)
            return True
        except Exception:
            logger.warning("Dropping client after failed send", extra={"event_type": event_type}, exc_info=True)
            await self._drop(client)
            return False

    async def _drop(self, client: ClientHandle) -> None:
        self.unsubscribe(client)
        # Best effort: the socket may already be gone
        with suppress(Exception):
            await asyncio.wait_for(client.close(), timeout=self.send_timeout)

    async def broadcast(self, event: Dict[str, Any]) -> int:
        """Send `event` to every open client; returns how many received it."""
        if "type" not in event:
            raise ValueError("event must carry a 'type' field")
        data = json.dumps(event, default=str)
        # Snapshot so connects and disconnects during the send are safe
        targets = list(self._clients.values())
        if not targets:
            return 0
        results = await asyncio.gather(
            *(self._send(client, lock, data, event["type"]) for client, lock in targets)
        )
        delivered = sum(1 for ok in results if ok)
        logger.info("Event broadcast", extra={
            "event_type": event["type"],
            "subscribers": delivered,
        })
        return delivered

    async def publish(self, event):
        await self.broadcast(event)
