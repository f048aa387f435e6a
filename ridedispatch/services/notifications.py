"""
Outbound notifications to riders and drivers.

Lifecycle code builds a ``Notification`` and hands it to
``NotificationFanout.notify``, which returns immediately.  Delivery to every
sink happens in a background task; a failing sink is logged and never
reaches the caller, so a transition that has committed stays committed.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

import redis.asyncio as aioredis

from ridedispatch.infrastructure.redis_client import redis_call

logger = logging.getLogger(__name__)


class MessageType(str, enum.Enum):
    NEW_RIDE_REQUEST = "NEW_RIDE_REQUEST"
    RIDE_CONFIRMED = "RIDE_CONFIRMED"
    DRIVER_ARRIVED = "DRIVER_ARRIVED"
    TRIP_STARTED = "TRIP_STARTED"
    TRIP_ENDED = "TRIP_ENDED"
    RIDE_COMPLETED = "RIDE_COMPLETED"
    RIDE_CANCELLED_BY_RIDER = "RIDE_CANCELLED_BY_RIDER"
    RIDE_CANCELLED_BY_DRIVER = "RIDE_CANCELLED_BY_DRIVER"
    OFFER_EXPIRED = "OFFER_EXPIRED"
    NO_DRIVER_AVAILABLE = "NO_DRIVER_AVAILABLE"


@dataclass(frozen=True)
class Notification:
    recipient: str  # "rider" | "driver"
    recipient_id: int
    type: MessageType
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def rider(cls, rider_id: int, type: MessageType, **data: Any) -> Notification:
        return cls("rider", rider_id, type, data)

    @classmethod
    def driver(cls, driver_id: int, type: MessageType, **data: Any) -> Notification:
        return cls("driver", driver_id, type, data)

    @property
    def channel(self) -> str:
        return f"{self.recipient}:{self.recipient_id}"

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type.value, **self.data}


class NotificationSink(Protocol):
    async def send(self, notification: Notification) -> None: ...


class RedisBroadcastNotifier:
    """Publishes each notification on the recipient's pub/sub channel."""

    def __init__(self, client: aioredis.Redis):
        self.redis = client

    @redis_call("Broadcast channel")
    async def send(self, notification: Notification) -> None:
        await self.redis.publish(
            notification.channel, json.dumps(notification.to_message(), default=str)
        )


class LoggingNotifier:
    """Writes each notification to the log; the in-process backend's sink."""

    async def send(self, notification: Notification) -> None:
        logger.info(
            "Notify %s: %s",
            notification.channel,
            json.dumps(notification.to_message(), default=str),
        )


class NotificationFanout:
    def __init__(self, sinks: Iterable[NotificationSink]):
        self.sinks = list(sinks)
        self._pending: set[asyncio.Task] = set()

    def notify(self, notification: Notification) -> None:
        """Schedule delivery and return without waiting for it."""
        task = asyncio.create_task(self._deliver(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, notification: Notification) -> None:
        for sink in self.sinks:
            try:
                await sink.send(notification)
            except Exception:
                logger.exception(
                    "Notification %s to %s failed via %s",
                    notification.type.value,
                    notification.channel,
                    type(sink).__name__,
                )

    async def drain(self) -> None:
        """Wait for every scheduled delivery (tests, shutdown)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
