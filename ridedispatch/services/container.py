"""
Wiring of the dispatch engine.

``build_services`` picks the Redis-backed or in-process adapters according to
``settings.backend`` and hands the same instances to the lifecycle
controller, the dispatcher and the driver presence service.  The API and the
worker receive a ``DispatchServices`` instead of reaching for module-level
connections.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridedispatch.config import Settings, settings as default_settings
from ridedispatch.infrastructure.database import async_session_factory
from ridedispatch.infrastructure.driver_index import RedisDriverIndex
from ridedispatch.infrastructure.job_queue import RedisMatchJobQueue
from ridedispatch.infrastructure.locks import RedisReservations
from ridedispatch.infrastructure.memory import (
    InMemoryDriverIndex,
    InMemoryMatchJobQueue,
    InMemoryReservations,
)
from ridedispatch.infrastructure.redis_client import get_redis
from ridedispatch.services.dispatcher import Dispatcher
from ridedispatch.services.drivers import DriverPresence
from ridedispatch.services.lifecycle import RideLifecycle
from ridedispatch.services.notifications import (
    LoggingNotifier,
    NotificationFanout,
    NotificationSink,
    RedisBroadcastNotifier,
)

logger = logging.getLogger(__name__)


@dataclass
class DispatchServices:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    driver_index: Any
    reservations: Any
    job_queue: Any
    notifier: NotificationFanout
    lifecycle: RideLifecycle
    dispatcher: Dispatcher
    drivers: DriverPresence
    redis: Optional[aioredis.Redis] = None

    async def close(self) -> None:
        await self.notifier.drain()
        if self.redis is not None:
            await self.redis.aclose()


async def build_services(
    settings: Settings = default_settings,
    *,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    sinks: Optional[Iterable[NotificationSink]] = None,
    clock: Callable[[], float] = time.time,
) -> DispatchServices:
    session_factory = session_factory or async_session_factory
    redis: Optional[aioredis.Redis] = None

    if settings.backend == "memory":
        driver_index = InMemoryDriverIndex(resolution=settings.h3_resolution)
        reservations = InMemoryReservations(clock=clock)
        job_queue = InMemoryMatchJobQueue(
            visibility_seconds=settings.job_visibility_seconds, clock=clock
        )
        default_sinks: list[NotificationSink] = [LoggingNotifier()]
    else:
        redis = await get_redis()
        driver_index = RedisDriverIndex(redis)
        reservations = RedisReservations(redis)
        job_queue = RedisMatchJobQueue(
            redis, visibility_seconds=settings.job_visibility_seconds, clock=clock
        )
        default_sinks = [RedisBroadcastNotifier(redis)]

    notifier = NotificationFanout(default_sinks if sinks is None else sinks)
    shared = dict(
        session_factory=session_factory,
        driver_index=driver_index,
        reservations=reservations,
        job_queue=job_queue,
        notifier=notifier,
        settings=settings,
        clock=clock,
    )
    lifecycle = RideLifecycle(**shared)
    dispatcher = Dispatcher(lifecycle=lifecycle, **shared)
    drivers = DriverPresence(
        session_factory=session_factory, driver_index=driver_index, settings=settings
    )
    logger.info("Dispatch services built (backend=%s)", settings.backend)

    return DispatchServices(
        settings=settings,
        session_factory=session_factory,
        driver_index=driver_index,
        reservations=reservations,
        job_queue=job_queue,
        notifier=notifier,
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        drivers=drivers,
        redis=redis,
    )
