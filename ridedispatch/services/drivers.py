"""Driver presence: location ingestion into the geo index and nearby look-ups."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridedispatch.config import Settings
from ridedispatch.domain.entities import Coordinates, Driver
from ridedispatch.domain.enums import VehicleType
from ridedispatch.domain.errors import NotFound
from ridedispatch.domain.matching import Candidate
from ridedispatch.infrastructure.repositories import DriverRepository

logger = logging.getLogger(__name__)


class DriverPresence:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        driver_index,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.driver_index = driver_index
        self.settings = settings

    async def get_driver(self, driver_id: int) -> Driver:
        async with self.session_factory() as session:
            driver = await DriverRepository(session).get(driver_id)
        if driver is None:
            raise NotFound("Driver not found.", code="DRIVER_NOT_FOUND")
        return driver

    async def update_location(self, driver_id: int, position: Coordinates) -> bool:
        """
        Record a driver's position.  Only ``available`` drivers are
        searchable; anyone else is taken out of the index.

        Returns True when the driver is now in the index.
        """
        driver = await self.get_driver(driver_id)
        if driver.is_available:
            await self.driver_index.add(driver.vehicle_type, driver_id, position)
            return True
        await self.driver_index.remove(driver.vehicle_type, driver_id)
        logger.debug(
            "Driver %d is %s; kept out of the index",
            driver_id,
            driver.availability_status.value,
        )
        return False

    async def nearby(
        self,
        vehicle_type: VehicleType,
        point: Coordinates,
        radius_km: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> list[Candidate]:
        return await self.driver_index.nearby(
            vehicle_type,
            point,
            radius_km or self.settings.matching_radius_km,
            limit or self.settings.matching_max_candidates,
        )
