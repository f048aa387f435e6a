"""
Seed script -- populates the database and driver index with sample data.

Run after migrations:
    python seed.py

Creates:
  - 6 sample riders
  - 10 sample drivers (motorcycles and cars) around central Jakarta,
    with their positions pushed into the geospatial driver index
"""

import asyncio

from sqlalchemy import text

from ridedispatch.config import settings
from ridedispatch.domain.entities import Coordinates
from ridedispatch.domain.enums import VehicleType
from ridedispatch.infrastructure.database import async_session_factory, engine
from ridedispatch.infrastructure.repositories import DriverRepository, RiderRepository
from ridedispatch.services.container import build_services


RIDERS = [
    "Budi Santoso",
    "Siti Rahayu",
    "Agus Wijaya",
    "Dewi Lestari",
    "Rizky Pratama",
    "Putri Anggraini",
]

DRIVERS = [
    # Motorcycles
    {"name": "Andi Saputra", "vehicle_type": VehicleType.MOTORCYCLE, "lng": 106.8290, "lat": -6.1630},
    {"name": "Joko Susilo", "vehicle_type": VehicleType.MOTORCYCLE, "lng": 106.8450, "lat": -6.1850},
    {"name": "Eko Prasetyo", "vehicle_type": VehicleType.MOTORCYCLE, "lng": 106.8120, "lat": -6.1900},
    {"name": "Hendra Gunawan", "vehicle_type": VehicleType.MOTORCYCLE, "lng": 106.8300, "lat": -6.1400},
    {"name": "Wahyu Hidayat", "vehicle_type": VehicleType.MOTORCYCLE, "lng": 106.8000, "lat": -6.2200},
    {"name": "Yusuf Maulana", "vehicle_type": VehicleType.MOTORCYCLE, "lng": 106.8650, "lat": -6.2000},
    # Cars
    {"name": "Bambang Kurniawan", "vehicle_type": VehicleType.CAR, "lng": 106.8230, "lat": -6.1700},
    {"name": "Fajar Nugroho", "vehicle_type": VehicleType.CAR, "lng": 106.8400, "lat": -6.1650},
    {"name": "Irfan Hakim", "vehicle_type": VehicleType.CAR, "lng": 106.8100, "lat": -6.2050},
    {"name": "Slamet Riyadi", "vehicle_type": VehicleType.CAR, "lng": 106.8700, "lat": -6.1500},
]


async def seed():
    services = await build_services(settings)
    try:
        async with async_session_factory() as session:
            # Check if already seeded
            result = await session.execute(text("SELECT count(*) FROM riders"))
            if result.scalar() > 0:
                print("Database already seeded. Skipping.")
                return

            # ── Riders ────────────────────────────────────────────────
            riders = RiderRepository(session)
            for name in RIDERS:
                await riders.create(name=name)
            print(f"  Created {len(RIDERS)} riders")

            # ── Drivers ───────────────────────────────────────────────
            drivers = DriverRepository(session)
            created = []
            for d in DRIVERS:
                driver = await drivers.create(name=d["name"], vehicle_type=d["vehicle_type"])
                created.append((driver, Coordinates(d["lng"], d["lat"])))
            await session.commit()
            print(f"  Created {len(created)} drivers")

        # ── Positions ─────────────────────────────────────────────────
        for driver, position in created:
            await services.drivers.update_location(driver.id, position)
        print(f"  Indexed {len(created)} driver positions")

        print("\nSeed complete!")
    finally:
        await services.close()


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
