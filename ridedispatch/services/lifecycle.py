"""
Ride Lifecycle Controller
=========================

Applies rider / driver actions as guarded state transitions.

Transition table
----------------
==========================  ===========  =====================  ==========================
from                        event        to                     driver availability
==========================  ===========  =====================  ==========================
(new)                       request      searching              --
searching/requesting        confirm      driver_accepted        en_route_to_pickup
requesting_driver           reject       requesting_driver      -- (decline_count + 1)
requesting_driver           timeout      requesting_driver      -- (+ missed_requests)
driver_accepted             arrive       driver_arrived         waiting_to_pickup
driver_arrived              pickup       in_progress            en_route_to_drop_off
in_progress                 dropoff      payment_in_progress    waiting_for_payment
payment_in_progress         payment      completed              available
searching/requesting        rider cancel cancelled              --
accepted/arrived/progress   driver cancel requesting / cancelled available
==========================  ===========  =====================  ==========================

Every operation runs in one store transaction whose status change is a
conditional update (see ``RideRepository.update_if_status``); confirmation
also claims the driver with a guarded update (``DriverRepository.claim``).
A failed guard raises ``Conflict`` and the session rolls back on exit, so a
losing racer leaves no trace: no counter bump, no job, no notification.

Side-effect ordering
--------------------
* Jobs that must exist for the new state are enqueued *before* commit.  If
  the commit then fails, the job refers to a ``retry_count`` the ride never
  reached and the worker drops it.
* Jobs and reservations made obsolete by the transition are removed
  *after* commit, with bounded retries.  If that fails the committed status
  already supersedes them.
* Notifications go out last, fire-and-forget.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridedispatch.config import Settings
from ridedispatch.domain.entities import (
    Coordinates,
    Ride,
    RideDraft,
    job_key,
    reservation_token,
)
from ridedispatch.domain.enums import (
    DRIVER_CANCELLABLE_STATUSES,
    MATCHING_STATUSES,
    DriverAvailability,
    RideStatus,
)
from ridedispatch.domain.errors import Conflict, DispatchError, NoCandidate, NotFound
from ridedispatch.domain.matching import eligible_candidates
from ridedispatch.infrastructure.repositories import (
    DriverRepository,
    RideRepository,
    RiderRepository,
    attempt_values,
    commit,
    point_values,
)
from ridedispatch.services.notifications import (
    MessageType,
    Notification,
    NotificationFanout,
)
from ridedispatch.services.retry import after_commit

logger = logging.getLogger(__name__)

NO_DRIVER_REASON = "No driver available."


class RideLifecycle:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        driver_index,
        reservations,
        job_queue,
        notifier: NotificationFanout,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.session_factory = session_factory
        self.driver_index = driver_index
        self.reservations = reservations
        self.job_queue = job_queue
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    # ── Creation ──────────────────────────────────────────────────────

    async def create_ride(self, rider_id: int, fields: Mapping[str, Any]) -> Ride:
        """
        Validate the request, check for nearby drivers and store a
        ``searching`` ride together with its first match job.

        Raises ``NoCandidate`` (and stores nothing) when no driver of the
        requested vehicle type is within range right now.
        """
        draft = RideDraft.from_fields(rider_id, fields)

        async with self.session_factory() as session:
            if await RiderRepository(session).get(rider_id) is None:
                raise NotFound("Rider not found.", code="RIDER_NOT_FOUND")

            rides = RideRepository(session)
            if await rides.get_active_for_rider(rider_id) is not None:
                raise Conflict(
                    "Rider currently has an active ride.", code="ACTIVE_RIDE_EXISTS"
                )

            candidates = await self.driver_index.nearby(
                draft.vehicle_type,
                draft.pickup.coords,
                self.settings.matching_radius_km,
                self.settings.matching_max_candidates,
            )
            if not candidates:
                raise NoCandidate("No drivers available nearby.")

            ride = await rides.insert(draft)
            job = ride.match_attempt.job_for(ride.id)
            await self.job_queue.enqueue(job)
            try:
                await commit(session)
            except DispatchError:
                await self._cleanup("orphan job removal", self.job_queue.cancel, job.key)
                raise

        logger.info(
            "Ride %d created for rider %d (%s, %d drivers nearby)",
            ride.id,
            rider_id,
            draft.vehicle_type.value,
            len(candidates),
        )
        return ride

    # ── Offer responses ───────────────────────────────────────────────

    async def confirm(self, ride_id: int, driver_id: int) -> Ride:
        async with self.session_factory() as session:
            ride = await RideRepository(session).update_if_status(
                ride_id,
                MATCHING_STATUSES,
                {"status": RideStatus.DRIVER_ACCEPTED},
                driver_id=driver_id,
            )
            await DriverRepository(session).claim(
                driver_id, DriverAvailability.EN_ROUTE_TO_PICKUP
            )
            await commit(session)

        retry_count = ride.match_attempt.retry_count
        await self._cleanup(
            f"job removal for ride {ride_id}",
            self.job_queue.cancel,
            job_key(ride_id, retry_count),
        )
        await self._cleanup(
            f"reservation release for driver {driver_id}",
            self.reservations.release,
            driver_id,
            reservation_token(ride_id, retry_count),
        )
        await self._cleanup(
            f"index removal for driver {driver_id}",
            self.driver_index.remove,
            ride.vehicle_type,
            driver_id,
        )

        logger.info("Ride %d confirmed by driver %d", ride_id, driver_id)
        self.notifier.notify(
            Notification.rider(
                ride.rider_id,
                MessageType.RIDE_CONFIRMED,
                ride_id=ride_id,
                driver_id=driver_id,
                status=ride.status.value,
            )
        )
        return ride

    async def reject(self, ride_id: int, driver_id: int) -> Ride:
        return await self._decline(ride_id, driver_id, missed=False)

    async def expire_offer(
        self, ride_id: int, driver_id: int, *, retry_count: Optional[int] = None
    ) -> Ride:
        """
        The offered driver did not answer in time.

        Takes exactly the rejection path; additionally counts a missed
        request.  ``retry_count`` pins the expiry to one particular offer so
        a late timer cannot decline a newer one.
        """
        return await self._decline(
            ride_id, driver_id, missed=True, retry_count=retry_count
        )

    async def _decline(
        self,
        ride_id: int,
        driver_id: int,
        *,
        missed: bool,
        retry_count: Optional[int] = None,
    ) -> Ride:
        async with self.session_factory() as session:
            rides = RideRepository(session)
            current = await rides.get(ride_id)
            if current is None:
                raise NotFound("Ride not found.", code="RIDE_NOT_FOUND")

            previous = current.match_attempt
            attempt = previous.with_declined(driver_id)
            ride = await rides.update_if_status(
                ride_id,
                {RideStatus.REQUESTING_DRIVER},
                {
                    "status": RideStatus.REQUESTING_DRIVER,
                    "driver_id": None,
                    **attempt_values(attempt),
                },
                driver_id=driver_id,
                retry_count=previous.retry_count if retry_count is None else retry_count,
            )
            await DriverRepository(session).record_decline(driver_id, missed=missed)
            await self.job_queue.enqueue(attempt.job_for(ride_id))
            await commit(session)

        await self._cleanup(
            f"job removal for ride {ride_id}",
            self.job_queue.cancel,
            job_key(ride_id, previous.retry_count),
        )
        await self._cleanup(
            f"reservation release for driver {driver_id}",
            self.reservations.release,
            driver_id,
            reservation_token(ride_id, previous.retry_count),
        )

        logger.info(
            "Ride %d %s by driver %d; re-matching as attempt %d",
            ride_id,
            "timed out" if missed else "rejected",
            driver_id,
            attempt.retry_count,
        )
        if missed:
            self.notifier.notify(
                Notification.driver(
                    driver_id, MessageType.OFFER_EXPIRED, ride_id=ride_id
                )
            )
        return ride

    # ── Trip progress ─────────────────────────────────────────────────

    async def mark_arrived(self, ride_id: int, driver_id: int) -> Ride:
        return await self._advance(
            ride_id,
            driver_id,
            source=RideStatus.DRIVER_ACCEPTED,
            target=RideStatus.DRIVER_ARRIVED,
            availability=DriverAvailability.WAITING_TO_PICKUP,
            message=MessageType.DRIVER_ARRIVED,
        )

    async def confirm_pickup(
        self, ride_id: int, driver_id: int, coords: Coordinates
    ) -> Ride:
        return await self._advance(
            ride_id,
            driver_id,
            source=RideStatus.DRIVER_ARRIVED,
            target=RideStatus.IN_PROGRESS,
            availability=DriverAvailability.EN_ROUTE_TO_DROP_OFF,
            message=MessageType.TRIP_STARTED,
            values={**point_values("actual_pickup", coords), "started_at": self.now()},
        )

    async def confirm_dropoff(
        self, ride_id: int, driver_id: int, coords: Coordinates
    ) -> Ride:
        return await self._advance(
            ride_id,
            driver_id,
            source=RideStatus.IN_PROGRESS,
            target=RideStatus.PAYMENT_IN_PROGRESS,
            availability=DriverAvailability.WAITING_FOR_PAYMENT,
            message=MessageType.TRIP_ENDED,
            values={**point_values("actual_dropoff", coords), "ended_at": self.now()},
        )

    async def confirm_payment(self, ride_id: int, driver_id: int) -> Ride:
        return await self._advance(
            ride_id,
            driver_id,
            source=RideStatus.PAYMENT_IN_PROGRESS,
            target=RideStatus.COMPLETED,
            availability=DriverAvailability.AVAILABLE,
            message=MessageType.RIDE_COMPLETED,
        )

    async def _advance(
        self,
        ride_id: int,
        driver_id: int,
        *,
        source: RideStatus,
        target: RideStatus,
        availability: DriverAvailability,
        message: MessageType,
        values: Optional[dict[str, Any]] = None,
    ) -> Ride:
        async with self.session_factory() as session:
            ride = await RideRepository(session).update_if_status(
                ride_id,
                {source},
                {"status": target, **(values or {})},
                driver_id=driver_id,
            )
            await DriverRepository(session).set_availability(driver_id, availability)
            await commit(session)

        logger.info("Ride %d: %s -> %s", ride_id, source.value, target.value)
        self.notifier.notify(
            Notification.rider(
                ride.rider_id,
                message,
                ride_id=ride_id,
                driver_id=driver_id,
                status=target.value,
            )
        )
        return ride

    # ── Cancellation ──────────────────────────────────────────────────

    async def cancel_by_rider(
        self, ride_id: int, rider_id: int, reason: Optional[str] = None
    ) -> Ride:
        async with self.session_factory() as session:
            ride = await RideRepository(session).update_if_status(
                ride_id,
                MATCHING_STATUSES,
                {
                    "status": RideStatus.CANCELLED,
                    "status_reason": reason or "Cancelled by rider.",
                },
                rider_id=rider_id,
            )
            await commit(session)

        retry_count = ride.match_attempt.retry_count
        await self._cleanup(
            f"job removal for ride {ride_id}",
            self.job_queue.cancel,
            job_key(ride_id, retry_count),
        )

        # An outstanding offer keeps its driver on the cancelled row
        offered_to = ride.driver_id
        if offered_to is not None:
            await self._cleanup(
                f"reservation release for driver {offered_to}",
                self.reservations.release,
                offered_to,
                reservation_token(ride_id, retry_count),
            )
            self.notifier.notify(
                Notification.driver(
                    offered_to,
                    MessageType.RIDE_CANCELLED_BY_RIDER,
                    ride_id=ride_id,
                    reason=ride.status_reason,
                )
            )

        logger.info("Ride %d cancelled by rider %d", ride_id, rider_id)
        return ride

    async def cancel_by_driver(
        self, ride_id: int, driver_id: int, reason: Optional[str] = None
    ) -> Ride:
        """
        The assigned driver drops an accepted ride.

        The ride goes back to ``requesting_driver`` with a fresh match job
        when another eligible driver is in range, otherwise it ends as
        ``cancelled``.
        """
        async with self.session_factory() as session:
            rides = RideRepository(session)
            current = await rides.get(ride_id)
            if current is None:
                raise NotFound("Ride not found.", code="RIDE_NOT_FOUND")

            attempt = current.match_attempt.with_declined(driver_id)
            candidates = await self.driver_index.nearby(
                current.vehicle_type,
                current.planned_pickup.coords,
                self.settings.matching_radius_km,
                self.settings.matching_max_candidates,
            )
            rematch = bool(eligible_candidates(candidates, attempt.attempted_drivers))

            values: dict[str, Any] = {"driver_id": None, **attempt_values(attempt)}
            if rematch:
                values.update(
                    status=RideStatus.REQUESTING_DRIVER,
                    status_reason=reason or "Cancelled by driver.",
                )
            else:
                values.update(status=RideStatus.CANCELLED, status_reason=NO_DRIVER_REASON)

            ride = await rides.update_if_status(
                ride_id,
                DRIVER_CANCELLABLE_STATUSES,
                values,
                driver_id=driver_id,
                retry_count=current.match_attempt.retry_count,
            )
            drivers = DriverRepository(session)
            await drivers.record_decline(driver_id)
            await drivers.set_availability(driver_id, DriverAvailability.AVAILABLE)
            if rematch:
                await self.job_queue.enqueue(attempt.job_for(ride_id))
            await commit(session)

        logger.info(
            "Ride %d dropped by driver %d; %s",
            ride_id,
            driver_id,
            "re-matching" if rematch else "no driver left, cancelled",
        )
        self.notifier.notify(
            Notification.rider(
                ride.rider_id,
                MessageType.RIDE_CANCELLED_BY_DRIVER,
                ride_id=ride_id,
                driver_id=driver_id,
                status=ride.status.value,
                reason=reason,
            )
        )
        return ride

    # ── Reads ─────────────────────────────────────────────────────────

    async def get_ride(self, ride_id: int) -> Ride:
        async with self.session_factory() as session:
            ride = await RideRepository(session).get(ride_id)
        if ride is None:
            raise NotFound("Ride not found.", code="RIDE_NOT_FOUND")
        return ride

    async def active_ride_for_rider(self, rider_id: int) -> Optional[Ride]:
        async with self.session_factory() as session:
            return await RideRepository(session).get_active_for_rider(rider_id)

    async def active_ride_for_driver(self, driver_id: int) -> Optional[Ride]:
        async with self.session_factory() as session:
            return await RideRepository(session).get_active_for_driver(driver_id)

    # ── Helpers ───────────────────────────────────────────────────────

    async def _cleanup(self, description: str, fn, *args) -> bool:
        return await after_commit(
            description,
            lambda: fn(*args),
            attempts=self.settings.dependency_retry_attempts,
            backoff_seconds=self.settings.dependency_retry_backoff_seconds,
        )
