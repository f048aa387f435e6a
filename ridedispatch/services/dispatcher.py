"""
Dispatcher
==========

Consumes one match job at a time and drives the ride it refers to.

Per job
-------
1. **Staleness**   -- the job is only acted on while the ride is still
   matching *and* on the job's ``retry_count``.  A ride that moved past the
   attempt (or ended) makes the job a no-op; a job *ahead* of the ride is
   either waiting for its creating transaction to commit or an orphan of a
   failed one, so it is re-checked a few times before being dropped.
2. **Outstanding offer** -- if the ride already has a candidate, the job is
   the offer's timer: past the deadline it expires the offer through the
   same code path as a rejection; before it, the job waits.
3. **Search**      -- nearest eligible candidates from the driver index.
4. **Reserve**     -- walk the candidates nearest-first; the first one whose
   reservation (``SET NX``) succeeds and who is still ``available`` in the
   store gets the offer.  The ride update is a compare-and-swap on status,
   ``retry_count`` and "no driver assigned".
5. **Exhaustion**  -- nothing left outside ``attempted_drivers``: the ride is
   cancelled with "No driver available.".
6. **Contention**  -- candidates exist but all are reserved elsewhere or
   busy: retry shortly, a bounded number of times, then exhaust.

Infrastructure failures never mark the ride failed: the job goes back to
the queue with a linear backoff.
"""

from __future__ import annotations

import enum
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridedispatch.config import Settings
from ridedispatch.domain.entities import MatchJob, Ride, reservation_token
from ridedispatch.domain.enums import MATCHING_STATUSES, RideStatus
from ridedispatch.domain.errors import Conflict, DependencyFailure
from ridedispatch.domain.matching import Candidate, eligible_candidates
from ridedispatch.infrastructure.repositories import (
    DriverRepository,
    RideRepository,
    commit,
)
from ridedispatch.services.lifecycle import NO_DRIVER_REASON, RideLifecycle
from ridedispatch.services.notifications import (
    MessageType,
    Notification,
    NotificationFanout,
)
from ridedispatch.services.retry import after_commit

logger = logging.getLogger(__name__)


class DispatchOutcome(str, enum.Enum):
    OFFERED = "offered"
    TIMED_OUT = "timed_out"
    EXHAUSTED = "exhausted"
    CONTENDED = "contended"
    WAITING = "waiting"
    STALE = "stale"
    RETRY = "retry"


class Dispatcher:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        driver_index,
        reservations,
        job_queue,
        notifier: NotificationFanout,
        lifecycle: RideLifecycle,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.session_factory = session_factory
        self.driver_index = driver_index
        self.reservations = reservations
        self.job_queue = job_queue
        self.notifier = notifier
        self.lifecycle = lifecycle
        self.settings = settings
        self.clock = clock

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    # ── Public API ────────────────────────────────────────────────────

    async def process_next(self) -> bool:
        """Pull one due job and process it.  Returns False if none was due."""
        job = await self.job_queue.dequeue()
        if job is None:
            return False
        await self.process(job)
        return True

    async def process(self, job: MatchJob) -> DispatchOutcome:
        try:
            outcome = await self._process(job)
        except DependencyFailure as exc:
            failures = int(job.payload.get("failures", 0)) + 1
            delay = self.settings.dependency_retry_backoff_seconds * failures
            logger.warning(
                "Match job %s hit %s; retrying in %.1fs", job.key, exc.message, delay
            )
            try:
                await self.job_queue.defer(
                    job.key, delay, payload={**job.payload, "failures": failures}
                )
            except DependencyFailure:
                # The delivery lease runs out and the job is redelivered
                logger.exception("Could not requeue match job %s", job.key)
            return DispatchOutcome.RETRY

        logger.debug("Match job %s: %s", job.key, outcome.value)
        return outcome

    # ── Internals ─────────────────────────────────────────────────────

    async def _process(self, job: MatchJob) -> DispatchOutcome:
        async with self.session_factory() as session:
            ride = await RideRepository(session).get(job.ride_id)

        if ride is not None and ride.status.is_terminal:
            await self.job_queue.cancel(job.key)
            return DispatchOutcome.STALE

        if ride is None or ride.match_attempt.retry_count < job.retry_count:
            return await self._recheck_later(job)

        if (
            ride.status not in MATCHING_STATUSES
            or ride.match_attempt.retry_count > job.retry_count
        ):
            await self.job_queue.cancel(job.key)
            return DispatchOutcome.STALE

        if ride.driver_id is not None:
            return await self._await_response(job, ride)

        candidates = await self.driver_index.nearby(
            ride.vehicle_type,
            ride.planned_pickup.coords,
            self.settings.matching_radius_km,
            self.settings.matching_max_candidates,
        )
        eligible = eligible_candidates(candidates, ride.match_attempt.attempted_drivers)
        if not eligible:
            return await self._exhaust(job, ride)

        for candidate in eligible:
            offered = await self._try_offer(job, ride, candidate)
            if offered is not None:
                return offered

        return await self._contended(job, ride)

    async def _recheck_later(self, job: MatchJob) -> DispatchOutcome:
        checks = int(job.payload.get("pending_checks", 0))
        if checks >= self.settings.max_contention_retries:
            logger.warning("Dropping orphan match job %s", job.key)
            await self.job_queue.cancel(job.key)
            return DispatchOutcome.STALE
        await self.job_queue.defer(
            job.key,
            self.settings.worker_poll_interval_seconds,
            payload={**job.payload, "pending_checks": checks + 1},
        )
        return DispatchOutcome.WAITING

    async def _await_response(self, job: MatchJob, ride: Ride) -> DispatchOutcome:
        deadline = ride.match_attempt.offer_expires_at
        now = self.now()
        if deadline is not None and now < deadline:
            await self.job_queue.defer(job.key, (deadline - now).total_seconds())
            return DispatchOutcome.WAITING

        try:
            await self.lifecycle.expire_offer(
                ride.id, ride.driver_id, retry_count=job.retry_count
            )
        except Conflict:
            # Driver answered (or rider cancelled) in the meantime
            await self.job_queue.cancel(job.key)
            return DispatchOutcome.STALE
        return DispatchOutcome.TIMED_OUT

    async def _try_offer(
        self, job: MatchJob, ride: Ride, candidate: Candidate
    ) -> Optional[DispatchOutcome]:
        """
        Reserve *candidate* and record the offer.

        Returns None when the candidate is taken (reserved by another ride
        or no longer available), so the caller moves on to the next one.
        """
        token = reservation_token(ride.id, job.retry_count)
        ttl = self.settings.offer_timeout_seconds + self.settings.reservation_grace_seconds
        if not await self.reservations.acquire(candidate.driver_id, token, ttl):
            logger.debug("Driver %d is reserved, skipping", candidate.driver_id)
            return None

        try:
            updated = await self._record_offer(job, ride, candidate)
        except Conflict:
            await self._release(candidate.driver_id, token)
            await self.job_queue.cancel(job.key)
            return DispatchOutcome.STALE
        except DependencyFailure:
            await self._release(candidate.driver_id, token)
            raise

        if updated is None:
            await self._release(candidate.driver_id, token)
            return None

        logger.info(
            "Ride %d offered to driver %d (%.2f km, attempt %d)",
            ride.id,
            candidate.driver_id,
            candidate.distance_km,
            job.retry_count,
        )
        self.notifier.notify(
            Notification(
                "driver",
                candidate.driver_id,
                MessageType.NEW_RIDE_REQUEST,
                {
                    **updated.match_attempt.message_data,
                    "ride_id": ride.id,
                    "rider_id": ride.rider_id,
                },
            )
        )
        return DispatchOutcome.OFFERED

    async def _record_offer(
        self, job: MatchJob, ride: Ride, candidate: Candidate
    ) -> Optional[Ride]:
        timeout = self.settings.offer_timeout_seconds
        attempt = ride.match_attempt.with_offer(
            expires_at=self.now() + timedelta(seconds=timeout),
            distance_km=candidate.distance_km,
        )
        async with self.session_factory() as session:
            driver = await DriverRepository(session).get(candidate.driver_id)
            if (
                driver is None
                or not driver.is_available
                or driver.vehicle_type != ride.vehicle_type
            ):
                logger.debug("Driver %d is not available, skipping", candidate.driver_id)
                return None

            rides = RideRepository(session)
            # A lapsed reservation does not free a driver still holding an offer
            other = await rides.get_active_for_driver(candidate.driver_id)
            if other is not None and other.id != ride.id:
                logger.debug(
                    "Driver %d is assigned to ride %d, skipping", candidate.driver_id, other.id
                )
                return None

            updated = await rides.update_if_status(
                ride.id,
                MATCHING_STATUSES,
                {
                    "status": RideStatus.REQUESTING_DRIVER,
                    "driver_id": candidate.driver_id,
                    "message_data": attempt.message_data,
                },
                retry_count=job.retry_count,
                unassigned=True,
            )
            # The job stays queued as the offer's timer
            await self.job_queue.defer(job.key, timeout)
            await commit(session)
        return updated

    async def _exhaust(self, job: MatchJob, ride: Ride) -> DispatchOutcome:
        async with self.session_factory() as session:
            try:
                await RideRepository(session).update_if_status(
                    ride.id,
                    MATCHING_STATUSES,
                    {"status": RideStatus.CANCELLED, "status_reason": NO_DRIVER_REASON},
                    retry_count=job.retry_count,
                    unassigned=True,
                )
            except Conflict:
                await self.job_queue.cancel(job.key)
                return DispatchOutcome.STALE
            await commit(session)

        await after_commit(
            f"job removal for ride {ride.id}",
            lambda: self.job_queue.cancel(job.key),
            attempts=self.settings.dependency_retry_attempts,
            backoff_seconds=self.settings.dependency_retry_backoff_seconds,
        )
        logger.info(
            "Ride %d cancelled: no driver left after %d attempts",
            ride.id,
            len(ride.match_attempt.attempted_drivers),
        )
        self.notifier.notify(
            Notification.rider(
                ride.rider_id,
                MessageType.NO_DRIVER_AVAILABLE,
                ride_id=ride.id,
                status=RideStatus.CANCELLED.value,
                reason=NO_DRIVER_REASON,
            )
        )
        return DispatchOutcome.EXHAUSTED

    async def _contended(self, job: MatchJob, ride: Ride) -> DispatchOutcome:
        retries = int(job.payload.get("contention_retries", 0))
        if retries >= self.settings.max_contention_retries:
            return await self._exhaust(job, ride)
        await self.job_queue.defer(
            job.key,
            self.settings.contention_retry_delay_seconds,
            payload={**job.payload, "contention_retries": retries + 1},
        )
        logger.debug("Ride %d: every candidate is busy, retrying", ride.id)
        return DispatchOutcome.CONTENDED

    async def _release(self, driver_id: int, token: str) -> None:
        await after_commit(
            f"reservation release for driver {driver_id}",
            lambda: self.reservations.release(driver_id, token),
            attempts=self.settings.dependency_retry_attempts,
            backoff_seconds=self.settings.dependency_retry_backoff_seconds,
        )
