"""Unit tests for the ride state machine and the match attempt value object."""

from datetime import datetime, timezone

import pytest

from ridedispatch.domain.entities import (
    Coordinates,
    MatchAttempt,
    MatchJob,
    Ride,
    RideDraft,
    job_key,
    reservation_token,
)
from ridedispatch.domain.enums import (
    ACTIVE_STATUSES,
    RIDE_TRANSITIONS,
    TERMINAL_STATUSES,
    RideStatus,
    VehicleType,
)
from ridedispatch.domain.errors import ValidationError
from tests.conftest import ride_fields


class TestRideStateMachine:
    def test_initial_status_is_searching(self):
        ride = Ride()
        assert ride.status == RideStatus.SEARCHING

    # ── Valid transitions ─────────────────────────────────────────

    @pytest.mark.parametrize(
        "current, new",
        [
            (RideStatus.SEARCHING, RideStatus.REQUESTING_DRIVER),
            (RideStatus.SEARCHING, RideStatus.CANCELLED),
            (RideStatus.REQUESTING_DRIVER, RideStatus.REQUESTING_DRIVER),
            (RideStatus.REQUESTING_DRIVER, RideStatus.DRIVER_ACCEPTED),
            (RideStatus.DRIVER_ACCEPTED, RideStatus.DRIVER_ARRIVED),
            (RideStatus.DRIVER_ARRIVED, RideStatus.IN_PROGRESS),
            (RideStatus.IN_PROGRESS, RideStatus.PAYMENT_IN_PROGRESS),
            (RideStatus.PAYMENT_IN_PROGRESS, RideStatus.COMPLETED),
            (RideStatus.IN_PROGRESS, RideStatus.REQUESTING_DRIVER),
        ],
    )
    def test_allowed(self, current, new):
        assert Ride(status=current).can_transition_to(new)

    # ── Invalid transitions ───────────────────────────────────────

    @pytest.mark.parametrize(
        "current, new",
        [
            (RideStatus.SEARCHING, RideStatus.IN_PROGRESS),
            (RideStatus.DRIVER_ACCEPTED, RideStatus.COMPLETED),
            (RideStatus.PAYMENT_IN_PROGRESS, RideStatus.CANCELLED),
            (RideStatus.COMPLETED, RideStatus.CANCELLED),
            (RideStatus.CANCELLED, RideStatus.SEARCHING),
        ],
    )
    def test_rejected(self, current, new):
        assert not Ride(status=current).can_transition_to(new)

    def test_terminal_states_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert RIDE_TRANSITIONS[status] == set()
            assert status.is_terminal

    def test_every_status_has_a_rule(self):
        assert set(RIDE_TRANSITIONS) == set(RideStatus)
        assert ACTIVE_STATUSES | TERMINAL_STATUSES == set(RideStatus)


class TestMatchAttempt:
    def test_declined_driver_is_appended_once(self):
        attempt = MatchAttempt().with_declined(7).with_declined(7)
        assert attempt.attempted_drivers == (7,)
        assert attempt.retry_count == 2

    def test_declines_never_drop_earlier_entries(self):
        attempt = MatchAttempt()
        for driver_id in (3, 1, 2):
            previous = attempt.attempted_drivers
            attempt = attempt.with_declined(driver_id)
            assert attempt.attempted_drivers[: len(previous)] == previous
        assert attempt.attempted_drivers == (3, 1, 2)

    def test_offer_fields_are_stripped_before_reuse(self):
        expires = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        attempt = MatchAttempt(message_data={"vehicle_type": "car"}).with_offer(
            expires_at=expires, distance_km=2.04567
        )
        assert attempt.message_data["type"] == "NEW_RIDE_REQUEST"
        assert attempt.message_data["distance_to_pickup_km"] == 2.046
        assert attempt.offer_expires_at == expires

        declined = attempt.with_declined(1)
        assert declined.message_data == {"vehicle_type": "car"}
        assert declined.offer_expires_at is None

    def test_job_carries_attempted_drivers(self):
        attempt = MatchAttempt(
            retry_count=2, attempted_drivers=(4, 9), message_data={"vehicle_type": "car"}
        )
        job = attempt.job_for(12)
        assert job.key == "ride_match_12_retry_2"
        assert job.attempted_drivers == (4, 9)
        assert job.vehicle_type == VehicleType.CAR


class TestMatchJobKeys:
    def test_key_round_trip(self):
        job = MatchJob.from_queue(job_key(31, 4), {"a": 1})
        assert (job.ride_id, job.retry_count) == (31, 4)

    def test_malformed_key(self):
        with pytest.raises(ValueError):
            MatchJob.from_queue("ride_31", {})

    def test_reservation_token_is_per_attempt(self):
        assert reservation_token(5, 0) != reservation_token(5, 1)


class TestRideDraft:
    def test_valid_fields(self):
        draft = RideDraft.from_fields(1, ride_fields(vehicle_type="car"))
        assert draft.vehicle_type == VehicleType.CAR
        assert draft.pickup.coords == Coordinates(106.827, -6.175)
        data = draft.message_data()
        assert data["pickup"]["coords"] == [106.827, -6.175]
        assert data["fare"] == 18_000

    def test_missing_fields_are_listed(self):
        fields = ride_fields()
        del fields["fare"]
        fields["planned_pickup_address"] = None
        with pytest.raises(ValidationError) as exc_info:
            RideDraft.from_fields(1, fields)
        assert exc_info.value.code == "MISSING_FIELDS"
        assert exc_info.value.details["missing"] == ["fare", "planned_pickup_address"]

    @pytest.mark.parametrize(
        "coords",
        [[106.8], "106.8,-6.1", [106.8, "x"], [200.0, 0.0], [0.0, -91.0], [True, 1.0]],
    )
    def test_malformed_coordinates(self, coords):
        with pytest.raises(ValidationError) as exc_info:
            RideDraft.from_fields(1, ride_fields(planned_dropoff_coords=coords))
        assert exc_info.value.code == "INVALID_COORDS"
        assert exc_info.value.details == {"field": "planned_dropoff_coords"}

    def test_unknown_vehicle_type(self):
        with pytest.raises(ValidationError) as exc_info:
            RideDraft.from_fields(1, ride_fields(vehicle_type="helicopter"))
        assert exc_info.value.code == "INVALID_VEHICLE_TYPE"
