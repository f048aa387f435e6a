"""Domain enumerations and state-transition rules."""

import enum


class RideStatus(str, enum.Enum):
    SEARCHING = "searching"
    REQUESTING_DRIVER = "requesting_driver"
    DRIVER_ACCEPTED = "driver_accepted"
    DRIVER_ARRIVED = "driver_arrived"
    IN_PROGRESS = "in_progress"
    PAYMENT_IN_PROGRESS = "payment_in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RideStatus.COMPLETED, RideStatus.CANCELLED})
ACTIVE_STATUSES = frozenset(set(RideStatus) - TERMINAL_STATUSES)

# Statuses in which the ride is still looking for (or waiting on) a driver
MATCHING_STATUSES = frozenset({RideStatus.SEARCHING, RideStatus.REQUESTING_DRIVER})

# Statuses a driver may cancel from (the ride goes back to matching)
DRIVER_CANCELLABLE_STATUSES = frozenset(
    {RideStatus.DRIVER_ACCEPTED, RideStatus.DRIVER_ARRIVED, RideStatus.IN_PROGRESS}
)


# State machine: maps current status -> set of valid next statuses
RIDE_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.SEARCHING: {
        RideStatus.REQUESTING_DRIVER,
        RideStatus.DRIVER_ACCEPTED,
        RideStatus.CANCELLED,
    },
    RideStatus.REQUESTING_DRIVER: {
        RideStatus.REQUESTING_DRIVER,  # offer declined, driver cleared
        RideStatus.DRIVER_ACCEPTED,
        RideStatus.CANCELLED,
    },
    RideStatus.DRIVER_ACCEPTED: {
        RideStatus.DRIVER_ARRIVED,
        RideStatus.REQUESTING_DRIVER,
        RideStatus.CANCELLED,
    },
    RideStatus.DRIVER_ARRIVED: {
        RideStatus.IN_PROGRESS,
        RideStatus.REQUESTING_DRIVER,
        RideStatus.CANCELLED,
    },
    RideStatus.IN_PROGRESS: {
        RideStatus.PAYMENT_IN_PROGRESS,
        RideStatus.REQUESTING_DRIVER,
        RideStatus.CANCELLED,
    },
    RideStatus.PAYMENT_IN_PROGRESS: {RideStatus.COMPLETED},
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELLED: set(),
}


class DriverAvailability(str, enum.Enum):
    AVAILABLE = "available"
    EN_ROUTE_TO_PICKUP = "en_route_to_pickup"
    WAITING_TO_PICKUP = "waiting_to_pickup"
    EN_ROUTE_TO_DROP_OFF = "en_route_to_drop_off"
    WAITING_FOR_PAYMENT = "waiting_for_payment"


class VehicleType(str, enum.Enum):
    MOTORCYCLE = "motorcycle"
    CAR = "car"
