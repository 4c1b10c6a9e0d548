"""
Status registry.

The authoritative enumeration of states for drivers, vehicles, parcels, trips and
notifications, plus the trip transition table and the eligibility predicates the
lifecycle engine and the reassignment resolver share.
"""
from typing import Iterable, Optional

from errors import InvalidTransition

# Trip
TRIP_PENDING = "pending"
TRIP_ACCEPTED = "accepted"
TRIP_IN_PROGRESS = "in-progress"
TRIP_DECLINED = "declined"
TRIP_COMPLETED = "completed"

TRIP_STATUSES = (TRIP_PENDING, TRIP_ACCEPTED, TRIP_IN_PROGRESS, TRIP_DECLINED, TRIP_COMPLETED)
LIVE_TRIP_STATUSES = (TRIP_ACCEPTED, TRIP_IN_PROGRESS)
EDITABLE_TRIP_STATUSES = (TRIP_PENDING, TRIP_DECLINED)

# Single source of truth for trip transitions
TRIP_TRANSITIONS = {
    None: {TRIP_PENDING},  # creation
    TRIP_PENDING: {TRIP_ACCEPTED, TRIP_DECLINED},
    TRIP_ACCEPTED: {TRIP_IN_PROGRESS},
    TRIP_DECLINED: {TRIP_PENDING},  # reassignment
    TRIP_IN_PROGRESS: {TRIP_COMPLETED},
    TRIP_COMPLETED: set(),
}

# Driver
DRIVER_ACTIVE = "Active"
DRIVER_RESIGNED = "Resigned"

DRIVER_AVAILABLE = "available"
DRIVER_PENDING = "pending"
DRIVER_ACCEPTED = "Accepted"
DRIVER_ON_TRIP = "On-trip"

DRIVER_STATUSES = (DRIVER_AVAILABLE, DRIVER_PENDING, DRIVER_ACCEPTED, DRIVER_ON_TRIP)

# Vehicle
VEHICLE_ACTIVE = "Active"
VEHICLE_ON_TRIP = "On-trip"
VEHICLE_IN_SERVICE = "In-Service"
VEHICLE_SOLD = "Sold"

VEHICLE_STATUSES = (VEHICLE_ACTIVE, VEHICLE_ON_TRIP, VEHICLE_IN_SERVICE, VEHICLE_SOLD)

# Parcel
PARCEL_BOOKED = "Booked"
PARCEL_PENDING = "Pending"
PARCEL_CONFIRMED = "Confirmed"
PARCEL_IN_TRANSIT = "In Transit"
PARCEL_DELIVERED = "Delivered"
PARCEL_DECLINED_POOL = "Declined-pool"

PARCEL_STATUSES = (
    PARCEL_BOOKED, PARCEL_PENDING, PARCEL_CONFIRMED,
    PARCEL_IN_TRANSIT, PARCEL_DELIVERED, PARCEL_DECLINED_POOL,
)
# parcels that may be put on a new trip
UNASSIGNED_PARCEL_STATUSES = (PARCEL_BOOKED, PARCEL_DECLINED_POOL)
COMMITTED_PARCEL_STATUSES = (PARCEL_CONFIRMED, PARCEL_IN_TRANSIT, PARCEL_DELIVERED)

# Delivery destination
DESTINATION_PENDING = "pending"
DESTINATION_IN_TRANSIT = "in-transit"
DESTINATION_DELIVERED = "delivered"

DESTINATION_STATUSES = (DESTINATION_PENDING, DESTINATION_IN_TRANSIT, DESTINATION_DELIVERED)

DESTINATION_TO_PARCEL = {
    DESTINATION_IN_TRANSIT: PARCEL_IN_TRANSIT,
    DESTINATION_DELIVERED: PARCEL_DELIVERED,
}

# Notification
NOTIFY_TRIP_OFFER = "trip_offer"
NOTIFY_DRIVER_DECLINED = "driver_declined"
NOTIFY_INFO = "info"

NOTIFY_PENDING = "pending"
NOTIFY_ACCEPTED = "accepted"
NOTIFY_DECLINED = "declined"
NOTIFY_RESOLVED = "resolved"

RECIPIENT_DRIVER = "driver"
RECIPIENT_MANAGER = "manager"

ONGOING_IN_TRANSIT = "in-transit"


def validate_trip_transition(current_state: Optional[str], next_state: str) -> None:
    """
    Validate whether a trip transition is allowed.

    Raises InvalidTransition if invalid.
    """
    if current_state not in TRIP_TRANSITIONS:
        raise InvalidTransition(f"Unknown trip status: {current_state}")

    if next_state not in TRIP_TRANSITIONS[current_state]:
        raise InvalidTransition(
            f"Trip cannot move from {current_state or 'new'} to {next_state}"
        )


def eligible_driver_filter(exclude_driver_id=None) -> dict:
    """Store filter for drivers who can take a new trip offer right now."""
    flt = {
        "status": DRIVER_ACTIVE,
        "is_available": True,
        "driver_status": DRIVER_AVAILABLE,
    }
    if exclude_driver_id is not None:
        flt["_id"] = {"$ne": exclude_driver_id}
    return flt


def is_driver_eligible(driver: dict) -> bool:
    return (
        driver.get("status") == DRIVER_ACTIVE
        and driver.get("is_available") is True
        and driver.get("driver_status") == DRIVER_AVAILABLE
    )


def is_vehicle_assignable(vehicle: dict, trip_id: Optional[str] = None) -> bool:
    """Active and not reserved by another trip. `trip_id` may already hold it."""
    if vehicle.get("status") != VEHICLE_ACTIVE:
        return False
    holder = vehicle.get("current_trip_id")
    return holder is None or (trip_id is not None and holder == trip_id)


def delivery_progress(destinations: Iterable[dict]) -> float:
    destinations = list(destinations)
    if not destinations:
        return 0.0
    delivered = sum(1 for d in destinations if d.get("delivery_status") == DESTINATION_DELIVERED)
    return round(delivered / len(destinations) * 100, 2)


def all_delivered(destinations: Iterable[dict]) -> bool:
    destinations = list(destinations)
    return bool(destinations) and all(
        d.get("delivery_status") == DESTINATION_DELIVERED for d in destinations
    )
