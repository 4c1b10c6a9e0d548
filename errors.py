"""
Error taxonomy for the trip lifecycle.

Every error carries a human-readable message, a stable code and the HTTP status the
API layer answers with. Nothing outside this hierarchy should reach a client.
"""


class FleetError(Exception):
    status_code = 400
    code = "fleet_error"
    default_message = "Request could not be completed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# Validation errors: caller-correctable, no retry

class ValidationFailure(FleetError):
    code = "validation_failed"


class AssignmentError(ValidationFailure):
    """A trip cannot be assigned with the requested parcels, driver and vehicle."""
    code = "assignment_failed"


class ParcelAlreadyAssigned(AssignmentError):
    status_code = 409
    code = "parcel_already_assigned"
    default_message = "One or more parcels are already assigned to a trip"


class DriverUnavailable(AssignmentError):
    status_code = 409
    code = "driver_unavailable"
    default_message = "Driver is not available for a new trip"


class VehicleInsufficientCapacity(AssignmentError):
    code = "vehicle_insufficient_capacity"
    default_message = "Vehicle capacity is lower than the total parcel weight"


class VehicleUnavailable(AssignmentError):
    status_code = 409
    code = "vehicle_unavailable"
    default_message = "Vehicle is not available for a new trip"


class DriverNotEligible(ValidationFailure):
    status_code = 409
    code = "driver_not_eligible"
    default_message = "Selected driver can no longer take this trip, pick another driver"


class InvalidDestination(ValidationFailure):
    code = "invalid_destination"
    default_message = "Every parcel needs exactly one delivery destination"


class InvalidLocation(ValidationFailure):
    code = "invalid_location"
    default_message = "Coordinates are out of range"


# State errors: the client is looking at stale data

class StateError(FleetError):
    status_code = 409
    code = "state_error"


class InvalidTransition(StateError):
    code = "invalid_transition"
    default_message = "This trip has changed, refresh and try again"


class IncompleteDelivery(StateError):
    code = "incomplete_delivery"
    default_message = "All parcels must be delivered before the trip can be completed"


class NotFound(FleetError):
    status_code = 404
    code = "not_found"
    default_message = "Record not found"


# Transient errors

class TransientError(FleetError):
    status_code = 503
    code = "try_again"
    default_message = "Service temporarily unavailable, please try again"


class StoreUnavailable(TransientError):
    code = "store_unavailable"
    default_message = "Database is not available, please try again"
