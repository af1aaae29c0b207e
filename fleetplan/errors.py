"""
errors.py - Error taxonomy for fleetplan.

Every error carries the HTTP status the API answers with and a short
``kind`` string that clients can branch on without parsing the message.
"""


class FleetError(Exception):
    status = 400
    kind = "error"

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_body(self):
        return {"error": self.message, "kind": self.kind}


class ValidationError(FleetError):
    """Non-positive boards, bad durations, empty batches, bad time ranges."""
    status = 400
    kind = "validation"


class CapacityError(FleetError):
    """Boards exceed the target vehicle's capacity."""
    status = 409
    kind = "capacity"


class ConservationError(FleetError):
    """Assigned boards would exceed the request total."""
    status = 409
    kind = "conservation"


class NotFoundError(FleetError):
    status = 404
    kind = "not_found"


class StateError(FleetError):
    """Operation not allowed in the record's current state."""
    status = 409
    kind = "state"


class AuthenticationRequired(FleetError):
    status = 401
    kind = "unauthenticated"

    def __init__(self, message="Authentication required"):
        super().__init__(message)


class PermissionDenied(FleetError):
    status = 403
    kind = "forbidden"
