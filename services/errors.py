"""
Typed failures raised by the service layer.

Every error carries an HTTP status, a stable machine code and a context dict
(measured distance, required radius, accuracy ...) so clients can render
actionable feedback. main.py registers a single handler for the base class.
"""
from typing import Any, Dict, Optional


class FieldTrackerError(Exception):
    status_code = 400
    code = "FIELD_TRACKER_ERROR"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        body.update(self.context)
        return body


class InvalidTransition(FieldTrackerError):
    code = "INVALID_TRANSITION"


class InvalidState(FieldTrackerError):
    code = "INVALID_STATE"


class AccuracyTooLow(FieldTrackerError):
    code = "ACCURACY_TOO_LOW"

    def __init__(self, accuracy: float, limit: float):
        super().__init__(
            f"GPS accuracy too low ({accuracy:.0f}m). Please wait for better signal "
            f"(required: {limit:.0f}m or better)",
            {"accuracy_m": accuracy, "limit_m": limit},
        )
        self.accuracy = accuracy
        self.limit = limit


class OutsideGeofence(FieldTrackerError):
    code = "OUTSIDE_GEOFENCE"

    def __init__(self, distance: float, radius: float):
        super().__init__(
            f"You are {round(distance)}m away from the location. "
            f"Must be within {round(radius)}m to check in.",
            {"distance_m": round(distance, 2), "radius_m": radius},
        )
        self.distance = distance
        self.radius = radius


class ProofIncomplete(FieldTrackerError):
    code = "PROOF_INCOMPLETE"

    def __init__(self, has_photo: bool, has_note: bool):
        missing = []
        if not has_photo:
            missing.append("a photo")
        if not has_note:
            missing.append("a note")
        super().__init__(
            f"Cannot check out without {' and '.join(missing)}",
            {"has_photo": has_photo, "has_note": has_note},
        )


class SessionAlreadyOpen(FieldTrackerError):
    status_code = 409
    code = "SESSION_ALREADY_OPEN"


class SessionNotFound(FieldTrackerError):
    status_code = 404
    code = "SESSION_NOT_FOUND"


class VisitNotFound(FieldTrackerError):
    status_code = 404
    code = "VISIT_NOT_FOUND"


class ClaimNotFound(FieldTrackerError):
    status_code = 404
    code = "CLAIM_NOT_FOUND"


class PolicyNotFound(FieldTrackerError):
    status_code = 404
    code = "POLICY_NOT_FOUND"


class Unauthorized(FieldTrackerError):
    status_code = 403
    code = "UNAUTHORIZED"


class InvalidApproval(FieldTrackerError):
    code = "INVALID_APPROVAL"


class ClaimLocked(FieldTrackerError):
    status_code = 409
    code = "CLAIM_LOCKED"
