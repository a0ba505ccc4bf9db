"""
Error taxonomy for the tracking engine.
Each error carries the HTTP status the API layer responds with.
"""
from typing import Optional


class FieldTrackError(Exception):
    status_code = 500
    default_detail = "Internal error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class InvalidCoordinates(FieldTrackError):
    status_code = 400
    default_detail = "Invalid coordinates"


class TeamNotFound(FieldTrackError):
    status_code = 404
    default_detail = "Team not found"


class RecordNotFound(FieldTrackError):
    """No location/route record yet. Reads treat this as offline, not as a fault."""
    status_code = 404
    default_detail = "No record found"


class ConcurrencyConflict(FieldTrackError):
    status_code = 409
    default_detail = "Record was modified concurrently, retry the request"


class CollaboratorUnavailable(FieldTrackError):
    status_code = 503
    default_detail = "Task collaborator unavailable"


class InvalidRouteTransition(FieldTrackError):
    status_code = 409
    default_detail = "Invalid route transition"
