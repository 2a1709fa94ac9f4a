"""Error taxonomy for the series engine, rendered as JSON by the app error handler."""

from typing import Any, Optional

REASON_NOT_FOUND = "notFound"
REASON_BAD_REQUEST = "badRequest"
REASON_FORBIDDEN = "forbidden"
REASON_CONFLICT = "conflict"
REASON_OVERLAP = "overlap"
REASON_INTERNAL = "internalError"


class SeriesError(Exception):
    """Base class for every error the engine surfaces to a caller."""

    status_code = 400
    reason = REASON_BAD_REQUEST

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        data = {'error': self.message, 'reason': self.reason}
        data.update(self.details)
        return data


class NotFound(SeriesError):
    """Entity missing or not owned by the caller. The two cases are never told apart."""

    status_code = 404
    reason = REASON_NOT_FOUND

    def __init__(self, message: str = "Not found", resource_type: Optional[str] = None):
        if resource_type:
            message = f"{resource_type} not found"
        super().__init__(message)


class BadRequest(SeriesError):
    status_code = 400
    reason = REASON_BAD_REQUEST


class Forbidden(SeriesError):
    status_code = 403
    reason = REASON_FORBIDDEN


class Conflict(SeriesError):
    """A concurrent writer changed the row first, or a proposed range overlaps."""

    status_code = 409
    reason = REASON_CONFLICT


class OverlapConflict(Conflict):
    reason = REASON_OVERLAP

    def __init__(self, message: str, overlaps):
        super().__init__(message, details={
            'conflict_warning': True,
            'conflicts': [occ.to_dict() for occ in overlaps],
        })
        self.overlaps = list(overlaps)


class InternalError(SeriesError):
    """Storage failure part-way through an operation."""

    status_code = 500
    reason = REASON_INTERNAL
