import functools
import logging

from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class ParkingError(Exception):
    status_code = 500
    default_detail = "Unexpected error."
    default_code = "error"

    def __init__(self, detail=None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    @property
    def code(self):
        return self.default_code


class NotFound(ParkingError):
    status_code = 404
    default_detail = "Record not found."
    default_code = "not_found"


class Unauthorized(ParkingError):
    status_code = 403
    default_detail = "Not authorized to modify this record."
    default_code = "unauthorized"


class AlreadyEnded(ParkingError):
    status_code = 409
    default_detail = "Session already ended."
    default_code = "already_ended"


class AlreadyClaimed(ParkingError):
    status_code = 409
    default_detail = "Reward already claimed."
    default_code = "already_claimed"


class ActiveSessionExists(ParkingError):
    status_code = 409
    default_detail = "User already has an active parking session."
    default_code = "active_session_exists"


class SpotUnavailable(ParkingError):
    status_code = 409
    default_detail = "Parking spot is not available."
    default_code = "spot_unavailable"


class ValidationError(ParkingError):
    status_code = 422
    default_detail = "Invalid input."
    default_code = "validation_error"


class UpstreamFailure(ParkingError):
    status_code = 502
    default_detail = "Backing service failed."
    default_code = "upstream_failure"

    def __init__(self, detail=None, cause=None):
        super().__init__(detail)
        self.cause = cause


def upstream_guard(func):
    """Re-raise store driver errors from ``func`` as UpstreamFailure."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except PyMongoError as e:
            logger.error(f"Store error in {func.__qualname__}: {e}")
            raise UpstreamFailure(f"Document store error: {e}", cause=e) from e

    return wrapper
