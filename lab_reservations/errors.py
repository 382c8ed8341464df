# errors.py
from fastapi import status


class ReservationError(Exception):
    """Base class for failures reported back to the caller."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ReservationError):
    status_code = status.HTTP_400_BAD_REQUEST


class ConflictError(ReservationError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str, conflicting_reservation_id=None):
        super().__init__(message)
        self.conflicting_reservation_id = conflicting_reservation_id


class Unauthorized(ReservationError):
    status_code = status.HTTP_401_UNAUTHORIZED


class Forbidden(Unauthorized):
    """Authenticated, but lacking the required role."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFound(ReservationError):
    status_code = status.HTTP_404_NOT_FOUND


class InvalidStatus(ReservationError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidTransition(ReservationError):
    status_code = status.HTTP_409_CONFLICT


class TransportFailure(Exception):
    """A side effect (email, notification, broadcast) could not be delivered.

    Never surfaced as the primary operation's failure.
    """
