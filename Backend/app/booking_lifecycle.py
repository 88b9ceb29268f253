"""
Booking lifecycle state machine.

    pending   -> confirmed, cancelled
    confirmed -> seated, completed, cancelled, no_show
    seated    -> completed, cancelled
    completed, cancelled, no_show are terminal

Every status change in the service layer goes through transition(); direct
assignment to Booking.status outside this module is a bug.
"""

from .models import BLOCKING_STATUSES, Booking, BookingStatus


class BookingError(Exception):
    """Base class for booking domain errors."""

    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details
        super().__init__(message)


class BookingValidationError(BookingError):
    status_code = 400
    code = "INVALID_INPUT"


class SlotTakenError(BookingError):
    status_code = 409
    code = "SLOT_TAKEN"


class BookingStateError(BookingError):
    """The booking's current status does not allow the operation."""

    status_code = 409
    code = "STATE_CONFLICT"


class InvalidTransitionError(BookingStateError):
    def __init__(self, current: BookingStatus, target: BookingStatus):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move booking from '{current.value}' to '{target.value}'.",
            details={"current": current.value, "target": target.value},
        )


class GuestCheckoutDisabledError(BookingError):
    status_code = 403
    code = "GUEST_CHECKOUT_DISABLED"


ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset(
        {
            BookingStatus.SEATED,
            BookingStatus.COMPLETED,
            BookingStatus.CANCELLED,
            BookingStatus.NO_SHOW,
        }
    ),
    BookingStatus.SEATED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)
RESCHEDULABLE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED})

__all__ = [
    "ALLOWED_TRANSITIONS",
    "BLOCKING_STATUSES",
    "RESCHEDULABLE_STATUSES",
    "TERMINAL_STATUSES",
    "BookingError",
    "BookingStateError",
    "BookingValidationError",
    "GuestCheckoutDisabledError",
    "InvalidTransitionError",
    "SlotTakenError",
    "can_transition",
    "is_terminal",
    "transition",
]


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def is_terminal(status: BookingStatus) -> bool:
    return status in TERMINAL_STATUSES


def transition(booking: Booking, target: BookingStatus) -> BookingStatus:
    """Move booking to target, returning the previous status."""
    current = BookingStatus(booking.status)
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)
    booking.status = target
    return current
