"""Error taxonomy for the booking engine.

Every error carries a short, human-readable ``reason`` that is safe to show to
the actor. Internal details (storage errors and the like) never go in here.
"""


class BookingError(Exception):
    status_code = 400
    default_reason = "Request could not be completed"

    def __init__(self, reason: str = None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)

    @property
    def code(self) -> str:
        return type(self).__name__


class InvalidRequest(BookingError):
    status_code = 400
    default_reason = "Invalid request"


class NotFound(BookingError):
    status_code = 404
    default_reason = "Not found"


class Unauthorized(BookingError):
    status_code = 403
    default_reason = "You are not allowed to do that"


class StaleState(BookingError):
    status_code = 409
    default_reason = "This booking has changed, please refresh"


class Conflict(BookingError):
    status_code = 409
    default_reason = "Bike unavailable for selected dates"


class PaymentIncomplete(BookingError):
    status_code = 409
    default_reason = "Payment has not been completed yet"


class PaymentFailed(BookingError):
    status_code = 402
    default_reason = "Payment failed, please start a new payment"


class AssessmentMissing(BookingError):
    status_code = 409
    default_reason = "Drop-off assessment has not been submitted"
