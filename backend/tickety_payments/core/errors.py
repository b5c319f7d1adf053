"""Error taxonomy for payment and ticketing operations

Every error carries the HTTP status it maps to and a message that is safe to
show to the caller. The FastAPI handler in ``main.py`` renders them as
``{"error": message}``.
"""


class PaymentError(Exception):
    """Base class for errors surfaced to API callers"""
    status_code = 400
    default_message = "Request could not be processed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(PaymentError):
    status_code = 401
    default_message = "Not authenticated. Please log in."


class NotFound(PaymentError):
    status_code = 404
    default_message = "Not found"


class ValidationFailed(PaymentError):
    status_code = 400
    default_message = "Invalid request"


class PriceMismatch(ValidationFailed):
    default_message = "Price mismatch. Please refresh and try again."


class SelfPurchase(ValidationFailed):
    default_message = "You cannot purchase your own listing"


class SellerNotPayable(ValidationFailed):
    default_message = "Seller has not set up payouts yet"


class Forbidden(PaymentError):
    status_code = 403
    default_message = "You do not have permission to perform this action"


class Conflict(PaymentError):
    status_code = 409
    default_message = "Conflict"


class ListingUnavailable(Conflict):
    default_message = "This listing is no longer available"


class Gone(PaymentError):
    status_code = 410
    default_message = "This link has expired"


class UpstreamFailure(PaymentError):
    """Payment provider call failed

    ``retryable`` is True for timeouts and connection errors, where the
    provider may or may not have applied the request. Definitive rejections
    (card declined, invalid request) are not retryable.
    """
    status_code = 500
    default_message = "Payment provider error"

    def __init__(self, message: str = None, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable
