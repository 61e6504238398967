from typing import Optional


class PaymentError(Exception):
    """Base class for everything the payment flow surfaces to the user."""

    user_message = "Something went wrong with your payment. Please try again."

    def __init__(self, message: str = "", *, reference: Optional[str] = None):
        super().__init__(message or self.user_message)
        self.reference = reference


class ValidationError(PaymentError):
    """Missing or malformed payer details; raised before any network call."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


class GatewayUnavailable(PaymentError):
    user_message = "Payment system not loaded. Please refresh the page and try again."


class InitiationError(PaymentError):
    """The remote service rejected (or garbled) the initiation call."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, reference: Optional[str] = None):
        super().__init__(message, reference=reference)
        self.status_code = status_code


class NetworkError(PaymentError):
    """Transient transport failure. Polling retries it on the next tick."""

    user_message = "Network error. Please check your connection and try again."


class PaymentFailed(PaymentError):
    user_message = "Payment failed. Please try again."


class PaymentTimedOut(PaymentError):
    user_message = "Payment check timed out. If you completed payment, please contact support."


class DeliveryError(PaymentError):
    """The artifact could not be fetched or saved after a successful payment."""

    user_message = "Failed to download CV. Please contact support."


class StorageUnavailable(PaymentError):
    """The pending record could not be written, so control cannot safely leave the application."""

    user_message = "Could not save your payment details. Please try again in a moment."
