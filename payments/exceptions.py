class PaymentError(Exception):
    """Base class for donation/payment failures."""

    status_code = 400


class InvalidPhoneNumber(PaymentError):
    pass


class InvalidAmount(PaymentError):
    pass


class DonationNotFound(PaymentError):
    status_code = 404


class ProviderError(PaymentError):
    """The payment provider could not be reached or refused the request."""

    status_code = 502

    def __init__(self, message, response=None):
        super().__init__(message)
        self.response = response or {}


class SignatureError(PaymentError):
    status_code = 403


class ProjectNotFound(PaymentError):
    status_code = 404


class DonationAlreadySettled(PaymentError):
    status_code = 409
