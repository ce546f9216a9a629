# services/payments/errors.py
"""
Error taxonomy shared by stores, gateways and blueprints.
Each class carries the HTTP status the app-level error handler renders.
"""


class PaymentError(Exception):
    http_status = 500

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context = context


class NotFound(PaymentError):
    http_status = 404


class ValidationFailed(PaymentError):
    http_status = 400


class PermissionDenied(PaymentError):
    http_status = 403


class AuthenticationFailed(PaymentError):
    http_status = 401


class GatewayUnavailable(PaymentError):
    """Network error, timeout or non-2xx from an external processor."""
    http_status = 502

    def __init__(self, message: str = "", *, timed_out: bool = False, **context):
        super().__init__(message, **context)
        self.timed_out = timed_out


class Internal(PaymentError):
    http_status = 500
