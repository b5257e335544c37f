"""Closed error taxonomy for the payments app.

Gateway clients translate provider-specific failures into one of the three
``GatewayError`` subclasses; nothing above the integrations layer ever sees a
``requests`` exception or a provider error body.
"""


class PaymentError(Exception): pass


class GatewayError(PaymentError):
    def __init__(self, message="", gateway=None):
        super().__init__(message)
        self.gateway = gateway


class GatewayUnavailable(GatewayError):
    """Gateway not configured, disabled, or refusing our credentials."""


class GatewayTransient(GatewayError):
    """Retryable: timeout, network error, 429/5xx."""


class GatewayRejected(GatewayError):
    """The provider rejected the request itself; retrying elsewhere won't help."""


class InvalidSignature(PaymentError): pass


class Conflict(PaymentError):
    """A concurrent writer changed the row between our read and conditional write."""


class NoGatewayAvailable(PaymentError): pass


class RefundNotAllowed(PaymentError): pass


class RefundExceedsBalance(RefundNotAllowed): pass


class InvalidTransition(PaymentError):
    """Requested status change is not reachable from the row's current status."""

    def __init__(self, source, target):
        super().__init__(f"{source} -> {target}")
        self.source = source
        self.target = target


class TrancheNotPayable(PaymentError):
    """Tranche is paid, missed, or already has an order in flight."""
