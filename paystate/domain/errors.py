from __future__ import annotations


class PaymentError(Exception):
    """Base class for payment reconciliation errors."""


class ValidationError(PaymentError, ValueError):
    """Malformed input to pricing or payment initiation. Never retried."""


class GatewayDeclineError(PaymentError):
    """The gateway explicitly rejected the transaction."""

    def __init__(self, message: str, status: str | None = None, transaction_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.transaction_id = transaction_id


class TransientNetworkError(PaymentError):
    """Failure reaching the gateway or the order backend."""


class NotFoundError(PaymentError, LookupError):
    """Operation referenced a payment state that was never created."""
