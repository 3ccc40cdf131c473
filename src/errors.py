"""
Error taxonomy for the checkout subsystem.

- ValidationError: bad input, fixed by the user, never retried.
- NetworkError: transient transport failure (connection error or non-2xx).
- GatewayError: the provider explicitly rejected the request.
- PaymentTimeoutError: the polling budget ran out with no terminal status.

Controllers catch ``CheckoutError`` and turn it into a user-facing message;
``retryable`` tells them whether a transport-level retry could help.
"""

from __future__ import annotations


class CheckoutError(Exception):
    """Base class for every error surfaced by checkout and payment code."""

    retryable: bool = False

    def __init__(self, message: str, *, order_reference: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.order_reference = order_reference


class ValidationError(CheckoutError):
    """Input the user must correct (empty cart, malformed phone, ...)."""

    def __init__(self, message: str, *, field: str | None = None, order_reference: str | None = None) -> None:
        super().__init__(message, order_reference=order_reference)
        self.field = field


class NetworkError(CheckoutError):
    """Connection failure or non-2xx HTTP status."""

    retryable = True

    def __init__(self, message: str, *, status: int | None = None, order_reference: str | None = None) -> None:
        super().__init__(message, order_reference=order_reference)
        self.status = status


class GatewayError(CheckoutError):
    """Provider answered but refused the request (``success: false``)."""


class PaymentTimeoutError(CheckoutError):
    """Attempt budget exhausted; the payment may still settle out-of-band."""


class InvalidTransition(CheckoutError):
    """An order status change that would move backwards or out of a terminal state."""


class CheckoutBusy(CheckoutError):
    """A checkout is already in flight for this session."""
