# payment_service.py
"""
Payment dispatch for submitted orders.

- Strategy map keyed by payment method (push / redirect / cash).
- Exactly one gateway call per order reference: the order store's
  ``create_or_get_order`` is the idempotency boundary, and a reference that
  was already dispatched is answered from the store instead of charging
  again.  Without a store, the last ``DISPATCH_MEMORY_SIZE`` references
  are remembered in memory instead.
- Order lines are re-checked and the total re-derived before any gateway
  call.
- Pending push payments get a PaymentAttempt row (unique per order).
- Gateway and transport failures move the order to ``failed`` before the
  error is re-raised to the caller.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional

from errors import CheckoutError, GatewayError, ValidationError
from external_services import (
    OUTCOME_CONFIRMED,
    OUTCOME_PENDING,
    OUTCOME_REDIRECT,
    GatewayResult,
    PaymentGateway,
)
from metrics import CHECKOUT_DURATION_SECONDS, CHECKOUT_ERROR_TOTAL, DISPATCH_TOTAL
from orders import Order, OrderStatus, PaymentMethod
from settlement import verify_order_total

logger = logging.getLogger(__name__)

DISPATCH_MEMORY_SIZE = 1024


@dataclass
class DispatchResult:
    """Outcome of ``PaymentDispatcher.dispatch``.

    ``duplicate`` is True when the order reference had already been
    dispatched; ``gateway_result`` is then None and no gateway was called.
    """
    order: Order
    outcome: str
    gateway_result: Optional[GatewayResult] = None
    attempt: Any = None
    duplicate: bool = False

    @property
    def needs_monitor(self) -> bool:
        return (
            self.outcome == OUTCOME_PENDING
            and not self.duplicate
            and self.gateway_result is not None
            and bool(self.gateway_result.checkout_request_id)
        )


class PaymentDispatcher:
    """Select the gateway for an order's payment method and invoke it once."""

    def __init__(self, store: Any = None, gateways: Optional[Dict[str, PaymentGateway]] = None) -> None:
        self.store = store
        self.gateways: Dict[str, PaymentGateway] = {}
        for method, gateway in (gateways or {}).items():
            self.register_gateway(method, gateway)
        # Without a store, the most recent references dispatched by this process
        self._dispatched: "OrderedDict[str, DispatchResult]" = OrderedDict()

    # ----- strategy registry -----
    def register_gateway(self, method: str | PaymentMethod, gateway: PaymentGateway) -> None:
        self.gateways[PaymentMethod.parse(method).value] = gateway

    def gateway_for(self, method: str | PaymentMethod) -> PaymentGateway:
        key = PaymentMethod.parse(method).value
        gateway = self.gateways.get(key)
        if gateway is None:
            raise ValidationError(f"Payment method '{key}' is not available", field="payment_method")
        return gateway

    # ----- store helpers -----
    def _claim(self, order: Order) -> Optional[DispatchResult]:
        """Register the order with the store; return a result if it was already dispatched."""
        if order.status != OrderStatus.DRAFT:
            return DispatchResult(order=order, outcome=order.status.value, duplicate=True)
        previous = self._dispatched.get(order.order_reference)
        if previous is not None:
            return DispatchResult(order=previous.order, outcome=previous.outcome, attempt=previous.attempt, duplicate=True)
        if self.store is None:
            return None
        record, created = self.store.create_or_get_order(
            order_reference=order.order_reference,
            payment_method=order.payment_method.value,
            total=str(order.total),
            status=order.status.value,
            customer=order.contact.to_dict(),
            items=[line.to_dict() for line in order.items],
        )
        if created or record.status == OrderStatus.DRAFT.value:
            return None
        attempt = self.store.attempts.get_by_order_reference(order.order_reference) if hasattr(self.store, "attempts") else None
        return DispatchResult(order=order, outcome=record.status, attempt=attempt, duplicate=True)

    def _remember(self, ref: str, result: DispatchResult) -> None:
        self._dispatched[ref] = result
        while len(self._dispatched) > DISPATCH_MEMORY_SIZE:
            self._dispatched.popitem(last=False)

    def _set_status(self, order: Order, status: OrderStatus) -> None:
        order.transition_to(status)
        if self.store is not None:
            self.store.update_order_status(order.order_reference, status.value)

    # ----- main API -----
    def dispatch(self, order: Order) -> DispatchResult:
        """Start payment for ``order``.

        Returns:
            DispatchResult whose ``outcome`` is ``confirmed``, ``redirect`` or
            ``pending`` (or, for a duplicate, the stored order status).

        Raises:
            ValidationError: unsupported method, order lines without a
                valid price and quantity, or input the gateway refuses
                before contacting the provider.
            NetworkError: the provider could not be reached on any path.
            GatewayError: the provider rejected the request.
        """
        ref = order.order_reference
        gateway = self.gateway_for(order.payment_method)
        verify_order_total([line.to_dict() for line in order.items], order.total)

        duplicate = self._claim(order)
        if duplicate is not None:
            logger.warning(
                "Order already dispatched; not charging again",
                extra={"request_id": ref, "extra": {"status": duplicate.outcome}},
            )
            DISPATCH_TOTAL.inc(method=order.payment_method.value, outcome="duplicate")
            return duplicate

        self._set_status(order, OrderStatus.DISPATCHED)
        started = time.perf_counter()
        try:
            result = gateway.initiate(order)
        except CheckoutError as e:
            self._set_status(order, OrderStatus.FAILED)
            error_type = type(e).__name__
            CHECKOUT_ERROR_TOTAL.inc(type=error_type)
            DISPATCH_TOTAL.inc(method=order.payment_method.value, outcome="error")
            log = logger.warning if isinstance(e, ValidationError) else logger.error
            log(
                f"Dispatch failed: {e.message}",
                extra={"request_id": ref, "extra": {"error": error_type, "method": order.payment_method.value}},
            )
            if e.order_reference is None:
                e.order_reference = ref
            raise
        finally:
            CHECKOUT_DURATION_SECONDS.observe(time.perf_counter() - started, payment_method=order.payment_method.value)

        attempt = None
        if result.outcome == OUTCOME_CONFIRMED:
            self._set_status(order, OrderStatus.CONFIRMED)
        elif result.outcome in (OUTCOME_PENDING, OUTCOME_REDIRECT):
            self._set_status(order, OrderStatus.PENDING_CONFIRMATION)
            if result.outcome == OUTCOME_PENDING and self.store is not None:
                attempt, _ = self.store.create_attempt(ref, result.checkout_request_id)
        else:
            self._set_status(order, OrderStatus.FAILED)
            raise GatewayError(f"Unexpected gateway outcome: {result.outcome}", order_reference=ref)

        dispatched = DispatchResult(order=order, outcome=result.outcome, gateway_result=result, attempt=attempt)
        if self.store is None:
            self._remember(ref, dispatched)
        DISPATCH_TOTAL.inc(method=order.payment_method.value, outcome=result.outcome)
        logger.info(
            "Order dispatched",
            extra={
                "request_id": ref,
                "extra": {
                    "method": order.payment_method.value,
                    "outcome": result.outcome,
                    "checkout_request_id": result.checkout_request_id,
                    "total": str(order.total),
                },
            },
        )
        return dispatched

