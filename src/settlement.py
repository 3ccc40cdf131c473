"""
Settlement-side reconciliation for push payments.

The status monitor is a convenience for the shopper; the system of record is
the provider's asynchronous callback.  This module applies those callbacks
to the order/payment store and re-derives order totals from line items, so
a total sent by the browser is never what gets charged.

Callback body (mobile-money STK push)::

    {"Body": {"stkCallback": {
        "MerchantRequestID": "...", "CheckoutRequestID": "ws_CO_...",
        "ResultCode": 0, "ResultDesc": "...",
        "CallbackMetadata": {"Item": [{"Name": "Amount", "Value": 500}, ...]}}}}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Mapping, Optional

from dao import ATTEMPT_COMPLETED, ATTEMPT_FAILED
from errors import ValidationError
from external_services import push_amount
from metrics import SETTLEMENT_CALLBACKS_TOTAL
from orders import OrderStatus

logger = logging.getLogger(__name__)

RESULT_SUCCESS = 0
RESULT_CANCELLED_BY_USER = 1032


@dataclass
class CallbackResult:
    checkout_request_id: str
    result_code: int
    status: str
    reason: str | None = None
    amount: Decimal | None = None
    receipt: str | None = None
    phone: str | None = None
    order_reference: str | None = None


def _metadata(callback: Mapping[str, Any]) -> Dict[str, Any]:
    items = (callback.get("CallbackMetadata") or {}).get("Item") or []
    return {i.get("Name"): i.get("Value") for i in items if isinstance(i, Mapping)}


def parse_push_callback(body: Mapping[str, Any]) -> CallbackResult:
    """Read a provider callback.

    Raises:
        ValidationError: the body is not a recognisable STK callback.
    """
    try:
        callback = body["Body"]["stkCallback"]
        checkout_request_id = str(callback["CheckoutRequestID"])
        result_code = int(callback["ResultCode"])
    except (KeyError, TypeError, ValueError):
        raise ValidationError("Malformed payment callback") from None

    meta = _metadata(callback)
    amount = None
    if meta.get("Amount") is not None:
        try:
            amount = Decimal(str(meta["Amount"]))
        except InvalidOperation:
            raise ValidationError("Malformed payment callback amount") from None

    if result_code == RESULT_SUCCESS:
        status, reason = ATTEMPT_COMPLETED, None
    elif result_code == RESULT_CANCELLED_BY_USER:
        status, reason = ATTEMPT_FAILED, "Payment was cancelled by user"
    else:
        status, reason = ATTEMPT_FAILED, str(callback.get("ResultDesc") or "Payment failed")

    receipt = meta.get("MpesaReceiptNumber")
    phone = meta.get("PhoneNumber")
    return CallbackResult(
        checkout_request_id=checkout_request_id,
        result_code=result_code,
        status=status,
        reason=reason,
        amount=amount,
        receipt=str(receipt) if receipt is not None else None,
        phone=str(phone) if phone is not None else None,
    )


def apply_push_callback(store: Any, body: Mapping[str, Any]) -> Optional[CallbackResult]:
    """Record a callback against its payment attempt and order.

    Returns the applied result, or None when no attempt matches the
    checkout request id (the callback is logged and dropped).  A completed
    payment for less than the order's chargeable amount is recorded as
    failed.  Orders already out of ``pending_confirmation`` keep their status,
    except that a local timeout or cancellation does not hide a late success
    from the attempt record.
    """
    result = parse_push_callback(body)
    attempt = store.attempts.get_by_transaction_id(result.checkout_request_id)
    if attempt is None:
        logger.warning(
            "Callback for unknown checkout request",
            extra={"extra": {"checkout_request_id": result.checkout_request_id}},
        )
        return None
    result.order_reference = attempt.order_reference
    order = store.orders.get_order(attempt.order_reference)

    if result.status == ATTEMPT_COMPLETED and order is not None and result.amount is not None:
        expected = push_amount(Decimal(order.total))
        if result.amount < expected:
            result.status = ATTEMPT_FAILED
            result.reason = f"Amount mismatch: paid {result.amount}, expected {expected}"

    store.update_status_by_transaction_id(
        result.checkout_request_id, result.status, failure_reason=result.reason, receipt=result.receipt
    )
    store.attempts.close_attempt(attempt.order_reference)

    if order is not None and order.status == OrderStatus.PENDING_CONFIRMATION.value:
        new_status = OrderStatus.CONFIRMED if result.status == ATTEMPT_COMPLETED else OrderStatus.FAILED
        store.update_order_status(order.order_reference, new_status.value)
    elif order is not None:
        logger.info(
            f"Callback arrived after order reached {order.status}; order status unchanged",
            extra={"request_id": order.order_reference, "extra": {"callback_status": result.status}},
        )

    SETTLEMENT_CALLBACKS_TOTAL.inc(status=result.status)
    logger.info(
        "Settlement callback applied",
        extra={
            "request_id": attempt.order_reference,
            "extra": {"status": result.status, "receipt": result.receipt, "reason": result.reason},
        },
    )
    return result


def verify_order_total(items: Iterable[Mapping[str, Any]], claimed_total: Any = None) -> Decimal:
    """Re-derive an order total from its lines.

    ``items`` are payload lines with ``price`` and ``quantity``.  When
    ``claimed_total`` is given it must match to the cent.

    Raises:
        ValidationError: empty order, bad line values, or a total mismatch.
    """
    total = Decimal("0")
    count = 0
    for line in items:
        try:
            price = Decimal(str(line["price"]))
            quantity = int(line["quantity"])
        except (KeyError, TypeError, ValueError, InvalidOperation):
            raise ValidationError("Order line is missing a valid price or quantity") from None
        if price < 0 or quantity < 1:
            raise ValidationError("Order line has a negative price or non-positive quantity")
        total += price * quantity
        count += 1
    if count == 0:
        raise ValidationError("Order must contain at least one item")
    if claimed_total is not None:
        try:
            claimed = Decimal(str(claimed_total))
        except InvalidOperation:
            raise ValidationError("Invalid order total") from None
        if claimed.quantize(Decimal("0.01")) != total.quantize(Decimal("0.01")):
            raise ValidationError(f"Order total mismatch: claimed {claimed}, computed {total}")
    return total
