# src/app.py
"""
Checkout controller.

Presentation code talks to one ``CheckoutController`` per session: it sends
commands (``submit_checkout``, ``cancel_payment``) and subscribes to
``CheckoutEvent`` notifications.  The controller owns the cart and the order
in flight; the UI never holds business state.

The checkout control is disabled from submission until a terminal dispatch
outcome (confirmation, redirect or error) or, for push payments, until the
status monitor finishes.  Only one order is in flight per controller, so at
most one monitor runs at a time.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from cart import Cart
from config import CheckoutConfig
from dao import CartStoreDAO, CheckoutStore, connect
from errors import CheckoutBusy, CheckoutError, ValidationError
from external_services import OUTCOME_CONFIRMED, OUTCOME_REDIRECT, default_gateways
from metrics import CHECKOUT_ERROR_TOTAL
from orders import Order, OrderStatus, assemble
from payment_monitor import MonitorOutcome, MonitorState, PaymentStatusMonitor
from payment_service import DispatchResult, PaymentDispatcher
from scheduler import Scheduler, TimerScheduler

logger = logging.getLogger(__name__)

EVENT_SUBMITTED = "submitted"
EVENT_CONFIRMED = "confirmed"
EVENT_REDIRECT = "redirect"
EVENT_AWAITING_PAYMENT = "awaiting_payment"
EVENT_PROGRESS = "progress"
EVENT_FAILED = "failed"
EVENT_TIMED_OUT = "timed_out"
EVENT_CANCELLED = "cancelled"
EVENT_REJECTED = "rejected"

_MONITOR_EVENTS = {
    MonitorState.COMPLETED: (EVENT_CONFIRMED, OrderStatus.CONFIRMED),
    MonitorState.FAILED: (EVENT_FAILED, OrderStatus.FAILED),
    MonitorState.TIMED_OUT: (EVENT_TIMED_OUT, OrderStatus.TIMED_OUT),
    MonitorState.CANCELLED: (EVENT_CANCELLED, OrderStatus.CANCELLED),
}
_STATUS_EVENTS = {status: kind for kind, status in _MONITOR_EVENTS.values()}


@dataclass
class CheckoutEvent:
    """A state change the UI should render."""
    kind: str
    order_reference: str | None = None
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)


CheckoutListener = Callable[[CheckoutEvent], None]


class CheckoutController:
    """
    Business logic for one checkout session: cart, order submission,
    payment dispatch and status monitoring.
    """

    def __init__(
        self,
        dispatcher: PaymentDispatcher,
        scheduler: Scheduler,
        cart: Optional[Cart] = None,
        store: Any = None,
        config: Optional[CheckoutConfig] = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.cart = cart if cart is not None else Cart()
        self.store = store if store is not None else dispatcher.store
        self.config = config or CheckoutConfig()

        self.current_order: Order | None = None
        self.monitor: PaymentStatusMonitor | None = None
        self._busy = False
        self._listeners: List[CheckoutListener] = []
        # Share the scheduler's lock so user commands and poll callbacks never interleave
        self._lock = getattr(scheduler, "lock", None) or threading.RLock()

    @classmethod
    def from_config(
        cls,
        config: Optional[CheckoutConfig] = None,
        session_id: str = "default",
        conn: Any = None,
        transport: Any = None,
        scheduler: Optional[Scheduler] = None,
    ) -> "CheckoutController":
        """Wire a controller to SQLite, the HTTP gateways and a wall-clock scheduler."""
        config = config or CheckoutConfig.from_env()
        conn = conn if conn is not None else connect(config.db_path)
        store = CheckoutStore(conn)
        cart = Cart(CartStoreDAO(conn), session_id=session_id)
        cart.load()
        dispatcher = PaymentDispatcher(store, default_gateways(config, transport))
        return cls(dispatcher, scheduler or TimerScheduler(), cart=cart, store=store, config=config)

    # ---- subscriptions ----

    @property
    def checkout_enabled(self) -> bool:
        return not self._busy

    def subscribe(self, listener: CheckoutListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, kind: str, order: Order | None, message: str = "", **data: Any) -> CheckoutEvent:
        event = CheckoutEvent(kind, order.order_reference if order else None, message, data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Checkout listener failed")
        return event

    # ---- commands ----

    def submit_checkout(self, values: Mapping[str, Any]) -> CheckoutEvent:
        """Assemble an order from the cart and the form ``values`` and pay for it.

        ``values`` holds the contact fields plus ``payment_method``.  Returns
        the event describing the immediate outcome (also sent to listeners).
        Errors are reported as ``rejected``/``failed`` events carrying the
        exception under ``data["error"]``.
        """
        with self._lock:
            if self._busy:
                error = CheckoutBusy("A payment is already in progress for this session")
                return self._emit(EVENT_REJECTED, self.current_order, error.message, error=error)

            try:
                order = assemble(self.cart, values, values.get("payment_method"))
            except ValidationError as e:
                CHECKOUT_ERROR_TOTAL.inc(type=type(e).__name__)
                return self._emit(EVENT_REJECTED, None, e.message, error=e, field=e.field)

            self._busy = True
            self.current_order = order
            self._emit(
                EVENT_SUBMITTED,
                order,
                "Processing...",
                total=order.total,
                payment_method=order.payment_method.value,
            )
            try:
                result = self.dispatcher.dispatch(order)
            except CheckoutError as e:
                self._busy = False
                kind = EVENT_REJECTED if isinstance(e, ValidationError) else EVENT_FAILED
                return self._emit(kind, order, e.message, error=e, retryable=e.retryable)
            except Exception:
                self._busy = False
                raise
            return self._after_dispatch(result)

    def _after_dispatch(self, result: DispatchResult) -> CheckoutEvent:
        order = result.order
        gateway_result = result.gateway_result
        if result.duplicate:
            self._busy = False
            return self._emit(EVENT_REJECTED, order, "This order has already been submitted", status=result.outcome)

        if result.outcome == OUTCOME_CONFIRMED:
            self.cart.clear_cart()
            self._busy = False
            return self._emit(
                EVENT_CONFIRMED,
                order,
                gateway_result.message,
                total=order.total,
                payment_method=order.payment_method.value,
                test_mode=gateway_result.test_mode,
            )

        if result.outcome == OUTCOME_REDIRECT:
            # Control passes to the provider's page; the return leg is not observed here
            self._busy = False
            return self._emit(EVENT_REDIRECT, order, gateway_result.message, approval_url=gateway_result.approval_url)

        self.monitor = PaymentStatusMonitor(
            gateway=self.dispatcher.gateway_for(order.payment_method),
            scheduler=self.scheduler,
            order_reference=order.order_reference,
            checkout_request_id=gateway_result.checkout_request_id,
            store=self.store,
            grace_seconds=self.config.poll_grace_seconds,
            interval_seconds=self.config.poll_interval_seconds,
            max_attempts=self.config.poll_max_attempts,
            on_progress=self._on_monitor_progress,
            on_finish=self._on_monitor_finish,
        )
        self.monitor.start()
        return self._emit(
            EVENT_AWAITING_PAYMENT,
            order,
            gateway_result.message,
            checkout_request_id=gateway_result.checkout_request_id,
            amount=gateway_result.raw.get("amount"),
            phone=gateway_result.raw.get("phone"),
        )

    def cancel_payment(self) -> bool:
        """Stop monitoring the payment in flight.  Returns False when nothing was polling."""
        with self._lock:
            if self.monitor is None or not self.monitor.is_active:
                return False
            return self.monitor.cancel()

    # ---- monitor callbacks ----

    def _on_monitor_progress(self, monitor: PaymentStatusMonitor) -> None:
        self._emit(
            EVENT_PROGRESS,
            self.current_order,
            f"Checking payment status... ({monitor.attempts}/{monitor.max_attempts})",
            attempts=monitor.attempts,
            max_attempts=monitor.max_attempts,
        )

    def _settled_status(self, order: Order, status: OrderStatus) -> OrderStatus:
        """Store ``status`` for ``order``, or return the status the store already settled on."""
        if self.store is None or self.store.update_order_status(order.order_reference, status.value):
            return status
        record = self.store.orders.get_order(order.order_reference)
        if record is None or OrderStatus(record.status) not in _STATUS_EVENTS:
            return status
        return OrderStatus(record.status)

    def _on_monitor_finish(self, outcome: MonitorOutcome) -> None:
        self._busy = False
        order = self.current_order
        kind, status = _MONITOR_EVENTS[outcome.state]
        message = outcome.message
        failure_reason = outcome.failure_reason
        transaction_id = outcome.transaction_id
        if order is not None and order.order_reference == outcome.order_reference:
            settled = self._settled_status(order, status)
            if settled != status:
                # The provider callback got there first; its result stands
                attempt = self.store.attempts.get_by_order_reference(order.order_reference)
                failure_reason = attempt.failure_reason if attempt else None
                transaction_id = attempt.receipt if attempt else None
                logger.warning(
                    f"Monitor saw {outcome.state.value} but order is already {settled.value}",
                    extra={"request_id": order.order_reference, "extra": {"monitor_state": outcome.state.value}},
                )
                status = settled
                kind = _STATUS_EVENTS[settled]
                message = failure_reason or f"Payment already settled as {settled.value}"
            order.transition_to(status)
        if status == OrderStatus.CONFIRMED:
            self.cart.clear_cart()
        self._emit(
            kind,
            order,
            message,
            transaction_id=transaction_id,
            failure_reason=failure_reason,
            attempts=outcome.attempts,
        )
