"""
Payment status monitor for pending push payments.

State machine::

    INITIATED --grace--> POLLING --completed--> COMPLETED
                            |    --failed-----> FAILED
                            |    --budget-----> TIMED_OUT
                            +----cancel()-----> CANCELLED

The first status check happens one grace interval after ``start()``; later
checks follow on a fixed interval.  Every check counts against the attempt
budget, including checks that fail in transport, so an unreachable status
endpoint still ends in TIMED_OUT instead of polling forever.  TIMED_OUT is
local only: the provider may still settle the payment afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from errors import CheckoutError, GatewayError, PaymentTimeoutError
from external_services import STATUS_COMPLETED, STATUS_FAILED, StatusReport
from metrics import ACTIVE_PAYMENT_MONITORS, PAYMENT_MONITOR_OUTCOME_TOTAL, PAYMENT_POLLS_TOTAL
from scheduler import ScheduledCall, Scheduler

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 5.0
DEFAULT_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_ATTEMPTS = 60

TIMEOUT_MESSAGE = (
    "We could not confirm your payment in time. It may still complete; "
    "please check your phone for a confirmation message before paying again."
)


class MonitorState(str, Enum):
    INITIATED = "initiated"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (MonitorState.INITIATED, MonitorState.POLLING)


@dataclass
class MonitorOutcome:
    state: MonitorState
    order_reference: str
    checkout_request_id: str
    attempts: int
    transaction_id: str | None = None
    failure_reason: str | None = None
    message: str = ""

    def raise_for_status(self) -> None:
        """Raise the matching error unless the payment completed."""
        if self.state == MonitorState.COMPLETED:
            return
        if self.state == MonitorState.TIMED_OUT:
            raise PaymentTimeoutError(self.message, order_reference=self.order_reference)
        if self.state == MonitorState.FAILED:
            raise GatewayError(self.failure_reason or self.message, order_reference=self.order_reference)
        raise CheckoutError(self.message, order_reference=self.order_reference)


class PaymentStatusMonitor:
    """Poll one pending push payment to a terminal state."""

    def __init__(
        self,
        gateway: Any,
        scheduler: Scheduler,
        order_reference: str,
        checkout_request_id: str,
        store: Any = None,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        on_progress: Optional[Callable[["PaymentStatusMonitor"], None]] = None,
        on_finish: Optional[Callable[[MonitorOutcome], None]] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.gateway = gateway
        self.scheduler = scheduler
        self.order_reference = order_reference
        self.checkout_request_id = checkout_request_id
        self.store = store
        self.grace_seconds = grace_seconds
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self.on_progress = on_progress
        self.on_finish = on_finish

        self.state = MonitorState.INITIATED
        self.attempts = 0
        self.last_checked_at: float | None = None
        self.last_report: StatusReport | None = None
        self.outcome: MonitorOutcome | None = None
        self._handle: ScheduledCall | None = None
        self._started = False

    @property
    def is_active(self) -> bool:
        return self._started and not self.state.is_terminal

    def _log_extra(self, **fields: Any) -> dict:
        fields.setdefault("checkout_request_id", self.checkout_request_id)
        fields.setdefault("attempts", self.attempts)
        return {"request_id": self.order_reference, "extra": fields}

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        ACTIVE_PAYMENT_MONITORS.inc()
        logger.info("Payment monitor started", extra=self._log_extra(grace_seconds=self.grace_seconds))
        self._schedule(self.grace_seconds)

    def _schedule(self, delay: float) -> None:
        self._handle = self.scheduler.call_later(delay, self._poll)

    def _poll(self) -> None:
        self._handle = None
        if self.state.is_terminal:
            return
        self.state = MonitorState.POLLING
        self.attempts += 1
        self.last_checked_at = self.scheduler.now()

        report: StatusReport | None = None
        try:
            if self.store is not None:
                self.store.attempts.record_poll(self.order_reference, self.attempts)
            report = self.gateway.check_status(self.checkout_request_id, self.order_reference)
        except CheckoutError as e:
            PAYMENT_POLLS_TOTAL.inc(result="error")
            logger.warning(f"Status check failed: {e.message}", extra=self._log_extra(error=type(e).__name__))
        except Exception as e:
            # Counts as a spent attempt like any transport failure
            PAYMENT_POLLS_TOTAL.inc(result="error")
            logger.exception("Status check raised unexpectedly", extra=self._log_extra(error=type(e).__name__))

        # cancel() may have landed while the request was in flight
        if self.state.is_terminal:
            return

        if report is not None:
            self.last_report = report
            PAYMENT_POLLS_TOTAL.inc(result=report.status)
            if report.status == STATUS_COMPLETED:
                self._finish(
                    MonitorState.COMPLETED,
                    transaction_id=report.transaction_id,
                    message=report.message or "Payment completed successfully",
                )
                return
            if report.status == STATUS_FAILED:
                self._finish(
                    MonitorState.FAILED,
                    failure_reason=report.failure_reason,
                    message=report.failure_reason or "Payment failed",
                )
                return

        if self.attempts >= self.max_attempts:
            self._finish(MonitorState.TIMED_OUT, message=TIMEOUT_MESSAGE)
            return

        self._schedule(self.interval_seconds)
        if self.on_progress is not None:
            try:
                self.on_progress(self)
            except Exception:
                logger.exception("Monitor progress listener failed")

    def cancel(self) -> bool:
        """Stop polling.  Returns False if the monitor had already finished.

        Only local state changes; any charge the provider already authorized
        is its business to void.
        """
        if self.state.is_terminal:
            return False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._finish(MonitorState.CANCELLED, message="Payment monitoring cancelled")
        return True

    def _finish(
        self,
        state: MonitorState,
        transaction_id: str | None = None,
        failure_reason: str | None = None,
        message: str = "",
    ) -> None:
        was_active = self.is_active
        self.state = state
        self.outcome = MonitorOutcome(
            state=state,
            order_reference=self.order_reference,
            checkout_request_id=self.checkout_request_id,
            attempts=self.attempts,
            transaction_id=transaction_id,
            failure_reason=failure_reason,
            message=message,
        )
        if was_active:
            ACTIVE_PAYMENT_MONITORS.dec()
        PAYMENT_MONITOR_OUTCOME_TOTAL.inc(state=state.value)

        if self.store is not None:
            try:
                self._store_outcome(state, transaction_id, failure_reason)
            except Exception:
                logger.exception("Could not store monitor result", extra=self._log_extra())

        log = logger.info if state == MonitorState.COMPLETED else logger.warning
        log(f"Payment monitor finished: {state.value}", extra=self._log_extra(transaction_id=transaction_id))

        if self.on_finish is not None:
            try:
                self.on_finish(self.outcome)
            except Exception:
                logger.exception("Monitor finish listener failed")

    def _store_outcome(self, state: MonitorState, transaction_id: str | None, failure_reason: str | None) -> None:
        """Write the result to the attempt row unless a callback already closed it."""
        attempt = self.store.attempts.get_by_order_reference(self.order_reference)
        if attempt is None or not attempt.is_open:
            logger.info(
                "Payment attempt already settled; monitor result not stored",
                extra=self._log_extra(stored_status=attempt.status if attempt else None),
            )
            return
        if state == MonitorState.COMPLETED:
            self.store.update_status_by_transaction_id(self.checkout_request_id, "completed", receipt=transaction_id)
        elif state == MonitorState.FAILED:
            self.store.update_status_by_transaction_id(
                self.checkout_request_id, "failed", failure_reason=failure_reason
            )
        self.store.attempts.close_attempt(self.order_reference)
