"""
Payment gateway adapters and the HTTP transport they share.

Each adapter knows how to start one kind of payment and how to read the
provider's answer:

- ``PushGateway``: mobile-money push.  The provider prompts the payer's
  phone and answers with a checkout request id; the outcome arrives later
  and is polled through ``check_status``.
- ``RedirectGateway``: the provider hands back an approval URL that the
  browser must navigate to.  The return leg is outside this process.
- ``CashGateway``: cash on delivery, confirmed as soon as the order is
  accepted.

Adapters never retry.  The transport tries a short list of alternate
endpoint paths once when the primary path is unreachable; that is the only
fallback at initiation time.
"""

from __future__ import annotations

import http.client
import json
import logging
import re
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional

from config import CheckoutConfig
from errors import GatewayError, NetworkError, ValidationError
from orders import Order

logger = logging.getLogger(__name__)

OUTCOME_CONFIRMED = "confirmed"
OUTCOME_PENDING = "pending"
OUTCOME_REDIRECT = "redirect"

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

MIN_PUSH_AMOUNT = 1
MAX_PUSH_AMOUNT = 70000
_MSISDN = re.compile(r"^254[17]\d{8}$")
_PLACEHOLDER_URLS = {"", "#"}


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


# ---------- transport ----------

class HttpTransport:
    """JSON-over-HTTP POST client built on ``urllib``.

    A connection failure (any ``OSError`` while sending or reading, TLS
    errors included) or a non-2xx status raises ``NetworkError``.  A 2xx
    response that is not a JSON object raises ``GatewayError``: the server
    answered, but not in a form we can act on.
    """

    def __init__(self, base_url: str, timeout: float = 30.0, headers: Optional[Dict[str, str]] = None) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout = timeout
        self.headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Cache-Control": "no-cache",
        }
        self.headers.update(headers or {})

    def url_for(self, path: str) -> str:
        return urllib.parse.urljoin(self.base_url, path)

    def _post_once(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = json.dumps(payload, default=_json_default).encode("utf-8")
        req = urllib.request.Request(url, data=data, headers=self.headers, method="POST")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                status = getattr(resp, "status", 200)
                body = resp.read()
        except urllib.error.HTTPError as e:
            raise NetworkError(f"HTTP {e.code}: {e.reason}", status=e.code) from e
        except (http.client.HTTPException, OSError) as e:
            # URLError, socket timeouts and ssl.SSLError are all OSError
            reason = getattr(e, "reason", e)
            raise NetworkError(f"Network error: {reason}") from e
        if not 200 <= status < 300:
            raise NetworkError(f"HTTP {status}", status=status)
        try:
            result = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise GatewayError("Invalid response format from payment server") from e
        if not isinstance(result, dict):
            raise GatewayError("Invalid response format from payment server")
        return result

    def post(self, path: str, payload: Dict[str, Any], alternates: Iterable[str] = ()) -> Dict[str, Any]:
        """POST ``payload`` to ``path``; on a network failure try each alternate once."""
        primary = self.url_for(path)
        try:
            return self._post_once(primary, payload)
        except NetworkError as first:
            tried = {primary}
            for alt in alternates:
                url = self.url_for(alt)
                if url in tried:
                    continue
                tried.add(url)
                logger.warning(f"Primary endpoint failed ({first.message}); trying fallback {url}")
                try:
                    return self._post_once(url, payload)
                except NetworkError as alt_error:
                    logger.warning(f"Fallback failed: {alt_error.message}")
            if len(tried) == 1:
                raise
            raise NetworkError(
                f"Unable to reach payment server at any URL. Original error: {first.message}",
                status=first.status,
            ) from first


# ---------- results ----------

@dataclass
class GatewayResult:
    """What an adapter learned from initiation."""
    outcome: str
    order_reference: str
    message: str = ""
    checkout_request_id: str | None = None
    approval_url: str | None = None
    test_mode: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.outcome == OUTCOME_CONFIRMED


@dataclass
class StatusReport:
    status: str
    failure_reason: str | None = None
    transaction_id: str | None = None
    message: str = ""


# ---------- adapters ----------

class PaymentGateway:
    """Base for gateway adapters: ``initiate(order) -> GatewayResult``."""

    method = ""

    def __init__(self, transport: Any, config: Optional[CheckoutConfig] = None) -> None:
        self.transport = transport
        self.config = config or CheckoutConfig()

    def initiate(self, order: Order) -> GatewayResult:  # pragma: no cover
        raise NotImplementedError

    def _post_initiation(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = self.transport.post(path, payload, alternates=self.config.alternate_paths(path))
        # Only an explicit false is a rejection; some providers omit the flag
        if body.get("success") is False:
            raise GatewayError(
                str(body.get("message") or body.get("error") or "Payment provider rejected the request"),
                order_reference=payload.get("order_reference"),
            )
        return body


def push_amount(total: Decimal) -> int:
    """Whole-shilling amount for a push payment, within the provider's limits."""
    amount = int(Decimal(total).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if amount < MIN_PUSH_AMOUNT:
        raise ValidationError(f"Amount must be at least KES {MIN_PUSH_AMOUNT}", field="total")
    if amount > MAX_PUSH_AMOUNT:
        raise ValidationError(f"Amount cannot exceed KES {MAX_PUSH_AMOUNT:,}", field="total")
    return amount


class PushGateway(PaymentGateway):
    """Mobile-money push adapter.

    ``test_mode`` is explicit configuration: when set, every accepted
    initiation is confirmed immediately and no status polling happens.  A
    live response without a ``checkout_request_id`` gives us nothing to poll,
    so it is confirmed immediately as well and logged as degenerate.  The
    ``test_mode`` flag a server may echo back is recorded but never steers
    control flow.
    """

    method = "push"

    def __init__(self, transport: Any, config: Optional[CheckoutConfig] = None, test_mode: Optional[bool] = None) -> None:
        super().__init__(transport, config)
        self.test_mode = self.config.push_test_mode if test_mode is None else test_mode

    def initiate(self, order: Order) -> GatewayResult:
        msisdn = order.contact.msisdn
        if not _MSISDN.match(msisdn):
            raise ValidationError(
                "Invalid phone number. Please use format: 0712345678 or 254712345678",
                field="phone",
                order_reference=order.order_reference,
            )
        payload = order.to_payload()
        payload["amount"] = push_amount(order.total)
        payload["phone"] = msisdn
        body = self._post_initiation(self.config.push_initiate_path, payload)

        checkout_request_id = body.get("checkout_request_id") or None
        message = str(body.get("message") or body.get("customer_message") or "")
        if self.test_mode or not checkout_request_id:
            if not self.test_mode:
                logger.warning(
                    "Push initiation returned no checkout_request_id; confirming without polling",
                    extra={"extra": {"order_reference": order.order_reference}},
                )
            return GatewayResult(
                outcome=OUTCOME_CONFIRMED,
                order_reference=order.order_reference,
                message=message or "Payment initiated",
                checkout_request_id=checkout_request_id,
                test_mode=self.test_mode,
                raw=body,
            )
        return GatewayResult(
            outcome=OUTCOME_PENDING,
            order_reference=order.order_reference,
            message=message or "Please complete the payment on your phone.",
            checkout_request_id=str(checkout_request_id),
            test_mode=bool(body.get("test_mode", False)),
            raw=body,
        )

    def check_status(self, checkout_request_id: str, order_reference: str) -> StatusReport:
        """Ask the status endpoint where a pending push payment stands.

        Raises:
            NetworkError: transport failure (no alternates are tried).
            GatewayError: ``success: false`` or an unknown status value.
        """
        body = self.transport.post(
            self.config.push_status_path,
            {"checkout_request_id": checkout_request_id, "order_reference": order_reference},
        )
        if body.get("success") is False:
            raise GatewayError(str(body.get("message") or "Status check rejected"), order_reference=order_reference)
        status = str(body.get("status") or "").lower()
        if status not in (STATUS_PENDING, STATUS_COMPLETED, STATUS_FAILED):
            raise GatewayError(f"Unknown payment status: {status!r}", order_reference=order_reference)
        reason = None
        if status == STATUS_FAILED:
            reason = str(body.get("failure_reason") or body.get("message") or "Payment failed")
        return StatusReport(
            status=status,
            failure_reason=reason,
            transaction_id=body.get("transaction_id"),
            message=str(body.get("message") or ""),
        )


class RedirectGateway(PaymentGateway):
    """Redirect-approval adapter (the customer approves on the provider's page)."""

    method = "redirect"

    def initiate(self, order: Order) -> GatewayResult:
        payload = order.to_payload()
        rate = Decimal(str(self.config.kes_to_usd_rate))
        payload["amount_usd"] = float((order.total * rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
        body = self._post_initiation(self.config.redirect_initiate_path, payload)

        approval_url = str(body.get("approval_url") or "").strip()
        if approval_url not in _PLACEHOLDER_URLS:
            return GatewayResult(
                outcome=OUTCOME_REDIRECT,
                order_reference=order.order_reference,
                message="Redirecting to the payment provider...",
                approval_url=approval_url,
                raw=body,
            )
        return GatewayResult(
            outcome=OUTCOME_CONFIRMED,
            order_reference=order.order_reference,
            message=str(body.get("message") or "Your order has been placed!"),
            test_mode=bool(body.get("test_mode", False)),
            raw=body,
        )


class CashGateway(PaymentGateway):
    """Cash on delivery: the order is confirmed once the server accepts it."""

    method = "cash"

    def initiate(self, order: Order) -> GatewayResult:
        body = self._post_initiation(self.config.cash_initiate_path, order.to_payload())
        return GatewayResult(
            outcome=OUTCOME_CONFIRMED,
            order_reference=order.order_reference,
            message=str(body.get("message") or "Order placed successfully"),
            raw=body,
        )


def default_gateways(config: CheckoutConfig, transport: Any = None) -> Dict[str, PaymentGateway]:
    """The three storefront adapters wired to one transport."""
    transport = transport or HttpTransport(config.base_url, timeout=config.http_timeout_seconds, headers=config.extra_headers)
    return {
        "push": PushGateway(transport, config),
        "redirect": RedirectGateway(transport, config),
        "cash": CashGateway(transport, config),
    }
