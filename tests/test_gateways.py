# --- path/bootstrap (keep this at the very top) ---
from pathlib import Path
import sys

TESTS = Path(__file__).resolve().parent
if str(TESTS) not in sys.path:
    sys.path.insert(0, str(TESTS))
# --- end path/bootstrap ---

import json
import ssl
import unittest
import urllib.error
from decimal import Decimal
from unittest import mock

from fakes import (
    CASH_PATH,
    PANADOL,
    PUSH_PATH,
    REDIRECT_PATH,
    STATUS_PATH,
    FakeTransport,
    make_cart,
    make_order,
)

from config import CheckoutConfig
from errors import GatewayError, NetworkError, ValidationError
from external_services import (
    OUTCOME_CONFIRMED,
    OUTCOME_PENDING,
    OUTCOME_REDIRECT,
    CashGateway,
    HttpTransport,
    PushGateway,
    RedirectGateway,
    default_gateways,
    push_amount,
)


def fake_response(body, status=200):
    resp = mock.MagicMock()
    resp.status = status
    resp.read.return_value = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
    resp.__enter__.return_value = resp
    return resp


class TestPushGateway(unittest.TestCase):
    def setUp(self):
        self.transport = FakeTransport()
        self.gateway = PushGateway(self.transport)

    def test_pending_with_checkout_request_id(self):
        self.transport.queue(PUSH_PATH, {"success": True, "checkout_request_id": "ws_CO_1", "message": "Sent"})
        order = make_order("push")
        result = self.gateway.initiate(order)

        self.assertEqual(result.outcome, OUTCOME_PENDING)
        self.assertEqual(result.checkout_request_id, "ws_CO_1")
        path, payload, alternates = self.transport.calls[0]
        self.assertEqual(path, PUSH_PATH)
        self.assertEqual(payload["amount"], 500)
        self.assertEqual(payload["phone"], "254712345678")
        self.assertEqual(payload["order_reference"], order.order_reference)
        self.assertEqual(alternates, ("/customer-portal/api/initiate-payment.php",))

    def test_missing_checkout_request_id_confirms_immediately(self):
        self.transport.queue(PUSH_PATH, {"success": True, "message": "Order placed"})
        with self.assertLogs("external_services", level="WARNING"):
            result = self.gateway.initiate(make_order("push"))
        self.assertEqual(result.outcome, OUTCOME_CONFIRMED)
        self.assertTrue(result.is_terminal)

    def test_configured_test_mode_never_polls(self):
        gateway = PushGateway(self.transport, test_mode=True)
        self.transport.queue(PUSH_PATH, {"checkout_request_id": "ws_CO_1"})
        result = gateway.initiate(make_order("push"))
        self.assertEqual(result.outcome, OUTCOME_CONFIRMED)
        self.assertTrue(result.test_mode)

    def test_explicit_rejection(self):
        self.transport.queue(PUSH_PATH, {"success": False, "message": "Invalid phone"})
        with self.assertRaises(GatewayError) as ctx:
            self.gateway.initiate(make_order("push"))
        self.assertEqual(ctx.exception.message, "Invalid phone")
        self.assertFalse(ctx.exception.retryable)

    def test_amount_over_limit_rejected_before_request(self):
        cart = make_cart(dict(PANADOL, price="80000"))
        with self.assertRaises(ValidationError):
            self.gateway.initiate(make_order("push", cart=cart))
        self.assertEqual(self.transport.calls, [])

    def test_push_amount_rounding(self):
        self.assertEqual(push_amount(Decimal("99.50")), 100)
        self.assertEqual(push_amount(Decimal("70000")), 70000)
        with self.assertRaises(ValidationError):
            push_amount(Decimal("0.40"))

    def test_check_status_reports(self):
        self.transport.queue(STATUS_PATH, {"success": True, "status": "completed", "transaction_id": "QK12"})
        report = self.gateway.check_status("ws_CO_1", "ORD1")
        self.assertEqual(report.status, "completed")
        self.assertEqual(report.transaction_id, "QK12")
        self.assertEqual(self.transport.calls[0][1], {"checkout_request_id": "ws_CO_1", "order_reference": "ORD1"})
        self.assertEqual(self.transport.calls[0][2], ())

    def test_check_status_failure_reason(self):
        self.transport.queue(STATUS_PATH, {"status": "failed", "failure_reason": "Insufficient funds"})
        report = self.gateway.check_status("ws_CO_1", "ORD1")
        self.assertEqual(report.status, "failed")
        self.assertEqual(report.failure_reason, "Insufficient funds")

    def test_check_status_unknown_status(self):
        self.transport.queue(STATUS_PATH, {"status": "maybe"})
        with self.assertRaises(GatewayError):
            self.gateway.check_status("ws_CO_1", "ORD1")


class TestRedirectAndCash(unittest.TestCase):
    def setUp(self):
        self.transport = FakeTransport()

    def test_approval_url_means_redirect(self):
        self.transport.queue(REDIRECT_PATH, {"success": True, "approval_url": "https://pay.example/approve?t=1"})
        result = RedirectGateway(self.transport).initiate(make_order("redirect"))
        self.assertEqual(result.outcome, OUTCOME_REDIRECT)
        self.assertEqual(result.approval_url, "https://pay.example/approve?t=1")
        self.assertEqual(self.transport.calls[0][1]["amount_usd"], 3.85)

    def test_placeholder_url_confirms(self):
        self.transport.queue(REDIRECT_PATH, {"success": True, "approval_url": "#", "test_mode": True})
        result = RedirectGateway(self.transport).initiate(make_order("redirect"))
        self.assertEqual(result.outcome, OUTCOME_CONFIRMED)
        self.assertIsNone(result.approval_url)

    def test_cash_confirms(self):
        self.transport.queue(CASH_PATH, {"success": True, "order_id": 42})
        result = CashGateway(self.transport).initiate(make_order("cash"))
        self.assertEqual(result.outcome, OUTCOME_CONFIRMED)
        self.assertEqual(self.transport.calls[0][0], CASH_PATH)

    def test_default_gateways(self):
        gateways = default_gateways(CheckoutConfig(), self.transport)
        self.assertEqual(set(gateways), {"push", "redirect", "cash"})
        self.assertIs(gateways["push"].transport, self.transport)


class TestHttpTransport(unittest.TestCase):
    def setUp(self):
        self.transport = HttpTransport("http://localhost/pharmacy/customer-portal", timeout=2)
        self.alternates = CheckoutConfig().alternate_paths(PUSH_PATH)

    @mock.patch("urllib.request.urlopen")
    def test_posts_json(self, urlopen):
        urlopen.return_value = fake_response({"success": True})
        body = self.transport.post(PUSH_PATH, {"total": Decimal("500.00")})
        self.assertEqual(body, {"success": True})
        request = urlopen.call_args[0][0]
        self.assertEqual(request.full_url, "http://localhost/pharmacy/customer-portal/api/initiate-payment.php")
        self.assertEqual(request.get_method(), "POST")
        self.assertEqual(json.loads(request.data), {"total": 500.0})

    @mock.patch("urllib.request.urlopen")
    def test_non_2xx_is_network_error(self, urlopen):
        urlopen.return_value = fake_response({"success": True}, status=500)
        with self.assertRaises(NetworkError) as ctx:
            self.transport.post(STATUS_PATH, {})
        self.assertEqual(ctx.exception.status, 500)
        self.assertTrue(ctx.exception.retryable)

    @mock.patch("urllib.request.urlopen")
    def test_http_error_is_network_error(self, urlopen):
        urlopen.side_effect = urllib.error.HTTPError("http://x", 503, "Service Unavailable", {}, None)
        with self.assertRaises(NetworkError) as ctx:
            self.transport.post(STATUS_PATH, {})
        self.assertEqual(ctx.exception.status, 503)

    @mock.patch("urllib.request.urlopen")
    def test_tls_error_while_reading_is_network_error(self, urlopen):
        resp = fake_response({"success": True})
        resp.read.side_effect = ssl.SSLError("bad record mac")
        urlopen.return_value = resp
        with self.assertRaises(NetworkError):
            PushGateway(self.transport).check_status("ws_CO_1", "ORD20260101AAAAAAAAAA")

    @mock.patch("urllib.request.urlopen")
    def test_non_json_body_is_gateway_error(self, urlopen):
        urlopen.return_value = fake_response(b"<html>Fatal error</html>")
        with self.assertRaises(GatewayError):
            self.transport.post(PUSH_PATH, {})

    @mock.patch("urllib.request.urlopen")
    def test_fallback_path_after_network_failure(self, urlopen):
        urlopen.side_effect = [urllib.error.URLError("connection refused"), fake_response({"success": True})]
        with self.assertLogs("external_services", level="WARNING"):
            body = self.transport.post(PUSH_PATH, {}, alternates=self.alternates)
        self.assertEqual(body, {"success": True})
        self.assertEqual(urlopen.call_count, 2)
        self.assertEqual(
            urlopen.call_args_list[1][0][0].full_url,
            "http://localhost/customer-portal/api/initiate-payment.php",
        )

    @mock.patch("urllib.request.urlopen")
    def test_all_paths_failing(self, urlopen):
        urlopen.side_effect = urllib.error.URLError("connection refused")
        with self.assertLogs("external_services", level="WARNING"):
            with self.assertRaises(NetworkError) as ctx:
                self.transport.post(PUSH_PATH, {}, alternates=self.alternates)
        self.assertTrue(ctx.exception.message.startswith("Unable to reach payment server at any URL"))
        self.assertEqual(urlopen.call_count, 2)

    @mock.patch("urllib.request.urlopen")
    def test_gateway_error_is_not_retried_on_alternates(self, urlopen):
        urlopen.return_value = fake_response(b"oops")
        with self.assertRaises(GatewayError):
            self.transport.post(PUSH_PATH, {}, alternates=self.alternates)
        self.assertEqual(urlopen.call_count, 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
