# --- path/bootstrap (keep this at the very top) ---
from pathlib import Path
import sys

TESTS = Path(__file__).resolve().parent
if str(TESTS) not in sys.path:
    sys.path.insert(0, str(TESTS))
# --- end path/bootstrap ---

import unittest
from decimal import Decimal

from fakes import push_callback as callback

from dao import CheckoutStore, connect
from errors import ValidationError
from settlement import apply_push_callback, parse_push_callback, verify_order_total

REF = "ORD20260101BBBBBBBBBB"


class TestParseCallback(unittest.TestCase):
    def test_success(self):
        result = parse_push_callback(callback())
        self.assertEqual(result.status, "completed")
        self.assertEqual(result.amount, Decimal("500"))
        self.assertEqual(result.receipt, "NLJ7RT61SV")
        self.assertEqual(result.phone, "254712345678")
        self.assertIsNone(result.reason)

    def test_cancelled_by_user(self):
        result = parse_push_callback(callback(1032, "Request cancelled by user"))
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.reason, "Payment was cancelled by user")

    def test_other_failure_uses_description(self):
        result = parse_push_callback(callback(1, "The balance is insufficient for the transaction."))
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.reason, "The balance is insufficient for the transaction.")

    def test_malformed(self):
        for body in ({}, {"Body": {}}, {"Body": {"stkCallback": {"ResultCode": 0}}}, {"Body": "x"}):
            with self.subTest(body=body):
                with self.assertRaises(ValidationError):
                    parse_push_callback(body)


class TestApplyCallback(unittest.TestCase):
    def setUp(self):
        self.conn = connect(":memory:")
        self.store = CheckoutStore(self.conn)
        self.store.create_or_get_order(
            order_reference=REF,
            payment_method="push",
            total="500.00",
            status="pending_confirmation",
            customer={"name": "Jane", "phone": "0712345678", "address": "Nairobi"},
            items=[{"id": 1, "name": "Paracetamol", "price": 250.0, "quantity": 2, "total": 500.0}],
        )
        self.store.create_attempt(REF, "ws_CO_5")

    def tearDown(self):
        self.conn.close()

    def test_success_confirms_order(self):
        result = apply_push_callback(self.store, callback())
        self.assertEqual(result.order_reference, REF)
        attempt = self.store.attempts.get_by_order_reference(REF)
        self.assertEqual(attempt.status, "completed")
        self.assertEqual(attempt.receipt, "NLJ7RT61SV")
        self.assertFalse(attempt.is_open)
        self.assertEqual(self.store.orders.get_order(REF).status, "confirmed")

    def test_user_cancellation_fails_order(self):
        apply_push_callback(self.store, callback(1032, "Request cancelled by user"))
        attempt = self.store.attempts.get_by_order_reference(REF)
        self.assertEqual(attempt.status, "failed")
        self.assertEqual(attempt.failure_reason, "Payment was cancelled by user")
        self.assertEqual(self.store.orders.get_order(REF).status, "failed")

    def test_short_payment_is_failed(self):
        result = apply_push_callback(self.store, callback(amount=100))
        self.assertEqual(result.status, "failed")
        self.assertTrue(result.reason.startswith("Amount mismatch"))
        self.assertEqual(self.store.orders.get_order(REF).status, "failed")

    def test_unknown_checkout_request_is_ignored(self):
        with self.assertLogs("settlement", level="WARNING"):
            self.assertIsNone(apply_push_callback(self.store, callback(checkout_id="ws_CO_unknown")))
        self.assertEqual(self.store.orders.get_order(REF).status, "pending_confirmation")

    def test_late_success_after_local_timeout(self):
        self.store.update_order_status(REF, "timed_out")
        apply_push_callback(self.store, callback())
        self.assertEqual(self.store.orders.get_order(REF).status, "timed_out")
        self.assertEqual(self.store.attempts.get_by_order_reference(REF).status, "completed")


class TestVerifyOrderTotal(unittest.TestCase):
    LINES = [{"price": 250.0, "quantity": 2}, {"price": "60.00", "quantity": 1}]

    def test_total_from_lines(self):
        self.assertEqual(verify_order_total(self.LINES), Decimal("560.00"))
        self.assertEqual(verify_order_total(self.LINES, claimed_total=560), Decimal("560.00"))

    def test_claimed_total_mismatch(self):
        with self.assertRaises(ValidationError):
            verify_order_total(self.LINES, claimed_total="1.00")

    def test_bad_lines(self):
        for lines in ([], [{"price": 10}], [{"price": -1, "quantity": 1}], [{"price": 10, "quantity": 0}]):
            with self.subTest(lines=lines):
                with self.assertRaises(ValidationError):
                    verify_order_total(lines)


if __name__ == "__main__":
    unittest.main(verbosity=2)
