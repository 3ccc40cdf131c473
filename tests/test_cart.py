# --- path/bootstrap (keep this at the very top) ---
from pathlib import Path
import sys

TESTS = Path(__file__).resolve().parent
if str(TESTS) not in sys.path:
    sys.path.insert(0, str(TESTS))
# --- end path/bootstrap ---

import json
import unittest
from decimal import Decimal

from fakes import ORS, PANADOL  # also puts src/ on sys.path

from cart import Cart, CartItem
from dao import CartStoreDAO, connect
from errors import ValidationError


class TestCartMutations(unittest.TestCase):
    def setUp(self):
        self.cart = Cart()

    def test_add_new_item_starts_at_one(self):
        ok, msg = self.cart.add_item(PANADOL)
        self.assertTrue(ok, msg)
        self.assertEqual(self.cart.get_item(1).quantity, 1)
        self.assertEqual(self.cart.get_item(1).unit_price, Decimal("250.00"))

    def test_add_existing_item_increments(self):
        self.cart.add_item(PANADOL)
        self.cart.add_item(PANADOL)
        self.assertEqual(self.cart.get_item(1).quantity, 2)
        self.assertEqual(len(self.cart), 1)

    def test_add_beyond_stock_is_refused(self):
        entry = dict(PANADOL, stock=1)
        self.cart.add_item(entry)
        ok, msg = self.cart.add_item(entry)
        self.assertFalse(ok)
        self.assertIn("only 1 units", msg)
        self.assertEqual(self.cart.get_item(1).quantity, 1)

    def test_out_of_stock_item_not_added(self):
        ok, msg = self.cart.add_item(dict(PANADOL, stock=0))
        self.assertFalse(ok)
        self.assertIn("out of stock", msg)
        self.assertTrue(self.cart.is_empty())

    def test_update_quantity(self):
        self.cart.add_item(ORS)
        ok, _ = self.cart.update_quantity(2, 3)
        self.assertTrue(ok)
        self.assertEqual(self.cart.get_item(2).quantity, 3)

        ok, msg = self.cart.update_quantity(2, 4)
        self.assertFalse(ok)
        self.assertIn("only 3 units", msg)
        self.assertEqual(self.cart.get_item(2).quantity, 3)

    def test_zero_quantity_removes(self):
        self.cart.add_item(ORS)
        ok, _ = self.cart.update_quantity(2, 0)
        self.assertTrue(ok)
        self.assertIsNone(self.cart.get_item(2))

    def test_unknown_item(self):
        ok, msg = self.cart.update_quantity(99, 1)
        self.assertFalse(ok)
        self.assertEqual(msg, "Item not in cart.")
        ok, _ = self.cart.remove_item(99)
        self.assertFalse(ok)

    def test_negative_price_rejected(self):
        with self.assertRaises(ValidationError):
            self.cart.add_item(dict(PANADOL, price="-1"))

    def test_catalog_field_aliases(self):
        item = CartItem.from_catalog({"id": 7, "name": "Zinc", "unit_price": 30, "stock_quantity": 5})
        self.assertEqual(item.unit_price, Decimal("30"))
        self.assertEqual(item.stock, 5)


class TestCartTotals(unittest.TestCase):
    def test_total_is_live(self):
        cart = Cart()
        cart.add_item(PANADOL)
        cart.add_item(ORS)
        self.assertEqual(cart.get_total(), Decimal("310.00"))
        self.assertEqual(cart.get_item_count(), 2)

        cart.update_quantity(1, 2)
        self.assertEqual(cart.get_total(), Decimal("560.00"))
        self.assertEqual(cart.get_item_count(), 3)

        cart.clear_cart()
        self.assertEqual(cart.get_total(), Decimal("0"))
        self.assertEqual(cart.get_item_count(), 0)

    def test_snapshot_is_a_copy(self):
        cart = Cart()
        cart.add_item(PANADOL)
        snap = cart.snapshot()
        snap[0].quantity = 9
        self.assertEqual(cart.get_item(1).quantity, 1)


class TestCartListeners(unittest.TestCase):
    def test_listener_called_on_change_until_unsubscribed(self):
        cart = Cart()
        seen = []
        unsubscribe = cart.subscribe(lambda c: seen.append(c.get_item_count()))
        cart.add_item(PANADOL)
        cart.add_item(PANADOL)
        unsubscribe()
        cart.add_item(PANADOL)
        self.assertEqual(seen, [1, 2])

    def test_failing_listener_does_not_break_cart(self):
        cart = Cart()

        def boom(_):
            raise RuntimeError("render failed")

        cart.subscribe(boom)
        with self.assertLogs("cart", level="ERROR"):
            ok, _ = cart.add_item(PANADOL)
        self.assertTrue(ok)


class TestCartPersistence(unittest.TestCase):
    def setUp(self):
        self.conn = connect(":memory:")
        self.store = CartStoreDAO(self.conn)

    def tearDown(self):
        self.conn.close()

    def test_reload_restores_items(self):
        cart = Cart(self.store, session_id="s1")
        cart.add_item(PANADOL)
        cart.add_item(ORS)
        cart.update_quantity(1, 2)

        reloaded = Cart(self.store, session_id="s1")
        self.assertEqual(reloaded.load(), 2)
        self.assertEqual(reloaded.get_item(1).quantity, 2)
        self.assertEqual(reloaded.get_total(), Decimal("560.00"))
        self.assertEqual([i.id for i in reloaded], [1, 2])

    def test_sessions_are_separate(self):
        Cart(self.store, session_id="s1").add_item(PANADOL)
        other = Cart(self.store, session_id="s2")
        self.assertEqual(other.load(), 0)

    def test_clear_is_persisted(self):
        cart = Cart(self.store, session_id="s1")
        cart.add_item(PANADOL)
        cart.clear_cart()
        self.assertEqual(json.loads(self.store.get("s1")), [])

    def test_saved_quantity_clamped_to_stock(self):
        self.store.put("s1", json.dumps([dict(ORS, quantity=9)]))
        cart = Cart(self.store, session_id="s1")
        cart.load()
        self.assertEqual(cart.get_item(2).quantity, 3)

    def test_bad_saved_row_skipped_others_restored(self):
        self.store.put("s1", json.dumps([dict(PANADOL, quantity="x"), "junk", dict(ORS, quantity=2)]))
        cart = Cart(self.store, session_id="s1")
        with self.assertLogs("cart", level="WARNING"):
            self.assertEqual(cart.load(), 1)
        self.assertIsNone(cart.get_item(PANADOL["id"]))
        self.assertEqual(cart.get_item(ORS["id"]).quantity, 2)

    def test_unreadable_saved_cart_is_discarded(self):
        self.store.put("s1", "not json")
        cart = Cart(self.store, session_id="s1")
        with self.assertLogs("cart", level="WARNING"):
            self.assertEqual(cart.load(), 0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
