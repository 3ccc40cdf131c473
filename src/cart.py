"""
Shopping cart owned by one checkout session.

The cart is the authoritative list of line items.  Totals are never stored:
``get_total`` and ``get_item_count`` walk the items on every call.  When a
``CartStoreDAO`` is supplied, every mutation writes the serialized items
under the session id so the cart survives page loads.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from errors import ValidationError

logger = logging.getLogger(__name__)

CartListener = Callable[["Cart"], None]


def to_decimal(value: Any) -> Decimal:
    """Parse a price, rejecting negatives and non-numbers."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid price: {value!r}", field="unit_price") from None
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"Invalid price: {value!r}", field="unit_price")
    return amount


@dataclass
class CartItem:
    """A line in the cart.  ``stock`` is the snapshot taken when the item was added."""
    id: int | str
    name: str
    unit_price: Decimal
    quantity: int
    stock: int

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    @classmethod
    def from_catalog(cls, entry: Mapping[str, Any]) -> "CartItem":
        """Build an item from a catalog row (``price``/``unit_price``, ``stock``/``stock_quantity``)."""
        if "id" not in entry:
            raise ValidationError("Catalog entry has no id", field="id")
        price = entry.get("unit_price", entry.get("price", 0))
        stock = entry.get("stock", entry.get("stock_quantity", 0))
        try:
            stock = int(stock or 0)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid stock: {stock!r}", field="stock") from None
        quantity = entry.get("quantity", 1)
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid quantity: {quantity!r}", field="quantity") from None
        return cls(
            id=entry["id"],
            name=str(entry.get("name", "")),
            unit_price=to_decimal(price),
            quantity=quantity,
            stock=max(0, stock),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": str(self.unit_price),
            "quantity": self.quantity,
            "stock": self.stock,
        }


class Cart:
    """
    Line items keyed by catalog id, in the order they were first added.

    Mutators return ``(ok, message)``: ``ok`` is False when nothing changed
    and ``message`` explains why (stock limit, unknown item).
    """

    def __init__(self, store: Any = None, session_id: str = "default") -> None:
        self._items: Dict[Any, CartItem] = {}
        self._listeners: List[CartListener] = []
        self._store = store
        self.session_id = session_id

    # ---- persistence ----

    def load(self) -> int:
        """Replace the contents with what the store holds for this session."""
        if self._store is None:
            return 0
        raw = self._store.get(self.session_id)
        self._items.clear()
        if raw:
            try:
                rows = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Discarding unreadable saved cart", extra={"extra": {"session_id": self.session_id}})
                rows = []
            if not isinstance(rows, list):
                rows = []
            for row in rows:
                if not isinstance(row, Mapping):
                    continue
                try:
                    item = CartItem.from_catalog(row)
                except ValidationError as e:
                    logger.warning(f"Skipping saved cart row: {e.message}")
                    continue
                if item.quantity <= 0 or item.stock <= 0:
                    continue
                item.quantity = min(item.quantity, item.stock)
                self._items[item.id] = item
        self._changed(persist=False)
        return len(self._items)

    def _persist(self) -> None:
        if self._store is None:
            return
        self._store.put(self.session_id, json.dumps([i.to_dict() for i in self._items.values()]))

    # ---- notifications ----

    def subscribe(self, listener: CartListener) -> Callable[[], None]:
        """Call ``listener(cart)`` after every change.  Returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _changed(self, persist: bool = True) -> None:
        if persist:
            self._persist()
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Cart listener failed")

    # ---- mutations ----

    def add_item(self, item: CartItem | Mapping[str, Any]) -> Tuple[bool, str]:
        if not isinstance(item, CartItem):
            item = CartItem.from_catalog(item)
        existing = self._items.get(item.id)
        if existing:
            if existing.quantity + 1 > existing.stock:
                return False, f"Sorry, only {existing.stock} units of {existing.name} available in stock."
            existing.quantity += 1
            self._changed()
            return True, f"{existing.name} quantity increased to {existing.quantity}"
        if item.stock < 1:
            return False, f"{item.name} is out of stock."
        self._items[item.id] = CartItem(
            id=item.id, name=item.name, unit_price=item.unit_price, quantity=1, stock=item.stock
        )
        self._changed()
        return True, f"{item.name} added to cart"

    def update_quantity(self, item_id: Any, quantity: int) -> Tuple[bool, str]:
        item = self._items.get(item_id)
        if item is None:
            return False, "Item not in cart."
        if quantity <= 0:
            return self.remove_item(item_id)
        if quantity > item.stock:
            return False, f"Sorry, only {item.stock} units available in stock."
        item.quantity = quantity
        self._changed()
        return True, f"{item.name} quantity set to {quantity}"

    def remove_item(self, item_id: Any) -> Tuple[bool, str]:
        item = self._items.pop(item_id, None)
        if item is None:
            return False, "Item not in cart."
        self._changed()
        return True, f"{item.name} removed from cart"

    def clear_cart(self) -> None:
        if not self._items:
            return
        self._items.clear()
        self._changed()

    # ---- derived values ----

    def get_total(self) -> Decimal:
        return sum((i.unit_price * i.quantity for i in self._items.values()), Decimal("0"))

    def get_item_count(self) -> int:
        return sum(i.quantity for i in self._items.values())

    def get_item(self, item_id: Any) -> Optional[CartItem]:
        return self._items.get(item_id)

    def snapshot(self) -> List[CartItem]:
        """Deep copies of the items in display order."""
        return [copy.deepcopy(i) for i in self._items.values()]

    def is_empty(self) -> bool:
        return not self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items.values()))
