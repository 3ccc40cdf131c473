"""
Order assembly.

``assemble`` turns a cart and the checkout form into an immutable order
snapshot.  The snapshot is a deep copy: editing the cart afterwards never
changes an order already submitted.  The total is derived from the snapshot
and is for display only; settlement re-validates it before money moves.
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, UTC
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Tuple

from cart import Cart
from errors import InvalidTransition, ValidationError

PHONE_PATTERN = re.compile(r"^(?:0|\+254|254)[17]\d{8}$")
_PHONE_STRIP = re.compile(r"[\s\-()]")


class PaymentMethod(str, Enum):
    PUSH = "push"
    REDIRECT = "redirect"
    CASH = "cash"

    @classmethod
    def parse(cls, value: Any) -> "PaymentMethod":
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower()
        # Storefront form values
        aliases = {"mpesa": cls.PUSH, "paypal": cls.REDIRECT, "cod": cls.CASH}
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError:
            raise ValidationError(f"Unsupported payment method: {value!r}", field="payment_method") from None


class OrderStatus(str, Enum):
    DRAFT = "draft"
    DISPATCHED = "dispatched"
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self]

    @property
    def predecessors(self) -> Tuple["OrderStatus", ...]:
        """Statuses an order may move into this one from."""
        return tuple(s for s, targets in _TRANSITIONS.items() if self in targets)


_TRANSITIONS = {
    OrderStatus.DRAFT: {OrderStatus.DISPATCHED, OrderStatus.FAILED},
    OrderStatus.DISPATCHED: {OrderStatus.PENDING_CONFIRMATION, OrderStatus.CONFIRMED, OrderStatus.FAILED},
    OrderStatus.PENDING_CONFIRMATION: {
        OrderStatus.CONFIRMED,
        OrderStatus.FAILED,
        OrderStatus.TIMED_OUT,
        OrderStatus.CANCELLED,
    },
    OrderStatus.CONFIRMED: set(),
    OrderStatus.FAILED: set(),
    OrderStatus.TIMED_OUT: set(),
    OrderStatus.CANCELLED: set(),
}


def normalize_phone(phone: str) -> str:
    return _PHONE_STRIP.sub("", phone or "")


@dataclass(frozen=True)
class CustomerContact:
    name: str
    phone: str
    address: str
    email: str = ""
    city: str = ""
    zip: str = ""

    @property
    def msisdn(self) -> str:
        """Phone in the ``254XXXXXXXXX`` form mobile-money providers expect."""
        digits = normalize_phone(self.phone).lstrip("+")
        if digits.startswith("0"):
            return "254" + digits[1:]
        return digits

    @classmethod
    def from_values(cls, values: Mapping[str, Any]) -> "CustomerContact":
        """Validate checkout form values and build a contact."""
        cleaned = {k: str(values.get(k) or "").strip() for k in ("name", "phone", "address", "email", "city", "zip")}
        missing = [k for k in ("name", "phone", "address") if not cleaned[k]]
        if missing:
            raise ValidationError(
                f"Please fill in all required fields: {', '.join(missing)}", field=missing[0]
            )
        phone = normalize_phone(cleaned["phone"])
        if not PHONE_PATTERN.match(phone):
            raise ValidationError(
                "Invalid phone number. Please use format: 0712345678 or 254712345678", field="phone"
            )
        cleaned["phone"] = phone
        return cls(**cleaned)

    def to_dict(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "phone": self.phone,
            "address": self.address,
            "email": self.email,
            "city": self.city,
            "zip": self.zip,
        }


@dataclass(frozen=True)
class OrderLine:
    id: Any
    name: str
    unit_price: Decimal
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": float(self.unit_price),
            "quantity": self.quantity,
            "total": float(self.line_total),
        }


def generate_order_reference(now: datetime | None = None) -> str:
    """``ORD`` + date + random hex; unique without coordination."""
    now = now or datetime.now(UTC)
    return f"ORD{now:%Y%m%d}{secrets.token_hex(5).upper()}"


@dataclass
class Order:
    """
    A submitted checkout.  Lines, contact and method are fixed at creation;
    only ``status`` changes, and only forward (see ``transition_to``).
    """
    order_reference: str
    items: Tuple[OrderLine, ...]
    contact: CustomerContact
    payment_method: PaymentMethod
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    status: OrderStatus = OrderStatus.DRAFT

    @property
    def total(self) -> Decimal:
        return sum((line.line_total for line in self.items), Decimal("0"))

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.items)

    def can_transition(self, status: OrderStatus) -> bool:
        return status in _TRANSITIONS[self.status]

    def transition_to(self, status: OrderStatus | str) -> None:
        status = OrderStatus(status)
        if status == self.status:
            return
        if not self.can_transition(status):
            raise InvalidTransition(
                f"Order {self.order_reference} cannot move from {self.status.value} to {status.value}",
                order_reference=self.order_reference,
            )
        self.status = status

    def to_payload(self) -> Dict[str, Any]:
        """Request body shared by every gateway initiation call."""
        return {
            "order_reference": self.order_reference,
            "customer": self.contact.to_dict(),
            "items": [line.to_dict() for line in self.items],
            "total": float(self.total),
            "payment_method": self.payment_method.value,
        }


def assemble(cart: Cart, contact: CustomerContact | Mapping[str, Any], payment_method: Any) -> Order:
    """Build a draft order from the cart.

    Raises:
        ValidationError: empty cart, missing or malformed contact fields,
            or an unknown payment method.
    """
    if cart.is_empty():
        raise ValidationError("Your cart is empty", field="cart")
    if isinstance(contact, CustomerContact):
        contact = contact.to_dict()
    contact = CustomerContact.from_values(contact)
    method = PaymentMethod.parse(payment_method)
    lines = tuple(
        OrderLine(id=i.id, name=i.name, unit_price=i.unit_price, quantity=i.quantity) for i in cart.snapshot()
    )
    return Order(
        order_reference=generate_order_reference(),
        items=lines,
        contact=contact,
        payment_method=method,
    )
