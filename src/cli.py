"""
Command-line interface for the pharmacy checkout.

This script wires the ``CheckoutController`` into an interactive CLI loop.
It prompts for input, sends commands to the controller and prints the
events it emits.  Push-payment polling runs on timer threads, so progress
lines can appear while the menu is waiting for input.
"""

import sys
from typing import Any, Dict, List

from app import CheckoutController, CheckoutEvent
from config import CheckoutConfig
from logging_config import configure_logging
from metrics import generate_metrics_text

# Demo catalog; a storefront would load this from its product service
CATALOG: List[Dict[str, Any]] = [
    {"id": 1, "name": "Paracetamol 500mg (20 tabs)", "price": "250.00", "stock": 40},
    {"id": 2, "name": "Amoxicillin 250mg (15 caps)", "price": "480.00", "stock": 12},
    {"id": 3, "name": "Oral Rehydration Salts", "price": "60.00", "stock": 100},
    {"id": 4, "name": "Digital Thermometer", "price": "950.00", "stock": 3},
]

PAYMENT_CHOICES = {"1": "push", "2": "redirect", "3": "cash"}


def print_event(event: CheckoutEvent) -> None:
    if event.kind == "progress":
        print(f"  ... {event.message}")
    elif event.kind == "redirect":
        print(f"\nOpen this link to approve the payment: {event.data.get('approval_url')}")
    elif event.kind == "awaiting_payment":
        print(f"\n{event.message}")
        print("Check your phone and enter your PIN. Choose 'Cancel payment' to stop waiting.")
    elif event.kind == "confirmed":
        print(f"\nOrder {event.order_reference} confirmed. {event.message}")
    elif event.kind in ("failed", "rejected", "timed_out", "cancelled"):
        print(f"\n[{event.kind}] {event.message}")
    else:
        print(f"\n{event.message}")


def print_metrics() -> None:
    print(generate_metrics_text().decode("utf-8"))


def prompt_contact() -> Dict[str, str]:
    values = {}
    for key, label in (
        ("name", "Full name"),
        ("phone", "Phone (0712345678)"),
        ("address", "Delivery address"),
        ("email", "Email (optional)"),
        ("city", "City (optional)"),
        ("zip", "Postal code (optional)"),
    ):
        values[key] = input(f"{label}: ").strip()
    return values


def interactive_cli() -> None:
    """Run the checkout menu until the user exits."""
    config = CheckoutConfig.from_env()
    configure_logging(config.log_dir, console=False)
    controller = CheckoutController.from_config(config)
    controller.subscribe(print_event)

    def print_menu() -> None:
        print("\n-- Pharmacy Checkout --")
        print("1. List Products")
        print("2. Add Product to Cart")
        print("3. View Cart")
        print("4. Change Quantity")
        print("5. Checkout")
        print("6. Cancel payment")
        print("7. Show metrics")
        print("0. Exit")

    while True:
        print_menu()
        choice = input("Select an option: ").strip()
        if choice == "1":
            print("\nAvailable Products:")
            for p in CATALOG:
                print(f"{p['id']}. {p['name']} - KES {p['price']} (Stock: {p['stock']})")
        elif choice == "2":
            try:
                pid = int(input("Enter Product ID: "))
            except ValueError:
                print("Please enter a numeric product ID.")
                continue
            entry = next((p for p in CATALOG if p["id"] == pid), None)
            if entry is None:
                print("Product not found.")
                continue
            ok, msg = controller.cart.add_item(entry)
            print(msg)
        elif choice == "3":
            if controller.cart.is_empty():
                print("Cart is empty.")
                continue
            print("\nCart Contents:")
            for item in controller.cart:
                print(f"{item.name} x {item.quantity} = KES {item.line_total:.2f}")
            print(f"Items: {controller.cart.get_item_count()}  Total: KES {controller.cart.get_total():.2f}")
        elif choice == "4":
            try:
                pid = int(input("Enter Product ID: "))
                qty = int(input("New quantity (0 removes): "))
            except ValueError:
                print("Please enter valid numeric values.")
                continue
            ok, msg = controller.cart.update_quantity(pid, qty)
            print(msg)
        elif choice == "5":
            if not controller.checkout_enabled:
                print("A payment is already in progress.")
                continue
            print("Select payment method:")
            print("1. M-Pesa (phone prompt)")
            print("2. PayPal")
            print("3. Cash on delivery")
            method = PAYMENT_CHOICES.get(input("Choice: ").strip())
            if method is None:
                print("Invalid payment method.")
                continue
            values = prompt_contact()
            values["payment_method"] = method
            controller.submit_checkout(values)
        elif choice == "6":
            if not controller.cancel_payment():
                print("No payment is being checked.")
        elif choice == "7":
            print_metrics()
        elif choice == "0":
            controller.cancel_payment()
            print("Exiting application.")
            break
        else:
            print("Invalid option. Please try again.")


if __name__ == "__main__":
    try:
        interactive_cli()
    except KeyboardInterrupt:
        print("\nInterrupted by user. Exiting.")
        sys.exit(0)
