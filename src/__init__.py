"""Top-level package for the pharmacy checkout.

This package exposes the checkout controller via :mod:`app`, the data access
layer via :mod:`dao`, the payment gateway adapters in
:mod:`external_services`, dispatch in :mod:`payment_service` and status
polling in :mod:`payment_monitor`.
"""
