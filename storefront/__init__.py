"""
Landed Storefront
=================

Order fulfillment for the Landed student eSIM storefront.

This package provides:
- Stripe checkout session creation and payment verification
- SKU to carrier package mapping
- Signed eSIM carrier (eSIMAccess) purchase, query and usage calls
- Outcome classification into a single order shape for the frontend
- A local order ledger and a client-side status poller
"""

__version__ = "1.2.0"
