"""
Tests for Stripe payment verification and checkout creation.

The Stripe SDK is patched; no network access.
"""

import time
from unittest.mock import patch

import pytest
import stripe

from storefront.payments import (
    CheckoutSession,
    InvalidSessionReference,
    PaymentNotCompleted,
    PaymentProviderUnavailable,
    PaymentVerifier,
    StripeCheckout,
)


def _stripe_session(**overrides):
    session = {
        "id": "cs_test_123",
        "payment_status": "paid",
        "customer_email": "Student@Example.edu ",
        "amount_total": 1999,
        "currency": "usd",
        "metadata": {"customer_email": "student@example.edu", "plan_ids": "price_uk_10gb_prod"},
    }
    session.update(overrides)
    return session


class TestCheckoutSession:

    def test_from_stripe(self):
        session = CheckoutSession.from_stripe(_stripe_session())
        assert session.id == "cs_test_123"
        assert session.is_paid
        assert session.customer_email == "student@example.edu"
        assert session.amount_paid == 19.99
        assert session.currency == "USD"
        assert session.sku_ids == ["price_uk_10gb_prod"]

    def test_email_falls_back_to_customer_details(self):
        session = CheckoutSession.from_stripe(_stripe_session(
            customer_email=None,
            customer_details={"email": "Buyer@Example.edu"},
        ))
        assert session.customer_email == "buyer@example.edu"

    def test_email_falls_back_to_metadata(self):
        session = CheckoutSession.from_stripe(_stripe_session(customer_email=None))
        assert session.customer_email == "student@example.edu"


class TestPaymentVerifier:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ref", [None, "", "   "])
    async def test_empty_reference(self, ref):
        with pytest.raises(InvalidSessionReference):
            await PaymentVerifier("sk_test_fake").verify(ref)

    @pytest.mark.asyncio
    async def test_missing_key(self):
        with pytest.raises(PaymentProviderUnavailable):
            await PaymentVerifier("").verify("cs_test_123")

    @pytest.mark.asyncio
    async def test_paid_session(self):
        with patch("stripe.checkout.Session.retrieve", return_value=_stripe_session()) as retrieve:
            session = await PaymentVerifier("sk_test_fake").verify(" cs_test_123 ")

        retrieve.assert_called_once_with("cs_test_123", api_key="sk_test_fake")
        assert session.is_paid

    @pytest.mark.asyncio
    async def test_unpaid_session(self):
        with patch("stripe.checkout.Session.retrieve", return_value=_stripe_session(payment_status="unpaid")):
            with pytest.raises(PaymentNotCompleted) as exc_info:
                await PaymentVerifier("sk_test_fake").verify("cs_test_123")

        assert exc_info.value.payment_status == "unpaid"
        assert exc_info.value.message == "Payment not completed"

    @pytest.mark.asyncio
    async def test_stripe_error(self):
        error = stripe.APIConnectionError("network down")
        with patch("stripe.checkout.Session.retrieve", side_effect=error):
            with pytest.raises(PaymentProviderUnavailable):
                await PaymentVerifier("sk_test_fake").verify("cs_test_123")

    @pytest.mark.asyncio
    async def test_slow_stripe_is_abandoned(self):
        """A hanging lookup fails closed once the verifier's own timeout passes."""
        def hang(*args, **kwargs):
            time.sleep(1.0)
            raise stripe.APIConnectionError("network down")

        with patch("stripe.checkout.Session.retrieve", side_effect=hang):
            started = time.monotonic()
            with pytest.raises(PaymentProviderUnavailable) as exc_info:
                await PaymentVerifier("sk_test_fake", timeout=0.1).verify("cs_test_123")
            elapsed = time.monotonic() - started

        assert elapsed < 0.8
        assert exc_info.value.details == {"stripe_error": "timeout"}


class TestStripeCheckout:

    def test_requires_key(self):
        with pytest.raises(ValueError):
            StripeCheckout("")

    def test_empty_cart(self):
        with pytest.raises(ValueError, match="Cart is empty"):
            StripeCheckout("sk_test_fake").create_session("a@b.co", [], "https://x/ok", "https://x/no")

    def test_create_session(self):
        created = {"id": "cs_test_new", "url": "https://checkout.stripe.com/c/pay/cs_test_new"}
        with patch("stripe.checkout.Session.create", return_value=created) as create:
            link = StripeCheckout("sk_test_fake").create_session(
                email="student@example.edu",
                price_ids=["price_uk_10gb_prod", "price_fr_5gb_prod"],
                success_url="https://landed.example/?status=success",
                cancel_url="https://landed.example/?status=cancelled",
            )

        assert link.url == created["url"]
        assert link.session_id == "cs_test_new"
        kwargs = create.call_args.kwargs
        assert kwargs["api_key"] == "sk_test_fake"
        assert kwargs["mode"] == "payment"
        assert kwargs["customer_email"] == "student@example.edu"
        assert kwargs["metadata"]["plan_ids"] == "price_uk_10gb_prod,price_fr_5gb_prod"
        assert kwargs["line_items"] == [
            {"price": "price_uk_10gb_prod", "quantity": 1},
            {"price": "price_fr_5gb_prod", "quantity": 1},
        ]
        assert kwargs["success_url"] == "https://landed.example/?status=success&session_id={CHECKOUT_SESSION_ID}"

    def test_stripe_failure(self):
        error = stripe.InvalidRequestError("No such price", param="line_items")
        with patch("stripe.checkout.Session.create", side_effect=error):
            with pytest.raises(PaymentProviderUnavailable):
                StripeCheckout("sk_test_fake").create_session(
                    "a@b.co", ["price_missing"], "https://x/ok", "https://x/no",
                )
