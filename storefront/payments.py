"""
Stripe Checkout and Payment Verification
========================================

Creates one-time Stripe Checkout Sessions for the cart and confirms, before
anything is bought from the carrier, that a session was actually paid.

The purchased SKUs travel in session metadata as a comma-separated
`plan_ids` string so the verification step can recover them without a
database.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import stripe

from .catalog import skus_from_metadata

logger = logging.getLogger(__name__)


class PaymentError(Exception):
    """Base exception for payment errors."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InvalidSessionReference(PaymentError):
    """Empty or missing checkout session reference."""
    MESSAGE = "Session ID required"


class PaymentNotCompleted(PaymentError):
    """The checkout session exists but has not been paid."""
    MESSAGE = "Payment not completed"

    def __init__(self, session_id: str, payment_status: Optional[str]):
        self.session_id = session_id
        self.payment_status = payment_status
        super().__init__(
            self.MESSAGE,
            details={"session_id": session_id, "payment_status": payment_status},
        )


class PaymentProviderUnavailable(PaymentError):
    """Stripe could not be reached or refused the call. Nothing can be confirmed."""
    pass


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _as_dict(value: Any) -> Dict[str, Any]:
    if not value:
        return {}
    if isinstance(value, dict):
        return dict(value)
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return dict(value)


@dataclass
class CheckoutSession:
    """The parts of a Stripe Checkout Session the storefront reads."""
    id: str
    payment_status: str
    customer_email: str = ""
    amount_total: int = 0  # minor units (cents)
    currency: str = "USD"
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    @property
    def amount_paid(self) -> float:
        return self.amount_total / 100

    @property
    def sku_ids(self) -> List[str]:
        return skus_from_metadata(self.metadata)

    @classmethod
    def from_stripe(cls, obj: Any) -> "CheckoutSession":
        metadata = _as_dict(_field(obj, "metadata"))
        email = (
            _field(obj, "customer_email")
            or _field(_field(obj, "customer_details"), "email")
            or metadata.get("customer_email")
            or ""
        )
        currency = _field(obj, "currency") or "usd"
        return cls(
            id=_field(obj, "id", ""),
            payment_status=_field(obj, "payment_status", "unpaid") or "unpaid",
            customer_email=email.strip().lower(),
            amount_total=_field(obj, "amount_total") or 0,
            currency=currency.upper(),
            metadata=metadata,
        )


class PaymentVerifier:
    """
    Confirms a checkout session was paid.

    Every failure raises: callers must not provision anything unless
    verify() returns. The Stripe lookup is abandoned after `timeout`
    seconds, well inside the platform budget.
    """

    def __init__(self, secret_key: str, timeout: float = 3.0):
        self.secret_key = secret_key
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    async def verify(self, session_ref: Optional[str]) -> CheckoutSession:
        if not session_ref or not str(session_ref).strip():
            raise InvalidSessionReference(InvalidSessionReference.MESSAGE)
        session_id = str(session_ref).strip()

        if not self.is_configured:
            raise PaymentProviderUnavailable("Stripe secret key is not configured")

        try:
            # Stripe SDK calls are synchronous - run in thread
            obj = await asyncio.wait_for(
                asyncio.to_thread(
                    stripe.checkout.Session.retrieve,
                    session_id,
                    api_key=self.secret_key,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Stripe lookup for {session_id} timed out after {self.timeout:.2f}s",
                extra={"session_id": session_id},
            )
            raise PaymentProviderUnavailable(
                "Could not confirm payment with Stripe",
                details={"stripe_error": "timeout"},
            )
        except stripe.StripeError as e:
            logger.error(
                f"Stripe lookup failed for {session_id}: {e}",
                exc_info=True,
                extra={"session_id": session_id},
            )
            raise PaymentProviderUnavailable(
                "Could not confirm payment with Stripe",
                details={"stripe_error": getattr(e, "user_message", None) or str(e)},
            )

        session = CheckoutSession.from_stripe(obj)
        if not session.is_paid:
            logger.info(
                f"Session {session_id} not paid yet (status={session.payment_status})",
                extra={"session_id": session_id},
            )
            raise PaymentNotCompleted(session_id, session.payment_status)

        return session


@dataclass
class CheckoutLink:
    url: str
    session_id: str


class StripeCheckout:
    """
    Handles Stripe Checkout Session creation for the cart.

    Usage:
        checkout = StripeCheckout(secret_key="sk_live_...")
        link = checkout.create_session(
            email="student@example.edu",
            price_ids=["price_uk_10gb_prod"],
            success_url="https://landed.example/?status=success",
            cancel_url="https://landed.example/?status=cancelled",
        )
        # Redirect user to link.url
    """

    def __init__(self, secret_key: str):
        if not secret_key:
            raise ValueError("Stripe API key required. Set STRIPE_SECRET_KEY env var.")
        self.secret_key = secret_key

    def create_session(
        self,
        email: str,
        price_ids: List[str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutLink:
        """
        Create a one-time payment Checkout Session.

        Raises:
            ValueError: empty cart
            PaymentProviderUnavailable: Stripe refused or could not be reached
        """
        if not price_ids:
            raise ValueError("Cart is empty")

        # Stripe substitutes the placeholder with the real session id on redirect
        if "{CHECKOUT_SESSION_ID}" not in success_url:
            separator = "&" if "?" in success_url else "?"
            success_url = f"{success_url}{separator}session_id={{CHECKOUT_SESSION_ID}}"

        metadata = {
            "customer_email": email,
            "plan_ids": ",".join(price_ids),
        }

        session_params = {
            "mode": "payment",
            "line_items": [{"price": price_id, "quantity": 1} for price_id in price_ids],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if email:
            session_params["customer_email"] = email

        try:
            session = stripe.checkout.Session.create(api_key=self.secret_key, **session_params)
        except stripe.StripeError as e:
            logger.error(f"Stripe session creation failed: {e}")
            raise PaymentProviderUnavailable(
                getattr(e, "user_message", None) or "Payment session creation failed",
                details={"stripe_error": str(e)},
            )

        logger.info(
            f"Created checkout session for {len(price_ids)} item(s)",
            extra={"session_id": _field(session, "id")},
        )
        return CheckoutLink(url=_field(session, "url"), session_id=_field(session, "id"))
