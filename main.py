"""
Landed Storefront API
=====================

Serverless-style backend for the eSIM storefront.

Endpoints:
- GET  /orders/verify-session   - Verify payment and provision the eSIM (polled by the confirmation screen)
- POST /payments/create-session - Create a Stripe Checkout Session for the cart
- POST /orders/webhook          - Carrier delivery notifications
- GET  /orders                  - Ledger entries for an email (dashboard)
- GET  /esim/usage              - Data usage for an issued profile
- GET  /catalog/packages        - Carrier package catalog
- GET  /health                  - Health check
"""

import asyncio
import hmac
import logging
import re
from datetime import datetime, timezone
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from storefront import __version__
from storefront.carrier import CarrierError, EsimAccessClient
from storefront.catalog import load_package_table
from storefront.config import StorefrontConfig
from storefront.logging_config import configure_logging
from storefront.orchestrator import OrderOrchestrator
from storefront.payments import (
    InvalidSessionReference,
    PaymentNotCompleted,
    PaymentProviderUnavailable,
    PaymentVerifier,
    StripeCheckout,
)
from storefront.repository import OrderRepository, create_repository

# Load .env file if present (dev mode)
load_dotenv()

logger = logging.getLogger(__name__)

# Load centralized config from environment
config = StorefrontConfig.from_env()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

# Initialize FastAPI
app = FastAPI(
    title="Landed Storefront",
    description="eSIM checkout, provisioning and order status API",
    version=__version__,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS from config
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Lazily built services
_carrier: Optional[EsimAccessClient] = None
_orchestrator: Optional[OrderOrchestrator] = None
_repository: Optional[OrderRepository] = None

EMPTY_USAGE = {
    "totalVolume": 0,
    "usedVolume": 0,
    "remainingVolume": 0,
    "status": "Unknown",
}


@app.on_event("startup")
async def startup_event():
    configure_logging(config.log_level, config.log_format, secrets=config.secret_values())
    logger.info(
        f"Landed Storefront API started (stripe={config.stripe.is_configured}, "
        f"carrier={config.carrier.is_configured}, "
        f"carrier_deadline={config.deadlines.effective_carrier_deadline:.2f}s)"
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up on shutdown."""
    if _carrier is not None:
        await _carrier.aclose()
        logger.info("Carrier client closed")


# =========================================
# DEPENDENCIES
# =========================================

def get_config() -> StorefrontConfig:
    return config


def get_carrier() -> EsimAccessClient:
    global _carrier
    if _carrier is None:
        _carrier = EsimAccessClient(config.carrier)
    return _carrier


def get_orchestrator() -> OrderOrchestrator:
    """Get or create the orchestrator instance."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = OrderOrchestrator(
            verifier=PaymentVerifier(
                config.stripe.secret_key,
                timeout=config.deadlines.effective_payment_deadline,
            ),
            carrier=get_carrier(),
            package_table=load_package_table(config.mapping),
            deadlines=config.deadlines,
        )
    return _orchestrator


def get_repository() -> OrderRepository:
    global _repository
    if _repository is None:
        _repository = create_repository(config.order_store_path)
    return _repository


def get_checkout() -> Optional[StripeCheckout]:
    """Checkout session factory, or None when Stripe is not configured."""
    if not config.stripe.is_configured:
        return None
    return StripeCheckout(config.stripe.secret_key)


def _error(status_code: int, error: str, details=None) -> JSONResponse:
    body = {"error": error}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


# =========================================
# ORDERS
# =========================================

@app.get("/orders/verify-session")
async def verify_session(
    session_id: Optional[str] = Query(None, alias="sessionId"),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    repository: OrderRepository = Depends(get_repository),
):
    """
    Verify the checkout session and provision the eSIM.

    Safe to call repeatedly: the carrier de-duplicates on the session id.
    """
    try:
        session, outcome = await orchestrator.verify_and_provision(session_id)
    except InvalidSessionReference:
        return _error(400, "Session ID required")
    except PaymentNotCompleted as e:
        return _error(400, e.message)
    except PaymentProviderUnavailable as e:
        return _error(500, e.message, e.details)

    items = [{"priceId": sku} for sku in session.sku_ids]
    try:
        await asyncio.to_thread(repository.save, outcome, items=items)
    except Exception:
        # A ledger failure never fails a paid order
        logger.error(
            f"Could not record order {outcome.id} in the ledger",
            exc_info=True,
            extra={"session_id": outcome.id, "status": outcome.status.value},
        )
    return outcome.to_dict()


def _webhook_authorized(secret: str, supplied: Optional[str]) -> bool:
    """Constant-time token check. No configured secret means no notification is trusted."""
    if not secret or not supplied:
        return False
    return hmac.compare_digest(secret.encode(), supplied.encode())


@app.post("/orders/webhook")
@limiter.limit("60/minute")
async def carrier_webhook(
    request: Request,
    token: Optional[str] = None,
    x_webhook_token: Optional[str] = Header(None),
    repository: OrderRepository = Depends(get_repository),
    settings: StorefrontConfig = Depends(get_config),
):
    """
    Carrier delivery notification.

    The shared secret (CARRIER_WEBHOOK_SECRET) arrives either in the
    X-Webhook-Token header or as ?token= on the registered webhook URL.

    Typical body:
        {"orderNo": "B23...", "status": "COMPLETED", "iccid": "8986...",
         "externalOrderNo": "cs_live_...", "acCode": "LPA:1$..."}
    """
    if not _webhook_authorized(settings.webhook_secret, x_webhook_token or token):
        logger.warning("Rejected carrier notification without a valid token")
        return _error(401, "Unauthorized")

    try:
        event = await request.json()
    except ValueError:
        return _error(400, "Invalid payload")
    if not isinstance(event, dict):
        return _error(400, "Invalid payload")

    external_order_no = event.get("externalOrderNo")
    logger.info(
        f"Carrier notification: order {event.get('orderNo')} status={event.get('status')}",
        extra={"session_id": external_order_no, "order_no": event.get("orderNo")},
    )

    if external_order_no:
        entry = await asyncio.to_thread(
            repository.update_from_carrier,
            external_order_no,
            iccid=event.get("iccid"),
            activation_code=event.get("acCode") or event.get("ac"),
            order_no=event.get("orderNo"),
        )
        if entry is None:
            logger.info(
                f"No ledger entry for {external_order_no}; notification ignored",
                extra={"session_id": external_order_no},
            )

    return {"received": True}


@app.get("/orders")
async def list_orders(
    email: Optional[str] = None,
    session_id: Optional[str] = Query(None, alias="sessionId"),
    repository: OrderRepository = Depends(get_repository),
):
    """
    Order history for the account dashboard.

    The caller proves ownership with one of the email's checkout session ids.
    Activation codes and QR links are left out of the listing; the
    confirmation screen fetches them through /orders/verify-session.
    """
    if not email or not email.strip():
        return _error(400, "Email required")
    if not session_id or not session_id.strip():
        return _error(400, "Session ID required")

    owner = await asyncio.to_thread(repository.get, session_id.strip())
    if owner is None or owner.email != email.strip().lower():
        return _error(404, "No orders found")

    entries = await asyncio.to_thread(repository.find_by_email, email)
    return {"orders": [entry.to_summary() for entry in entries]}


# =========================================
# PAYMENTS
# =========================================

class CartItem(BaseModel):
    priceId: str

    @field_validator("priceId")
    @classmethod
    def validate_price_id(cls, v):
        if not v.strip():
            raise ValueError("priceId cannot be blank")
        return v.strip()


class CreateSessionRequest(BaseModel):
    email: str
    items: List[CartItem] = []
    successUrl: Optional[str] = None
    cancelUrl: Optional[str] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        if not re.match(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$", v.strip()):
            raise ValueError("Invalid email format")
        return v.lower().strip()


@app.post("/payments/create-session")
@limiter.limit("10/minute")
async def create_checkout_session(
    request: Request,
    body: CreateSessionRequest,
    checkout: Optional[StripeCheckout] = Depends(get_checkout),
    settings: StorefrontConfig = Depends(get_config),
):
    """Create a Stripe Checkout Session and return its hosted URL."""
    if checkout is None:
        logger.error("STRIPE_SECRET_KEY is not set")
        return _error(500, "Payment gateway configuration error: missing secret key")

    if not body.items:
        return _error(400, "Cart is empty")

    try:
        link = await asyncio.to_thread(
            checkout.create_session,
            email=body.email,
            price_ids=[item.priceId for item in body.items],
            success_url=body.successUrl or f"{settings.app_url}/?status=success",
            cancel_url=body.cancelUrl or f"{settings.app_url}/?status=cancelled",
        )
    except ValueError as e:
        return _error(400, str(e))
    except PaymentProviderUnavailable as e:
        return _error(500, e.message, e.details)

    return {"checkoutUrl": link.url, "sessionId": link.session_id}


# =========================================
# ESIM AND CATALOG
# =========================================

@app.get("/esim/usage")
async def esim_usage(
    iccid: Optional[str] = None,
    carrier: EsimAccessClient = Depends(get_carrier),
    settings: StorefrontConfig = Depends(get_config),
):
    """Data usage telemetry for one issued profile."""
    if not iccid or not iccid.strip() or iccid.strip().upper() == "PENDING":
        return _error(400, "Valid ICCID required")

    try:
        usage = await carrier.usage(iccid.strip(), deadline=settings.deadlines.effective_carrier_deadline)
    except CarrierError as e:
        logger.warning(f"Usage lookup failed for {iccid}: {e}")
        return _error(500, "Failed to fetch usage telemetry")

    return usage or dict(EMPTY_USAGE)


@app.get("/catalog/packages")
async def catalog_packages(
    location_code: Optional[str] = Query(None, alias="locationCode"),
    carrier: EsimAccessClient = Depends(get_carrier),
):
    """Packages enabled on the carrier account."""
    try:
        packages = await carrier.list_packages(location_code)
    except CarrierError as e:
        logger.warning(f"Catalog fetch failed: {e}")
        return _error(500, "Failed to fetch catalog from carrier", e.message)

    return {"packages": packages}


@app.get("/health")
async def health_check(settings: StorefrontConfig = Depends(get_config)):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "stripe_configured": settings.stripe.is_configured,
        "carrier_configured": settings.carrier.is_configured,
        "carrier_deadline_seconds": settings.deadlines.effective_carrier_deadline,
        "carrier_query_enabled": settings.deadlines.query_enabled,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
