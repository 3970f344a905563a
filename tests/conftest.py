"""
Storefront Test Fixtures
========================

Shared fixtures for all test modules.
"""

import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from storefront.carrier import EsimAccessClient
from storefront.catalog import PackageMapping, PackageTable
from storefront.config import CarrierConfig, DeadlineConfig
from storefront.payments import CheckoutSession


CARRIER_BASE_URL = "https://carrier.test"
PURCHASE_PATH = "/api/v1/open/esim/order"
QUERY_PATH = "/api/v1/open/esim/query"
USAGE_PATH = "/api/v1/open/esim/usage/query"
PACKAGE_LIST_PATH = "/api/v1/open/package/list"

ACTIVATION_CODE = "LPA:1$smdp.example.com$ABC-123"


# ============================================
# CARRIER ENVELOPES
# ============================================

def success_body(order_no: str = "B2401010001", ac: Optional[str] = ACTIVATION_CODE, iccid: str = "8986000000000000001") -> Dict[str, Any]:
    """eSIMAccess-style success envelope."""
    profiles = [{"iccid": iccid, "ac": ac}] if ac is not None else []
    return {
        "success": True,
        "errorCode": "0",
        "errorMsg": None,
        "obj": {"orderNo": order_no, "esimList": profiles},
    }


def rejection_body(code: str = "200007", message: str = "Insufficient account balance") -> Dict[str, Any]:
    return {"success": False, "errorCode": code, "errorMsg": message, "obj": None}


# ============================================
# STUB CARRIER
# ============================================

class RecordingCarrier:
    """
    httpx MockTransport handler that records requests and answers per path.

    `routes` maps a path to a dict body, an httpx.Response, or an async
    callable taking the request.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes = routes or {}
        self.requests: List[httpx.Request] = []

    @property
    def bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        answer = self.routes.get(request.url.path)
        if answer is None:
            return httpx.Response(404, json={"errorCode": "404", "errorMsg": "no route"})
        if callable(answer):
            answer = await answer(request)
        if isinstance(answer, httpx.Response):
            return answer
        return httpx.Response(200, json=answer)


def make_carrier(handler: Callable, config: Optional[CarrierConfig] = None) -> EsimAccessClient:
    """EsimAccessClient wired to a MockTransport."""
    config = config or CarrierConfig(app_key="test_key", app_secret="test_secret", base_url=CARRIER_BASE_URL)
    http_client = httpx.AsyncClient(
        base_url=config.base_url,
        transport=httpx.MockTransport(handler),
    )
    return EsimAccessClient(config, http_client=http_client)


# ============================================
# STUB PAYMENTS
# ============================================

class StubVerifier:
    """Stands in for PaymentVerifier; returns a fixed session or raises."""

    def __init__(self, session: Optional[CheckoutSession] = None, error: Optional[Exception] = None):
        self.session = session
        self.error = error
        self.calls: List[str] = []

    async def verify(self, session_ref):
        self.calls.append(session_ref)
        if self.error is not None:
            raise self.error
        return self.session


def make_session(session_id: str = "cs_test_123", plan_ids: str = "price_uk_10gb_prod", paid: bool = True) -> CheckoutSession:
    return CheckoutSession(
        id=session_id,
        payment_status="paid" if paid else "unpaid",
        customer_email="student@example.edu",
        amount_total=1999,
        currency="USD",
        metadata={"customer_email": "student@example.edu", "plan_ids": plan_ids},
    )


# ============================================
# CATALOG AND DEADLINES
# ============================================

@pytest.fixture
def package_table():
    return PackageTable(
        {
            "price_uk_10gb_prod": PackageMapping("GB", "GB_10GB_30D"),
            "price_fr_5gb_prod": PackageMapping("FR", "FR_5GB_30D"),
        },
        default=PackageMapping("US", "US_5GB_30D"),
    )


@pytest.fixture
def fast_deadlines():
    """Small budget so timeout tests finish quickly."""
    return DeadlineConfig(
        platform_budget_seconds=1.0,
        safety_margin_seconds=0.5,
        carrier_deadline_seconds=0.2,
    )


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
