"""
eSIMAccess Carrier Client
=========================

Async client for the eSIMAccess aggregator using direct REST calls via httpx.

Every call is signed fresh (see signer.py) and bounded by an explicit
deadline covering the whole exchange (connect, send, read). A call that
misses its deadline is abandoned locally; the carrier may still complete
it, so callers must treat a timeout as "unknown", never as "not purchased".

API Docs: https://docs.esimaccess.com/
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import CarrierConfig
from .base import (
    CarrierRejection,
    CarrierResponse,
    CarrierTransportFailure,
    InfrastructureNotConfigured,
    MalformedCarrierResponse,
    ProvisioningRequest,
    parse_envelope,
)
from .signer import signed_headers

logger = logging.getLogger(__name__)


class EsimAccessClient:
    """
    eSIMAccess REST adapter.

    Usage:
        async with EsimAccessClient(config.carrier) as carrier:
            response = await carrier.purchase(request, deadline=6.0)
    """

    def __init__(self, config: CarrierConfig, http_client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            config: Carrier credentials and endpoint paths
            http_client: Pre-built client (tests pass one with a MockTransport)
        """
        self.config = config
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(
            base_url=config.base_url,
            headers={"Content-Type": "application/json"},
            timeout=30.0,
        )

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    async def __aenter__(self) -> "EsimAccessClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # =========================================
    # TRANSPORT
    # =========================================

    async def _post(self, path: str, payload: Dict[str, Any], deadline: float) -> Any:
        """Signed POST bounded by `deadline` seconds. Returns the decoded JSON body."""
        if not self.is_configured:
            raise InfrastructureNotConfigured("Carrier AppKey/AppSecret are not configured")

        headers = signed_headers(self.config.app_key, self.config.app_secret)

        try:
            response = await asyncio.wait_for(
                self.client.post(path, json=payload, headers=headers),
                timeout=deadline,
            )
        except asyncio.TimeoutError:
            raise CarrierTransportFailure(
                f"No response from carrier within {deadline:.1f}s",
                timed_out=True,
                details={"path": path},
            )
        except httpx.TimeoutException as e:
            raise CarrierTransportFailure(
                f"Carrier request timed out: {e}",
                timed_out=True,
                details={"path": path},
            )
        except httpx.HTTPError as e:
            raise CarrierTransportFailure(
                f"Carrier request failed: {e}",
                details={"path": path},
            )

        try:
            return response.json()
        except ValueError:
            raise MalformedCarrierResponse(
                f"Carrier returned non-JSON body (HTTP {response.status_code})",
                details={"path": path, "status_code": response.status_code, "body": response.text[:500]},
            )

    # =========================================
    # ORDERS
    # =========================================

    async def purchase(self, request: ProvisioningRequest, deadline: float) -> CarrierResponse:
        """
        Buy one eSIM profile.

        Rejections come back as a CarrierResponse with a non-success code;
        only transport problems and malformed bodies raise.
        """
        body = await self._post(self.config.purchase_path, request.to_payload(), deadline)
        result = parse_envelope(body)
        logger.info(
            f"Carrier purchase answered code={result.code} order_no={result.order_no}",
            extra={"session_id": request.external_order_no, "carrier_code": result.code},
        )
        return result

    async def query_order(self, order_no: str, deadline: float) -> CarrierResponse:
        """Fetch the current record for a carrier order number."""
        body = await self._post(
            self.config.query_path,
            {"orderNo": order_no, "pager": {"pageNum": 1, "pageSize": 20}},
            deadline,
        )
        return parse_envelope(body)

    # =========================================
    # PROFILES AND CATALOG
    # =========================================

    async def usage(self, iccid: str, deadline: float) -> Dict[str, Any]:
        """Data usage for an issued profile."""
        body = await self._post(self.config.usage_path, {"iccid": iccid}, deadline)
        envelope = parse_envelope(body)
        payload = body.get("obj") or body.get("data") or {}
        if not envelope.is_success:
            raise CarrierRejection(
                envelope.message or "Usage query rejected",
                code=envelope.code,
                details={"iccid": iccid},
            )
        return payload if isinstance(payload, dict) else {}

    async def list_packages(self, location_code: Optional[str] = None, deadline: float = 10.0) -> List[Dict[str, Any]]:
        """Packages enabled for this account, optionally for one location."""
        payload: Dict[str, Any] = {"type": "BASE"}
        if location_code:
            payload["locationCode"] = location_code
        body = await self._post(self.config.package_list_path, payload, deadline)
        envelope = parse_envelope(body)
        if not envelope.is_success:
            raise CarrierRejection(
                envelope.message or "Package list rejected",
                code=envelope.code,
            )
        container = body.get("obj") or body.get("data") or {}
        packages = container.get("packageList") or container.get("list") or []
        return packages if isinstance(packages, list) else []
