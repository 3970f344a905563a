"""
Carrier Request/Response Types and Errors
=========================================

Shared shapes for talking to the eSIM carrier aggregator.

The carrier wraps every answer in an envelope:

    {"success": true, "errorCode": "0", "errorMsg": null,
     "obj": {"orderNo": "B23...", "esimList": [{"iccid": "...", "ac": "LPA:1$..."}]}}

Older endpoints answer with {"code": "000000", "message": ..., "data": {...}}
instead. parse_envelope() accepts both.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

SUCCESS_CODES = {"000000", "0"}


class CarrierError(Exception):
    """Base exception for carrier errors."""
    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(f"[carrier] {message}")


class InfrastructureNotConfigured(CarrierError):
    """Carrier credentials are missing; no signed call can be made."""
    pass


class CarrierTransportFailure(CarrierError):
    """Timeout or network failure. The purchase may still have gone through."""
    def __init__(self, message: str, timed_out: bool = False, details: Optional[Dict] = None):
        self.timed_out = timed_out
        super().__init__(message, details=details)


class CarrierRejection(CarrierError):
    """Carrier answered with a non-success code."""
    pass


class MalformedCarrierResponse(CarrierError):
    """Carrier answered with something that is not a response envelope."""
    pass


@dataclass
class ProvisioningRequest:
    """One purchase attempt. external_order_no is the checkout session id."""
    location_code: str
    package_code: str
    external_order_no: str
    email: str = ""
    quantity: int = 1

    def to_payload(self) -> Dict[str, Any]:
        return {
            "locationCode": self.location_code,
            "packageCode": self.package_code,
            "quantity": self.quantity,
            "externalOrderNo": self.external_order_no,
            "email": self.email,
        }


@dataclass
class CarrierResponse:
    code: Optional[str]
    message: str = ""
    order_no: Optional[str] = None
    activation_code: Optional[str] = None
    iccid: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.code in SUCCESS_CODES


def _first_profile(payload: Dict[str, Any]) -> Dict[str, Any]:
    for key in ("orderList", "esimList"):
        profiles = payload.get(key)
        if isinstance(profiles, list) and profiles and isinstance(profiles[0], dict):
            return profiles[0]
    return {}


def parse_envelope(body: Any) -> CarrierResponse:
    """Normalize a carrier envelope into a CarrierResponse."""
    if not isinstance(body, dict):
        raise MalformedCarrierResponse(
            f"Expected a JSON object, got {type(body).__name__}",
            details={"body": body},
        )

    raw_code = body.get("code")
    if raw_code is None:
        raw_code = body.get("errorCode")
    if raw_code is None and "success" in body:
        raw_code = "0" if body.get("success") else None
    if raw_code is None:
        raise MalformedCarrierResponse("Response envelope has no status code", details={"body": body})
    code = str(raw_code).strip()

    message = body.get("message") or body.get("msg") or body.get("errorMsg") or ""

    payload = body.get("data")
    if not isinstance(payload, dict):
        payload = body.get("obj")
    if not isinstance(payload, dict):
        payload = {}

    profile = _first_profile(payload)
    activation_code = (
        profile.get("acCode") or profile.get("ac") or profile.get("qrCodeUrl")
        or payload.get("acCode")
    )

    return CarrierResponse(
        code=code,
        message=str(message),
        order_no=payload.get("orderNo") or profile.get("orderNo"),
        activation_code=activation_code,
        iccid=profile.get("iccid") or payload.get("iccid"),
        raw=body,
    )
