"""
Provisioning Outcome Classifier
===============================

Turns whatever the carrier did (answered, rejected, timed out, was never
called) into one of four order statuses the frontend knows how to render.

Rules, highest priority first:

1. Carrier credentials missing         -> manual_fulfillment
2. Timeout or transport failure        -> pending
3. Malformed carrier answer            -> manual_fulfillment
4. Success code + activation code      -> completed
5. Success code, no activation code    -> pending
6. Any other code                      -> error (carrier code and message kept)

pending and manual_fulfillment both mean "payment is fine, ask again later".
Payment confirmation is never revoked by anything decided here.
"""

import dataclasses
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import quote

from .carrier.base import (
    CarrierError,
    CarrierRejection,
    CarrierResponse,
    CarrierTransportFailure,
    InfrastructureNotConfigured,
)

logger = logging.getLogger(__name__)

QR_CODE_URL = "https://api.qrserver.com/v1/create-qr-code/?size=300x300&data={data}"

# Values older frontends stored in activationCode while waiting on the carrier.
PLACEHOLDER_CODES = {"PROVISIONING_PENDING", "PROVISIONING_DELAYED", "PENDING", "NULL", "NONE"}
PLACEHOLDER_PREFIXES = ("ERROR:", "CONNECTION_ERROR:")


class ProvisioningStatus(Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    MANUAL_FULFILLMENT = "manual_fulfillment"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        """Terminal for the poller: stop asking."""
        return self in (ProvisioningStatus.COMPLETED, ProvisioningStatus.ERROR)


class CarrierResponseShape(Enum):
    SUCCESS_WITH_ACTIVATION = "success_with_activation"
    SUCCESS_AWAITING_ALLOCATION = "success_awaiting_allocation"
    REJECTED = "rejected"
    MALFORMED = "malformed"
    TIMED_OUT = "timed_out"
    TRANSPORT_FAILURE = "transport_failure"
    NOT_CONFIGURED = "not_configured"


class RejectionReason(Enum):
    INSUFFICIENT_BALANCE = "insufficient_balance"
    PACKAGE_NOT_ENABLED = "package_not_enabled"
    IP_NOT_ALLOWLISTED = "ip_not_allowlisted"
    INVALID_PACKAGE = "invalid_package"
    UNKNOWN = "unknown"

    @property
    def description(self) -> str:
        return REJECTION_DESCRIPTIONS[self]


REJECTION_DESCRIPTIONS = {
    RejectionReason.INSUFFICIENT_BALANCE: "Insufficient carrier account balance",
    RejectionReason.PACKAGE_NOT_ENABLED: "Package is not enabled for purchase on the carrier account",
    RejectionReason.IP_NOT_ALLOWLISTED: "Server IP is not on the carrier allow-list",
    RejectionReason.INVALID_PACKAGE: "Invalid package identifier",
    RejectionReason.UNKNOWN: "Carrier rejected the order",
}

# Codes seen from eSIMAccess. Anything else is matched on message keywords.
KNOWN_REJECTION_CODES = {
    "200007": RejectionReason.INSUFFICIENT_BALANCE,
    "200010": RejectionReason.PACKAGE_NOT_ENABLED,
    "101031": RejectionReason.IP_NOT_ALLOWLISTED,
    "200002": RejectionReason.INVALID_PACKAGE,
}

# What the customer sees while payment is confirmed but the eSIM is not ready.
SYNCING_MESSAGE = "Payment confirmed. Your eSIM is still syncing with the carrier network."
ALLOCATING_MESSAGE = "Payment confirmed. The carrier is still allocating your eSIM profile."
MANUAL_MESSAGE = "Payment confirmed. Your eSIM will be issued by our team and emailed to you shortly."


def is_placeholder(activation_code: Optional[str]) -> bool:
    """True for blank or sentinel activation codes that are not a real LPA string."""
    if activation_code is None:
        return True
    value = str(activation_code).strip()
    if not value:
        return True
    if value.upper() in PLACEHOLDER_CODES:
        return True
    return value.upper().startswith(PLACEHOLDER_PREFIXES)


def rejection_reason(code: Optional[str], message: Optional[str]) -> RejectionReason:
    if code and code in KNOWN_REJECTION_CODES:
        return KNOWN_REJECTION_CODES[code]

    text = (message or "").lower()
    if "balance" in text:
        return RejectionReason.INSUFFICIENT_BALANCE
    if "whitelist" in text or "white list" in text or "allowlist" in text or re.search(r"\bip\b", text):
        return RejectionReason.IP_NOT_ALLOWLISTED
    if "not enabled" in text or "not available" in text or "not open" in text:
        return RejectionReason.PACKAGE_NOT_ENABLED
    if "package" in text and ("invalid" in text or "not exist" in text or "not found" in text):
        return RejectionReason.INVALID_PACKAGE
    return RejectionReason.UNKNOWN


def qr_code_url(activation_code: Optional[str]) -> Optional[str]:
    if is_placeholder(activation_code):
        return None
    return QR_CODE_URL.format(data=quote(activation_code, safe=""))


@dataclass
class ProvisioningOutcome:
    """Normalized result of one orchestration call, as returned to the frontend."""
    id: str
    email: str
    status: ProvisioningStatus
    iccid: Optional[str] = None
    activation_code: Optional[str] = None
    order_no: Optional[str] = None
    message: Optional[str] = None
    total: Optional[float] = None
    currency: Optional[str] = None
    qr_code: Optional[str] = None

    def __post_init__(self):
        if self.status == ProvisioningStatus.COMPLETED and is_placeholder(self.activation_code):
            raise ValueError("A completed outcome needs a real activation code")
        if self.status == ProvisioningStatus.ERROR and not self.message:
            raise ValueError("An error outcome needs a message")
        if self.qr_code is None:
            self.qr_code = qr_code_url(self.activation_code)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase wire shape, dropping empty fields."""
        data = {
            "id": self.id,
            "email": self.email,
            "status": self.status.value,
            "iccid": self.iccid,
            "activationCode": self.activation_code,
            "orderNo": self.order_no,
            "message": self.message,
            "total": self.total,
            "currency": self.currency,
            "qrCode": self.qr_code,
        }
        return {key: value for key, value in data.items() if value is not None}


def shape_of(
    response: Optional[CarrierResponse] = None,
    error: Optional[BaseException] = None,
) -> CarrierResponseShape:
    """Reduce a carrier answer or carrier exception to a response shape."""
    if error is not None:
        if isinstance(error, InfrastructureNotConfigured):
            return CarrierResponseShape.NOT_CONFIGURED
        if isinstance(error, CarrierTransportFailure):
            if error.timed_out:
                return CarrierResponseShape.TIMED_OUT
            return CarrierResponseShape.TRANSPORT_FAILURE
        if isinstance(error, CarrierRejection):
            return CarrierResponseShape.REJECTED
        return CarrierResponseShape.MALFORMED

    if response is None:
        return CarrierResponseShape.MALFORMED
    if not response.is_success:
        return CarrierResponseShape.REJECTED
    if is_placeholder(response.activation_code):
        return CarrierResponseShape.SUCCESS_AWAITING_ALLOCATION
    return CarrierResponseShape.SUCCESS_WITH_ACTIVATION


def classify(
    order_id: str,
    email: str,
    response: Optional[CarrierResponse] = None,
    error: Optional[CarrierError] = None,
    total: Optional[float] = None,
    currency: Optional[str] = None,
) -> ProvisioningOutcome:
    """Map a carrier response (or carrier exception) to a ProvisioningOutcome."""
    shape = shape_of(response, error)
    base = {"id": order_id, "email": email, "total": total, "currency": currency}

    if shape == CarrierResponseShape.NOT_CONFIGURED:
        return ProvisioningOutcome(status=ProvisioningStatus.MANUAL_FULFILLMENT, message=MANUAL_MESSAGE, **base)

    if shape in (CarrierResponseShape.TIMED_OUT, CarrierResponseShape.TRANSPORT_FAILURE):
        return ProvisioningOutcome(status=ProvisioningStatus.PENDING, message=SYNCING_MESSAGE, **base)

    if shape == CarrierResponseShape.MALFORMED:
        return ProvisioningOutcome(status=ProvisioningStatus.MANUAL_FULFILLMENT, message=MANUAL_MESSAGE, **base)

    if shape == CarrierResponseShape.REJECTED:
        if response is not None:
            code, carrier_message = response.code, response.message
        else:
            code, carrier_message = error.code, error.message
        reason = rejection_reason(code, carrier_message)
        logger.warning(
            f"Carrier rejected order {order_id}: {reason.value} ({code}) {carrier_message}",
            extra={"session_id": order_id, "carrier_code": code},
        )
        return ProvisioningOutcome(
            status=ProvisioningStatus.ERROR,
            message=f"{reason.description} (carrier code {code}): {carrier_message or 'no message'}",
            **base,
        )

    if shape == CarrierResponseShape.SUCCESS_AWAITING_ALLOCATION:
        return ProvisioningOutcome(
            status=ProvisioningStatus.PENDING,
            order_no=response.order_no,
            iccid=response.iccid,
            message=ALLOCATING_MESSAGE,
            **base,
        )

    return ProvisioningOutcome(
        status=ProvisioningStatus.COMPLETED,
        order_no=response.order_no,
        iccid=response.iccid,
        activation_code=response.activation_code,
        **base,
    )


def merge_query(outcome: ProvisioningOutcome, response: CarrierResponse) -> ProvisioningOutcome:
    """
    Enrich an outcome from the follow-up order query.

    Only fills gaps and can promote pending to completed. A failed or
    rejected query leaves the outcome untouched.
    """
    if not response.is_success:
        return outcome

    changes: Dict[str, Any] = {}
    if not outcome.iccid and response.iccid:
        changes["iccid"] = response.iccid
    if not outcome.order_no and response.order_no:
        changes["order_no"] = response.order_no

    if outcome.status == ProvisioningStatus.PENDING and not is_placeholder(response.activation_code):
        changes.update(
            status=ProvisioningStatus.COMPLETED,
            activation_code=response.activation_code,
            message=None,
            qr_code=None,
        )

    if not changes:
        return outcome
    return dataclasses.replace(outcome, **changes)
