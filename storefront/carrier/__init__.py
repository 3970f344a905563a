"""
Carrier Integration
===================

Signed access to the eSIM carrier aggregator (eSIMAccess).
"""

from .base import (
    CarrierError,
    CarrierRejection,
    CarrierResponse,
    CarrierTransportFailure,
    InfrastructureNotConfigured,
    MalformedCarrierResponse,
    ProvisioningRequest,
    parse_envelope,
)
from .esimaccess import EsimAccessClient
from .signer import sign, signed_headers

__all__ = [
    "CarrierError",
    "CarrierRejection",
    "CarrierResponse",
    "CarrierTransportFailure",
    "InfrastructureNotConfigured",
    "MalformedCarrierResponse",
    "ProvisioningRequest",
    "parse_envelope",
    "EsimAccessClient",
    "sign",
    "signed_headers",
]
