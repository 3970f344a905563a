"""
Tests for the Carrier Signer and eSIMAccess Client
==================================================

The carrier is replaced by an httpx MockTransport; no network access.
"""

import asyncio
import hashlib

import httpx
import pytest

from storefront.carrier import (
    CarrierRejection,
    CarrierTransportFailure,
    InfrastructureNotConfigured,
    MalformedCarrierResponse,
    ProvisioningRequest,
    parse_envelope,
    sign,
    signed_headers,
)
from storefront.config import CarrierConfig

from conftest import (
    ACTIVATION_CODE,
    PACKAGE_LIST_PATH,
    PURCHASE_PATH,
    QUERY_PATH,
    USAGE_PATH,
    RecordingCarrier,
    make_carrier,
    rejection_body,
    success_body,
)


def _request(session_id="cs_test_123"):
    return ProvisioningRequest(
        location_code="GB",
        package_code="GB_10GB_30D",
        external_order_no=session_id,
        email="student@example.edu",
    )


# ============================================
# SIGNER
# ============================================

class TestSigner:

    def test_sign_is_sha256_of_key_secret_timestamp(self):
        expected = hashlib.sha256(b"keysecret1700000000000").hexdigest()
        assert sign("key", "secret", "1700000000000") == expected

    def test_sign_is_lowercase_hex(self):
        signature = sign("key", "secret", "1")
        assert len(signature) == 64
        assert signature == signature.lower()

    @pytest.mark.parametrize("key,secret", [("", "secret"), ("key", ""), ("", "")])
    def test_missing_credentials(self, key, secret):
        with pytest.raises(InfrastructureNotConfigured):
            sign(key, secret, "1700000000000")

    def test_signed_headers_use_milliseconds(self):
        headers = signed_headers("key", "secret", now=1700000000.5)
        assert headers["RT-AppKey"] == "key"
        assert headers["RT-Timestamp"] == "1700000000500"
        assert headers["RT-Sign"] == sign("key", "secret", "1700000000500")

    def test_signature_changes_with_timestamp(self):
        first = signed_headers("key", "secret", now=1700000000.0)
        second = signed_headers("key", "secret", now=1700000001.0)
        assert first["RT-Sign"] != second["RT-Sign"]


# ============================================
# ENVELOPE PARSING
# ============================================

class TestParseEnvelope:

    def test_success_envelope_with_esim_list(self):
        response = parse_envelope(success_body(order_no="B1", ac=ACTIVATION_CODE, iccid="8986"))
        assert response.is_success
        assert response.order_no == "B1"
        assert response.activation_code == ACTIVATION_CODE
        assert response.iccid == "8986"

    def test_code_data_envelope(self):
        body = {
            "code": "000000",
            "message": "ok",
            "data": {"orderNo": "B2", "orderList": [{"iccid": "8986", "acCode": "LPA:1$x$y"}]},
        }
        response = parse_envelope(body)
        assert response.is_success
        assert response.message == "ok"
        assert response.activation_code == "LPA:1$x$y"

    def test_numeric_zero_code_is_success(self):
        assert parse_envelope({"code": 0, "data": {}}).is_success

    def test_success_flag_without_code(self):
        assert parse_envelope({"success": True, "obj": {"orderNo": "B3"}}).order_no == "B3"

    def test_rejection_keeps_code_and_message(self):
        response = parse_envelope(rejection_body("200007", "balance low"))
        assert not response.is_success
        assert response.code == "200007"
        assert response.message == "balance low"

    def test_success_without_profiles(self):
        response = parse_envelope(success_body(ac=None))
        assert response.is_success
        assert response.activation_code is None

    @pytest.mark.parametrize("body", [None, [], "ok", {"obj": {}}])
    def test_malformed(self, body):
        with pytest.raises(MalformedCarrierResponse):
            parse_envelope(body)


# ============================================
# CLIENT
# ============================================

class TestEsimAccessClient:

    @pytest.mark.asyncio
    async def test_purchase_sends_signed_camelcase_body(self):
        stub = RecordingCarrier({PURCHASE_PATH: success_body()})
        carrier = make_carrier(stub)

        response = await carrier.purchase(_request(), deadline=1.0)

        assert response.is_success
        assert response.activation_code == ACTIVATION_CODE
        request = stub.requests[0]
        assert request.headers["RT-AppKey"] == "test_key"
        assert len(request.headers["RT-Sign"]) == 64
        assert request.headers["RT-Timestamp"].isdigit()
        assert stub.bodies[0] == {
            "locationCode": "GB",
            "packageCode": "GB_10GB_30D",
            "quantity": 1,
            "externalOrderNo": "cs_test_123",
            "email": "student@example.edu",
        }

    @pytest.mark.asyncio
    async def test_rejection_is_returned_not_raised(self):
        carrier = make_carrier(RecordingCarrier({PURCHASE_PATH: rejection_body()}))
        response = await carrier.purchase(_request(), deadline=1.0)
        assert not response.is_success
        assert response.code == "200007"

    @pytest.mark.asyncio
    async def test_slow_carrier_times_out(self):
        async def never_answers(request):
            await asyncio.sleep(5)
            return success_body()

        carrier = make_carrier(RecordingCarrier({PURCHASE_PATH: never_answers}))
        with pytest.raises(CarrierTransportFailure) as exc_info:
            await carrier.purchase(_request(), deadline=0.1)
        assert exc_info.value.timed_out

    @pytest.mark.asyncio
    async def test_connection_error_is_transport_failure(self):
        async def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        carrier = make_carrier(refuse)
        with pytest.raises(CarrierTransportFailure) as exc_info:
            await carrier.purchase(_request(), deadline=1.0)
        assert not exc_info.value.timed_out

    @pytest.mark.asyncio
    async def test_non_json_body_is_malformed(self):
        html = httpx.Response(502, text="<html>Bad Gateway</html>")
        carrier = make_carrier(RecordingCarrier({PURCHASE_PATH: html}))
        with pytest.raises(MalformedCarrierResponse):
            await carrier.purchase(_request(), deadline=1.0)

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_before_io(self):
        stub = RecordingCarrier({PURCHASE_PATH: success_body()})
        carrier = make_carrier(stub, CarrierConfig(app_key="", app_secret="", base_url="https://carrier.test"))

        assert not carrier.is_configured
        with pytest.raises(InfrastructureNotConfigured):
            await carrier.purchase(_request(), deadline=1.0)
        assert stub.requests == []

    @pytest.mark.asyncio
    async def test_query_order(self):
        stub = RecordingCarrier({QUERY_PATH: success_body(order_no="B9")})
        carrier = make_carrier(stub)

        response = await carrier.query_order("B9", deadline=1.0)

        assert response.order_no == "B9"
        assert stub.bodies[0]["orderNo"] == "B9"

    @pytest.mark.asyncio
    async def test_usage(self):
        usage = {"totalVolume": 1000, "usedVolume": 250, "remainingVolume": 750, "status": "IN_USE"}
        stub = RecordingCarrier({USAGE_PATH: {"success": True, "errorCode": "0", "obj": usage}})
        carrier = make_carrier(stub)

        assert await carrier.usage("8986", deadline=1.0) == usage
        assert stub.bodies[0] == {"iccid": "8986"}

    @pytest.mark.asyncio
    async def test_usage_rejected(self):
        carrier = make_carrier(RecordingCarrier({USAGE_PATH: rejection_body("310241", "iccid not found")}))
        with pytest.raises(CarrierRejection) as exc_info:
            await carrier.usage("8986", deadline=1.0)
        assert exc_info.value.code == "310241"

    @pytest.mark.asyncio
    async def test_list_packages(self):
        packages = [{"packageCode": "GB_10GB_30D", "price": 1200}]
        stub = RecordingCarrier({
            PACKAGE_LIST_PATH: {"success": True, "errorCode": "0", "obj": {"packageList": packages}},
        })
        carrier = make_carrier(stub)

        assert await carrier.list_packages("GB") == packages
        assert stub.bodies[0] == {"type": "BASE", "locationCode": "GB"}

    @pytest.mark.asyncio
    async def test_context_manager_leaves_injected_client_open(self):
        stub = RecordingCarrier({PURCHASE_PATH: success_body()})
        carrier = make_carrier(stub)
        async with carrier:
            await carrier.purchase(_request(), deadline=1.0)
        assert not carrier.client.is_closed
        await carrier.client.aclose()
