"""Tests for the HTTP charge gateway client."""

import json

import httpx
import pytest

from researchhub.modules.billing.errors import GatewayError, GatewayTimeoutError
from researchhub.modules.billing.gateway import ChargeRequest, HttpChargeGateway


def make_request() -> ChargeRequest:
    return ChargeRequest(
        payment_id="5f0c6a44-7d0e-4a34-9c7e-4d3f0a9b1e21",
        payment_intent_id="pi_123",
        customer_id="cus_9",
        amount=100.0,
        currency="USD",
        idempotency_key="5f0c6a44-7d0e-4a34-9c7e-4d3f0a9b1e21:1",
    )


class TestHttpChargeGateway:

    @pytest.mark.asyncio
    async def test_successful_charge(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["idempotency_key"] = request.headers["Idempotency-Key"]
            seen["authorization"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "status": "succeeded",
                "charge_id": "ch_42",
                "amount_received": 100.0,
                "gateway_fee": 3.2,
            })

        gateway = HttpChargeGateway(
            base_url="https://gateway.test/v1/",
            api_key="secret",
            transport=httpx.MockTransport(handler),
        )

        result = await gateway.charge(make_request())

        assert result.succeeded is True
        assert result.charge_id == "ch_42"
        assert result.gateway_fee == 3.2
        assert seen["url"] == "https://gateway.test/v1/charges"
        assert seen["idempotency_key"].endswith(":1")
        assert seen["authorization"] == "Bearer secret"
        assert seen["body"]["payment_intent_id"] == "pi_123"

    @pytest.mark.asyncio
    async def test_declined_charge(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={
                "status": "failed",
                "failure_code": "card_declined",
                "failure_message": "Do not honor",
            })

        gateway = HttpChargeGateway(
            base_url="https://gateway.test", transport=httpx.MockTransport(handler)
        )

        result = await gateway.charge(make_request())

        assert result.succeeded is False
        assert result.failure_code == "card_declined"

    @pytest.mark.asyncio
    async def test_timeout_raises_gateway_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        gateway = HttpChargeGateway(
            base_url="https://gateway.test", transport=httpx.MockTransport(handler)
        )

        with pytest.raises(GatewayTimeoutError) as exc_info:
            await gateway.charge(make_request())
        assert exc_info.value.error_code == "gateway_timeout"

    @pytest.mark.asyncio
    async def test_server_error_raises_gateway_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={"error": "unavailable"})

        gateway = HttpChargeGateway(
            base_url="https://gateway.test", transport=httpx.MockTransport(handler)
        )

        with pytest.raises(GatewayError) as exc_info:
            await gateway.charge(make_request())
        assert "503" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_unconfigured_gateway(self):
        with pytest.raises(GatewayError):
            await HttpChargeGateway(base_url="").charge(make_request())

    @pytest.mark.asyncio
    async def test_non_json_body_raises_gateway_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>upstream proxy</html>")

        gateway = HttpChargeGateway(
            base_url="https://gateway.test", transport=httpx.MockTransport(handler)
        )

        with pytest.raises(GatewayError) as exc_info:
            await gateway.charge(make_request())
        assert exc_info.value.error_code == "gateway_error"

    @pytest.mark.asyncio
    async def test_success_without_charge_id_raises_gateway_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "succeeded", "amount_received": 100.0})

        gateway = HttpChargeGateway(
            base_url="https://gateway.test", transport=httpx.MockTransport(handler)
        )

        with pytest.raises(GatewayError):
            await gateway.charge(make_request())
