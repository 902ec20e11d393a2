"""Charge gateway client.

Billing only needs one gateway operation: re-attempting a charge for a
failed payment. The gateway is reached through a normalized HTTP endpoint;
every call is bounded by ``BILLING_GATEWAY_TIMEOUT_SECONDS``.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from researchhub.core.config import settings
from researchhub.core.metrics import GATEWAY_CALL_DURATION_SECONDS
from researchhub.modules.billing.errors import GatewayError, GatewayTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class ChargeRequest:
    """A charge attempt for an existing payment."""
    payment_id: str
    payment_intent_id: Optional[str]
    customer_id: Optional[str]
    amount: float
    currency: str
    idempotency_key: str


@dataclass
class ChargeResult:
    """Normalized gateway answer to a charge attempt."""
    succeeded: bool
    charge_id: Optional[str] = None
    amount_received: float = 0.0
    gateway_fee: float = 0.0
    application_fee: float = 0.0
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


class ChargeGateway(ABC):
    """Contract for anything that can attempt a charge."""

    @abstractmethod
    async def charge(self, request: ChargeRequest) -> ChargeResult:
        """Attempt a charge.

        Raises:
            GatewayTimeoutError: If the gateway did not answer in time
            GatewayError: On transport or protocol errors
        """
        pass


class HttpChargeGateway(ChargeGateway):
    """Charge gateway reached over HTTP with a bounded timeout."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.BILLING_GATEWAY_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.BILLING_GATEWAY_API_KEY
        self.timeout_seconds = timeout_seconds or settings.BILLING_GATEWAY_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self, idempotency_key: str) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Idempotency-Key": idempotency_key,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def charge(self, request: ChargeRequest) -> ChargeResult:
        if not self.base_url:
            raise GatewayError("Charge gateway URL is not configured")

        start = time.perf_counter()
        outcome = "error"
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                transport=self._transport,
            ) as client:
                response = await client.post(
                    f"{self.base_url}/charges",
                    headers=self._headers(request.idempotency_key),
                    json={
                        "payment_id": request.payment_id,
                        "payment_intent_id": request.payment_intent_id,
                        "customer_id": request.customer_id,
                        "amount": request.amount,
                        "currency": request.currency,
                    },
                )
                response.raise_for_status()
                try:
                    data = response.json() if response.content else {}
                except ValueError as e:
                    raise GatewayError("Gateway returned a body that is not JSON") from e
                if not isinstance(data, dict):
                    raise GatewayError("Gateway returned an unexpected body")
                outcome = "answered"
        except httpx.TimeoutException as e:
            outcome = "timeout"
            raise GatewayTimeoutError(
                f"Gateway did not answer within {self.timeout_seconds}s"
            ) from e
        except httpx.HTTPStatusError as e:
            raise GatewayError(
                f"Gateway returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise GatewayError(f"Gateway request failed: {e}") from e
        finally:
            GATEWAY_CALL_DURATION_SECONDS.labels(outcome=outcome).observe(
                time.perf_counter() - start
            )

        try:
            result = ChargeResult(
                succeeded=data.get("status") == "succeeded",
                charge_id=data.get("charge_id"),
                amount_received=float(data.get("amount_received") or 0.0),
                gateway_fee=float(data.get("gateway_fee") or 0.0),
                application_fee=float(data.get("application_fee") or 0.0),
                failure_code=data.get("failure_code"),
                failure_message=data.get("failure_message"),
            )
        except (TypeError, ValueError) as e:
            raise GatewayError(f"Gateway returned malformed amounts: {e}") from e
        if result.succeeded and not result.charge_id:
            raise GatewayError("Gateway reported success without a charge id")
        outcome = "succeeded" if result.succeeded else "declined"
        logger.info(
            "Gateway charge answered",
            extra={"payment_id": request.payment_id, "outcome": outcome},
        )
        return result
