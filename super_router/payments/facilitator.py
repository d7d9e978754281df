"""
HTTP client for the x402 facilitator
Verification and settlement are delegated; this module only speaks the protocol
"""

from typing import Any, Dict, Type, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from super_router.errors import FacilitatorUnavailable, PaymentRejected
from super_router.payments.models import (
    X402_VERSION,
    PaymentAccepts,
    SettleResponse,
    VerifyResponse,
)

logger = structlog.get_logger()

ResponseT = TypeVar("ResponseT", bound=BaseModel)


class FacilitatorClient:
    """Calls the facilitator's /verify and /settle endpoints"""

    def __init__(self, base_url: str, http_client: httpx.AsyncClient, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client
        self.timeout = timeout

    async def verify(self, payment_payload: Dict[str, Any], requirements: PaymentAccepts) -> VerifyResponse:
        return await self._post("verify", payment_payload, requirements, VerifyResponse)

    async def settle(self, payment_payload: Dict[str, Any], requirements: PaymentAccepts) -> SettleResponse:
        return await self._post("settle", payment_payload, requirements, SettleResponse)

    async def _post(
        self,
        action: str,
        payment_payload: Dict[str, Any],
        requirements: PaymentAccepts,
        response_model: Type[ResponseT],
    ) -> ResponseT:
        body = {
            "x402Version": X402_VERSION,
            "paymentPayload": payment_payload,
            "paymentRequirements": requirements.model_dump(by_alias=True),
        }
        url = f"{self.base_url}/{action}"

        try:
            response = await self.http_client.post(url, json=body, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning("facilitator_unreachable", action=action, error=str(e))
            raise FacilitatorUnavailable(f"Failed to contact facilitator for {action}: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning("facilitator_error", action=action, status=response.status_code)
            raise FacilitatorUnavailable(f"Facilitator {action} returned {response.status_code}")
        if response.status_code >= 400:
            logger.warning("facilitator_declined", action=action, status=response.status_code, body=response.text[:500])
            raise PaymentRejected(f"Facilitator refused {action} ({response.status_code})")

        try:
            return response_model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning("facilitator_bad_response", action=action, error=str(e))
            raise FacilitatorUnavailable(f"Failed to parse {action} response: {e}") from e
