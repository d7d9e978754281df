"""
Generation routes
Every catalog route is served by one handler; unknown paths are 404
"""

import base64
import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Response, status

from super_router.gateway.dependencies import get_services
from super_router.gateway.services import Services
from super_router.models import GenerateResponse, GenerateResult

router = APIRouter(tags=["Generation"])


def encode_payment_response(result: GenerateResult, network: str) -> str:
    """Base64 settlement receipt for the X-PAYMENT-RESPONSE header"""
    receipt = {
        "success": True,
        "transaction": result.payment_tx,
        "network": network,
        "payer": result.payer,
    }
    return base64.b64encode(json.dumps(receipt).encode()).decode()


@router.get("/{route_path:path}", response_model=GenerateResponse)
async def generate(
    route_path: str,
    response: Response,
    prompt: Optional[str] = None,
    quality: Optional[str] = None,
    x_payment: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
):
    """
    Generate media for a prompt, or answer 402 with payment requirements.
    Identical prompts are served from the cache without a new payment.
    """
    route = "/" + route_path
    if route not in services.catalog.routes:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No endpoint at {route}")

    result = await services.orchestrator.handle(route, quality, prompt, x_payment)

    if result.payment_tx:
        response.headers["X-PAYMENT-RESPONSE"] = encode_payment_response(result, services.config.payment_network)

    return GenerateResponse(
        url=result.url,
        media_type=result.media_type,
        cached=result.cached,
        prompt=result.prompt,
        quality=result.quality,
    )
