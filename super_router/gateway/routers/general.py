
import asyncio

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse, PlainTextResponse

from super_router import __version__
from super_router.gateway.dependencies import get_services, logger
from super_router.gateway.services import Services
from super_router.models import utcnow
from super_router.payments.amounts import to_human_units

router = APIRouter(tags=["General"])


@router.get("/", response_class=PlainTextResponse, tags=["Info"])
async def root(services: Services = Depends(get_services)):
    """Human-readable service description"""
    config = services.config
    lines = [
        f"x402 Super Router v{__version__}",
        "",
        "AI media generation paid per request with the x402 protocol.",
        f"Token: {config.payment_token_symbol} ({config.payment_token_address}) on {config.payment_network}",
        "",
        "Endpoints:",
    ]
    for endpoint in services.catalog.endpoints:
        lines.append(
            f"  GET {endpoint.route}?prompt=...&quality={endpoint.quality}"
            f"  {endpoint.cost} {config.payment_token_symbol}  {endpoint.description}"
        )
    lines += ["", "Send the X-PAYMENT header to pay. See /api for machine-readable details."]
    return "\n".join(lines) + "\n"


@router.get("/api", tags=["Info"])
async def api_info(services: Services = Depends(get_services)):
    """Endpoints, token metadata and network"""
    config = services.config
    decimals = config.payment_token_decimals
    return {
        "service": "x402-super-router",
        "version": __version__,
        "network": config.payment_network,
        "chain_id": config.chain_id,
        "pay_to": config.wallet_address,
        "facilitator": config.facilitator_url,
        "test_mode": config.test_mode,
        "token": {
            "address": config.payment_token_address,
            "symbol": config.payment_token_symbol,
            "decimals": decimals,
            "name": config.payment_token_name,
            "version": config.payment_token_version,
        },
        "endpoints": [
            {
                "route": endpoint.route,
                "quality": endpoint.quality,
                "path": endpoint.path,
                "description": endpoint.description,
                "media_type": endpoint.media_type.value,
                "cost": to_human_units(endpoint.price, decimals),
                "amount": str(endpoint.price),
            }
            for endpoint in services.catalog.endpoints
        ],
    }


@router.get("/api/health", tags=["Health"])
async def health_check(services: Services = Depends(get_services)):
    """Liveness probe: healthy only if the database and blob store respond"""
    results = await asyncio.gather(
        services.cache.ping(),
        services.artifacts.ping(),
        return_exceptions=True,
    )
    checks = {}
    for name, result in zip(("database", "storage"), results):
        if isinstance(result, Exception):
            logger.warning("health_check_dependency_failed", dependency=name, error=str(result))
            checks[name] = "unavailable"
        else:
            checks[name] = "connected"

    healthy = all(state == "connected" for state in checks.values())
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": utcnow().isoformat(),
        **checks,
        "inflight_requests": services.orchestrator.inflight,
    }
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body,
    )
