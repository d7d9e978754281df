from fastapi import Request
import structlog

from super_router.gateway.services import Services

logger = structlog.get_logger()


def get_services(request: Request) -> Services:
    """Service graph attached to the app at startup"""
    return request.app.state.services
