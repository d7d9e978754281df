"""
x402 Super Router Server
FastAPI gateway that sells AI media generation per request
"""

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from super_router import __version__
from super_router.config import get_config
from super_router.errors import RouterError
from super_router.gateway.routers import general, generate
from super_router.gateway.services import Services, build_services
from super_router.gateway.tasks import run_cleanup_worker
from super_router.log import configure_logging

# Initialize structured logger
logger = structlog.get_logger()

# Upper bound on waiting for paid pipelines at shutdown
DRAIN_TIMEOUT_SECONDS = 300


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the FastAPI app"""
    owned = app.state.services is None
    if owned:
        config = get_config()
        configure_logging(config)
        config.require_credentials()
        app.state.services = build_services(config)

    services: Services = app.state.services
    config = services.config
    logger.info(
        "router_starting",
        host=config.host,
        port=config.port,
        network=config.payment_network,
        endpoints=len(services.catalog.endpoints),
        test_mode=config.test_mode,
    )

    cleanup_task = asyncio.create_task(
        run_cleanup_worker(
            services.cache,
            services.artifacts,
            interval=config.cleanup_interval_seconds,
            batch_size=config.cleanup_batch_size,
        )
    )

    yield

    logger.info("router_shutting_down")
    cleanup_task.cancel()
    with suppress(asyncio.CancelledError):
        await cleanup_task
    await services.orchestrator.drain(timeout=DRAIN_TIMEOUT_SECONDS)
    if owned:
        await services.aclose()


async def router_error_handler(request: Request, exc: RouterError):
    """Render router errors as stable JSON; 402s carry the payment challenge"""
    challenge = getattr(exc, "challenge", None)
    if exc.status_code == 402 and challenge is not None:
        body = challenge.model_dump(by_alias=True, exclude_none=True)
    else:
        body = exc.to_body()

    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request_failed",
        path=request.url.path,
        status=exc.status_code,
        code=exc.code,
        error=str(exc),
        payment_accepted=exc.payment_accepted,
        payment_tx=exc.payment_tx,
    )
    return JSONResponse(status_code=exc.status_code, content=body)


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("request_crashed", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "message": "Internal error", "payment_accepted": False, "payment_tx": None},
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI app. Passing `services` skips startup wiring,
    which lets tests run the app against in-memory collaborators.
    """
    config = services.config if services is not None else get_config()

    app = FastAPI(
        title="x402 Super Router",
        description="Pay-per-request AI media generation using the x402 protocol",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["X-PAYMENT", "Content-Type"],
        expose_headers=["X-PAYMENT-RESPONSE"],
    )

    app.add_exception_handler(RouterError, router_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(general.router)
    # Catch-all route, must be registered last
    app.include_router(generate.router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    config = get_config()

    uvicorn.run(
        "super_router.gateway.server:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower()
    )
