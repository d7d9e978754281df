"""
Process-wide service graph
Built once at startup; shared by every request and safe for concurrent use
"""

from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from super_router.config import RouterConfig
from super_router.database.cache_store import CacheStore, get_cache_store
from super_router.endpoints import EndpointCatalog, load_catalog
from super_router.gateway.orchestrator import RequestOrchestrator
from super_router.generation.dispatcher import GenerationDispatcher
from super_router.generation.postprocess import PostProcessor
from super_router.payments.challenge import ChallengeBuilder
from super_router.payments.facilitator import FacilitatorClient
from super_router.payments.verifier import PaymentVerifier
from super_router.storage.artifact_store import ArtifactStore, get_artifact_store

logger = structlog.get_logger()


@dataclass
class Services:
    config: RouterConfig
    catalog: EndpointCatalog
    cache: CacheStore
    artifacts: ArtifactStore
    orchestrator: RequestOrchestrator
    http_client: httpx.AsyncClient

    async def aclose(self) -> None:
        await self.http_client.aclose()


def build_services(
    config: RouterConfig,
    http_client: Optional[httpx.AsyncClient] = None,
    cache: Optional[CacheStore] = None,
    artifacts: Optional[ArtifactStore] = None,
    catalog: Optional[EndpointCatalog] = None,
) -> Services:
    """
    Wire the router's components from configuration.
    Collaborators can be passed in to replace the networked defaults.
    """
    if catalog is None:
        catalog = load_catalog(
            config.endpoints_config,
            config.payment_token_decimals,
            config.endpoint_costs,
        )
    http_client = http_client or httpx.AsyncClient(follow_redirects=True)
    cache = cache or get_cache_store(config)
    artifacts = artifacts or get_artifact_store(config)

    challenges = ChallengeBuilder(config)
    facilitator = FacilitatorClient(config.facilitator_url, http_client, timeout=config.facilitator_timeout)
    verifier = PaymentVerifier(config, challenges, facilitator)
    dispatcher = GenerationDispatcher(
        config.fal_key,
        http_client,
        base_url=config.fal_base_url,
        timeout=config.provider_timeout,
        download_timeout=config.download_timeout,
    )
    postprocessor = PostProcessor(timeout=config.postprocess_timeout)

    orchestrator = RequestOrchestrator(
        config=config,
        catalog=catalog,
        cache=cache,
        challenges=challenges,
        verifier=verifier,
        dispatcher=dispatcher,
        postprocessor=postprocessor,
        artifacts=artifacts,
    )

    if config.test_mode:
        logger.warning("payment_bypass_enabled", message="TEST_MODE is on, payments are not verified")

    return Services(
        config=config,
        catalog=catalog,
        cache=cache,
        artifacts=artifacts,
        orchestrator=orchestrator,
        http_client=http_client,
    )
