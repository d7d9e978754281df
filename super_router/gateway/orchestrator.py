"""
Request orchestrator
Per-request control flow: challenge or verify, cache, generate, store, record
"""

import asyncio
from datetime import timedelta
from typing import Optional, Set

import structlog

from super_router.config import RouterConfig
from super_router.database.cache_store import CacheStore
from super_router.endpoints import EndpointCatalog
from super_router.errors import (
    FacilitatorUnavailable,
    InvalidRequest,
    PaymentChallengeRequired,
    PaymentRejected,
    PostProcessFailed,
    ProviderRateLimited,
    ProviderUnavailable,
    RouterError,
    StorageUploadFailed,
    CacheUnavailable,
)
from super_router.fingerprint import fingerprint, normalize_prompt
from super_router.generation.dispatcher import GenerationDispatcher
from super_router.generation.postprocess import PostProcessor
from super_router.models import CacheEntry, Endpoint, GenerateResult, utcnow
from super_router.payments.challenge import ChallengeBuilder
from super_router.payments.models import PaymentState, VerifiedPayment
from super_router.payments.verifier import PaymentVerifier, ReceivedPayment
from super_router.retry import RetryPolicy, run_with_retry
from super_router.storage.artifact_store import ArtifactStore, artifact_key

logger = structlog.get_logger()


class RequestOrchestrator:
    """
    Drives one generation request from the raw query to a response.

    Everything before settlement may be abandoned if the client goes away.
    From settlement onward the work runs in a shielded task owned by the
    orchestrator, so a paid request always finishes.

    Concurrent identical misses are not coordinated: both pay, both generate
    and both append a cache row. Storage keys are deterministic and uploads
    upsert, so the duplicates converge on one object.
    """

    def __init__(
        self,
        config: RouterConfig,
        catalog: EndpointCatalog,
        cache: CacheStore,
        challenges: ChallengeBuilder,
        verifier: PaymentVerifier,
        dispatcher: GenerationDispatcher,
        postprocessor: PostProcessor,
        artifacts: ArtifactStore,
    ):
        self.config = config
        self.catalog = catalog
        self.cache = cache
        self.challenges = challenges
        self.verifier = verifier
        self.dispatcher = dispatcher
        self.postprocessor = postprocessor
        self.artifacts = artifacts

        self.facilitator_policy = self._policy(config.facilitator_retries)
        self.provider_policy = self._policy(config.provider_retries)
        self.upload_policy = self._policy(config.upload_retries)

        self._inflight: Set[asyncio.Task] = set()

    def _policy(self, retries: int) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=retries + 1,
            initial_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
        )

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def resolve(self, route: str, quality: Optional[str]) -> Endpoint:
        endpoint = self.catalog.resolve(route, quality)
        if endpoint is None:
            available = ", ".join(self.catalog.qualities(route))
            raise InvalidRequest(f"Unknown quality '{quality}'. Available: {available}")
        return endpoint

    async def handle(
        self,
        route: str,
        quality: Optional[str],
        prompt: Optional[str],
        payment_header: Optional[str],
    ) -> GenerateResult:
        endpoint = self.resolve(route, quality)
        prompt = normalize_prompt(prompt or "")
        if not prompt:
            raise InvalidRequest("Missing or empty prompt parameter")

        prompt_hash = fingerprint(endpoint.path, prompt)
        log = logger.bind(endpoint=endpoint.path, prompt_hash=prompt_hash)

        payment = self._accept_proof(endpoint, payment_header, log)

        # A cache outage fails the request; it never skips the paywall
        cached = await self.cache.lookup(prompt_hash, endpoint.path)
        if cached is not None:
            log.info("cache_hit", url=cached.public_url)
            return GenerateResult(
                url=cached.public_url,
                media_type=cached.media_type,
                cached=True,
                prompt=prompt,
                quality=endpoint.quality,
            )
        log.info("cache_miss")

        if payment is None:
            verified = self.verifier.bypass()
        else:
            verified = await self._verify(payment, endpoint)

        task = asyncio.ensure_future(
            self._complete(endpoint, prompt, prompt_hash, payment, verified)
        )
        self._inflight.add(task)
        task.add_done_callback(self._finished)
        return await asyncio.shield(task)

    def _accept_proof(self, endpoint: Endpoint, payment_header: Optional[str], log) -> Optional[ReceivedPayment]:
        """Local, I/O-free half of payment handling. None means bypass."""
        if self.verifier.bypass_enabled:
            log.debug("payment_bypassed")
            return None

        state = self.verifier.initial_state(payment_header)
        if state is PaymentState.NO_PAYMENT:
            log.info("payment_challenge_issued", amount=str(endpoint.price), state=PaymentState.CHALLENGE_ISSUED.value)
            raise PaymentChallengeRequired(challenge=self.challenges.build(endpoint))

        payment = self.verifier.decode(payment_header)
        try:
            self.verifier.check(payment, endpoint)
        except PaymentRejected as e:
            e.challenge = self.challenges.build(endpoint, error=e.reason)
            raise
        return payment

    async def _verify(self, payment: ReceivedPayment, endpoint: Endpoint) -> VerifiedPayment:
        try:
            return await run_with_retry(
                lambda: self.verifier.verify(payment, endpoint),
                self.facilitator_policy,
                (FacilitatorUnavailable,),
                "facilitator_verify",
                endpoint=endpoint.path,
            )
        except FacilitatorUnavailable as e:
            raise self._rejected(endpoint, "Payment facilitator unavailable") from e
        except PaymentRejected as e:
            e.challenge = self.challenges.build(endpoint, error=e.reason)
            raise

    async def _settle(self, payment: ReceivedPayment, endpoint: Endpoint, verified: VerifiedPayment) -> VerifiedPayment:
        try:
            return await run_with_retry(
                lambda: self.verifier.settle(payment, endpoint, verified),
                self.facilitator_policy,
                (FacilitatorUnavailable,),
                "facilitator_settle",
                endpoint=endpoint.path,
            )
        except FacilitatorUnavailable as e:
            raise self._rejected(endpoint, "Payment facilitator unavailable") from e
        except PaymentRejected as e:
            e.challenge = self.challenges.build(endpoint, error=e.reason)
            raise

    def _rejected(self, endpoint: Endpoint, reason: str) -> PaymentRejected:
        return PaymentRejected(reason, challenge=self.challenges.build(endpoint, error=reason))

    async def _complete(
        self,
        endpoint: Endpoint,
        prompt: str,
        prompt_hash: str,
        payment: Optional[ReceivedPayment],
        verified: VerifiedPayment,
    ) -> GenerateResult:
        """Settle, generate, post-process, upload and record. Runs shielded."""
        log = logger.bind(endpoint=endpoint.path, prompt_hash=prompt_hash)

        if payment is not None:
            verified = await self._settle(payment, endpoint, verified)

        try:
            url, storage_key, size = await self._produce(endpoint, prompt, prompt_hash, verified, log)
        except RouterError as e:
            if payment is not None:
                e.mark_paid(verified.transaction)
            raise

        created_at = utcnow()
        entry = CacheEntry(
            endpoint_path=endpoint.path,
            prompt=prompt,
            prompt_hash=prompt_hash,
            storage_key=storage_key,
            public_url=url,
            media_type=endpoint.media_type.value,
            file_size_bytes=size,
            payer_address=verified.payer,
            payment_tx=verified.transaction,
            created_at=created_at,
            expires_at=created_at + timedelta(days=self.config.cache_ttl_days),
        )
        try:
            await self.cache.insert(entry)
        except CacheUnavailable as e:
            # The artifact exists and was paid for; serve it uncached
            log.error("cache_insert_failed", url=url, error=str(e))

        log.info(
            "generation_request_completed",
            url=url,
            payer=verified.payer,
            payment_tx=verified.transaction,
            state=PaymentState.TERMINAL.value,
        )
        return GenerateResult(
            url=url,
            media_type=endpoint.media_type.value,
            cached=False,
            prompt=prompt,
            quality=endpoint.quality,
            payer=verified.payer,
            payment_tx=verified.transaction,
        )

    async def _produce(self, endpoint: Endpoint, prompt: str, prompt_hash: str, verified: VerifiedPayment, log):
        raw = await run_with_retry(
            lambda: self.dispatcher.generate(endpoint, prompt),
            self.provider_policy,
            (ProviderRateLimited, ProviderUnavailable),
            "generation",
            endpoint=endpoint.path,
        )

        try:
            media = await self.postprocessor.process(endpoint, raw)
        except PostProcessFailed as e:
            log.error(
                "paid_artifact_lost",
                refund_required=not verified.bypassed,
                payer=verified.payer,
                payment_tx=verified.transaction,
                error=str(e),
            )
            raise

        key = artifact_key(endpoint.path, prompt_hash, media.extension)
        url = await run_with_retry(
            lambda: self.artifacts.upload(media.data, media.content_type, key),
            self.upload_policy,
            (StorageUploadFailed,),
            "upload",
            endpoint=endpoint.path,
            storage_key=key,
        )
        return url, key, len(media.data)

    def _finished(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        # Retrieve the outcome so an abandoned request does not warn at GC
        if not task.cancelled() and task.exception() is not None:
            logger.debug("inflight_request_failed", error=str(task.exception()))

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for paid pipelines still running, e.g. during shutdown"""
        if not self._inflight:
            return
        logger.info("draining_inflight_requests", count=len(self._inflight))
        await asyncio.wait(list(self._inflight), timeout=timeout)
