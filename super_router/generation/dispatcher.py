"""
Generation dispatcher
Calls the fal.ai model API for an endpoint and downloads the produced media
"""

from typing import Any, Dict

import httpx
import structlog

from super_router.endpoints import extract_url
from super_router.errors import (
    ProviderInvalidPrompt,
    ProviderRateLimited,
    ProviderUnavailable,
)
from super_router.models import Endpoint, RawMedia

logger = structlog.get_logger()


class GenerationDispatcher:
    """
    One call to the provider per generate(); retry policy belongs to the caller.

    Provider failures are mapped to ProviderRateLimited, ProviderInvalidPrompt
    or ProviderUnavailable so the orchestrator can decide what to retry.
    """

    def __init__(
        self,
        api_key: str,
        http_client: httpx.AsyncClient,
        base_url: str = "https://fal.run",
        timeout: float = 180.0,
        download_timeout: float = 60.0,
    ):
        self.api_key = api_key
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.download_timeout = download_timeout

    def build_request(self, endpoint: Endpoint, prompt: str) -> Dict[str, Any]:
        body = dict(endpoint.request_params)
        body["prompt"] = prompt
        return body

    async def generate(self, endpoint: Endpoint, prompt: str) -> RawMedia:
        """Run the endpoint's model on a prompt and return the raw output bytes"""
        url = f"{self.base_url}/{endpoint.model}"
        logger.info("generation_started", endpoint=endpoint.path, model=endpoint.model)

        try:
            response = await self.http_client.post(
                url,
                json=self.build_request(endpoint, prompt),
                headers={"Authorization": f"Key {self.api_key}"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderUnavailable(f"Provider timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"Provider request failed: {e}") from e

        self._raise_for_status(response, endpoint)

        try:
            media_url = extract_url(response.json(), endpoint.response_url_path)
        except (ValueError, KeyError) as e:
            raise ProviderUnavailable(f"Unexpected provider response: {e}") from e

        raw = await self._download(media_url)
        logger.info(
            "generation_completed",
            endpoint=endpoint.path,
            model=endpoint.model,
            size_bytes=len(raw.data),
        )
        return raw

    @staticmethod
    def _raise_for_status(response: httpx.Response, endpoint: Endpoint) -> None:
        status = response.status_code
        if status < 400:
            return

        detail = response.text[:500]
        logger.warning("provider_error", endpoint=endpoint.path, status=status, detail=detail)
        if status == 429:
            raise ProviderRateLimited(f"Provider rate limited ({status})")
        if status in (400, 422):
            raise ProviderInvalidPrompt(f"Provider rejected prompt ({status}): {detail}")
        raise ProviderUnavailable(f"Provider returned {status}")

    async def _download(self, media_url: str) -> RawMedia:
        try:
            response = await self.http_client.get(media_url, timeout=self.download_timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"Failed to download generated media: {e}") from e

        if not response.content:
            raise ProviderUnavailable("Provider returned empty media")

        return RawMedia(
            data=response.content,
            source_url=media_url,
            content_type=response.headers.get("content-type"),
        )
