"""
Endpoint catalog loading
Endpoints are read once at startup and never change for the process lifetime
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import structlog
from pydantic import ValidationError

from super_router.errors import ConfigError
from super_router.models import Endpoint
from super_router.payments.amounts import to_raw_units

logger = structlog.get_logger()

DEFAULT_QUALITY = "low"


class EndpointCatalog:
    """Read-only view over configured endpoints, grouped by route and quality"""

    def __init__(self, endpoints: List[Endpoint]):
        self._endpoints = tuple(endpoints)
        self._by_route: Dict[str, Dict[str, Endpoint]] = {}
        for endpoint in endpoints:
            qualities = self._by_route.setdefault(endpoint.route, {})
            if endpoint.quality in qualities:
                raise ConfigError(
                    f"Duplicate quality '{endpoint.quality}' for route {endpoint.route}"
                )
            qualities[endpoint.quality] = endpoint

    @property
    def endpoints(self) -> tuple:
        return self._endpoints

    @property
    def routes(self) -> List[str]:
        return list(self._by_route)

    def qualities(self, route: str) -> List[str]:
        return list(self._by_route.get(route, {}))

    def resolve(self, route: str, quality: Optional[str] = None) -> Optional[Endpoint]:
        """
        Find the endpoint for a route and quality tier.
        Without a quality, routes with a single tier return it and
        others fall back to the default tier.
        """
        tiers = self._by_route.get(route)
        if not tiers:
            return None
        if quality is None:
            if len(tiers) == 1:
                return next(iter(tiers.values()))
            quality = DEFAULT_QUALITY
        return tiers.get(quality)


def load_catalog(
    path: str,
    decimals: int,
    cost_overrides: Optional[Mapping[str, str]] = None,
) -> EndpointCatalog:
    """
    Parse the endpoint catalog file and price every endpoint in raw units.

    Raises ConfigError if the file is missing, unparsable, or has an invalid cost.
    """
    catalog_path = Path(path)
    try:
        raw = json.loads(catalog_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read endpoints config '{path}': {e}") from e

    definitions = raw.get("endpoints") if isinstance(raw, dict) else None
    if not isinstance(definitions, list) or not definitions:
        raise ConfigError(f"Endpoints config '{path}' has no endpoints")

    overrides = dict(cost_overrides or {})
    endpoints = []
    for definition in definitions:
        endpoints.append(_build_endpoint(definition, decimals, overrides, path))

    catalog = EndpointCatalog(endpoints)
    logger.info("endpoint_catalog_loaded", path=path, endpoints=len(endpoints), routes=catalog.routes)
    return catalog


def _build_endpoint(definition: Dict[str, Any], decimals: int, overrides: Dict[str, str], path: str) -> Endpoint:
    data = dict(definition)
    endpoint_path = data.get("path", "")
    if endpoint_path in overrides:
        data["cost"] = overrides[endpoint_path]
    try:
        data["price"] = to_raw_units(str(data.get("cost", "")), decimals)
        return Endpoint.model_validate(data)
    except (ValueError, ValidationError) as e:
        raise ConfigError(f"Bad endpoint definition {endpoint_path or '?'} in '{path}': {e}") from e


def extract_url(document: Any, dot_path: str) -> str:
    """
    Extract a string from nested JSON using a dot-separated path.
    Numeric segments index into lists, e.g. "images.0.url" or "video.url".
    """
    current = document
    for segment in dot_path.split("."):
        if isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                raise KeyError(f"Array index {index} not found in path '{dot_path}'")
            current = current[index]
        elif isinstance(current, dict) and segment in current:
            current = current[segment]
        else:
            raise KeyError(f"Key '{segment}' not found in path '{dot_path}'")
    if not isinstance(current, str):
        raise KeyError(f"Value at path '{dot_path}' is not a string")
    return current
