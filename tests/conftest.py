"""
Pytest configuration and shared fixtures
"""

import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from super_router.config import RouterConfig
from super_router.database.cache_store import CacheStore
from super_router.endpoints import EndpointCatalog
from super_router.gateway.server import create_app
from super_router.gateway.services import build_services
from super_router.models import Endpoint, MediaKind, PostProcess
from super_router.payments.amounts import to_raw_units
from super_router.payments.signer import PermitSigner
from super_router.storage.artifact_store import ArtifactStore

from tests.factories import (
    BUYER_ADDRESS,
    BUYER_KEY,
    MEDIA_CDN,
    SETTLE_TX,
    make_config,
)


# ===== In-memory Supabase =====

def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _comparable(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return _as_datetime(value)
        except ValueError:
            return value
    return value


class FakeResult:
    def __init__(self, data: List[Dict[str, Any]]):
        self.data = data


class FakeTable:
    def __init__(self):
        self.rows: List[Dict[str, Any]] = []
        self.fail: Optional[Exception] = None
        self.executed = 0


class FakeQuery:
    """Subset of the postgrest query builder used by CacheStore"""

    def __init__(self, table: FakeTable):
        self.table = table
        self.op = "select"
        self.payload: Optional[Dict[str, Any]] = None
        self.filters = []
        self.order_by = None
        self.max_rows = None

    def select(self, *columns):
        self.op = "select"
        return self

    def insert(self, row):
        self.op = "insert"
        self.payload = dict(row)
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def gt(self, column, value):
        self.filters.append(lambda row: _comparable(row.get(column)) > _comparable(value))
        return self

    def lte(self, column, value):
        self.filters.append(lambda row: _comparable(row.get(column)) <= _comparable(value))
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def limit(self, count):
        self.max_rows = count
        return self

    def execute(self):
        self.table.executed += 1
        if self.table.fail is not None:
            raise self.table.fail

        if self.op == "insert":
            row = dict(self.payload)
            row.setdefault("id", str(uuid.uuid4()))
            self.table.rows.append(row)
            return FakeResult([dict(row)])

        matched = [row for row in self.table.rows if all(f(row) for f in self.filters)]

        if self.op == "delete":
            self.table.rows = [row for row in self.table.rows if row not in matched]
            return FakeResult(matched)

        if self.order_by:
            column, desc = self.order_by
            matched.sort(key=lambda row: _comparable(row.get(column)), reverse=desc)
        if self.max_rows is not None:
            matched = matched[:self.max_rows]
        return FakeResult([dict(row) for row in matched])


class FakeBucket:
    def __init__(self, storage: "FakeStorage", name: str):
        self.storage = storage
        self.name = name

    def upload(self, path, file, file_options=None):
        self.storage.upload_attempts += 1
        if self.storage.fail_uploads > 0:
            self.storage.fail_uploads -= 1
            raise RuntimeError("storage write failed")
        self.storage.objects[path] = {"data": file, "options": file_options or {}}
        return {"Key": f"{self.name}/{path}"}

    def remove(self, paths):
        for path in paths:
            self.storage.objects.pop(path, None)
            self.storage.removed.append(path)
        return []

    def get_public_url(self, path):
        return f"https://storage.test/object/public/{self.name}/{path}"


class FakeStorage:
    def __init__(self):
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.removed: List[str] = []
        self.fail_uploads = 0
        self.upload_attempts = 0
        self.available = True

    def from_(self, bucket):
        return FakeBucket(self, bucket)

    def list_buckets(self):
        if not self.available:
            raise RuntimeError("storage unreachable")
        return []


class FakeSupabaseClient:
    """Stands in for supabase.Client in tests"""

    def __init__(self):
        self.tables: Dict[str, FakeTable] = {}
        self.storage = FakeStorage()

    def table(self, name):
        return FakeQuery(self.tables.setdefault(name, FakeTable()))

    @property
    def media_rows(self) -> List[Dict[str, Any]]:
        return self.tables.setdefault("generated_media", FakeTable()).rows


# ===== Upstream HTTP services =====

class FakeUpstream:
    """Serves the provider, its media CDN and the facilitator over httpx.MockTransport"""

    def __init__(self):
        self.calls: List[httpx.Request] = []
        self.provider_statuses: List[int] = []
        self.verify_valid = True
        self.facilitator_status = 200
        self.settle_success = True
        self.image_bytes = b"\x89PNG fake image"
        self.video_bytes = b"fake mp4 bytes"

    def count(self, host: str, path_suffix: str = "") -> int:
        return sum(
            1 for r in self.calls
            if r.url.host == host and r.url.path.endswith(path_suffix)
        )

    @property
    def provider_calls(self) -> int:
        return self.count("fal.test")

    @property
    def facilitator_calls(self) -> int:
        return self.count("facilitator.test")

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        host = request.url.host

        if host == "fal.test":
            status = self.provider_statuses.pop(0) if self.provider_statuses else 200
            if status != 200:
                return httpx.Response(status, json={"detail": "provider says no"})
            if "animatediff" in request.url.path:
                return httpx.Response(200, json={"video": {"url": f"{MEDIA_CDN}/out.mp4"}})
            return httpx.Response(200, json={"images": [{"url": f"{MEDIA_CDN}/out.png"}]})

        if host == "media.fal.test":
            if request.url.path.endswith(".mp4"):
                return httpx.Response(200, content=self.video_bytes, headers={"content-type": "video/mp4"})
            return httpx.Response(200, content=self.image_bytes, headers={"content-type": "image/png"})

        if host == "facilitator.test":
            if self.facilitator_status != 200:
                return httpx.Response(self.facilitator_status, json={"error": "down"})
            if request.url.path.endswith("/verify"):
                if self.verify_valid:
                    return httpx.Response(200, json={"isValid": True, "payer": BUYER_ADDRESS})
                return httpx.Response(200, json={"isValid": False, "invalidReason": "invalid_signature"})
            if request.url.path.endswith("/settle"):
                if self.settle_success:
                    return httpx.Response(200, json={
                        "success": True,
                        "transaction": SETTLE_TX,
                        "network": "base",
                        "payer": BUYER_ADDRESS,
                    })
                return httpx.Response(200, json={"success": False, "errorReason": "insufficient_funds"})

        return httpx.Response(404)


# ===== Fixtures =====
@pytest.fixture
def config() -> RouterConfig:
    return make_config()


@pytest.fixture
def image_endpoint() -> Endpoint:
    return Endpoint(
        route="/generate_image",
        quality="low",
        path="/generate_image",
        model="fal-ai/flux/schnell",
        cost="1000",
        price=to_raw_units("1000", 18),
        description="Generate an image",
        response_url_path="images.0.url",
        request_params={"num_images": 1},
        media_type=MediaKind.IMAGE,
        output_extension="png",
    )


@pytest.fixture
def gif_endpoint() -> Endpoint:
    return Endpoint(
        route="/generate_gif",
        quality="low",
        path="/generate_gif",
        model="fal-ai/fast-animatediff/turbo/text-to-video",
        cost="2000",
        price=to_raw_units("2000", 18),
        description="Generate a GIF",
        response_url_path="video.url",
        media_type=MediaKind.GIF,
        output_extension="gif",
        post_process=PostProcess(kind="ffmpeg_to_gif", input_extension="mp4", ffmpeg_args=["-loop", "0"]),
    )


@pytest.fixture
def catalog(image_endpoint, gif_endpoint) -> EndpointCatalog:
    return EndpointCatalog([image_endpoint, gif_endpoint])


@pytest.fixture
def supabase() -> FakeSupabaseClient:
    return FakeSupabaseClient()


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def http_client(upstream) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))


@pytest.fixture
def cache_store(supabase) -> CacheStore:
    return CacheStore(supabase, timeout=5)


@pytest.fixture
def artifact_store(supabase) -> ArtifactStore:
    return ArtifactStore(supabase, bucket_name="generated-media", cdn_url="https://cdn.test", timeout=5)


@pytest.fixture
def build(config, catalog, http_client, cache_store, artifact_store):
    """Build the service graph, optionally with config overrides"""
    def _build(**overrides):
        cfg = config.model_copy(update=overrides) if overrides else config
        return build_services(
            cfg,
            http_client=http_client,
            cache=cache_store,
            artifacts=artifact_store,
            catalog=catalog,
        )
    return _build


@pytest.fixture
def services(build):
    return build()


@pytest.fixture
def bypass_services(build):
    return build(test_mode=True)


@pytest.fixture
def client(services) -> TestClient:
    """FastAPI test client with payments enforced"""
    return TestClient(create_app(services))


@pytest.fixture
def bypass_client(bypass_services) -> TestClient:
    """FastAPI test client in test mode (payments bypassed)"""
    return TestClient(create_app(bypass_services))


@pytest.fixture
def buyer() -> PermitSigner:
    return PermitSigner(private_key=BUYER_KEY)


@pytest.fixture
def pay(services, buyer):
    """Sign a valid X-PAYMENT header for an endpoint"""
    def _pay(endpoint: Endpoint, **sign_kwargs) -> str:
        requirement = services.orchestrator.challenges.build(endpoint)
        sign_kwargs.setdefault("nonce", 0)
        sign_kwargs.setdefault("deadline", int(time.time()) + 600)
        proof = buyer.sign(requirement, **sign_kwargs)
        return PermitSigner.encode_header(proof)
    return _pay
