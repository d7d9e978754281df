"""
Super Router Core Data Models
Shared models for the catalog, cache table and generation pipeline
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MediaKind(str, Enum):
    """Kinds of media an endpoint produces"""
    IMAGE = "image"
    GIF = "gif"
    VIDEO = "video"


class PostProcess(BaseModel):
    """Transcoding step applied to provider output"""
    model_config = ConfigDict(frozen=True)

    kind: Literal["none", "ffmpeg_to_gif"] = "none"
    input_extension: str = "mp4"
    ffmpeg_args: List[str] = Field(default_factory=list)


class Endpoint(BaseModel):
    """A priced generation endpoint loaded from the catalog. Immutable after load."""
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    route: str = Field(description="HTTP route serving this endpoint")
    quality: str = Field(default="low", description="Quality tier within the route")
    path: str = Field(description="Payment resource and cache key component")
    model: str = Field(description="Provider model identifier")
    cost: str = Field(description="Price in human token units")
    price: int = Field(default=0, ge=0, description="Price in raw token units")
    description: str = ""
    response_url_path: str = Field(description="Dot path to the result URL in the provider response")
    request_params: Dict[str, Any] = Field(default_factory=dict)
    media_type: MediaKind = MediaKind.IMAGE
    output_extension: str = "png"
    post_process: PostProcess = Field(default_factory=PostProcess)


class CacheEntry(BaseModel):
    """Row of the append-only generated_media table"""
    id: Optional[str] = None
    endpoint_path: str
    prompt: str
    prompt_hash: str
    storage_key: str
    public_url: str
    media_type: str
    file_size_bytes: int = 0
    payer_address: Optional[str] = None
    payment_tx: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def default_and_check_expiry(self):
        if self.expires_at is None:
            self.expires_at = self.created_at + timedelta(days=30)
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be after created_at")
        return self

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at > (now or utcnow())


class RawMedia(BaseModel):
    """Bytes returned by the generation provider"""
    data: bytes
    source_url: str
    content_type: Optional[str] = None


class ProcessedMedia(BaseModel):
    """Final artifact bytes ready for upload"""
    data: bytes
    content_type: str
    extension: str


class GenerateResult(BaseModel):
    """Outcome of a successful generation request"""
    url: str
    media_type: str
    cached: bool
    prompt: str
    quality: str
    payer: Optional[str] = None
    payment_tx: Optional[str] = None


class GenerateResponse(BaseModel):
    """200 body for a generation endpoint"""
    url: str
    media_type: str
    cached: bool
    prompt: str
    quality: str


CONTENT_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "mp4": "video/mp4",
}


def content_type_for(extension: str) -> str:
    return CONTENT_TYPES.get(extension.lower(), "application/octet-stream")
