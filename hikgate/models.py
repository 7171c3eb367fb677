"""Device, session and API models."""

import re
import secrets
import time
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import get_settings


def slugify(text: str) -> str:
    """Convert text to URL-friendly slug."""
    text = unicodedata.normalize('NFKD', text)
    text = text.encode('ascii', 'ignore').decode('ascii')
    text = text.lower()
    text = re.sub(r'[^\w\s-]', '', text)
    text = re.sub(r'[-\s]+', '-', text)
    return text.strip('-')


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _validate_host(v: str) -> str:
    if not v or v.lower().startswith('http'):
        raise ValueError('Host must be hostname or IP, not URL')
    return v


class DeviceConnectionTarget(BaseModel):
    """Connection details for one physical device, borrowed per call."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    device_id: str = Field(..., min_length=1)
    ip_address: str = Field(..., alias="host", min_length=1)
    port: Optional[int] = Field(None, ge=1, le=65535)
    use_https: bool = False
    username: str = Field(..., min_length=1)
    encrypted_secret: str
    timeout: Optional[float] = Field(None, gt=0)

    @field_validator('ip_address')
    @classmethod
    def validate_host(cls, v):
        return _validate_host(v)

    @property
    def protocol(self) -> str:
        return "https" if self.use_https else "http"

    @property
    def effective_port(self) -> int:
        if self.port:
            return self.port
        settings = get_settings()
        return settings.default_https_port if self.use_https else settings.default_http_port

    @property
    def base_url(self) -> str:
        return f"{self.protocol}://{self.ip_address}:{self.effective_port}"


class SecureSession(BaseModel):
    """Security token pair returned by the device identityKey endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    security: str
    identity_key: str = Field(..., alias="identityKey")

    def is_valid(self) -> bool:
        return bool(self.security and self.identity_key)


class CachedSession(SecureSession):
    """Secure session as stored in the cache, with absolute expiry."""

    expires_at: int = Field(..., alias="expiresAt", description="Epoch millis")

    def is_expired(self, now: Optional[int] = None) -> bool:
        return self.expires_at <= (now if now is not None else now_ms())

    def to_session(self) -> SecureSession:
        return SecureSession(security=self.security, identity_key=self.identity_key)


@dataclass
class SessionMetrics:
    """Per-device session cache counters."""
    device_id: str
    cache_hits: int = 0
    cache_misses: int = 0
    acquisition_count: int = 0
    last_acquisition: Optional[datetime] = None
    average_acquisition_time: Optional[float] = None  # ms


def generate_correlation_id() -> str:
    return f"{now_ms()}-{secrets.token_hex(5)[:9]}"


@dataclass
class ErrorContext:
    """Where a device error happened."""
    device_id: str
    operation: str
    endpoint: Optional[str] = None
    http_status: Optional[int] = None
    correlation_id: str = field(default_factory=generate_correlation_id)


# ---------------------------------------------------------------------------
# Device registry


class DeviceBase(BaseModel):
    """Base model for a registered device."""

    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    slug: Optional[str] = Field(None, max_length=50, description="URL-friendly identifier")
    ip_address: str = Field(..., min_length=1, max_length=255, description="Device hostname/IP")
    port: Optional[int] = Field(None, ge=1, le=65535, description="HTTP(S) port")
    use_https: bool = Field(False, description="Talk HTTPS to the device")
    username: str = Field(..., min_length=1, max_length=100, description="ISAPI username")
    timeout: Optional[float] = Field(None, gt=0, le=120, description="Per-call timeout in seconds")

    @field_validator('slug', mode='before')
    @classmethod
    def auto_slug(cls, v, info):
        """Auto-generate slug from name if not provided."""
        if v is None and 'name' in info.data:
            return slugify(info.data['name'])
        return v

    @field_validator('ip_address')
    @classmethod
    def validate_host(cls, v):
        return _validate_host(v)


class DeviceCreate(DeviceBase):
    """Model for registering a device; password is encrypted before storage."""

    password: str = Field(..., min_length=1, max_length=128)


class DeviceUpdate(BaseModel):
    """Model for updating a device (all fields optional)."""

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    slug: Optional[str] = Field(None, max_length=50)
    ip_address: Optional[str] = Field(None, min_length=1, max_length=255)
    port: Optional[int] = Field(None, ge=1, le=65535)
    use_https: Optional[bool] = None
    username: Optional[str] = Field(None, min_length=1, max_length=100)
    password: Optional[str] = Field(None, min_length=1, max_length=128)
    timeout: Optional[float] = Field(None, gt=0, le=120)


class DeviceRecord(DeviceBase):
    """Persisted device with its encrypted secret."""

    id: UUID = Field(default_factory=uuid4, description="Unique identifier")
    encrypted_secret: str
    created_at: datetime = Field(default_factory=utc_now)
    last_session_at: Optional[datetime] = Field(None, description="Last secure session acquisition")

    def to_target(self) -> DeviceConnectionTarget:
        return DeviceConnectionTarget(
            device_id=str(self.id),
            ip_address=self.ip_address,
            port=self.port,
            use_https=self.use_https,
            username=self.username,
            encrypted_secret=self.encrypted_secret,
            timeout=self.timeout,
        )


class DeviceResponse(DeviceBase):
    """Device as returned by the API. Never carries the secret."""

    id: UUID
    created_at: datetime
    last_session_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: DeviceRecord) -> "DeviceResponse":
        return cls(**record.model_dump(exclude={'encrypted_secret'}))


class DeviceListResponse(BaseModel):
    """Response model for listing devices."""

    devices: list[DeviceResponse]
    count: int


class ConnectionTestResponse(BaseModel):
    """Response model for a device connection test."""

    device_id: UUID
    online: bool


class SessionStatusResponse(BaseModel):
    """Response model for session acquisition. Tokens are not echoed."""

    device_id: str
    acquired: bool
    valid: bool
    message: str


class SessionMetricsResponse(BaseModel):
    """Response model for session metrics."""

    device_id: str
    cache_hits: int
    cache_misses: int
    acquisition_count: int
    last_acquisition: Optional[datetime] = None
    average_acquisition_time: Optional[float] = None


class PreloadRequest(BaseModel):
    """Devices to preload; empty means every registered device."""

    device_ids: list[str] = Field(default_factory=list)


class PreloadResponse(BaseModel):
    """Per-device preload outcome."""

    results: dict[str, bool]
    succeeded: int
    failed: int
