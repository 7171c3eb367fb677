"""Tests for Pydantic models."""

import pytest
from pydantic import ValidationError
from uuid import UUID

from hikgate.models import (
    CachedSession,
    DeviceConnectionTarget,
    DeviceCreate,
    DeviceRecord,
    DeviceResponse,
    DeviceUpdate,
    ErrorContext,
    SecureSession,
    slugify,
)


def test_slugify():
    """Test slug generation."""
    assert slugify("Hello World") == "hello-world"
    assert slugify("Eingang (Türstation)") == "eingang-turstation"
    assert slugify("Test--Multiple---Dashes") == "test-multiple-dashes"
    assert slugify("  Leading Trailing  ") == "leading-trailing"


def test_connection_target_defaults():
    """Test default ports follow the protocol."""
    http = DeviceConnectionTarget(device_id="a", host="10.0.0.1", username="admin", encrypted_secret="x")
    https = DeviceConnectionTarget(
        device_id="b", host="10.0.0.1", use_https=True, username="admin", encrypted_secret="x"
    )

    assert http.base_url == "http://10.0.0.1:80"
    assert https.base_url == "https://10.0.0.1:443"


def test_connection_target_explicit_port():
    """Test an explicit port wins over the default."""
    target = DeviceConnectionTarget(
        device_id="a", ip_address="cam.local", port=8000, username="admin", encrypted_secret="x"
    )
    assert target.base_url == "http://cam.local:8000"


def test_connection_target_invalid_host():
    """Test a URL is rejected as host."""
    with pytest.raises(ValueError):
        DeviceConnectionTarget(
            device_id="a", host="http://10.0.0.1", username="admin", encrypted_secret="x"
        )


def test_connection_target_is_frozen():
    """Test connection targets are immutable."""
    target = DeviceConnectionTarget(device_id="a", host="10.0.0.1", username="admin", encrypted_secret="x")
    with pytest.raises(ValidationError):
        target.port = 81


def test_secure_session_aliases():
    """Test sessions load from the device payload and dump back with aliases."""
    session = SecureSession.model_validate({"security": "S", "identityKey": "I"})

    assert session.identity_key == "I"
    assert session.is_valid()
    assert session.model_dump(by_alias=True) == {"security": "S", "identityKey": "I"}
    assert not SecureSession(security="S", identity_key="").is_valid()


def test_cached_session_expiry():
    """Test expiry is inclusive of the deadline."""
    cached = CachedSession(security="S", identity_key="I", expires_at=1000)

    assert not cached.is_expired(now=999)
    assert cached.is_expired(now=1000)
    assert cached.to_session() == SecureSession(security="S", identity_key="I")


def test_error_context_correlation_id():
    """Test every context gets its own correlation id."""
    first = ErrorContext(device_id="a", operation="GET")
    second = ErrorContext(device_id="a", operation="GET")

    assert first.correlation_id != second.correlation_id
    assert first.http_status is None


def test_device_create_with_slug():
    """Test device with custom slug."""
    device = DeviceCreate(
        name="Front Door",
        slug="entrance",
        ip_address="192.168.1.64",
        username="admin",
        password="Secret123",
    )
    assert device.slug == "entrance"
    assert device.use_https is False
    assert device.port is None


def test_device_create_invalid_host():
    """Test invalid host format."""
    with pytest.raises(ValueError):
        DeviceCreate(
            name="Test",
            ip_address="https://192.168.1.64",  # Should not be URL
            username="admin",
            password="Secret123",
        )


def test_device_update_partial():
    """Test partial update model."""
    update = DeviceUpdate(name="New Name")
    assert update.name == "New Name"
    assert update.password is None

    data = update.model_dump(exclude_unset=True)
    assert data == {"name": "New Name"}


def test_device_response_omits_secret():
    """Test API responses never carry the encrypted secret."""
    record = DeviceRecord(
        name="Door",
        slug="door",
        ip_address="192.168.1.64",
        username="admin",
        encrypted_secret="00:11",
    )

    response = DeviceResponse.from_record(record)

    assert isinstance(response.id, UUID)
    assert response.id == record.id
    assert "encrypted_secret" not in response.model_dump()
    assert "password" not in response.model_dump()
