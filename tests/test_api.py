"""Tests for API endpoints."""

import json
import os
import tempfile

import httpx
import pytest
from fastapi.testclient import TestClient

# Set up test environment before importing app
os.environ["HIKGATE_DATA_DIR"] = tempfile.mkdtemp()
os.environ["HIKGATE_ENCRYPTION_KEY"] = os.urandom(32).hex()

from hikgate.config import Settings
from hikgate.encryption import EncryptionService
from hikgate.isapi.client import HikvisionHttpClient
from hikgate.isapi.endpoints import SECURITY_KEY
from hikgate.main import app
from hikgate.session_manager import HikvisionSessionService
from hikgate.storage import DeviceStorage, MemoryCache

from fakes import PASSWORD, FakeDevice


@pytest.fixture
def fake():
    """Digest-protected device behind every registered IP."""
    return FakeDevice()


@pytest.fixture(autouse=True)
def reset_services(fake):
    """Install fresh storage, cache and HTTP client before each test."""
    import hikgate.isapi.client as client_module
    import hikgate.session_manager as session_module
    import hikgate.storage as storage_module

    with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
        json.dump({"devices": []}, f)
        temp_path = f.name

    encryption = EncryptionService(EncryptionService.generate_key())
    http = HikvisionHttpClient(
        encryption, session=httpx.AsyncClient(transport=httpx.MockTransport(fake))
    )

    storage_module._device_storage = DeviceStorage(file_path=temp_path, encryption=encryption)
    session_module._session_service = HikvisionSessionService(http, MemoryCache())
    client_module._http_client = http

    yield

    storage_module._device_storage = None
    session_module._session_service = None
    client_module._http_client = None
    os.unlink(temp_path)


@pytest.fixture
def client():
    """Test client fixture."""
    return TestClient(app)


def register(client, name="Front Door", password=PASSWORD, **extra) -> dict:
    response = client.post("/api/devices", json={
        "name": name,
        "ip_address": "192.168.1.64",
        "username": "admin",
        "password": password,
        **extra,
    })
    assert response.status_code == 201
    return response.json()


def test_health_check(client):
    """Test health endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_list_devices_empty(client):
    """Test listing devices when empty."""
    response = client.get("/api/devices")
    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 0
    assert data["devices"] == []


def test_create_device(client):
    """Test registering a device never echoes its secret."""
    data = register(client)

    assert data["name"] == "Front Door"
    assert data["slug"] == "front-door"
    assert "password" not in data
    assert "encrypted_secret" not in data

    listed = client.get("/api/devices").json()
    assert listed["count"] == 1
    assert "encrypted_secret" not in listed["devices"][0]


def test_create_device_duplicate_slug(client):
    """Test a duplicate slug is a bad request."""
    register(client, slug="door")

    response = client.post("/api/devices", json={
        "name": "Other",
        "slug": "door",
        "ip_address": "192.168.1.65",
        "username": "admin",
        "password": PASSWORD,
    })
    assert response.status_code == 400


def test_get_device(client):
    """Test getting a device."""
    device_id = register(client)["id"]

    # Get by UUID
    response = client.get(f"/api/devices/{device_id}")
    assert response.status_code == 200
    assert response.json()["id"] == device_id

    # Get by slug
    response = client.get("/api/devices/front-door")
    assert response.status_code == 200
    assert response.json()["id"] == device_id


def test_get_device_not_found(client):
    """Test getting non-existent device."""
    response = client.get("/api/devices/nonexistent")
    assert response.status_code == 404


def test_update_device(client):
    """Test updating a device."""
    device_id = register(client)["id"]

    response = client.put(f"/api/devices/{device_id}", json={"name": "Back Door", "port": 8080})

    assert response.status_code == 200
    assert response.json()["name"] == "Back Door"
    assert response.json()["port"] == 8080


def test_delete_device(client):
    """Test deleting a device."""
    device_id = register(client)["id"]

    response = client.delete(f"/api/devices/{device_id}")
    assert response.status_code == 204

    response = client.get(f"/api/devices/{device_id}")
    assert response.status_code == 404


def test_device_connection_test(client, fake):
    """Test the connection check against the device."""
    register(client)
    register(client, name="Wrong Password", password="nope")

    response = client.post("/api/devices/front-door/test")
    assert response.status_code == 200
    assert response.json()["online"] is True

    response = client.post("/api/devices/wrong-password/test")
    assert response.status_code == 200
    assert response.json()["online"] is False


def test_acquire_session_is_cached(client, fake):
    """Test a second acquisition is served from the cache."""
    device_id = register(client)["id"]

    first = client.post("/api/sessions/front-door")
    second = client.post(f"/api/sessions/{device_id}")

    assert first.status_code == 200
    assert first.json() == {
        "device_id": device_id,
        "acquired": True,
        "valid": True,
        "message": "Secure session ready for Front Door",
    }
    assert second.status_code == 200
    assert [c.url.path for c in fake.calls] == [SECURITY_KEY, SECURITY_KEY]
    assert client.get(f"/api/devices/{device_id}").json()["last_session_at"] is not None

    metrics = client.get("/api/sessions/metrics/front-door").json()
    assert metrics["cache_hits"] == 1
    assert metrics["cache_misses"] == 1
    assert metrics["acquisition_count"] == 1


def test_force_refresh(client, fake):
    """Test force_refresh goes back to the device."""
    register(client)

    client.post("/api/sessions/front-door")
    response = client.post("/api/sessions/front-door", params={"force_refresh": True})

    assert response.status_code == 200
    assert len(fake.authorized_calls) == 2


def test_acquire_session_not_found(client):
    """Test acquiring for an unknown device."""
    response = client.post("/api/sessions/nonexistent")
    assert response.status_code == 404


def test_incomplete_session_is_bad_gateway(client, fake):
    """Test a device answering without both tokens."""
    fake.routes[SECURITY_KEY] = {"security": "S1"}
    register(client)

    response = client.post("/api/sessions/front-door")

    assert response.status_code == 502


def test_wrong_password_is_unauthorized(client):
    """Test a rejected digest retry surfaces as 401."""
    register(client, password="nope")

    response = client.post("/api/sessions/front-door")

    assert response.status_code == 401


def test_metrics_not_found(client):
    """Test metrics for a device that never acquired a session."""
    register(client)

    assert client.get("/api/sessions/metrics/front-door").status_code == 404
    assert client.get("/api/sessions/metrics").json() == []


def test_preload_sessions(client):
    """Test preloading every registered device."""
    ok_id = register(client)["id"]
    bad_id = register(client, name="Broken", password="nope")["id"]

    response = client.post("/api/sessions/preload", json={})

    assert response.status_code == 200
    data = response.json()
    assert data["results"] == {ok_id: True, bad_id: False}
    assert data["succeeded"] == 1
    assert data["failed"] == 1


def test_preload_selected_devices(client):
    """Test preloading a subset of devices by slug."""
    ok_id = register(client)["id"]
    register(client, name="Other")

    response = client.post("/api/sessions/preload", json={"device_ids": ["front-door"]})

    assert response.json()["results"] == {ok_id: True}


def test_clear_session(client, fake):
    """Test clearing a session forces a new acquisition."""
    register(client)
    client.post("/api/sessions/front-door")

    response = client.delete("/api/sessions/front-door")
    assert response.status_code == 204

    client.post("/api/sessions/front-door")
    assert len(fake.authorized_calls) == 2


def test_clear_all_sessions(client, fake):
    """Test clearing every session."""
    register(client)
    client.post("/api/sessions/front-door")

    assert client.delete("/api/sessions").status_code == 204

    client.post("/api/sessions/front-door")
    assert len(fake.authorized_calls) == 2


def test_basic_auth_required(client, monkeypatch):
    """Test the admin API enforces basic auth when configured."""
    import hikgate.api.deps as deps

    monkeypatch.setattr(deps, "get_settings", lambda: Settings(username="admin", password="pw"))

    assert client.get("/api/devices").status_code == 401
    assert client.get("/api/devices", auth=("admin", "wrong")).status_code == 401
    assert client.get("/api/devices", auth=("admin", "pw")).status_code == 200
    assert client.get("/health").status_code == 200
