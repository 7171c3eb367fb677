"""Shared fixtures for device, encryption and HTTP client setup."""

import httpx
import pytest

from hikgate.encryption import EncryptionService
from hikgate.isapi.client import HikvisionHttpClient
from hikgate.models import DeviceConnectionTarget

from fakes import PASSWORD, FakeDevice


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def encryption():
    return EncryptionService(EncryptionService.generate_key())


@pytest.fixture
def device(encryption):
    return DeviceConnectionTarget(
        device_id="dev-1",
        host="192.168.1.64",
        username="admin",
        encrypted_secret=encryption.encrypt(PASSWORD),
    )


@pytest.fixture
def fake_device():
    return FakeDevice()


@pytest.fixture
def http_client(encryption, fake_device):
    session = httpx.AsyncClient(transport=httpx.MockTransport(fake_device))
    return HikvisionHttpClient(encryption, session=session)
