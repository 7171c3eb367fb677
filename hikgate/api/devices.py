"""Device registry CRUD endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from ..isapi.client import get_http_client
from ..models import (
    ConnectionTestResponse,
    DeviceCreate,
    DeviceListResponse,
    DeviceResponse,
    DeviceUpdate,
)
from ..session_manager import get_session_service
from ..storage import DeviceNotFoundError, StorageError, get_device_storage
from .deps import verify_auth

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/devices", tags=["devices"], dependencies=[Depends(verify_auth)])


@router.get("", response_model=DeviceListResponse)
async def list_devices():
    """List all registered devices."""
    devices = get_device_storage().list_devices()
    return DeviceListResponse(
        devices=[DeviceResponse.from_record(d) for d in devices],
        count=len(devices),
    )


@router.post("", response_model=DeviceResponse, status_code=201)
async def create_device(device_data: DeviceCreate):
    """Register a device. The password is stored encrypted."""
    try:
        device = get_device_storage().create_device(device_data)
    except StorageError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return DeviceResponse.from_record(device)


@router.get("/{id_or_slug}", response_model=DeviceResponse)
async def get_device(id_or_slug: str):
    """Get a device by UUID or slug."""
    try:
        device = get_device_storage().get_device(id_or_slug)
    except DeviceNotFoundError:
        raise HTTPException(status_code=404, detail=f"Device not found: {id_or_slug}")

    return DeviceResponse.from_record(device)


@router.put("/{id_or_slug}", response_model=DeviceResponse)
async def update_device(id_or_slug: str, update_data: DeviceUpdate):
    """Update a device. Connection changes drop its cached session."""
    storage = get_device_storage()

    try:
        device = storage.update_device(id_or_slug, update_data)
    except DeviceNotFoundError:
        raise HTTPException(status_code=404, detail=f"Device not found: {id_or_slug}")
    except StorageError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await get_session_service().clear_session(str(device.id))
    return DeviceResponse.from_record(device)


@router.delete("/{id_or_slug}", status_code=204)
async def delete_device(id_or_slug: str):
    """Delete a device and its cached session."""
    storage = get_device_storage()

    try:
        device = storage.get_device(id_or_slug)
    except DeviceNotFoundError:
        raise HTTPException(status_code=404, detail=f"Device not found: {id_or_slug}")

    await get_session_service().clear_session(str(device.id))
    storage.delete_device(id_or_slug)


@router.post("/{id_or_slug}/test", response_model=ConnectionTestResponse)
async def test_device(id_or_slug: str):
    """Test that the device answers an authenticated request."""
    try:
        device = get_device_storage().get_device(id_or_slug)
    except DeviceNotFoundError:
        raise HTTPException(status_code=404, detail=f"Device not found: {id_or_slug}")

    online = await get_http_client().test_connection(device.to_target())
    logger.info(f"Connection test for {device.id}: {'online' if online else 'offline'}")
    return ConnectionTestResponse(device_id=device.id, online=online)
