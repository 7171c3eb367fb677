"""Secure session endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from ..errors import HikvisionError
from ..models import (
    DeviceRecord,
    PreloadRequest,
    PreloadResponse,
    SessionMetrics,
    SessionMetricsResponse,
    SessionStatusResponse,
)
from ..session_manager import get_session_service
from ..storage import DeviceNotFoundError, get_device_storage
from .deps import device_error, verify_auth

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["sessions"], dependencies=[Depends(verify_auth)])


def _resolve(id_or_slug: str) -> DeviceRecord:
    try:
        return get_device_storage().get_device(id_or_slug)
    except DeviceNotFoundError:
        raise HTTPException(status_code=404, detail=f"Device not found: {id_or_slug}")


def _metrics_response(metrics: SessionMetrics) -> SessionMetricsResponse:
    return SessionMetricsResponse(
        device_id=metrics.device_id,
        cache_hits=metrics.cache_hits,
        cache_misses=metrics.cache_misses,
        acquisition_count=metrics.acquisition_count,
        last_acquisition=metrics.last_acquisition,
        average_acquisition_time=metrics.average_acquisition_time,
    )


@router.get("/metrics", response_model=list[SessionMetricsResponse])
async def list_metrics():
    """Session cache metrics for every device seen so far."""
    return [_metrics_response(m) for m in get_session_service().get_all_session_metrics()]


@router.get("/metrics/{id_or_slug}", response_model=SessionMetricsResponse)
async def get_metrics(id_or_slug: str):
    """Session cache metrics for one device."""
    device = _resolve(id_or_slug)
    metrics = get_session_service().get_session_metrics(str(device.id))
    if metrics is None:
        raise HTTPException(status_code=404, detail=f"No session metrics for device: {id_or_slug}")
    return _metrics_response(metrics)


@router.post("/preload", response_model=PreloadResponse)
async def preload_sessions(preload: PreloadRequest):
    """Acquire sessions for the given devices, or all devices when none are given."""
    storage = get_device_storage()

    if preload.device_ids:
        devices = [_resolve(i) for i in preload.device_ids]
    else:
        devices = storage.list_devices()

    results = await get_session_service().preload_sessions(d.to_target() for d in devices)
    succeeded = sum(1 for ok in results.values() if ok)

    for device_id, ok in results.items():
        if ok:
            storage.update_session_time(device_id)

    return PreloadResponse(results=results, succeeded=succeeded, failed=len(results) - succeeded)


@router.post("/{id_or_slug}", response_model=SessionStatusResponse)
async def acquire_session(
    id_or_slug: str,
    force_refresh: bool = Query(False, description="Ignore cached and in-flight sessions"),
):
    """Acquire (or reuse) the secure session for a device."""
    device = _resolve(id_or_slug)
    service = get_session_service()

    try:
        session = await service.get_secure_session(device.to_target(), force_refresh=force_refresh)
    except HikvisionError as e:
        raise device_error(e)

    get_device_storage().update_session_time(str(device.id))
    return SessionStatusResponse(
        device_id=str(device.id),
        acquired=True,
        valid=service.validate_session(session),
        message=f"Secure session ready for {device.name}",
    )


@router.delete("/{id_or_slug}", status_code=204)
async def clear_session(id_or_slug: str):
    """Drop the cached session for a device."""
    device = _resolve(id_or_slug)
    await get_session_service().clear_session(str(device.id))


@router.delete("", status_code=204)
async def clear_all_sessions():
    """Drop every cached session."""
    await get_session_service().clear_all_sessions()
