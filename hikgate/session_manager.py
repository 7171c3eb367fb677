"""Secure session caching and single-flight acquisition."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

from pydantic import ValidationError

from .config import get_settings
from .errors import SessionValidationError
from .isapi.client import HikvisionHttpClient, get_http_client
from .isapi.endpoints import SECURITY_KEY, session_cache_key
from .models import (
    CachedSession,
    DeviceConnectionTarget,
    ErrorContext,
    SecureSession,
    SessionMetrics,
    now_ms,
)
from .storage import SessionCache, get_session_cache

logger = logging.getLogger(__name__)


class HikvisionSessionService:
    """Serves per-device secure sessions.

    Sessions are cached until their TTL runs out. Concurrent requests for
    the same device share one in-flight acquisition.
    """

    def __init__(
        self,
        http_client: HikvisionHttpClient,
        cache: SessionCache,
        ttl: Optional[int] = None,
    ):
        self._http = http_client
        self._cache = cache
        self.ttl = ttl or get_settings().session_cache_ttl
        self._pending: Dict[str, asyncio.Task] = {}
        self._metrics: Dict[str, SessionMetrics] = {}
        self._known_devices: set[str] = set()

    async def get_secure_session(
        self,
        device: DeviceConnectionTarget,
        force_refresh: bool = False,
        timeout: Optional[float] = None,
    ) -> SecureSession:
        """
        Get a secure session for a device.

        Args:
            device: Target device
            force_refresh: Skip the cache and any in-flight acquisition
            timeout: Timeout for the identityKey request

        Returns:
            SecureSession with non-empty security and identity key
        """
        device_id = device.device_id
        self._known_devices.add(device_id)

        if not force_refresh:
            pending = self._pending.get(device_id)
            if pending is not None:
                logger.debug(f"Waiting for pending session acquisition for {device_id}")
                return await asyncio.shield(pending)

            cached = await self._get_cached_session(device_id)
            if cached is not None:
                self._update_metrics(device_id, "cache_hit")
                return cached

            # Another caller may have started while the cache was read
            pending = self._pending.get(device_id)
            if pending is not None:
                logger.debug(f"Joining session acquisition started for {device_id}")
                return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._acquire_new_session(device, timeout))
        self._pending[device_id] = task
        task.add_done_callback(lambda t: self._forget_pending(device_id, t))

        return await asyncio.shield(task)

    def _forget_pending(self, device_id: str, task: asyncio.Task) -> None:
        if self._pending.get(device_id) is task:
            del self._pending[device_id]
        if not task.cancelled():
            # Mark the exception retrieved; waiters get it via shield
            task.exception()

    def has_pending(self, device_id: str) -> bool:
        """Check if an acquisition is in flight for the device."""
        return device_id in self._pending

    async def clear_session(self, device_id: str) -> None:
        """Clear cached and pending session state for a device."""
        logger.info(f"Clearing session cache for {device_id}")
        try:
            await self._cache.delete(session_cache_key(device_id))
        except Exception as e:
            logger.warning(f"Failed to delete cached session for {device_id}: {e}")
        self._pending.pop(device_id, None)

    async def clear_all_sessions(self) -> None:
        """Clear session state for every device this service has seen."""
        logger.info(f"Clearing all session caches ({len(self._known_devices)} devices)")
        self._pending.clear()
        for device_id in list(self._known_devices):
            try:
                await self._cache.delete(session_cache_key(device_id))
            except Exception as e:
                logger.warning(f"Failed to delete cached session for {device_id}: {e}")

    def validate_session(self, session: Optional[SecureSession]) -> bool:
        """Structural check only; no network call."""
        return bool(session is not None and session.is_valid())

    async def preload_sessions(self, devices: Iterable[DeviceConnectionTarget]) -> Dict[str, bool]:
        """Acquire sessions for many devices concurrently. Never raises."""
        devices = list(devices)
        logger.info(f"Preloading sessions for {len(devices)} devices")

        async def preload(device: DeviceConnectionTarget) -> bool:
            try:
                await self.get_secure_session(device)
                return True
            except Exception as e:
                logger.warning(f"Failed to preload session for {device.device_id}: {e}")
                return False

        outcomes = await asyncio.gather(*(preload(d) for d in devices))
        results = {d.device_id: ok for d, ok in zip(devices, outcomes)}

        logger.info(f"Session preloading completed: {sum(outcomes)}/{len(devices)} succeeded")
        return results

    def get_session_metrics(self, device_id: str) -> Optional[SessionMetrics]:
        return self._metrics.get(device_id)

    def get_all_session_metrics(self) -> list[SessionMetrics]:
        return list(self._metrics.values())

    async def _get_cached_session(self, device_id: str) -> Optional[SecureSession]:
        cache_key = session_cache_key(device_id)
        try:
            raw = await self._cache.get(cache_key)
            if raw is None:
                return None

            try:
                cached = CachedSession.model_validate(raw)
            except ValidationError:
                logger.warning(f"Discarding malformed cached session for {device_id}")
                await self._cache.delete(cache_key)
                return None

            if cached.is_expired(now_ms()) or not cached.is_valid():
                logger.debug(f"Cached session expired for {device_id}")
                await self._cache.delete(cache_key)
                return None

            logger.debug(f"Using cached session for {device_id}")
            return cached.to_session()

        except Exception as e:
            logger.warning(f"Failed to get cached session for {device_id}: {e}")
            return None

    async def _acquire_new_session(
        self,
        device: DeviceConnectionTarget,
        timeout: Optional[float],
    ) -> SecureSession:
        device_id = device.device_id
        started = time.monotonic()
        logger.debug(f"Acquiring new session for {device_id}")

        payload = await self._http.get(device, SECURITY_KEY, timeout=timeout)

        security = payload.get("security") if isinstance(payload, dict) else None
        identity_key = payload.get("identityKey") if isinstance(payload, dict) else None
        if not (isinstance(security, str) and security and isinstance(identity_key, str) and identity_key):
            elapsed = (time.monotonic() - started) * 1000
            logger.error(f"Session acquisition for {device_id} returned incomplete keys after {elapsed:.0f}ms")
            raise SessionValidationError(
                "Invalid session response: missing security keys",
                ErrorContext(device_id=device_id, operation="acquire_session", endpoint=SECURITY_KEY),
            )

        session = SecureSession(security=security, identity_key=identity_key)
        # Cleared or superseded by a force refresh: serve waiters, don't cache
        if self._pending.get(device_id) is asyncio.current_task():
            await self._cache_session(device_id, session)
        else:
            logger.debug(f"Session acquisition for {device_id} was superseded, not caching")

        elapsed = (time.monotonic() - started) * 1000
        self._update_metrics(device_id, "cache_miss")
        self._update_metrics(device_id, "acquisition", elapsed)
        logger.info(f"Session acquired for {device_id} in {elapsed:.0f}ms")
        return session

    async def _cache_session(self, device_id: str, session: SecureSession) -> None:
        cached = CachedSession(
            security=session.security,
            identity_key=session.identity_key,
            expires_at=now_ms() + self.ttl * 1000,
        )
        try:
            await self._cache.set(
                session_cache_key(device_id),
                cached.model_dump(by_alias=True),
                self.ttl,
            )
            logger.debug(f"Session cached for {device_id} until {cached.expires_at}")
        except Exception as e:
            # Acquisition succeeded; caching is best effort
            logger.warning(f"Failed to cache session for {device_id}: {e}")

    def _update_metrics(self, device_id: str, operation: str, elapsed_ms: Optional[float] = None) -> None:
        metrics = self._metrics.get(device_id)
        if metrics is None:
            metrics = SessionMetrics(device_id=device_id)
            self._metrics[device_id] = metrics

        if operation == "cache_hit":
            metrics.cache_hits += 1
        elif operation == "cache_miss":
            metrics.cache_misses += 1
        elif operation == "acquisition":
            metrics.acquisition_count += 1
            metrics.last_acquisition = datetime.now(timezone.utc)
            if elapsed_ms is not None:
                current = metrics.average_acquisition_time or 0.0
                count = metrics.acquisition_count
                metrics.average_acquisition_time = (current * (count - 1) + elapsed_ms) / count


# Global session service instance
_session_service: Optional[HikvisionSessionService] = None


def get_session_service() -> HikvisionSessionService:
    """Get session service instance."""
    global _session_service
    if _session_service is None:
        _session_service = HikvisionSessionService(get_http_client(), get_session_cache())
    return _session_service
