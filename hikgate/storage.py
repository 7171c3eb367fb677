"""Session cache backends and JSON file device registry with file locking."""

import asyncio
import fcntl
import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional, Protocol
from uuid import UUID

from .config import get_settings
from .encryption import EncryptionService, get_encryption_service
from .models import DeviceCreate, DeviceRecord, DeviceUpdate, slugify

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Storage operation error."""
    pass


class DeviceNotFoundError(StorageError):
    """Device not found."""
    pass


class SessionCache(Protocol):
    """Key/value cache with per-entry TTL. Any call may raise."""

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryCache:
    """In-process TTL cache."""

    def __init__(self):
        self._entries: dict[str, tuple[Any, float]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires <= time.monotonic():
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._entries[key] = (value, time.monotonic() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


@contextmanager
def _locked(path: str, mode: str, initial: dict):
    """Open a JSON file under an flock, creating it if needed."""
    dir_path = os.path.dirname(path)
    if dir_path and not os.path.exists(dir_path):
        os.makedirs(dir_path, exist_ok=True)

    if not os.path.exists(path):
        with open(path, 'w') as f:
            json.dump(initial, f)

    lock_type = fcntl.LOCK_SH if mode == 'r' else fcntl.LOCK_EX

    with open(path, mode) as f:
        try:
            fcntl.flock(f.fileno(), lock_type)
            yield f
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)


def _load(f, initial: dict) -> dict:
    try:
        return json.load(f)
    except json.JSONDecodeError:
        logger.warning(f"Invalid JSON in {f.name}, resetting")
        return dict(initial)


class JsonFileCache:
    """TTL cache in a JSON file, shareable between worker processes."""

    _INITIAL = {"entries": {}}

    def __init__(self, file_path: Optional[str] = None):
        self.file_path = file_path or get_settings().session_cache_file

    def _read(self, key: str) -> Optional[Any]:
        with _locked(self.file_path, 'r', self._INITIAL) as f:
            data = _load(f, self._INITIAL)
        entry = data.get("entries", {}).get(key)
        if entry is None:
            return None
        if entry.get("expires", 0) <= time.time():
            self._prune()
            return None
        return entry.get("value")

    def _modify(self, key: Optional[str] = None, entry: Optional[dict] = None, remove: bool = False) -> None:
        """Apply one change and drop entries that are expired under the exclusive lock."""
        with _locked(self.file_path, 'r+', self._INITIAL) as f:
            data = _load(f, self._INITIAL)
            entries = data.setdefault("entries", {})
            if remove:
                entries.pop(key, None)
            elif entry is not None:
                entries[key] = entry
            now = time.time()
            data["entries"] = {k: v for k, v in entries.items() if v.get("expires", 0) > now}
            f.seek(0)
            f.truncate()
            json.dump(data, f, indent=2, default=str)

    def _remove(self, key: str) -> None:
        self._modify(key, remove=True)

    def _prune(self) -> None:
        self._modify()

    async def get(self, key: str) -> Optional[Any]:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        entry = {"value": value, "expires": time.time() + ttl_seconds}
        await asyncio.to_thread(self._modify, key, entry)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._remove, key)


class DeviceStorage:
    """JSON file storage for registered devices."""

    _INITIAL = {"devices": []}

    def __init__(
        self,
        file_path: Optional[str] = None,
        encryption: Optional[EncryptionService] = None,
    ):
        self.file_path = file_path or get_settings().devices_file
        self._encryption = encryption
        self._cache: Optional[list[DeviceRecord]] = None

    @property
    def encryption(self) -> EncryptionService:
        if self._encryption is None:
            self._encryption = get_encryption_service()
        return self._encryption

    def _invalidate_cache(self) -> None:
        self._cache = None

    def _read_data(self) -> dict:
        with _locked(self.file_path, 'r', self._INITIAL) as f:
            return _load(f, self._INITIAL)

    def _write_data(self, data: dict) -> None:
        with _locked(self.file_path, 'w', self._INITIAL) as f:
            json.dump(data, f, indent=2, default=str)
        self._invalidate_cache()

    @staticmethod
    def _matches(entry: dict, id_or_slug: str) -> bool:
        try:
            if UUID(str(entry['id'])) == UUID(id_or_slug):
                return True
        except ValueError:
            pass  # Not a UUID, try slug
        return entry.get('slug') == id_or_slug

    def list_devices(self) -> list[DeviceRecord]:
        """List all devices (cached in memory)."""
        if self._cache is not None:
            return list(self._cache)
        data = self._read_data()
        devices = [DeviceRecord.model_validate(d) for d in data.get("devices", [])]
        self._cache = devices
        return list(devices)

    def get_device(self, id_or_slug: str) -> DeviceRecord:
        """Get device by UUID or slug."""
        for device in self.list_devices():
            if self._matches(device.model_dump(mode='json'), id_or_slug):
                return device
        raise DeviceNotFoundError(f"Device not found: {id_or_slug}")

    def create_device(self, device_data: DeviceCreate) -> DeviceRecord:
        """Register a new device, encrypting its password."""
        data = self._read_data()
        devices = data.get("devices", [])

        new_slug = device_data.slug or slugify(device_data.name)
        for existing in devices:
            if existing.get('slug') == new_slug:
                raise StorageError(f"Slug already exists: {new_slug}")

        device = DeviceRecord(
            **device_data.model_dump(exclude={'slug', 'password'}),
            slug=new_slug,
            encrypted_secret=self.encryption.encrypt(device_data.password),
        )

        devices.append(device.model_dump(mode='json'))
        data["devices"] = devices
        self._write_data(data)

        logger.info(f"Created device: {device.id} ({device.name})")
        return device

    def update_device(self, id_or_slug: str, update_data: DeviceUpdate) -> DeviceRecord:
        """Update an existing device."""
        data = self._read_data()
        devices = data.get("devices", [])

        idx = next((i for i, d in enumerate(devices) if self._matches(d, id_or_slug)), None)
        if idx is None:
            raise DeviceNotFoundError(f"Device not found: {id_or_slug}")

        existing = devices[idx]
        update_dict = update_data.model_dump(exclude_unset=True)

        if 'slug' in update_dict and update_dict['slug'] != existing.get('slug'):
            for i, d in enumerate(devices):
                if i != idx and d.get('slug') == update_dict['slug']:
                    raise StorageError(f"Slug already exists: {update_dict['slug']}")

        password = update_dict.pop('password', None)
        if password:
            existing['encrypted_secret'] = self.encryption.encrypt(password)

        existing.update(update_dict)
        record = DeviceRecord.model_validate(existing)
        devices[idx] = record.model_dump(mode='json')
        data["devices"] = devices
        self._write_data(data)

        logger.info(f"Updated device: {record.id}")
        return record

    def delete_device(self, id_or_slug: str) -> None:
        """Delete a device."""
        data = self._read_data()
        devices = data.get("devices", [])

        remaining = [d for d in devices if not self._matches(d, id_or_slug)]
        if len(remaining) == len(devices):
            raise DeviceNotFoundError(f"Device not found: {id_or_slug}")

        data["devices"] = remaining
        self._write_data(data)
        logger.info(f"Deleted device: {id_or_slug}")

    def update_session_time(self, id_or_slug: str, timestamp: Optional[datetime] = None) -> None:
        """Record when a secure session was last acquired for a device."""
        data = self._read_data()
        devices = data.get("devices", [])

        for d in devices:
            if self._matches(d, id_or_slug):
                d['last_session_at'] = (timestamp or datetime.now(timezone.utc)).isoformat()
                break

        data["devices"] = devices
        self._write_data(data)


# Global storage instances
_device_storage: Optional[DeviceStorage] = None
_session_cache: Optional[SessionCache] = None


def get_device_storage() -> DeviceStorage:
    """Get device storage instance."""
    global _device_storage
    if _device_storage is None:
        _device_storage = DeviceStorage()
    return _device_storage


def get_session_cache() -> SessionCache:
    """Get the configured session cache backend."""
    global _session_cache
    if _session_cache is None:
        backend = get_settings().cache_backend
        if backend == "file":
            _session_cache = JsonFileCache()
        elif backend == "memory":
            _session_cache = MemoryCache()
        else:
            raise StorageError(f"Unknown cache backend: {backend}")
    return _session_cache
