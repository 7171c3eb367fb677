"""Typed errors raised by the ISAPI engine and session coordinator."""

from typing import Any, Optional

from .models import ErrorContext


class HikvisionError(Exception):
    """Base error for all device interactions."""

    api_status = 500

    def __init__(self, message: str, context: Optional[ErrorContext] = None):
        super().__init__(message)
        self.message = message
        self.context = context

    @property
    def device_id(self) -> Optional[str]:
        return self.context.device_id if self.context else None


class ChallengeError(HikvisionError):
    """401 without a usable Digest challenge. Never retried."""

    api_status = 502


class TransportError(HikvisionError):
    """Network failure, timeout, or unexpected non-2xx status.

    ``status_code`` is None when the device never answered.
    """

    api_status = 502

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        status_code: Optional[int] = None,
        vendor_status: Optional[dict[str, Any]] = None,
        retried: bool = False,
    ):
        super().__init__(message, context)
        self.status_code = status_code
        self.vendor_status = vendor_status
        self.retried = retried
        if status_code == 404:
            self.api_status = 404


class DeviceTimeoutError(TransportError):
    """Request exceeded its timeout."""

    api_status = 504


class DeviceConnectionError(TransportError):
    """Device unreachable (refused, DNS, reset...)."""


class AuthenticationError(HikvisionError):
    """Digest-authenticated retry was still rejected."""

    api_status = 401

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, context)
        self.status_code = status_code


class SessionValidationError(HikvisionError):
    """Acquired secure session is missing security or identityKey."""

    api_status = 502


class DecryptionError(HikvisionError):
    """Stored credential could not be decrypted."""

    def __init__(self, context: Optional[ErrorContext] = None):
        super().__init__("Failed to decrypt data.", context)
