"""Async ISAPI HTTP client with single-retry digest authentication."""

import logging
from typing import Any, Optional, Protocol

import httpx

from ..config import get_settings
from ..encryption import get_encryption_service
from ..errors import (
    AuthenticationError,
    ChallengeError,
    DecryptionError,
    DeviceConnectionError,
    DeviceTimeoutError,
    HikvisionError,
    TransportError,
)
from ..models import DeviceConnectionTarget, ErrorContext
from .auth import build_authorization_header, parse_www_authenticate
from .endpoints import DEVICE_INFO, parse_response_status

logger = logging.getLogger(__name__)


class SecretDecryptor(Protocol):
    """Anything that turns a stored secret into the plaintext password."""

    def decrypt(self, encrypted_secret: str) -> str: ...


class HikvisionHttpClient:
    """Issues ISAPI requests against devices.

    A request is sent without credentials first. A 401 carrying a Digest
    challenge is answered exactly once; any further failure propagates.
    """

    def __init__(
        self,
        encryption: SecretDecryptor,
        session: Optional[httpx.AsyncClient] = None,
        default_timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self._encryption = encryption
        self._owns_session = session is None
        self._session = session or httpx.AsyncClient(verify=settings.verify_ssl)
        self.default_timeout = default_timeout or settings.command_timeout
        self.user_agent = settings.user_agent

    async def __aenter__(self) -> "HikvisionHttpClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP session if this client created it."""
        if self._owns_session:
            await self._session.aclose()

    def _build_request(
        self,
        device: DeviceConnectionTarget,
        method: str,
        path: str,
        content: Optional[Any],
        json: Optional[Any],
        headers: Optional[dict[str, str]],
        timeout: float,
        authorization: Optional[str] = None,
    ) -> httpx.Request:
        request_headers = {"User-Agent": self.user_agent}
        if headers:
            request_headers.update(headers)
        if authorization:
            request_headers["Authorization"] = authorization

        return self._session.build_request(
            method,
            f"{device.base_url}{path}",
            content=content,
            json=json,
            headers=request_headers,
            timeout=timeout,
        )

    async def _send(
        self,
        request: httpx.Request,
        context: ErrorContext,
        timeout: float,
        retried: bool = False,
    ) -> httpx.Response:
        """Send one request, mapping network failures to typed errors."""
        try:
            return await self._session.send(request)
        except httpx.TimeoutException as e:
            logger.error(f"Request to {context.device_id} timed out after {timeout}s: {context.operation}")
            raise DeviceTimeoutError(
                f"Request to device {context.device_id} timed out after {timeout}s",
                context,
                retried=retried,
            ) from e
        except httpx.TransportError as e:
            logger.error(f"Request to {context.device_id} failed: {context.operation}: {e}")
            raise DeviceConnectionError(
                f"Failed to connect to device {context.device_id}: {e}",
                context,
                retried=retried,
            ) from e

    @staticmethod
    def _payload(response: httpx.Response) -> Any:
        """Return the body as-is: decoded JSON for JSON responses, text otherwise."""
        content_type = response.headers.get("Content-Type", "")
        if "json" in content_type and response.content:
            try:
                return response.json()
            except ValueError:
                logger.warning("Response declared JSON but did not parse, returning text")
        return response.text

    def _decrypt(self, device: DeviceConnectionTarget, context: ErrorContext) -> str:
        try:
            return self._encryption.decrypt(device.encrypted_secret)
        except DecryptionError as e:
            e.context = context
            raise
        except Exception:
            raise DecryptionError(context) from None

    async def request(
        self,
        device: DeviceConnectionTarget,
        method: str,
        path: str,
        *,
        content: Optional[Any] = None,
        json: Optional[Any] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Execute one ISAPI call against a device.

        Args:
            device: Target device
            method: HTTP method
            path: Request path including any query string
            content: Raw body (XML string or bytes)
            json: JSON body
            headers: Extra request headers
            timeout: Per-call timeout in seconds

        Returns:
            Decoded JSON or response text

        Raises:
            ChallengeError: 401 without a usable Digest challenge
            AuthenticationError: digest retry rejected
            TransportError: network failure or unexpected status
            DecryptionError: stored secret could not be decrypted
        """
        method = method.upper()
        timeout = timeout or device.timeout or self.default_timeout
        context = ErrorContext(
            device_id=device.device_id,
            operation=f"{method} {path}",
            endpoint=path,
        )

        def build(authorization: Optional[str] = None) -> httpx.Request:
            return self._build_request(
                device, method, path, content, json, headers, timeout, authorization
            )

        request = build()
        response = await self._send(request, context, timeout)

        if response.status_code == 401:
            try:
                challenge = parse_www_authenticate(response.headers.get("WWW-Authenticate"))
            except ChallengeError as e:
                e.context = context
                context.http_status = 401
                logger.error(f"Device {device.device_id} sent unusable challenge: {e}")
                raise

            logger.debug(f"Answering digest challenge from {device.device_id} (realm={challenge.realm})")
            password = self._decrypt(device, context)
            uri = request.url.raw_path.decode("ascii")
            authorization = build_authorization_header(
                device.username, password, challenge, method, uri
            )

            response = await self._send(build(authorization), context, timeout, retried=True)
            if response.is_success:
                return self._payload(response)

            context.http_status = response.status_code
            logger.error(
                f"Digest authentication rejected by {device.device_id}: "
                f"{context.operation} -> {response.status_code}"
            )
            raise AuthenticationError(
                f"Authentication failed for device {device.device_id} ({response.status_code})",
                context,
                status_code=response.status_code,
            )

        if response.is_success:
            return self._payload(response)

        context.http_status = response.status_code
        logger.error(f"Request to {device.device_id} failed: {context.operation} -> {response.status_code}")
        raise TransportError(
            f"Device {device.device_id} returned HTTP {response.status_code}",
            context,
            status_code=response.status_code,
            vendor_status=parse_response_status(response.text),
        )

    async def get(self, device: DeviceConnectionTarget, path: str, **kwargs) -> Any:
        return await self.request(device, "GET", path, **kwargs)

    async def post(self, device: DeviceConnectionTarget, path: str, **kwargs) -> Any:
        return await self.request(device, "POST", path, **kwargs)

    async def put(self, device: DeviceConnectionTarget, path: str, **kwargs) -> Any:
        return await self.request(device, "PUT", path, **kwargs)

    async def test_connection(self, device: DeviceConnectionTarget) -> bool:
        """Check that the device answers an authenticated deviceInfo request."""
        try:
            await self.get(device, DEVICE_INFO, timeout=get_settings().auth_timeout)
            return True
        except HikvisionError as e:
            logger.warning(f"Connection test failed for {device.device_id}: {e}")
            return False


_http_client: Optional[HikvisionHttpClient] = None


def get_http_client() -> HikvisionHttpClient:
    """Get shared HTTP client instance."""
    global _http_client
    if _http_client is None:
        _http_client = HikvisionHttpClient(get_encryption_service())
    return _http_client


async def close_http_client() -> None:
    """Close the shared HTTP client, if one was created."""
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None
