"""ISAPI protocol implementation."""

from .auth import DigestChallenge, build_authorization_header, parse_www_authenticate
from .client import HikvisionHttpClient

__all__ = [
    "DigestChallenge",
    "HikvisionHttpClient",
    "build_authorization_header",
    "parse_www_authenticate",
]
