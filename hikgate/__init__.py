"""Hikvision ISAPI digest client and secure session service."""

__version__ = "0.1.0"
