"""ISAPI endpoint paths, cache keys and vendor status parsing."""

import json
import re
from typing import Any, Optional

DEVICE_INFO = "/ISAPI/System/deviceInfo"
SECURITY_KEY = "/ISAPI/System/Security/identityKey"

SESSION_KEY_PREFIX = "hik_session_"


def session_cache_key(device_id: str) -> str:
    """Cache key holding a device's secure session."""
    return f"{SESSION_KEY_PREFIX}{device_id}"


_XML_FIELDS = ("statusCode", "statusString", "subStatusCode", "errorCode", "errorMsg")


def parse_response_status(body: str) -> Optional[dict[str, Any]]:
    """Extract a vendor ResponseStatus from an error body (JSON or XML).

    Returns None when the body is not a recognisable status document.
    """
    if not body:
        return None

    text = body.strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        data = data.get("ResponseStatus", data)
        if not isinstance(data, dict):
            return None
        if "statusCode" in data or "subStatusCode" in data:
            return {k: data[k] for k in _XML_FIELDS if k in data}
        return None

    if text.startswith("<"):
        status = {}
        for name in _XML_FIELDS:
            match = re.search(rf"<{name}>(.*?)</{name}>", text, re.DOTALL)
            if match:
                value = match.group(1).strip()
                status[name] = int(value) if value.lstrip("-").isdigit() else value
        return status or None

    return None
