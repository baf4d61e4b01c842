"""Shared request utilities for API handlers."""

import base64
import binascii
import json
from typing import Optional

from .errors import ValidationError

BEARER_PREFIX = "Bearer "


def get_header(event: dict, name: str) -> Optional[str]:
    """Case-insensitive header lookup (API Gateway preserves client casing)."""
    headers = event.get("headers") or {}
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def get_path_parameter(event: dict, name: str) -> Optional[str]:
    return (event.get("pathParameters") or {}).get(name)


def get_method(event: dict) -> str:
    return (event.get("httpMethod") or "").upper()


def parse_json_body(event: dict) -> dict:
    """Parse the request body as a JSON object, raising ValidationError otherwise."""
    raw = event.get("body") or "{}"
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def get_raw_body(event: dict) -> str:
    """Raw body as received, decoding API Gateway's base64 transport if needed.

    Signature verification must see the exact bytes the processor signed.
    """
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        try:
            body = base64.b64decode(body).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            raise ValidationError("Request body is not valid base64-encoded UTF-8")
    return body
