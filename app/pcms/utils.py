from __future__ import annotations

import secrets
import string
from typing import Any

from flask import Request

from app.pcms.errors import ValidationError

_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


def generate_reference(prefix: str, length: int = 10) -> str:
    """Human-facing record number, e.g. CASE-7K2QX0M1ZB."""
    token = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(length))
    return f"{prefix}-{token}"


def generate_access_code(length: int = 12) -> str:
    return secrets.token_urlsafe(length)[:length]


def json_body(req: Request) -> dict[str, Any]:
    data = req.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def parse_int(value: Any, field: str) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"{field} must be an integer.", details={"field": field})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer.", details={"field": field})


def isoformat(value) -> str | None:
    return value.isoformat() if value is not None else None
