"""HTTP surface of PinGate."""

from typing import Any, Dict

from flask import request

from pingate.errors import ValidationError


def json_body() -> Dict[str, Any]:
    """Request JSON object, or {} when there is no body."""
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def device_session_param() -> str:
    """``device_session_id`` from the query string or JSON body."""
    device_session_id = request.args.get("device_session_id") or json_body().get("device_session_id")
    if not device_session_id or not isinstance(device_session_id, str):
        raise ValidationError("device_session_id is required")
    return device_session_id
