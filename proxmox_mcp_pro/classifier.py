from __future__ import annotations

import json
from typing import Any, Dict, Optional

import requests

from .errors import ProxmoxError

MAX_BODY_EXCERPT = 200


def excerpt(text: Optional[str], limit: int = MAX_BODY_EXCERPT) -> str:
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit]


def _error_details(body: Optional[str]) -> Dict[str, Any]:
    """Pull field errors and the message out of a Proxmox JSON error body."""
    if not body:
        return {}
    try:
        data = json.loads(body)
    except ValueError:
        return {}
    if not isinstance(data, dict):
        return {}

    details: Dict[str, Any] = {}
    # {"errors": {"vmid": "invalid format"}, "data": null}
    errors = data.get("errors")
    if isinstance(errors, dict) and errors:
        details["errors"] = {str(k): str(v) for k, v in errors.items()}
    message = data.get("message")
    if isinstance(message, str) and message.strip():
        details["api_message"] = message.strip()
    return details


def classify_response(
    status_code: int,
    body: Optional[str],
    endpoint: str,
    reason: Optional[str] = None,
) -> ProxmoxError:
    """Map a completed, non-2xx HTTP exchange to exactly one error kind."""
    if status_code == 401:
        return ProxmoxError.authentication(
            "Authentication failed. Please check your API token credentials.",
            endpoint=endpoint, status_code=status_code,
        )
    if status_code == 403:
        return ProxmoxError.permission(
            "Permission denied. Your API token does not have sufficient permissions.",
            endpoint=endpoint, status_code=status_code,
        )
    if status_code == 404:
        return ProxmoxError.not_found(endpoint, endpoint=endpoint, status_code=status_code)

    message = f"Proxmox API error: {status_code}"
    if reason:
        message += f" {reason}"
    body_text = excerpt(body)
    if body_text:
        message += f" - {body_text}"
    context: Dict[str, Any] = {"endpoint": endpoint}
    if body_text:
        context["response_excerpt"] = body_text
    context.update(_error_details(body))
    return ProxmoxError.api_error(message, status_code, **context)


def classify_transport(exc: BaseException, endpoint: str) -> ProxmoxError:
    """No response at all: timeout, DNS failure, refused connection, TLS failure."""
    if isinstance(exc, requests.Timeout):
        message = f"Request timed out: {exc}"
    else:
        message = f"Could not reach Proxmox: {exc}"
    return ProxmoxError.connection(message, endpoint=endpoint, error_type=type(exc).__name__)
