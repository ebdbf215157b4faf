from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    API_ERROR = "api_error"
    CONFIGURATION = "configuration"

    @property
    def code(self) -> str:
        return _CODES[self]

    @property
    def title(self) -> str:
        return _TITLES[self]


_CODES = {
    ErrorKind.CONNECTION: "PROXMOX_CONNECTION_ERROR",
    ErrorKind.AUTHENTICATION: "PROXMOX_AUTH_ERROR",
    ErrorKind.PERMISSION: "PROXMOX_PERMISSION_ERROR",
    ErrorKind.NOT_FOUND: "PROXMOX_NOT_FOUND",
    ErrorKind.VALIDATION: "PROXMOX_VALIDATION_ERROR",
    ErrorKind.API_ERROR: "PROXMOX_API_ERROR",
    ErrorKind.CONFIGURATION: "CONFIGURATION_ERROR",
}

_TITLES = {
    ErrorKind.CONNECTION: "Connection Error",
    ErrorKind.AUTHENTICATION: "Authentication Error",
    ErrorKind.PERMISSION: "Permission Error",
    ErrorKind.NOT_FOUND: "Not Found",
    ErrorKind.VALIDATION: "Validation Error",
    ErrorKind.API_ERROR: "API Error",
    ErrorKind.CONFIGURATION: "Configuration Error",
}

# Resubmitting the same request cannot change the outcome for these.
NON_RETRYABLE = frozenset({
    ErrorKind.AUTHENTICATION,
    ErrorKind.PERMISSION,
    ErrorKind.VALIDATION,
    ErrorKind.CONFIGURATION,
})


class ProxmoxError(Exception):
    """Single error type for the request pipeline, discriminated by ``kind``."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.context: Dict[str, Any] = dict(context or {})
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"

    @property
    def code(self) -> str:
        return self.kind.code

    @property
    def retryable(self) -> bool:
        return self.kind not in NON_RETRYABLE

    @property
    def endpoint(self) -> Optional[str]:
        return self.context.get("endpoint")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }
        if self.status_code is not None:
            data["status_code"] = self.status_code
        return data

    # --- Constructors per kind ---

    @classmethod
    def connection(cls, message: str, **context: Any) -> "ProxmoxError":
        return cls(ErrorKind.CONNECTION, message, context=context)

    @classmethod
    def authentication(cls, message: str, **context: Any) -> "ProxmoxError":
        return cls(ErrorKind.AUTHENTICATION, message, status_code=401, context=context)

    @classmethod
    def permission(cls, message: str, **context: Any) -> "ProxmoxError":
        return cls(ErrorKind.PERMISSION, message, status_code=403, context=context)

    @classmethod
    def not_found(cls, resource: str, **context: Any) -> "ProxmoxError":
        return cls(ErrorKind.NOT_FOUND, f"Resource not found: {resource}", status_code=404, context=context)

    @classmethod
    def validation(cls, message: str, **context: Any) -> "ProxmoxError":
        return cls(ErrorKind.VALIDATION, message, status_code=400, context=context)

    @classmethod
    def api_error(cls, message: str, status_code: int, **context: Any) -> "ProxmoxError":
        return cls(ErrorKind.API_ERROR, message, status_code=status_code, context=context)

    @classmethod
    def configuration(cls, message: str, **context: Any) -> "ProxmoxError":
        return cls(ErrorKind.CONFIGURATION, message, context=context)


class TaskTimeoutError(ProxmoxError):
    """A server-side task was still running when the caller's wait bound elapsed.

    The remote task is left untouched; only observation stopped.
    """

    def __init__(self, node: str, upid: str, elapsed_seconds: float, max_wait_seconds: float,
                 endpoint: Optional[str] = None):
        self.node = node
        self.upid = upid
        self.elapsed_seconds = elapsed_seconds
        self.max_wait_seconds = max_wait_seconds
        super().__init__(
            ErrorKind.CONNECTION,
            f"Task did not complete within {max_wait_seconds:g} seconds",
            context={
                "endpoint": endpoint,
                "node": node,
                "upid": upid,
                "elapsed_seconds": round(elapsed_seconds, 3),
                "max_wait_seconds": max_wait_seconds,
                "state": "timed_out",
            },
        )


def format_error(error: BaseException) -> str:
    """Render an error as short markdown for tool output."""
    if isinstance(error, ProxmoxError):
        text = f"**{error.kind.title}** ({error.code})\n\n{error.message}"
        if error.status_code is not None:
            text += f"\n\n**Status Code**: {error.status_code}"
        if error.context:
            text += "\n\n**Context**:\n"
            text += "".join(f"- {k}: {v}\n" for k, v in error.context.items())
        return text
    return f"**Error**\n\n{error}"
