"""
Proxmox-MCP-Pro: an MCP server for Proxmox VE.

Exposes the Proxmox VE API as validated MCP tools on top of a resilient
request pipeline: sliding-window rate limiting, classified errors, retries
with exponential backoff and jitter, response unwrapping and task polling.
"""

from .audit import AuditEvent, Auditor
from .config import AppConfig, ProxmoxConfig, RateLimitConfig, ServerConfig, load_config
from .errors import ErrorKind, ProxmoxError, TaskTimeoutError, format_error
from .executor import RetryingExecutor
from .normalizer import NO_CONTENT, normalize
from .proxmox_client import Endpoint, ProxmoxClient
from .ratelimit import SlidingWindowRateLimiter
from .registry import Operation, OperationRegistry
from .tasks import TaskHandle, TaskMonitor, TaskSnapshot, TaskState

__version__ = "0.1.0"

__all__ = [
    # Client
    "ProxmoxClient",
    "Endpoint",
    "RetryingExecutor",
    "SlidingWindowRateLimiter",
    "normalize",
    "NO_CONTENT",
    # Errors
    "ErrorKind",
    "ProxmoxError",
    "TaskTimeoutError",
    "format_error",
    # Tasks
    "TaskHandle",
    "TaskMonitor",
    "TaskSnapshot",
    "TaskState",
    # Config
    "AppConfig",
    "ProxmoxConfig",
    "RateLimitConfig",
    "ServerConfig",
    "load_config",
    # Operations
    "Operation",
    "OperationRegistry",
    # Audit
    "Auditor",
    "AuditEvent",
]
