from __future__ import annotations

import asyncio
import atexit
import inspect
import logging
import sys
import time
from typing import Annotated, Any, Awaitable, Callable, Dict, Optional, Type

from dotenv import find_dotenv, load_dotenv
from mcp.server.fastmcp import FastMCP
from pydantic import BaseModel, Field

from .audit import AuditEvent, Auditor
from .config import AppConfig, load_config
from .errors import ProxmoxError, format_error
from .operations import build_registry
from .proxmox_client import ProxmoxClient
from .ratelimit import SlidingWindowRateLimiter
from .registry import Operation, OperationRegistry
from .tasks import TaskMonitor

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    # stdout is the MCP stdio channel
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
        force=True,
    )


def tool_signature(model: Type[BaseModel]) -> inspect.Signature:
    """Keyword-only signature mirroring an argument model, so FastMCP derives the same input schema."""
    params = []
    for name, field in model.model_fields.items():
        extras = list(field.metadata)
        if field.description:
            extras.append(Field(description=field.description))
        annotation = Annotated[(field.annotation, *extras)] if extras else field.annotation
        default = inspect.Parameter.empty if field.is_required() else field.get_default(call_default_factory=True)
        params.append(inspect.Parameter(name, inspect.Parameter.KEYWORD_ONLY, default=default, annotation=annotation))
    return inspect.Signature(params, return_annotation=Dict[str, Any])


def guarded_tool(op: Operation, registry: OperationRegistry, auditor: Auditor, host: Optional[str] = None
                 ) -> Callable[..., Awaitable[Dict[str, Any]]]:
    """Wrap an operation with auditing; pipeline errors are returned as values.

    The operation runs in a worker thread; its blocking waits must not stall
    the event loop serving other calls.
    """

    async def call(**kwargs: Any) -> Dict[str, Any]:
        start = time.perf_counter()
        ok = False
        error = None
        error_kind = None
        try:
            result = await asyncio.to_thread(registry.invoke, op.name, kwargs)
            ok = bool(result.get("ok", True)) if isinstance(result, dict) else True
            return result
        except ProxmoxError as e:
            error = e.message
            error_kind = e.kind.value
            logger.error("Tool execution failed: %s [%s] %s", op.name, error_kind, e.message)
            return {"ok": False, "error": e.to_dict(), "message": format_error(e)}
        except Exception as e:
            error = str(e)
            logger.exception("Unexpected failure in tool %s", op.name)
            raise
        finally:
            dur = (time.perf_counter() - start) * 1000.0
            auditor.log(AuditEvent(
                ts=time.time(), tool=op.name, ok=ok, duration_ms=dur, args=kwargs,
                error=error, error_kind=error_kind, host=host, node=kwargs.get("node"),
            ))

    call.__name__ = op.name
    call.__doc__ = op.description
    call.__signature__ = tool_signature(op.args_model)  # type: ignore[attr-defined]
    return call


def build_server(cfg: AppConfig, client: Optional[ProxmoxClient] = None,
                 auditor: Optional[Auditor] = None) -> FastMCP:
    mcp = FastMCP(
        cfg.server.name,
        host=cfg.server.host,
        port=cfg.server.port,
        streamable_http_path=cfg.server.mcp_path,
    )
    if client is None:
        client = ProxmoxClient(cfg.proxmox, SlidingWindowRateLimiter.from_config(cfg.ratelimit))
    if auditor is None:
        auditor = Auditor(cfg.server.audit_log_path)
        atexit.register(auditor.close)
    registry = build_registry(client, TaskMonitor(client))

    for op in registry:
        mcp.add_tool(guarded_tool(op, registry, auditor, client.host), name=op.name, description=op.description)

    logger.info("Registered %d tools (elevated %s)", len(registry),
                "enabled" if registry.allow_elevated else "disabled")
    return mcp


def main() -> None:
    load_dotenv(find_dotenv(usecwd=True))
    try:
        cfg = load_config()
    except ProxmoxError as e:
        print(f"\nConfiguration Error:\n\n{e.message}\n", file=sys.stderr)
        sys.exit(1)

    configure_logging(cfg.server.log_level)
    logger.info("Starting Proxmox MCP server for %s (allow_elevated=%s)",
                cfg.proxmox.host, cfg.proxmox.allow_elevated)

    client = ProxmoxClient(cfg.proxmox, SlidingWindowRateLimiter.from_config(cfg.ratelimit))
    atexit.register(client.close)
    # Keep serving on failure; tool calls report their own errors.
    if client.health_check():
        logger.info("Proxmox health check passed")
    else:
        logger.error("Proxmox health check failed - server may not be reachable")

    mcp = build_server(cfg, client)
    mcp.run(transport=cfg.server.transport)


if __name__ == "__main__":
    main()
