"""Tests for the MCP bridge: tool signatures, error values and auditing."""

import asyncio
import atexit
import inspect
import io
import json
import threading
from unittest.mock import MagicMock

import pytest

from helpers import make_response
from proxmox_mcp_pro.audit import Auditor
from proxmox_mcp_pro.config import AppConfig, ProxmoxConfig, ServerConfig
from proxmox_mcp_pro.operations import NodeArgs, VmActionArgs, build_registry
from proxmox_mcp_pro.proxmox_client import ProxmoxClient
from proxmox_mcp_pro.registry import Operation, OperationRegistry
from proxmox_mcp_pro.server import build_server, guarded_tool, tool_signature
from proxmox_mcp_pro.tasks import TaskMonitor

UPID = "UPID:pve1:00001234:00ABCDEF:66000000:vzdump:100:root@pam:"


def test_signature_mirrors_args_model() -> None:
    sig = tool_signature(VmActionArgs)
    params = sig.parameters
    assert set(params) == {"node", "vmid", "type", "wait", "max_wait_seconds"}
    assert all(p.kind is inspect.Parameter.KEYWORD_ONLY for p in params.values())
    assert params["node"].default is inspect.Parameter.empty
    assert params["wait"].default is False
    assert params["max_wait_seconds"].default == 60
    assert params["type"].default == "qemu"


def _guarded(handler, elevated: bool = False):
    registry = OperationRegistry()
    op = registry.register(Operation("inspect_node", "Inspect a node.", NodeArgs, handler, elevated))
    sink = io.StringIO()
    return guarded_tool(op, registry, Auditor(sink=sink), host="pve.example.test"), sink


def test_success_is_returned_and_audited() -> None:
    fn, sink = _guarded(lambda args: {"ok": True, "node": args.node})
    assert asyncio.run(fn(node="pve1")) == {"ok": True, "node": "pve1"}
    record = json.loads(sink.getvalue())
    assert record["ok"] is True
    assert record["node"] == "pve1"
    assert record["host"] == "pve.example.test"


def test_pipeline_errors_become_values() -> None:
    fn, sink = _guarded(lambda args: {"ok": True}, elevated=True)
    out = asyncio.run(fn(node="pve1"))
    assert out["ok"] is False
    assert out["error"]["kind"] == "permission"
    assert out["error"]["code"] == "PROXMOX_PERMISSION_ERROR"
    assert "Permission Error" in out["message"]
    assert json.loads(sink.getvalue())["error_kind"] == "permission"


def test_invalid_arguments_become_values() -> None:
    fn, _ = _guarded(lambda args: {"ok": True})
    out = asyncio.run(fn(node="bad node!"))
    assert out["error"]["kind"] == "validation"


def test_unexpected_errors_propagate_and_are_audited() -> None:
    def boom(args):
        raise RuntimeError("handler bug")

    fn, sink = _guarded(boom)
    with pytest.raises(RuntimeError):
        asyncio.run(fn(node="pve1"))
    record = json.loads(sink.getvalue())
    assert record["ok"] is False
    assert record["error"] == "handler bug"


def test_wrapper_metadata() -> None:
    fn, _ = _guarded(lambda args: {})
    assert fn.__name__ == "inspect_node"
    assert fn.__doc__ == "Inspect a node."
    assert inspect.iscoroutinefunction(fn)
    assert "node" in inspect.signature(fn).parameters


def test_build_server_registers_every_operation(config: ProxmoxConfig, client: ProxmoxClient) -> None:
    mcp = build_server(AppConfig(proxmox=config), client, Auditor(sink=io.StringIO()))
    tools = {tool.name: tool for tool in asyncio.run(mcp.list_tools())}
    assert len(tools) == len(build_registry(client, TaskMonitor(client)))
    assert "proxmox_get_nodes" in tools
    schema = tools["proxmox_vm_start"].inputSchema
    assert set(schema["required"]) == {"node", "vmid"}
    assert schema["properties"]["wait"]["default"] is False


def test_waiting_tool_does_not_stall_other_calls(config: ProxmoxConfig, client: ProxmoxClient,
                                                 session: MagicMock) -> None:
    """A task wait holds its worker thread while a version call is served alongside it."""
    version_served = threading.Event()
    saw_version_first = []

    def respond(method, url, params=None, json=None, timeout=None):
        if url.endswith("/version"):
            version_served.set()
            return make_response(200, {"data": {"version": "8.2.4"}})
        saw_version_first.append(version_served.wait(timeout=5))
        return make_response(200, {"data": {"status": "stopped", "exitstatus": "OK"}})

    session.request.side_effect = respond
    mcp = build_server(AppConfig(proxmox=config), client, Auditor(sink=io.StringIO()))

    async def run_both() -> None:
        waiting = asyncio.create_task(mcp.call_tool("proxmox_task_wait", {"node": "pve1", "upid": UPID}))
        await asyncio.sleep(0.05)
        await mcp.call_tool("proxmox_get_version", {})
        await waiting

    asyncio.run(run_both())
    assert saw_version_first == [True]


def test_audit_file_closed_at_exit(config: ProxmoxConfig, client: ProxmoxClient, tmp_path, monkeypatch) -> None:
    registered = []
    monkeypatch.setattr(atexit, "register", registered.append)
    cfg = AppConfig(proxmox=config, server=ServerConfig(audit_log_path=str(tmp_path / "audit.log")))
    build_server(cfg, client)
    closers = [fn for fn in registered if getattr(fn, "__name__", "") == "close"]
    assert len(closers) == 1
    assert isinstance(closers[0].__self__, Auditor)
    closers[0]()
