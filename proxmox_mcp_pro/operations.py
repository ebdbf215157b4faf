from __future__ import annotations

import logging
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field

from .errors import ProxmoxError
from .normalizer import NO_CONTENT
from .proxmox_client import ProxmoxClient
from .registry import OperationRegistry
from .tasks import TaskHandle, TaskMonitor, TaskState

logger = logging.getLogger(__name__)

NodeName = Annotated[str, Field(min_length=1, pattern=r"^[a-zA-Z0-9\-_.]+$", description="Node name (e.g. pve1)")]
VmId = Annotated[int, Field(ge=100, le=999999999, description="VM ID number (e.g. 100)")]
VmType = Literal["qemu", "lxc"]
SnapName = Annotated[str, Field(min_length=1, max_length=40, pattern=r"^[a-zA-Z][a-zA-Z0-9_\-]*$")]
StorageName = Annotated[str, Field(min_length=1, pattern=r"^[a-zA-Z0-9\-_.]+$")]
Upid = Annotated[str, Field(min_length=1, description="Task UPID")]


class _Args(BaseModel):
    model_config = ConfigDict(extra="forbid")


class NoArgs(_Args):
    pass


class NodeArgs(_Args):
    node: NodeName


class OptionalNodeArgs(_Args):
    node: Optional[NodeName] = None


class GetVmsArgs(_Args):
    node: Optional[NodeName] = None
    type: Literal["qemu", "lxc", "all"] = "all"


class VmArgs(_Args):
    node: NodeName
    vmid: VmId
    type: VmType = "qemu"


class WaitArgs(_Args):
    wait: bool = Field(default=False, description="Block until the resulting task finishes")
    max_wait_seconds: int = Field(default=60, ge=1, le=3600)


class VmActionArgs(VmArgs, WaitArgs):
    pass


class QemuActionArgs(WaitArgs):
    node: NodeName
    vmid: VmId


class ShutdownArgs(VmActionArgs):
    timeout: Optional[int] = Field(default=None, ge=1, description="Seconds before the shutdown is aborted")


class ExecuteCommandArgs(VmArgs):
    command: str = Field(min_length=1, max_length=10000)


class SnapshotCreateArgs(VmActionArgs):
    snapname: SnapName
    description: Optional[str] = None
    vmstate: Optional[bool] = Field(default=None, description="Include RAM state (QEMU only)")


class SnapshotArgs(VmActionArgs):
    snapname: SnapName


class SnapshotDeleteArgs(SnapshotArgs):
    force: bool = False


class SnapshotConfigArgs(VmArgs):
    snapname: SnapName


class TaskListArgs(_Args):
    node: NodeName
    limit: Optional[int] = Field(default=None, ge=1, le=1000)
    running: Optional[bool] = None
    errors: Optional[bool] = None


class TaskArgs(_Args):
    node: NodeName
    upid: Upid


class TaskStatusArgs(TaskArgs):
    include_logs: bool = False


class TaskLogArgs(TaskArgs):
    start: Optional[int] = Field(default=None, ge=0)
    limit: Optional[int] = Field(default=None, ge=1, le=5000)


class TaskWaitArgs(TaskArgs):
    max_wait_seconds: int = Field(default=60, ge=1, le=3600)


class BackupCreateArgs(VmActionArgs):
    storage: StorageName
    mode: Optional[Literal["snapshot", "suspend", "stop"]] = None
    compress: Optional[Literal["0", "lzo", "gzip", "zstd"]] = None


class BackupListArgs(_Args):
    node: NodeName
    storage: StorageName
    vmid: Optional[VmId] = None


class BackupRestoreArgs(WaitArgs):
    node: NodeName
    storage: StorageName
    archive: str = Field(min_length=1, description="Backup file name or full volume id")
    vmid: VmId
    force: bool = False


class BackupDeleteArgs(_Args):
    node: NodeName
    storage: StorageName
    volume: str = Field(min_length=1, description="Backup volume id")


class CloneArgs(VmActionArgs):
    newid: VmId
    name: Optional[str] = None
    description: Optional[str] = None
    full: Optional[bool] = None
    target: Optional[NodeName] = None


class ConfigUpdateArgs(VmArgs):
    config: Dict[str, Union[bool, int, float, str]] = Field(min_length=1)


class DiskResizeArgs(VmArgs):
    disk: str = Field(pattern=r"^(scsi|sata|virtio|ide|efidisk|tpmstate|rootfs|mp)\d*$")
    size: str = Field(pattern=r"^\+?\d+(\.\d+)?[KMGT]?$", description="New size, or +increment (e.g. +10G)")


class MigrateCheckArgs(_Args):
    node: NodeName
    vmid: VmId
    target: NodeName


class MigrateArgs(MigrateCheckArgs, WaitArgs):
    online: Optional[bool] = None
    with_local_disks: Optional[bool] = None


class FirewallRuleCreateArgs(VmArgs):
    action: Literal["ACCEPT", "DROP", "REJECT"]
    rule_type: Literal["in", "out"]
    enable: Optional[bool] = None
    proto: Optional[str] = None
    dport: Optional[str] = None
    source: Optional[str] = None
    dest: Optional[str] = None
    comment: Optional[str] = None


class FirewallRuleDeleteArgs(VmArgs):
    pos: int = Field(ge=0)


def _flag(value: bool) -> int:
    return 1 if value else 0


def _value(data: Any) -> Any:
    return None if data is NO_CONTENT else data


def _items(data: Any) -> List[Any]:
    return data if isinstance(data, list) else []


def _compact(**kwargs: Any) -> Dict[str, Any]:
    return {k: v for k, v in kwargs.items() if v is not None}


def build_registry(client: ProxmoxClient, monitor: TaskMonitor) -> OperationRegistry:
    registry = OperationRegistry(allow_elevated=client.allow_elevated)
    op = registry.operation

    def meta(node: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
        return _compact(host=client.host, node=node, **extra)

    def task_result(node: str, result: Any, args: WaitArgs, **payload: Any) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": True, "meta": meta(node), **payload, "task": _value(result)}
        handle = TaskHandle.from_result(node, result)
        if args.wait and handle is not None:
            snapshot = monitor.wait(handle, args.max_wait_seconds)
            out["task_status"] = snapshot.to_dict()
            out["ok"] = snapshot.state is TaskState.SUCCEEDED
        return out

    def vm_path(args: Any, vm_type: Optional[str] = None) -> str:
        return f"/nodes/{args.node}/{vm_type or args.type}/{args.vmid}"

    def each_node(path_for: Any) -> Dict[str, Any]:
        """GET a per-node resource on every node, keeping partial results."""
        found: List[Any] = []
        errors: List[Dict[str, Any]] = []
        for entry in _items(client.get("/nodes")):
            name = entry.get("node") if isinstance(entry, dict) else None
            if not name:
                continue
            try:
                for item in _items(client.get(path_for(name))):
                    if isinstance(item, dict):
                        item.setdefault("node", name)
                    found.append(item)
            except ProxmoxError as e:
                logger.warning("Skipping node %s: %s", name, e.message)
                errors.append({"node": name, **e.to_dict()})
        return {"items": found, "errors": errors}

    # --- Nodes & cluster ---

    @op("proxmox_get_nodes", "List all cluster nodes with status and resource usage.", NoArgs)
    def get_nodes(args: NoArgs) -> Dict[str, Any]:
        nodes = _items(client.get("/nodes"))
        return {"ok": True, "meta": meta(), "count": len(nodes), "nodes": nodes}

    @op("proxmox_get_node_status", "Detailed status for one node. Requires elevated permissions.",
        NodeArgs, elevated=True)
    def get_node_status(args: NodeArgs) -> Dict[str, Any]:
        return {"ok": True, "meta": meta(args.node), "status": _value(client.get(f"/nodes/{args.node}/status"))}

    @op("proxmox_get_cluster_status", "Cluster health summary across all nodes.", NoArgs)
    def get_cluster_status(args: NoArgs) -> Dict[str, Any]:
        nodes = _items(client.get("/nodes"))
        online = sum(1 for n in nodes if isinstance(n, dict) and n.get("status") == "online")
        out: Dict[str, Any] = {
            "ok": True,
            "meta": meta(),
            "summary": {"nodes": len(nodes), "online": online, "offline": len(nodes) - online},
            "nodes": nodes,
        }
        if client.allow_elevated:
            out["cluster"] = _value(client.get("/cluster/status"))
        return out

    @op("proxmox_get_storage", "List storage pools, optionally for a single node.", OptionalNodeArgs)
    def get_storage(args: OptionalNodeArgs) -> Dict[str, Any]:
        if args.node:
            storages = _items(client.get(f"/nodes/{args.node}/storage"))
            return {"ok": True, "meta": meta(args.node), "count": len(storages), "storage": storages}
        res = each_node(lambda n: f"/nodes/{n}/storage")
        return {"ok": True, "meta": meta(), "count": len(res["items"]), "storage": res["items"],
                "errors": res["errors"]}

    @op("proxmox_get_version", "Proxmox VE version of the connected host.", NoArgs)
    def get_version(args: NoArgs) -> Dict[str, Any]:
        return {"ok": True, "meta": meta(), "version": _value(client.get_version())}

    # --- VMs ---

    @op("proxmox_get_vms", "List VMs and containers, filtered by node and type.", GetVmsArgs)
    def get_vms(args: GetVmsArgs) -> Dict[str, Any]:
        types = ["qemu", "lxc"] if args.type == "all" else [args.type]
        vms: List[Any] = []
        errors: List[Dict[str, Any]] = []
        for vm_type in types:
            if args.node:
                found = _items(client.get(f"/nodes/{args.node}/{vm_type}"))
                for vm in found:
                    if isinstance(vm, dict):
                        vm.setdefault("node", args.node)
            else:
                res = each_node(lambda n, t=vm_type: f"/nodes/{n}/{t}")
                found, errors = res["items"], errors + res["errors"]
            for vm in found:
                if isinstance(vm, dict):
                    vm.setdefault("type", vm_type)
            vms.extend(found)
        out = {"ok": True, "meta": meta(args.node), "count": len(vms), "vms": vms}
        if errors:
            out["errors"] = errors
        return out

    @op("proxmox_get_vm_status", "Current status and resource usage of one VM or container.", VmArgs)
    def get_vm_status(args: VmArgs) -> Dict[str, Any]:
        status = _value(client.get(f"{vm_path(args)}/status/current"))
        return {"ok": True, "meta": meta(args.node), "vmid": args.vmid, "status": status}

    @op("proxmox_execute_vm_command",
        "Run a command in a VM via the QEMU guest agent, or in an LXC container. Requires elevated permissions.",
        ExecuteCommandArgs, elevated=True)
    def execute_vm_command(args: ExecuteCommandArgs) -> Dict[str, Any]:
        if args.type == "qemu":
            path = f"{vm_path(args)}/agent/exec"
        else:
            path = f"{vm_path(args)}/exec"
        result = _value(client.post(path, {"command": args.command}))
        return {"ok": True, "meta": meta(args.node), "vmid": args.vmid, "result": result}

    # --- Lifecycle ---

    def lifecycle(action: str, args: Any, vm_type: Optional[str] = None,
                  body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        result = client.post(f"{vm_path(args, vm_type)}/status/{action}", body)
        logger.info("VM %s %s command sent", args.vmid, action)
        return task_result(args.node, result, args, vmid=args.vmid, action=action)

    @op("proxmox_vm_start", "Start a VM or container.", VmActionArgs)
    def vm_start(args: VmActionArgs) -> Dict[str, Any]:
        return lifecycle("start", args)

    @op("proxmox_vm_stop", "Force-stop a VM or container.", VmActionArgs)
    def vm_stop(args: VmActionArgs) -> Dict[str, Any]:
        return lifecycle("stop", args)

    @op("proxmox_vm_shutdown", "Gracefully shut down a VM or container.", ShutdownArgs)
    def vm_shutdown(args: ShutdownArgs) -> Dict[str, Any]:
        return lifecycle("shutdown", args, body=_compact(timeout=args.timeout) or None)

    @op("proxmox_vm_reboot", "Reboot a VM or container.", VmActionArgs)
    def vm_reboot(args: VmActionArgs) -> Dict[str, Any]:
        return lifecycle("reboot", args)

    @op("proxmox_vm_suspend", "Suspend a QEMU VM.", QemuActionArgs)
    def vm_suspend(args: QemuActionArgs) -> Dict[str, Any]:
        return lifecycle("suspend", args, vm_type="qemu")

    @op("proxmox_vm_resume", "Resume a suspended QEMU VM.", QemuActionArgs)
    def vm_resume(args: QemuActionArgs) -> Dict[str, Any]:
        return lifecycle("resume", args, vm_type="qemu")

    @op("proxmox_vm_reset", "Hard-reset a QEMU VM.", QemuActionArgs)
    def vm_reset(args: QemuActionArgs) -> Dict[str, Any]:
        return lifecycle("reset", args, vm_type="qemu")

    # --- Snapshots ---

    @op("proxmox_snapshot_create", "Create a snapshot of a VM or container.", SnapshotCreateArgs)
    def snapshot_create(args: SnapshotCreateArgs) -> Dict[str, Any]:
        body = _compact(
            snapname=args.snapname,
            description=args.description,
            vmstate=None if args.vmstate is None else _flag(args.vmstate),
        )
        result = client.post(f"{vm_path(args)}/snapshot", body)
        return task_result(args.node, result, args, vmid=args.vmid, snapname=args.snapname)

    @op("proxmox_snapshot_list", "List snapshots of a VM or container.", VmArgs)
    def snapshot_list(args: VmArgs) -> Dict[str, Any]:
        snaps = [s for s in _items(client.get(f"{vm_path(args)}/snapshot"))
                 if not (isinstance(s, dict) and s.get("name") == "current")]
        return {"ok": True, "meta": meta(args.node), "vmid": args.vmid, "count": len(snaps), "snapshots": snaps}

    @op("proxmox_snapshot_rollback", "Roll a VM or container back to a snapshot.", SnapshotArgs)
    def snapshot_rollback(args: SnapshotArgs) -> Dict[str, Any]:
        result = client.post(f"{vm_path(args)}/snapshot/{args.snapname}/rollback")
        return task_result(args.node, result, args, vmid=args.vmid, snapname=args.snapname)

    @op("proxmox_snapshot_delete", "Delete a snapshot.", SnapshotDeleteArgs)
    def snapshot_delete(args: SnapshotDeleteArgs) -> Dict[str, Any]:
        result = client.delete(f"{vm_path(args)}/snapshot/{args.snapname}",
                               params={"force": 1} if args.force else None)
        return task_result(args.node, result, args, vmid=args.vmid, snapname=args.snapname)

    @op("proxmox_snapshot_config", "Configuration stored in a snapshot.", SnapshotConfigArgs)
    def snapshot_config(args: SnapshotConfigArgs) -> Dict[str, Any]:
        cfg = _value(client.get(f"{vm_path(args)}/snapshot/{args.snapname}/config"))
        return {"ok": True, "meta": meta(args.node), "vmid": args.vmid, "snapname": args.snapname, "config": cfg}

    # --- Tasks ---

    @op("proxmox_task_list", "List recent tasks on a node.", TaskListArgs)
    def task_list(args: TaskListArgs) -> Dict[str, Any]:
        params = _compact(
            limit=args.limit,
            running=None if args.running is None else _flag(args.running),
            errors=None if args.errors is None else _flag(args.errors),
        )
        tasks = _items(client.get(f"/nodes/{args.node}/tasks", params=params or None))
        return {"ok": True, "meta": meta(args.node), "count": len(tasks), "tasks": tasks}

    @op("proxmox_task_status", "Status of one task, optionally with its log once finished.", TaskStatusArgs)
    def task_status(args: TaskStatusArgs) -> Dict[str, Any]:
        handle = TaskHandle(args.node, args.upid)
        snapshot = monitor.poll(handle)
        out: Dict[str, Any] = {"ok": True, "meta": meta(args.node), "upid": args.upid,
                               "status": snapshot.to_dict(), "detail": snapshot.raw}
        if args.include_logs and not snapshot.is_running:
            try:
                lines = _items(client.get(handle.log_path))
                out["log"] = [ln.get("t") for ln in lines[-50:] if isinstance(ln, dict)]
            except ProxmoxError as e:
                logger.warning("Failed to fetch log for task %s: %s", args.upid, e.message)
                out["log_error"] = e.to_dict()
        return out

    @op("proxmox_task_log", "Log lines of a task.", TaskLogArgs)
    def task_log(args: TaskLogArgs) -> Dict[str, Any]:
        handle = TaskHandle(args.node, args.upid)
        lines = _items(client.get(handle.log_path, params=_compact(start=args.start, limit=args.limit) or None))
        return {"ok": True, "meta": meta(args.node), "upid": args.upid, "count": len(lines),
                "log": [ln.get("t") for ln in lines if isinstance(ln, dict)]}

    @op("proxmox_task_stop", "Send a stop signal to a running task.", TaskArgs)
    def task_stop(args: TaskArgs) -> Dict[str, Any]:
        result = client.delete(TaskHandle(args.node, args.upid).path)
        return {"ok": True, "meta": meta(args.node), "upid": args.upid, "result": _value(result)}

    @op("proxmox_task_wait", "Wait for a task to finish, polling every 2 seconds.", TaskWaitArgs)
    def task_wait(args: TaskWaitArgs) -> Dict[str, Any]:
        snapshot = monitor.wait(TaskHandle(args.node, args.upid), args.max_wait_seconds)
        return {"ok": snapshot.state is TaskState.SUCCEEDED, "meta": meta(args.node), "upid": args.upid,
                "status": snapshot.to_dict()}

    # --- Backups ---

    @op("proxmox_backup_create", "Back up a VM or container with vzdump.", BackupCreateArgs)
    def backup_create(args: BackupCreateArgs) -> Dict[str, Any]:
        body = _compact(vmid=str(args.vmid), storage=args.storage, mode=args.mode, compress=args.compress)
        result = client.post(f"/nodes/{args.node}/vzdump", body)
        return task_result(args.node, result, args, vmid=args.vmid, storage=args.storage)

    @op("proxmox_backup_list", "List backups on a storage, optionally for one VM.", BackupListArgs)
    def backup_list(args: BackupListArgs) -> Dict[str, Any]:
        backups = _items(client.get(f"/nodes/{args.node}/storage/{args.storage}/content",
                                    params={"content": "backup"}))
        if args.vmid is not None:
            backups = [b for b in backups if isinstance(b, dict) and b.get("vmid") == args.vmid]
        return {"ok": True, "meta": meta(args.node), "count": len(backups), "backups": backups}

    @op("proxmox_backup_restore", "Restore a VM or container from a backup archive.", BackupRestoreArgs)
    def backup_restore(args: BackupRestoreArgs) -> Dict[str, Any]:
        archive = args.archive if ":" in args.archive else f"{args.storage}:backup/{args.archive}"
        # vzdump names container archives vzdump-lxc-<vmid>-...
        filename = args.archive.rsplit("/", 1)[-1].rsplit(":", 1)[-1]
        if filename.startswith("vzdump-lxc-"):
            path = f"/nodes/{args.node}/lxc"
            body = _compact(vmid=args.vmid, ostemplate=archive, restore=1, force=_flag(args.force) or None)
        else:
            path = f"/nodes/{args.node}/qemu"
            body = _compact(vmid=args.vmid, archive=archive, force=_flag(args.force) or None)
        result = client.post(path, body)
        return task_result(args.node, result, args, vmid=args.vmid, archive=archive)

    @op("proxmox_backup_delete", "Delete a backup volume.", BackupDeleteArgs)
    def backup_delete(args: BackupDeleteArgs) -> Dict[str, Any]:
        result = client.delete(f"/nodes/{args.node}/storage/{args.storage}/content/{quote(args.volume, safe='')}")
        return {"ok": True, "meta": meta(args.node), "volume": args.volume, "result": _value(result)}

    # --- Cloning ---

    @op("proxmox_vm_clone", "Clone a VM or container.", CloneArgs)
    def vm_clone(args: CloneArgs) -> Dict[str, Any]:
        body = _compact(
            newid=args.newid,
            name=args.name,
            description=args.description,
            full=None if args.full is None else _flag(args.full),
            target=args.target,
        )
        result = client.post(f"{vm_path(args)}/clone", body)
        return task_result(args.node, result, args, vmid=args.vmid, newid=args.newid)

    @op("proxmox_vm_template", "Convert a VM or container into a template.", VmArgs)
    def vm_template(args: VmArgs) -> Dict[str, Any]:
        result = client.post(f"{vm_path(args)}/template")
        return {"ok": True, "meta": meta(args.node), "vmid": args.vmid, "result": _value(result)}

    # --- Resources ---

    @op("proxmox_vm_config_get", "Current configuration of a VM or container.", VmArgs)
    def vm_config_get(args: VmArgs) -> Dict[str, Any]:
        return {"ok": True, "meta": meta(args.node), "vmid": args.vmid,
                "config": _value(client.get(f"{vm_path(args)}/config"))}

    @op("proxmox_vm_config_update", "Update configuration keys of a VM or container.", ConfigUpdateArgs)
    def vm_config_update(args: ConfigUpdateArgs) -> Dict[str, Any]:
        body = {k: (_flag(v) if isinstance(v, bool) else v) for k, v in args.config.items()}
        result = client.put(f"{vm_path(args)}/config", body)
        return {"ok": True, "meta": meta(args.node), "vmid": args.vmid, "updated": sorted(body),
                "result": _value(result)}

    @op("proxmox_disk_resize", "Resize a VM disk or container volume.", DiskResizeArgs)
    def disk_resize(args: DiskResizeArgs) -> Dict[str, Any]:
        result = client.put(f"{vm_path(args)}/resize", {"disk": args.disk, "size": args.size})
        return {"ok": True, "meta": meta(args.node), "vmid": args.vmid, "disk": args.disk, "size": args.size,
                "result": _value(result)}

    # --- Migration ---

    @op("proxmox_vm_migrate_check", "Check whether a QEMU VM can migrate to a target node.", MigrateCheckArgs)
    def vm_migrate_check(args: MigrateCheckArgs) -> Dict[str, Any]:
        result = client.get(f"/nodes/{args.node}/qemu/{args.vmid}/migrate", params={"target": args.target})
        return {"ok": True, "meta": meta(args.node), "vmid": args.vmid, "target": args.target,
                "check": _value(result)}

    @op("proxmox_vm_migrate", "Migrate a QEMU VM to another node.", MigrateArgs)
    def vm_migrate(args: MigrateArgs) -> Dict[str, Any]:
        body = {"target": args.target}
        if args.online is not None:
            body["online"] = _flag(args.online)
        if args.with_local_disks is not None:
            body["with-local-disks"] = _flag(args.with_local_disks)
        result = client.post(f"/nodes/{args.node}/qemu/{args.vmid}/migrate", body)
        return task_result(args.node, result, args, vmid=args.vmid, target=args.target)

    # --- Firewall ---

    @op("proxmox_firewall_rules_list", "List firewall rules of a VM or container.", VmArgs)
    def firewall_rules_list(args: VmArgs) -> Dict[str, Any]:
        rules = _items(client.get(f"{vm_path(args)}/firewall/rules"))
        return {"ok": True, "meta": meta(args.node), "vmid": args.vmid, "count": len(rules), "rules": rules}

    @op("proxmox_firewall_rule_create", "Add a firewall rule to a VM or container.", FirewallRuleCreateArgs)
    def firewall_rule_create(args: FirewallRuleCreateArgs) -> Dict[str, Any]:
        body = _compact(
            action=args.action,
            type=args.rule_type,
            enable=None if args.enable is None else _flag(args.enable),
            proto=args.proto,
            dport=args.dport,
            source=args.source,
            dest=args.dest,
            comment=args.comment,
        )
        result = client.post(f"{vm_path(args)}/firewall/rules", body)
        return {"ok": True, "meta": meta(args.node), "vmid": args.vmid, "rule": body, "result": _value(result)}

    @op("proxmox_firewall_rule_delete", "Delete a firewall rule by position.", FirewallRuleDeleteArgs)
    def firewall_rule_delete(args: FirewallRuleDeleteArgs) -> Dict[str, Any]:
        result = client.delete(f"{vm_path(args)}/firewall/rules/{args.pos}")
        return {"ok": True, "meta": meta(args.node), "vmid": args.vmid, "pos": args.pos, "result": _value(result)}

    @op("proxmox_firewall_options", "Firewall options of a VM or container.", VmArgs)
    def firewall_options(args: VmArgs) -> Dict[str, Any]:
        return {"ok": True, "meta": meta(args.node), "vmid": args.vmid,
                "options": _value(client.get(f"{vm_path(args)}/firewall/options"))}

    return registry
