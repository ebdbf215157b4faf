from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

from .errors import ProxmoxError, TaskTimeoutError
from .normalizer import NO_CONTENT
from .proxmox_client import ProxmoxClient

logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 2.0
DEFAULT_MAX_WAIT_S = 60.0


class TaskState(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class TaskHandle:
    """Server-assigned task id (UPID) and the node that runs it."""

    node: str
    upid: str

    @classmethod
    def from_result(cls, node: str, result: Any) -> Optional["TaskHandle"]:
        """Build a handle from an async operation's result, which is the UPID string."""
        if isinstance(result, str) and result.strip():
            return cls(node=node, upid=result.strip())
        return None

    @property
    def path(self) -> str:
        return f"/nodes/{self.node}/tasks/{quote(self.upid, safe='')}"

    @property
    def status_path(self) -> str:
        return f"{self.path}/status"

    @property
    def log_path(self) -> str:
        return f"{self.path}/log"


@dataclass(frozen=True)
class TaskSnapshot:
    status: str
    exitstatus: Optional[str] = None
    type: Optional[str] = None
    starttime: Optional[int] = None
    endtime: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Any) -> "TaskSnapshot":
        if not isinstance(data, dict) or "status" not in data:
            raise ProxmoxError.api_error("Unexpected task status payload", 502, payload=repr(data)[:200])
        return cls(
            status=str(data["status"]),
            exitstatus=data.get("exitstatus"),
            type=data.get("type"),
            starttime=data.get("starttime"),
            endtime=data.get("endtime"),
            raw=dict(data),
        )

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    @property
    def state(self) -> TaskState:
        if self.is_running:
            return TaskState.RUNNING
        if self.exitstatus == "OK":
            return TaskState.SUCCEEDED
        return TaskState.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "status": self.status,
            "exitstatus": self.exitstatus,
            "type": self.type,
            "starttime": self.starttime,
            "endtime": self.endtime,
        }


class TaskMonitor:
    """
    Follows a server-side task until it stops running or the wait bound elapses.

    A timeout only ends observation; stopping the task itself is the separate
    ``DELETE /nodes/{node}/tasks/{upid}`` call.
    """

    def __init__(
        self,
        client: ProxmoxClient,
        poll_interval: float = POLL_INTERVAL_S,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    def poll(self, handle: TaskHandle) -> TaskSnapshot:
        data = self._client.get(handle.status_path)
        if data is NO_CONTENT:
            data = None
        return TaskSnapshot.from_api(data)

    def wait(self, handle: TaskHandle, max_wait_seconds: float = DEFAULT_MAX_WAIT_S) -> TaskSnapshot:
        start = self._clock()
        polls = 0
        logger.info("Waiting for task %s on %s (max %gs)", handle.upid, handle.node, max_wait_seconds)

        while True:
            snapshot = self.poll(handle)
            polls += 1
            if not snapshot.is_running:
                logger.info(
                    "Task %s finished: %s (exit %s) after %d poll(s)",
                    handle.upid, snapshot.state.value, snapshot.exitstatus, polls,
                )
                return snapshot

            elapsed = self._clock() - start
            if elapsed >= max_wait_seconds:
                raise self._timed_out(handle, elapsed, max_wait_seconds, polls)
            self._sleep(min(self.poll_interval, max_wait_seconds - elapsed))
            elapsed = self._clock() - start
            if elapsed >= max_wait_seconds:
                raise self._timed_out(handle, elapsed, max_wait_seconds, polls)

    @staticmethod
    def _timed_out(handle: TaskHandle, elapsed: float, max_wait: float, polls: int) -> TaskTimeoutError:
        logger.warning(
            "Task %s on %s still running after %.1fs (%d poll(s)); giving up",
            handle.upid, handle.node, elapsed, polls,
        )
        return TaskTimeoutError(
            handle.node, handle.upid, elapsed, max_wait, endpoint=f"GET {handle.status_path}",
        )
