"""Tests for task handles, snapshots and the polling monitor."""

from unittest.mock import MagicMock

import pytest

from helpers import FakeClock, make_response
from proxmox_mcp_pro.errors import ErrorKind, ProxmoxError, TaskTimeoutError
from proxmox_mcp_pro.proxmox_client import ProxmoxClient
from proxmox_mcp_pro.tasks import POLL_INTERVAL_S, TaskHandle, TaskMonitor, TaskSnapshot, TaskState

UPID = "UPID:pve1:0001A2B3:00C4D5E6:65F00000:qmstart:100:root@pam:"
RUNNING = {"data": {"status": "running", "type": "qmstart", "starttime": 1710000000}}
STOPPED_OK = {"data": {"status": "stopped", "exitstatus": "OK", "type": "qmstart", "endtime": 1710000004}}


@pytest.fixture
def monitor(client: ProxmoxClient, clock: FakeClock) -> TaskMonitor:
    return TaskMonitor(client, clock=clock, sleep=clock.sleep)


class TestTaskHandle:
    def test_upid_is_path_escaped(self) -> None:
        handle = TaskHandle("pve1", UPID)
        assert handle.path == "/nodes/pve1/tasks/UPID%3Apve1%3A0001A2B3%3A00C4D5E6%3A65F00000%3Aqmstart%3A100%3Aroot%40pam%3A"
        assert handle.status_path.endswith("/status")
        assert handle.log_path.endswith("/log")

    @pytest.mark.parametrize("result", [None, "", "   ", {"upid": UPID}, 42])
    def test_from_result_ignores_non_upids(self, result) -> None:
        assert TaskHandle.from_result("pve1", result) is None

    def test_from_result(self) -> None:
        assert TaskHandle.from_result("pve1", UPID) == TaskHandle("pve1", UPID)


class TestTaskSnapshot:
    @pytest.mark.parametrize("exitstatus,state", [
        ("OK", TaskState.SUCCEEDED),
        ("WARNINGS: 1", TaskState.FAILED),
        ("command 'qm start 100' failed: exit code 1", TaskState.FAILED),
        (None, TaskState.FAILED),
    ])
    def test_terminal_states(self, exitstatus, state: TaskState) -> None:
        snap = TaskSnapshot.from_api({"status": "stopped", "exitstatus": exitstatus})
        assert not snap.is_running
        assert snap.state is state

    def test_running(self) -> None:
        snap = TaskSnapshot.from_api(RUNNING["data"])
        assert snap.state is TaskState.RUNNING
        assert snap.to_dict()["state"] == "running"

    @pytest.mark.parametrize("payload", [None, [], {"exitstatus": "OK"}])
    def test_malformed_payload(self, payload) -> None:
        with pytest.raises(ProxmoxError) as exc_info:
            TaskSnapshot.from_api(payload)
        assert exc_info.value.kind is ErrorKind.API_ERROR


class TestTaskMonitor:
    def test_always_running_times_out_after_three_polls(
        self, monitor: TaskMonitor, session: MagicMock, clock: FakeClock
    ) -> None:
        session.request.return_value = make_response(200, RUNNING)
        start = clock.now
        with pytest.raises(TaskTimeoutError) as exc_info:
            monitor.wait(TaskHandle("pve1", UPID), max_wait_seconds=5)
        err = exc_info.value
        assert session.request.call_count == 3
        assert clock.sleeps == [2.0, 2.0, 1.0]
        assert err.elapsed_seconds >= 5
        assert clock.now - start >= 5
        assert err.kind is ErrorKind.CONNECTION
        assert err.context["state"] == "timed_out"
        assert err.context["upid"] == UPID
        assert err.endpoint == f"GET {TaskHandle('pve1', UPID).status_path}"
        assert err.message == "Task did not complete within 5 seconds"

    def test_finished_on_first_poll(self, monitor: TaskMonitor, session: MagicMock, clock: FakeClock) -> None:
        session.request.return_value = make_response(200, STOPPED_OK)
        snap = monitor.wait(TaskHandle("pve1", UPID))
        assert snap.state is TaskState.SUCCEEDED
        assert session.request.call_count == 1
        assert clock.sleeps == []

    def test_polls_at_fixed_interval_until_done(self, monitor: TaskMonitor, session: MagicMock, clock: FakeClock) -> None:
        session.request.side_effect = [
            make_response(200, RUNNING),
            make_response(200, RUNNING),
            make_response(200, {"data": {"status": "stopped", "exitstatus": "unable to find configuration file"}}),
        ]
        snap = monitor.wait(TaskHandle("pve1", UPID), max_wait_seconds=60)
        assert snap.state is TaskState.FAILED
        assert snap.exitstatus == "unable to find configuration file"
        assert clock.sleeps == [POLL_INTERVAL_S, POLL_INTERVAL_S]

    def test_poll_hits_status_endpoint(self, monitor: TaskMonitor, session: MagicMock) -> None:
        session.request.return_value = make_response(200, STOPPED_OK)
        monitor.poll(TaskHandle("pve1", UPID))
        method, url = session.request.call_args.args
        assert method == "GET"
        assert url.endswith("/nodes/pve1/tasks/UPID%3Apve1%3A0001A2B3%3A00C4D5E6%3A65F00000%3Aqmstart%3A100%3Aroot%40pam%3A/status")

    def test_poll_errors_propagate(self, monitor: TaskMonitor, session: MagicMock) -> None:
        session.request.return_value = make_response(403)
        with pytest.raises(ProxmoxError) as exc_info:
            monitor.wait(TaskHandle("pve1", UPID))
        assert exc_info.value.kind is ErrorKind.PERMISSION
