"""Shared test helpers: fake clock, canned HTTP responses, config factory."""

import json
from typing import Any, List, Optional, Union

import requests

from proxmox_mcp_pro.config import ProxmoxConfig


class FakeClock:
    """Monotonic clock whose sleep just advances time."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_response(
    status: int = 200,
    body: Union[str, dict, list, None] = None,
    reason: Optional[str] = None,
) -> requests.Response:
    r = requests.Response()
    r.status_code = status
    r.reason = reason
    if body is None:
        text = ""
    elif isinstance(body, str):
        text = body
    else:
        text = json.dumps(body)
    r._content = text.encode("utf-8")
    r.encoding = "utf-8"
    return r


def make_config(**overrides: Any) -> ProxmoxConfig:
    values = {
        "host": "pve.example.test",
        "user": "root@pam",
        "token_name": "mcp",
        "token_value": "s3cr3t-uuid",
    }
    values.update(overrides)
    return ProxmoxConfig(**values)
