"""Pytest fixtures for Proxmox-MCP-Pro tests."""

from unittest.mock import MagicMock

import pytest
import requests

from helpers import FakeClock, make_config
from proxmox_mcp_pro.config import ProxmoxConfig
from proxmox_mcp_pro.proxmox_client import ProxmoxClient
from proxmox_mcp_pro.ratelimit import SlidingWindowRateLimiter


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> ProxmoxConfig:
    return make_config()


@pytest.fixture
def session() -> MagicMock:
    s = MagicMock(spec=requests.Session)
    s.headers = {}
    return s


@pytest.fixture
def client(config: ProxmoxConfig, session: MagicMock, clock: FakeClock) -> ProxmoxClient:
    """Client with a mocked HTTP session; retries and rate limiting never really sleep."""
    limiter = SlidingWindowRateLimiter(100, 60000, clock=clock, sleep=clock.sleep)
    return ProxmoxClient(config, limiter, session=session, sleep=clock.sleep, rand=lambda: 0.0)
