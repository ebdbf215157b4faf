"""Tests for environment-driven configuration."""

import pytest

from helpers import make_config
from proxmox_mcp_pro.config import load_config
from proxmox_mcp_pro.errors import ErrorKind, ProxmoxError

BASE_ENV = {
    "PROXMOX_HOST": "pve.example.test",
    "PROXMOX_USER": "root@pam",
    "PROXMOX_TOKEN_NAME": "mcp",
    "PROXMOX_TOKEN_VALUE": "s3cr3t-uuid",
}


def test_defaults() -> None:
    cfg = load_config(BASE_ENV)
    p = cfg.proxmox
    assert p.port == 8006
    assert p.timeout_ms == 30000
    assert p.retry_attempts == 3
    assert p.retry_delay_ms == 1000
    assert p.allow_elevated is False
    assert p.verify_ssl is False
    assert cfg.ratelimit.max_requests == 100
    assert cfg.ratelimit.window_ms == 60000
    assert cfg.server.transport == "stdio"


def test_overrides() -> None:
    cfg = load_config({
        **BASE_ENV,
        "PROXMOX_PORT": "8443",
        "PROXMOX_RETRY_ATTEMPTS": "5",
        "PROXMOX_ALLOW_ELEVATED": "TRUE",
        "RATE_LIMIT_MAX_REQUESTS": "10",
        "MCP_TRANSPORT": "Streamable-HTTP",
        "LOG_LEVEL": "debug",
    })
    assert cfg.proxmox.port == 8443
    assert cfg.proxmox.retry_attempts == 5
    assert cfg.proxmox.allow_elevated is True
    assert cfg.ratelimit.max_requests == 10
    assert cfg.server.transport == "streamable-http"
    assert cfg.server.log_level == "DEBUG"


def test_empty_values_fall_back_to_defaults() -> None:
    cfg = load_config({**BASE_ENV, "PROXMOX_PORT": "", "PROXMOX_VERIFY_SSL": " "})
    assert cfg.proxmox.port == 8006
    assert cfg.proxmox.verify_ssl is False


def test_missing_required_values_are_listed() -> None:
    env = dict(BASE_ENV)
    del env["PROXMOX_HOST"]
    del env["PROXMOX_TOKEN_VALUE"]
    with pytest.raises(ProxmoxError) as exc_info:
        load_config(env)
    err = exc_info.value
    assert err.kind is ErrorKind.CONFIGURATION
    assert "proxmox.host" in err.message
    assert "proxmox.token_value" in err.message


@pytest.mark.parametrize("var,value", [
    ("PROXMOX_RETRY_ATTEMPTS", "6"),
    ("PROXMOX_PORT", "not-a-port"),
    ("RATE_LIMIT_WINDOW_MS", "0"),
    ("MCP_TRANSPORT", "websocket"),
])
def test_invalid_values(var: str, value: str) -> None:
    with pytest.raises(ProxmoxError) as exc_info:
        load_config({**BASE_ENV, var: value})
    assert exc_info.value.kind is ErrorKind.CONFIGURATION


def test_derived_values() -> None:
    cfg = make_config(host=" pve1.lan ", port=8443, timeout_ms=2500, retry_delay_ms=250)
    assert cfg.base_url == "https://pve1.lan:8443/api2/json"
    assert cfg.auth_header == "PVEAPIToken=root@pam!mcp=s3cr3t-uuid"
    assert cfg.timeout_s == 2.5
    assert cfg.retry_delay_s == 0.25


def test_token_hidden_from_repr() -> None:
    assert "s3cr3t-uuid" not in repr(make_config())
