from __future__ import annotations

import os
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ProxmoxError

_TRUE = {"1", "true", "yes", "on"}


class ProxmoxConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str = Field(min_length=1)
    port: int = Field(default=8006, gt=0, le=65535)
    user: str = Field(min_length=1)
    token_name: str = Field(min_length=1)
    token_value: str = Field(min_length=1, repr=False)
    timeout_ms: int = Field(default=30000, gt=0)
    retry_attempts: int = Field(default=3, ge=0, le=5)
    retry_delay_ms: int = Field(default=1000, gt=0)
    allow_elevated: bool = False
    verify_ssl: bool = False
    ca_bundle: Optional[str] = None

    @field_validator("host", "user", "token_name")
    @classmethod
    def strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @property
    def base_url(self) -> str:
        return f"https://{self.host}:{self.port}/api2/json"

    @property
    def auth_header(self) -> str:
        return f"PVEAPIToken={self.user}!{self.token_name}={self.token_value}"

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def retry_delay_s(self) -> float:
        return self.retry_delay_ms / 1000.0


class RateLimitConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_requests: int = Field(default=100, gt=0)
    window_ms: int = Field(default=60000, gt=0)


class ServerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = "proxmox-mcp-pro"
    transport: str = "stdio"  # "stdio" | "sse" | "streamable-http"
    host: str = "127.0.0.1"
    port: int = 8000
    mcp_path: str = "/mcp"
    audit_log_path: Optional[str] = None
    log_level: str = "INFO"

    @field_validator("transport")
    @classmethod
    def known_transport(cls, v: str) -> str:
        v = v.lower()
        if v not in {"stdio", "sse", "streamable-http"}:
            raise ValueError("must be one of stdio, sse, streamable-http")
        return v

    @field_validator("log_level")
    @classmethod
    def upper_level(cls, v: str) -> str:
        return v.upper()


class AppConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    proxmox: ProxmoxConfig
    ratelimit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


def _env_bool(value: Optional[str]) -> Optional[bool]:
    if value is None or value.strip() == "":
        return None
    return value.strip().lower() in _TRUE


def _pick(env: Mapping[str, str], mapping: Dict[str, str]) -> Dict[str, Any]:
    """Collect set, non-empty environment values so model defaults apply for the rest."""
    out: Dict[str, Any] = {}
    for field, var in mapping.items():
        v = env.get(var)
        if v is not None and v.strip() != "":
            out[field] = v.strip()
    return out


def _issues(section: str, err: ValidationError) -> str:
    return "\n".join(
        f"  - {section}.{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in err.errors()
    )


def load_config(environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    env = os.environ if environ is None else environ

    proxmox_raw = _pick(env, {
        "host": "PROXMOX_HOST",
        "port": "PROXMOX_PORT",
        "user": "PROXMOX_USER",
        "token_name": "PROXMOX_TOKEN_NAME",
        "token_value": "PROXMOX_TOKEN_VALUE",
        "timeout_ms": "PROXMOX_TIMEOUT",
        "retry_attempts": "PROXMOX_RETRY_ATTEMPTS",
        "retry_delay_ms": "PROXMOX_RETRY_DELAY",
        "ca_bundle": "PROXMOX_CA_BUNDLE",
    })
    for field, var in (("allow_elevated", "PROXMOX_ALLOW_ELEVATED"), ("verify_ssl", "PROXMOX_VERIFY_SSL")):
        flag = _env_bool(env.get(var))
        if flag is not None:
            proxmox_raw[field] = flag

    ratelimit_raw = _pick(env, {
        "max_requests": "RATE_LIMIT_MAX_REQUESTS",
        "window_ms": "RATE_LIMIT_WINDOW_MS",
    })
    server_raw = _pick(env, {
        "name": "SERVER_NAME",
        "transport": "MCP_TRANSPORT",
        "host": "SERVER_HOST",
        "port": "SERVER_PORT",
        "mcp_path": "MCP_PATH",
        "audit_log_path": "AUDIT_LOG_PATH",
        "log_level": "LOG_LEVEL",
    })

    problems = []
    sections = {}
    for section, model, raw in (
        ("proxmox", ProxmoxConfig, proxmox_raw),
        ("ratelimit", RateLimitConfig, ratelimit_raw),
        ("server", ServerConfig, server_raw),
    ):
        try:
            sections[section] = model(**raw)
        except ValidationError as e:
            problems.append(_issues(section, e))

    if problems:
        raise ProxmoxError.configuration(
            "Configuration validation failed:\n"
            + "\n".join(problems)
            + "\n\nPlease check your .env file or environment variables.",
        )
    return AppConfig(**sections)
