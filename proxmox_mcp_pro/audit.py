from __future__ import annotations

import json
import sys
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, TextIO

_SENSITIVE = ("password", "token", "secret")


@dataclass
class AuditEvent:
    ts: float
    tool: str
    ok: bool
    duration_ms: float
    args: Dict[str, Any]
    error: Optional[str] = None
    error_kind: Optional[str] = None
    host: Optional[str] = None
    node: Optional[str] = None


class Auditor:
    """Writes one JSON line per tool call. Defaults to stderr; stdout carries MCP stdio."""

    def __init__(self, path: Optional[str] = None, sink: Optional[TextIO] = None):
        self._owned = bool(path) and sink is None
        self._sink = sink or (open(path, "a", buffering=1) if path else sys.stderr)

    def log(self, event: AuditEvent) -> None:
        data = asdict(event)
        for k in list(data.get("args", {}).keys()):
            if any(word in k.lower() for word in _SENSITIVE):
                data["args"][k] = "***"
        self._sink.write(json.dumps(data, default=str) + "\n")

    def close(self) -> None:
        if self._owned:
            self._sink.close()
