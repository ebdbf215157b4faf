from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Type

from pydantic import BaseModel, ValidationError

from .errors import ProxmoxError

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


@dataclass(frozen=True)
class Operation:
    name: str
    description: str
    args_model: Type[BaseModel]
    handler: Handler
    elevated: bool = False

    def input_schema(self) -> Dict[str, Any]:
        return self.args_model.model_json_schema()


def _describe_validation(err: ValidationError) -> str:
    parts = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e["loc"]) or "arguments"
        parts.append(f"{loc}: {e['msg']}")
    return "; ".join(parts)


class OperationRegistry:
    """Name -> (argument schema, handler), resolved once at start-up."""

    def __init__(self, allow_elevated: bool = False):
        self.allow_elevated = allow_elevated
        self._ops: Dict[str, Operation] = {}

    def register(self, op: Operation) -> Operation:
        if op.name in self._ops:
            raise ValueError(f"Operation '{op.name}' is already registered")
        self._ops[op.name] = op
        return op

    def operation(self, name: str, description: str, args_model: Type[BaseModel], elevated: bool = False):
        def decorator(fn: Handler) -> Handler:
            self.register(Operation(name, description, args_model, fn, elevated))
            return fn
        return decorator

    def get(self, name: str) -> Operation:
        try:
            return self._ops[name]
        except KeyError:
            raise ProxmoxError.validation(f"Unknown tool: {name}", tool=name) from None

    def names(self) -> List[str]:
        return list(self._ops)

    def __contains__(self, name: object) -> bool:
        return name in self._ops

    def __iter__(self) -> Iterator[Operation]:
        return iter(self._ops.values())

    def __len__(self) -> int:
        return len(self._ops)

    def validate(self, name: str, arguments: Optional[Mapping[str, Any]] = None) -> BaseModel:
        op = self.get(name)
        try:
            return op.args_model.model_validate(dict(arguments or {}))
        except ValidationError as e:
            raise ProxmoxError.validation(f"Invalid arguments: {_describe_validation(e)}", tool=name) from None

    def invoke(self, name: str, arguments: Optional[Mapping[str, Any]] = None) -> Any:
        op = self.get(name)
        if op.elevated and not self.allow_elevated:
            raise ProxmoxError.permission(
                f"Tool '{name}' requires elevated permissions. Set PROXMOX_ALLOW_ELEVATED=true to enable it.",
                tool=name,
            )
        args = self.validate(name, arguments)
        logger.info("Tool called: %s", name)
        return op.handler(args)
