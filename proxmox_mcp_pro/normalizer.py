from __future__ import annotations

import enum
import json
from typing import Any, Optional, Union

from .classifier import excerpt
from .errors import ProxmoxError

ENVELOPE_FIELD = "data"


class _Empty(enum.Enum):
    NO_CONTENT = "no-content"

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_CONTENT"


# Returned for a successful response with an empty body; distinct from None,
# which is what a ``{"data": null}`` envelope unwraps to.
NO_CONTENT = _Empty.NO_CONTENT


def normalize(
    text: Optional[str],
    endpoint: Optional[str] = None,
    status_code: int = 200,
) -> Union[Any, _Empty]:
    if text is None or not text.strip():
        return NO_CONTENT
    try:
        data = json.loads(text)
    except ValueError as e:
        raise ProxmoxError.api_error(
            f"Failed to parse Proxmox API response: {e}",
            status_code,
            endpoint=endpoint,
            response_excerpt=excerpt(text),
        ) from e
    if isinstance(data, dict) and ENVELOPE_FIELD in data:
        return data[ENVELOPE_FIELD]
    return data
