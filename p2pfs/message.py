"""Messages exchanged between nodes."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any


def _lookup(data: dict[str, Any], key: str) -> Any:
    if key in data:
        return data[key]
    lowered = key.lower()
    for name, value in data.items():
        if isinstance(name, str) and name.lower() == lowered:
            return value
    return None


@dataclass
class Message:
    """A request between nodes: TRANSFER, DELETE, VIEW, SYNC or SYNC_REQUEST."""

    type: str
    origin: int = 0
    target: int = 0
    path: str = ""
    data: bytes = b""
    time: int = 0

    def to_json(self) -> bytes:
        """Encode the message as JSON bytes; file contents are base64 encoded."""
        payload = {
            "Type": self.type,
            "Origin": self.origin,
            "Target": self.target,
            "Path": self.path,
            "Data": base64.b64encode(self.data).decode("ascii") if self.data else None,
            "Time": self.time,
        }
        return json.dumps(payload).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> "Message":
        """Decode a message; raises ValueError when it is not a valid message."""
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("message must be a JSON object")
        raw = _lookup(obj, "Data")
        return cls(
            type=_lookup(obj, "Type") or "",
            origin=int(_lookup(obj, "Origin") or 0),
            target=int(_lookup(obj, "Target") or 0),
            path=_lookup(obj, "Path") or "",
            data=base64.b64decode(raw, validate=True) if raw else b"",
            time=int(_lookup(obj, "Time") or 0),
        )