"""Persistent JSON log of operations applied to the shared file system."""

from __future__ import annotations

import base64
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_LOG_PATH = Path("log") / "oplog.json"


def _lookup(data: dict[str, Any], key: str) -> Any:
    """Return a field by name, matching case-insensitively as a fallback."""
    if key in data:
        return data[key]
    lowered = key.lower()
    for name, value in data.items():
        if isinstance(name, str) and name.lower() == lowered:
            return value
    return None


@dataclass
class Operation:
    """One change to the distributed file system: a transfer or a deletion."""

    type: str
    path: str
    data: bytes = b""
    time: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready form; file contents are base64 encoded."""
        return {
            "Type": self.type,
            "Path": self.path,
            "Data": base64.b64encode(self.data).decode("ascii") if self.data else None,
            "Time": self.time,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Operation":
        """Build an operation from its JSON form."""
        if not isinstance(data, dict):
            raise ValueError("operation must be a JSON object")
        raw = _lookup(data, "Data")
        return cls(
            type=_lookup(data, "Type") or "",
            path=_lookup(data, "Path") or "",
            data=base64.b64decode(raw, validate=True) if raw else b"",
            time=int(_lookup(data, "Time") or 0),
        )


class OperationLog:
    """A thread-safe operation log stored as a JSON array on disk."""

    def __init__(self, path: str | Path = DEFAULT_LOG_PATH) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def read(self) -> list[Operation]:
        """Return every logged operation; an absent or unreadable log is empty."""
        with self._lock:
            return self._read()

    def append(self, op: Operation) -> None:
        """Add an operation to the end of the log."""
        with self._lock:
            ops = self._read()
            ops.append(op)
            try:
                self._save(ops)
            except OSError as exc:
                logger.warning("could not save operation log %s: %s", self.path, exc)

    def _read(self) -> list[Operation]:
        try:
            raw = self.path.read_bytes()
        except OSError:
            return []
        try:
            items = json.loads(raw)
            if items is None:
                return []
            if not isinstance(items, list):
                raise ValueError("operation log is not a JSON array")
            return [Operation.from_dict(item) for item in items]
        except ValueError as exc:
            logger.warning("could not read operation log %s: %s", self.path, exc)
            return []

    def _save(self, ops: list[Operation]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps([op.to_dict() for op in ops], indent=2), encoding="utf-8"
        )


_default_log = OperationLog()


def default_log() -> OperationLog:
    """Return the shared log kept at log/oplog.json."""
    return _default_log