"""Queue of failed tasks kept on disk for later retries."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_QUEUE_PATH = Path("log") / "retry_queue.json"


class RetryQueueError(Exception):
    """Raised when the retry queue cannot be read or written."""


@dataclass
class PendingTask:
    """A task that could not be completed, such as a file transfer."""

    type: str
    file_path: str
    target: str
    retries: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form of the task."""
        return {
            "type": self.type,
            "filepath": self.file_path,
            "target": self.target,
            "retries": self.retries,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "PendingTask":
        """Build a task from its JSON form."""
        if not isinstance(data, dict):
            raise ValueError("task must be a JSON object")
        return cls(
            type=data.get("type") or "",
            file_path=data.get("filepath") or "",
            target=data.get("target") or "",
            retries=int(data.get("retries") or 0),
        )


class RetryQueue:
    """A thread-safe list of pending tasks stored as a JSON array."""

    def __init__(self, path: str | Path = DEFAULT_QUEUE_PATH) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self) -> list[PendingTask]:
        """Return every pending task; a missing queue file means no tasks."""
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise RetryQueueError(f"could not read retry queue: {exc}") from exc
        try:
            items = json.loads(raw)
            if items is None:
                return []
            if not isinstance(items, list):
                raise ValueError("retry queue is not a JSON array")
            return [PendingTask.from_dict(item) for item in items]
        except ValueError as exc:
            raise RetryQueueError(f"invalid retry queue format: {exc}") from exc

    def add(self, task: PendingTask) -> None:
        """Append a task; an unreadable queue is replaced."""
        with self._lock:
            try:
                tasks = self.load()
            except RetryQueueError:
                tasks = []
            tasks.append(task)
            self._save(tasks)

    def save(self, tasks: list[PendingTask]) -> None:
        """Overwrite the queue with the given tasks."""
        with self._lock:
            self._save(tasks)

    def _save(self, tasks: list[PendingTask]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps([task.to_dict() for task in tasks], indent=2), encoding="utf-8"
            )
        except OSError as exc:
            raise RetryQueueError(f"could not save retry queue: {exc}") from exc