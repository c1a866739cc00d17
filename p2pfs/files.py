"""Local file-system operations: saving, deleting, listing and syncing files."""

from __future__ import annotations

import logging
import os
import re
import shutil
import stat
import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from p2pfs.oplog import Operation, OperationLog, default_log

logger = logging.getLogger(__name__)


class UnknownOperationError(ValueError):
    """Raised for an operation type that cannot be applied."""


def _mtime(info: os.stat_result) -> datetime:
    return datetime.fromtimestamp(info.st_mtime).astimezone()


def _parse_time(text: str) -> datetime:
    text = text.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = re.sub(r"\.(\d+)", lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    return datetime.fromisoformat(text)


def _base_name(path: str) -> str:
    return os.path.basename(os.path.normpath(path))


@dataclass
class FileNode:
    """A file or directory in a tree of files."""

    name: str
    is_dir: bool
    mod_time: datetime
    children: list["FileNode"] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form; children are left out when there are none."""
        result: dict[str, Any] = {
            "name": self.name,
            "is_dir": self.is_dir,
            "mod_time": self.mod_time.isoformat(),
        }
        if self.children:
            result["children"] = [child.to_dict() for child in self.children]
        return result

    @classmethod
    def from_dict(cls, data: Any) -> "FileNode":
        """Build a tree from its JSON form."""
        if not isinstance(data, dict):
            raise ValueError("file node must be a JSON object")
        return cls(
            name=data.get("name") or "",
            is_dir=bool(data.get("is_dir")),
            mod_time=_parse_time(data.get("mod_time") or "0001-01-01T00:00:00+00:00"),
            children=[cls.from_dict(child) for child in data.get("children") or []],
        )


@dataclass
class FileInfo:
    """Details of one file or directory found by a listing."""

    name: str
    full_path: str
    size: int
    mod_time: datetime
    is_dir: bool


def delete_file(path: str | os.PathLike[str]) -> None:
    """Remove a single file."""
    os.remove(path)


def delete_path(path: str | os.PathLike[str]) -> None:
    """Remove a file or a whole directory tree; a missing path is not an error."""
    try:
        info = os.lstat(path)
    except FileNotFoundError:
        return
    if stat.S_ISDIR(info.st_mode):
        shutil.rmtree(path)
    else:
        os.remove(path)


def _write(path: str, data: bytes) -> str:
    abs_path = os.path.abspath(path)
    os.makedirs(os.path.dirname(abs_path), exist_ok=True)
    with open(abs_path, "wb") as handle:
        handle.write(data)
    return abs_path


def apply_operation(op: Operation) -> None:
    """Apply one transfer or deletion to the local file system."""
    if op.type == "TRANSFER":
        abs_path = _write(op.path, op.data)
        logger.info("file synchronised: %s", abs_path)
    elif op.type == "DELETE":
        delete_path(op.path)
    else:
        raise UnknownOperationError(f"unknown operation: {op.type}")


def sync_with_logs(
    remote_logs: Iterable[Operation], last_sync: int, oplog: OperationLog | None = None
) -> int:
    """Apply remote operations newer than last_sync and return how many were applied."""
    log = oplog if oplog is not None else default_log()
    applied = 0
    for op in remote_logs:
        if op.time <= last_sync:
            continue
        try:
            apply_operation(op)
        except (OSError, UnknownOperationError) as exc:
            logger.warning("could not apply %s on %s: %s", op.type, op.path, exc)
            continue
        log.append(op)
        applied += 1
    logger.info("synchronisation finished, operations applied: %d", applied)
    return applied


def get_last_sync_time(oplog: OperationLog | None = None) -> int:
    """Return the newest timestamp in the local log, or 0 when there is none."""
    log = oplog if oplog is not None else default_log()
    return max([0, *(op.time for op in log.read())])


def save_file(
    path: str | os.PathLike[str], data: bytes, oplog: OperationLog | None = None
) -> str:
    """Write received data to disk, record the transfer and return the absolute path."""
    log = oplog if oplog is not None else default_log()
    abs_path = _write(os.fspath(path), data)
    logger.info("file saved: %s", abs_path)
    log.append(Operation(type="TRANSFER", path=abs_path, data=data, time=int(time.time())))
    return abs_path


def build_file_tree(root: str | os.PathLike[str]) -> FileNode:
    """Build a tree of the files under root; unreadable entries are left out."""
    root_path = os.fspath(root)
    info = os.stat(root_path)
    is_dir = stat.S_ISDIR(info.st_mode)
    node = FileNode(name=_base_name(root_path), is_dir=is_dir, mod_time=_mtime(info))
    if not is_dir:
        return node
    for name in sorted(os.listdir(root_path)):
        try:
            node.children.append(build_file_tree(os.path.join(root_path, name)))
        except OSError:
            continue
    return node


def _walk_infos(path: str) -> Iterator[FileInfo]:
    try:
        info = os.lstat(path)
    except OSError:
        return
    is_dir = stat.S_ISDIR(info.st_mode)
    yield FileInfo(
        name=_base_name(path),
        full_path=path,
        size=info.st_size,
        mod_time=_mtime(info),
        is_dir=is_dir,
    )
    if not is_dir:
        return
    try:
        names = sorted(os.listdir(path))
    except OSError:
        return
    for name in names:
        yield from _walk_infos(os.path.join(path, name))


def list_files(base_dir: str | os.PathLike[str]) -> list[FileInfo]:
    """List base_dir and everything below it, skipping what cannot be read."""
    return list(_walk_infos(os.fspath(base_dir)))