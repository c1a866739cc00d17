"""Hashing and ZIP packing of files and folders."""

from __future__ import annotations

import hashlib
import os
import shutil
import stat
import zipfile
from collections.abc import Iterator


class ArchiveError(Exception):
    """Raised when an archive is malformed or unsafe to extract."""


def calculate_sha256(path: str | os.PathLike[str]) -> str:
    """Return the lowercase hex SHA-256 digest of a file's contents."""
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _walk(path: str) -> Iterator[tuple[str, os.stat_result]]:
    """Yield the path and everything below it, depth first in lexical order."""
    info = os.lstat(path)
    yield path, info
    if stat.S_ISDIR(info.st_mode):
        for name in sorted(os.listdir(path)):
            yield from _walk(os.path.join(path, name))


def zip_folder(source_dir: str | os.PathLike[str], target_zip: str | os.PathLike[str]) -> None:
    """Pack a directory into a ZIP whose entries start with the directory's own name."""
    source = os.fspath(source_dir)
    base = os.path.dirname(source) or "."
    with zipfile.ZipFile(target_zip, "w") as archive:
        for path, info in _walk(source):
            rel = os.path.relpath(path, base)
            is_dir = stat.S_ISDIR(info.st_mode)
            if is_dir and rel == ".":
                continue
            arcname = rel.replace(os.sep, "/")
            if is_dir:
                archive.write(path, arcname=arcname + "/", compress_type=zipfile.ZIP_STORED)
            else:
                archive.write(path, arcname=arcname, compress_type=zipfile.ZIP_DEFLATED)


def unzip_file(zip_path: str | os.PathLike[str], dest_dir: str | os.PathLike[str]) -> None:
    """Extract a ZIP into a directory, refusing entries that land outside it."""
    dest = os.fspath(dest_dir)
    root = os.path.abspath(dest)
    try:
        archive = zipfile.ZipFile(zip_path)
    except zipfile.BadZipFile as exc:
        raise ArchiveError(f"not a valid zip archive: {zip_path}") from exc
    with archive:
        for info in archive.infolist():
            target = os.path.abspath(os.path.join(dest, *info.filename.split("/")))
            if not target.startswith(root + os.sep):
                raise ArchiveError(f"entry outside destination: {target}")
            if info.is_dir():
                os.makedirs(target, exist_ok=True)
                continue
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with archive.open(info) as src, open(target, "wb") as dst:
                shutil.copyfileobj(src, dst)
            mode = (info.external_attr >> 16) & 0o777
            if mode:
                os.chmod(target, mode)