"""The local node: receiving and sending files, retries and file-tree requests."""

from __future__ import annotations

import contextlib
import ipaddress
import json
import logging
import os
import shutil
import socket
import stat
import tempfile
import threading
import time
import zipfile
from dataclasses import dataclass, field
from datetime import datetime

from p2pfs.archive import ArchiveError, calculate_sha256, unzip_file, zip_folder
from p2pfs.files import FileNode, build_file_tree
from p2pfs.oplog import Operation, OperationLog, default_log
from p2pfs.retry import PendingTask, RetryQueue, RetryQueueError

logger = logging.getLogger(__name__)

MAX_SEND_ATTEMPTS = 3
SEND_TIMEOUT = 5.0
_ACCEPT_POLL = 0.5


class SendError(Exception):
    """Raised when a file cannot be sent to another node."""


def _join_host_port(host: str, port: str) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _split_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep or not host:
        raise ValueError(f"invalid address: {addr!r}")
    return host.strip("[]"), int(port)


def _read_all(conn: socket.socket) -> bytes:
    chunks = []
    while chunk := conn.recv(65536):
        chunks.append(chunk)
    return b"".join(chunks)


def _remote_name(conn: socket.socket) -> str:
    try:
        return str(conn.getpeername())
    except OSError:
        return "unknown"


def _is_list_request(line: bytes) -> bool:
    if not line.lstrip().startswith(b"{"):
        return False
    try:
        payload = json.loads(line)
    except ValueError:
        return False
    return isinstance(payload, dict) and payload.get("Type") == "LIST"


@dataclass
class PeerInfo:
    """A node known on the network."""

    id: int
    ip: str
    port: str

    def address(self) -> str:
        """Return the host:port address of the node."""
        return _join_host_port(self.ip, self.port)


def get_local_ip() -> str:
    """Return a non-loopback IPv4 address of this machine, or 127.0.0.1."""
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except OSError:
        infos = []
    for *_, sockaddr in infos:
        candidate = sockaddr[0]
        if not ipaddress.ip_address(candidate).is_loopback:
            return candidate
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
            probe.connect(("10.255.255.255", 1))
            candidate = probe.getsockname()[0]
        address = ipaddress.ip_address(candidate)
        if not address.is_loopback and not address.is_unspecified:
            return candidate
    except (OSError, ValueError):
        pass
    return "127.0.0.1"


@dataclass
class Peer:
    """The local node, its known peers and its discovery state."""

    id: int = 0
    ip: str = field(default_factory=get_local_ip)
    port: str = "8001"
    peers: list[PeerInfo] = field(default_factory=list)
    shared_dir: str = "shared"
    oplog: OperationLog = field(default_factory=default_log)
    retry_queue: RetryQueue = field(default_factory=RetryQueue)
    retry_delay: float = 1.0
    send_timeout: float = SEND_TIMEOUT
    stop_event: threading.Event = field(
        default_factory=threading.Event, repr=False, compare=False
    )
    last_hello_sent: datetime | None = None
    last_id_assigned: datetime | None = None
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def add_peer(self, info: PeerInfo) -> None:
        """Remember a peer unless one with the same address is already known."""
        with self._lock:
            if any(p.ip == info.ip and p.port == info.port for p in self.peers):
                return
            self.peers.append(info)

    def find_peer_by_id(self, peer_id: int) -> PeerInfo | None:
        """Return the known peer with the given ID, if any."""
        with self._lock:
            return next((p for p in self.peers if p.id == peer_id), None)

    def _record(self, kind: str, filename: str) -> None:
        self.oplog.append(Operation(type=kind, path=filename, time=int(time.time())))

    def start_listener(self) -> None:
        """Accept incoming connections until stop_event is set."""
        try:
            server = socket.create_server(("", int(self.port)))
        except (OSError, ValueError) as exc:
            logger.error("could not start listener: %s", exc)
            return
        with server:
            server.settimeout(_ACCEPT_POLL)
            logger.info("node %d listening on port %s", self.id, self.port)
            while not self.stop_event.is_set():
                try:
                    conn, _ = server.accept()
                except socket.timeout:
                    continue
                except OSError as exc:
                    logger.warning("could not accept connection: %s", exc)
                    continue
                conn.settimeout(None)
                threading.Thread(
                    target=self.handle_connection, args=(conn,), daemon=True
                ).start()

    def handle_connection(self, conn: socket.socket) -> None:
        """Receive a file, verify its hash and unpack it when it is a ZIP."""
        with conn, conn.makefile("rb") as reader:
            remote = _remote_name(conn)
            first = reader.readline()
            if not first.endswith(b"\n"):
                logger.warning("could not read file name from %s", remote)
                return
            if _is_list_request(first):
                self.handle_list(conn)
                return
            filename = first.decode("utf-8", "replace").strip()
            hash_line = reader.readline()
            if not hash_line.endswith(b"\n"):
                logger.warning("could not read hash from %s", remote)
                return
            expected = hash_line.decode("utf-8", "replace").strip()

            dest = os.path.join(self.shared_dir, filename)
            try:
                with open(dest, "wb") as out:
                    shutil.copyfileobj(reader, out)
            except OSError as exc:
                logger.error("could not save received file %s: %s", dest, exc)
                return
        self._record("TRANSFER", filename)
        logger.info("file %s received from %s", filename, remote)

        try:
            actual = calculate_sha256(dest)
        except OSError as exc:
            logger.warning("could not compute hash of %s: %s", dest, exc)
            return
        if actual != expected:
            logger.error("invalid hash for %s: expected %s, got %s", filename, expected, actual)
            self._record("HASH_FAIL", filename)
            return
        logger.info("hash verified for %s", filename)
        self._record("HASH_OK", filename)

        if not filename.endswith(".zip"):
            logger.info("file received as %s", filename)
            return
        try:
            unzip_file(dest, self.shared_dir)
        except (ArchiveError, OSError, zipfile.BadZipFile) as exc:
            logger.error("could not unpack %s: %s", filename, exc)
            self._record("UNZIP_FAIL", filename)
            return
        with contextlib.suppress(OSError):
            os.remove(dest)
        logger.info("unpacked %s", filename)
        self._record("UNZIP", filename)

    def send_file(self, file_path: str | os.PathLike[str], addr: str) -> None:
        """Send a file, or a folder packed as ZIP, to the node at addr."""
        if self.id == 0:
            raise SendError("node has no assigned ID, cannot send files")
        original = os.fspath(file_path)
        try:
            info = os.stat(original)
        except OSError as exc:
            raise SendError(f"cannot access file: {exc}") from exc

        filename = os.path.basename(os.path.normpath(original))
        path = original
        tmp_zip: str | None = None
        try:
            if stat.S_ISDIR(info.st_mode):
                tmp_zip = os.path.join(tempfile.gettempdir(), filename + ".zip")
                try:
                    zip_folder(original, tmp_zip)
                except OSError as exc:
                    raise SendError(f"could not pack folder: {exc}") from exc
                path = tmp_zip
                filename += ".zip"
            self._send_with_retries(path, original, filename, addr)
        finally:
            if tmp_zip is not None:
                with contextlib.suppress(OSError):
                    os.remove(tmp_zip)

    def _send_with_retries(self, path: str, original: str, filename: str, addr: str) -> None:
        try:
            digest = calculate_sha256(path)
        except OSError as exc:
            raise SendError(f"could not compute hash: {exc}") from exc

        last_error: Exception | None = None
        for attempt in range(1, MAX_SEND_ATTEMPTS + 1):
            logger.info("attempt %d of %d to send %s", attempt, MAX_SEND_ATTEMPTS, filename)
            try:
                conn = socket.create_connection(_split_addr(addr), timeout=self.send_timeout)
            except (OSError, ValueError) as exc:
                last_error = exc
                logger.warning("connection failed (attempt %d): %s", attempt, exc)
                self._record("SEND_FAIL", filename)
                time.sleep(self.retry_delay * attempt)
                continue
            with conn:
                try:
                    handle = open(path, "rb")
                except OSError as exc:
                    last_error = exc
                    break
                try:
                    with handle:
                        conn.sendall(f"{filename}\n{digest}\n".encode("utf-8"))
                        conn.sendfile(handle)
                except OSError as exc:
                    last_error = exc
                    continue
            logger.info("sent %s to %s on attempt %d", original, addr, attempt)
            self._record("TRANSFER", filename)
            return

        self._record("SEND_FAIL", filename)
        try:
            self.retry_queue.add(
                PendingTask(type="TRANSFER", file_path=original, target=addr, retries=MAX_SEND_ATTEMPTS)
            )
        except RetryQueueError as exc:
            logger.warning("could not queue failed transfer: %s", exc)
        raise SendError(f"sending failed after {MAX_SEND_ATTEMPTS} attempts: {last_error}")

    def retry_pending(self) -> list[PendingTask]:
        """Retry queued transfers once and return the tasks still pending."""
        try:
            tasks = self.retry_queue.load()
        except RetryQueueError as exc:
            logger.warning("could not load retry queue: %s", exc)
            return []
        if not tasks:
            return []
        logger.info("retrying %d failed task(s)", len(tasks))
        remaining = []
        for task in tasks:
            if task.type != "TRANSFER":
                remaining.append(task)
                continue
            try:
                self.send_file(task.file_path, task.target)
            except SendError:
                task.retries += 1
                remaining.append(task)
        try:
            self.retry_queue.save(remaining)
        except RetryQueueError as exc:
            logger.warning("could not save retry queue: %s", exc)
        return remaining

    def retry_worker(self, interval: float) -> None:
        """Retry queued transfers every interval seconds until stop_event is set."""
        while not self.stop_event.wait(interval):
            self.retry_pending()

    def request_file_tree(self, addr: str) -> FileNode | None:
        """Ask the node at addr for the tree of its shared folder."""
        request = json.dumps({"Type": "LIST", "From": self.id}).encode("utf-8") + b"\n"
        with socket.create_connection(_split_addr(addr), timeout=self.send_timeout) as conn:
            conn.sendall(request)
            conn.shutdown(socket.SHUT_WR)
            response = _read_all(conn)
        payload = json.loads(response)
        if not isinstance(payload, dict):
            raise ValueError("file tree response must be a JSON object")
        tree = payload.get("FileTree")
        return FileNode.from_dict(tree) if tree is not None else None

    def handle_list(self, conn: socket.socket) -> None:
        """Answer a LIST request with the tree of the shared folder."""
        try:
            tree = build_file_tree(self.shared_dir)
        except OSError:
            return
        response = {"Type": "LIST", "From": self.id, "FileTree": tree.to_dict()}
        conn.sendall(json.dumps(response).encode("utf-8"))