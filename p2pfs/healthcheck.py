"""Liveness checks, TCP handshakes exchanging peer lists, and peer list files."""

from __future__ import annotations

import json
import logging
import socket
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from p2pfs.node import PeerInfo

logger = logging.getLogger(__name__)

ALIVE_TIMEOUT = 1.0
HANDSHAKE_TIMEOUT = 2.0

_peer_statuses: dict[str, bool] = {}


class HandshakeError(Exception):
    """Raised when a handshake fails or gets an invalid answer."""


@dataclass
class HandshakeMessage:
    """A HELLO request or a WELCOME answer carrying known peer addresses."""

    type: str
    origin: str = ""
    known_peers: list[str] = field(default_factory=list)

    def to_json(self) -> bytes:
        """Encode the message; known_peers is left out when empty."""
        payload: dict[str, Any] = {"type": self.type, "from": self.origin}
        if self.known_peers:
            payload["known_peers"] = list(self.known_peers)
        return json.dumps(payload).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> "HandshakeMessage":
        """Decode a message; raises ValueError when it is malformed."""
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("handshake message must be a JSON object")
        return cls(
            type=obj.get("type") or "",
            origin=obj.get("from") or "",
            known_peers=list(obj.get("known_peers") or []),
        )


def _connect(address: str, timeout: float) -> socket.socket:
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise OSError(f"invalid address: {address!r}")
    return socket.create_connection((host.strip("[]"), int(port)), timeout=timeout)


def check_peer_alive(peer: PeerInfo, statuses: dict[str, bool] | None = None) -> bool:
    """Return whether the peer accepts a TCP connection, and record the result."""
    table = statuses if statuses is not None else _peer_statuses
    address = peer.address()
    try:
        with _connect(address, ALIVE_TIMEOUT):
            pass
    except (OSError, ValueError):
        table[address] = False
        return False
    table[address] = True
    return True


def get_live_peers(
    peers: list[PeerInfo], statuses: dict[str, bool] | None = None
) -> list[int]:
    """Return the IDs of the peers that are online."""
    alive = []
    for peer in peers:
        if check_peer_alive(peer, statuses):
            logger.info("peer %d is online", peer.id)
            alive.append(peer.id)
        else:
            logger.info("peer %d does not respond", peer.id)
    return alive


def handle_handshake(
    conn: socket.socket, self_info: PeerInfo, get_peer_list: Callable[[], list[PeerInfo]]
) -> None:
    """Answer a HELLO line with a WELCOME listing the known peers."""
    with conn, conn.makefile("rb") as reader:
        try:
            line = reader.readline()
        except OSError:
            return
        if not line.endswith(b"\n"):
            return
        try:
            msg = HandshakeMessage.from_json(line)
        except (ValueError, TypeError):
            return
        if msg.type != "HELLO":
            return
        response = HandshakeMessage(
            type="WELCOME",
            origin=self_info.address(),
            known_peers=[p.address() for p in get_peer_list()],
        )
        try:
            conn.sendall(response.to_json() + b"\n")
        except OSError as exc:
            logger.warning("could not answer handshake: %s", exc)


def _accept_loop(
    server: socket.socket, self_info: PeerInfo, get_peer_list: Callable[[], list[PeerInfo]]
) -> None:
    while True:
        try:
            conn, _ = server.accept()
        except OSError:
            if server.fileno() == -1:
                return
            continue
        threading.Thread(
            target=handle_handshake, args=(conn, self_info, get_peer_list), daemon=True
        ).start()


def start_handshake_listener(
    self_info: PeerInfo, get_peer_list: Callable[[], list[PeerInfo]]
) -> socket.socket | None:
    """Serve handshakes in the background; close the returned socket to stop."""
    try:
        server = socket.create_server((self_info.ip, int(self_info.port)))
    except (OSError, ValueError) as exc:
        logger.error("could not start handshake listener: %s", exc)
        return None
    logger.info("listening for handshakes on %s", self_info.address())
    threading.Thread(
        target=_accept_loop, args=(server, self_info, get_peer_list), daemon=True
    ).start()
    return server


def send_hello_and_receive_peers(addr: str) -> list[str]:
    """Send HELLO to addr and return the peer addresses in its WELCOME."""
    try:
        conn = _connect(addr, HANDSHAKE_TIMEOUT)
    except (OSError, ValueError) as exc:
        raise HandshakeError(f"could not connect to {addr}: {exc}") from exc
    with conn, conn.makefile("rb") as reader:
        try:
            conn.sendall(HandshakeMessage(type="HELLO", origin="?").to_json() + b"\n")
            line = reader.readline()
        except OSError as exc:
            raise HandshakeError(f"handshake with {addr} failed: {exc}") from exc
    try:
        response = HandshakeMessage.from_json(line)
    except (ValueError, TypeError):
        response = HandshakeMessage(type="")
    if response.type != "WELCOME":
        raise HandshakeError("invalid handshake response")
    return response.known_peers


def merge_peer_lists(known: list[str], current: list[PeerInfo]) -> None:
    """Add to current every ip:port address in known that it does not hold yet."""
    existing = {p.address() for p in current}
    for addr in known:
        if addr in existing:
            continue
        parts = addr.split(":")
        if len(parts) == 2:
            current.append(PeerInfo(id=0, ip=parts[0], port=parts[1]))


def _lookup(data: dict[str, Any], key: str) -> Any:
    if key in data:
        return data[key]
    lowered = key.lower()
    for name, value in data.items():
        if isinstance(name, str) and name.lower() == lowered:
            return value
    return None


def save_peers(peers: list[PeerInfo], filename: str) -> None:
    """Write the peer list to a JSON file."""
    payload = [{"ID": p.id, "IP": p.ip, "Port": p.port} for p in peers]
    with open(filename, "w", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, indent=2) + "\n")


def load_peers(filename: str) -> list[PeerInfo]:
    """Read a peer list written by save_peers; raises ValueError when malformed."""
    with open(filename, encoding="utf-8") as handle:
        items = json.load(handle)
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValueError("peer list must be a JSON array")
    peers = []
    for item in items:
        if not isinstance(item, dict):
            raise ValueError("peer must be a JSON object")
        peers.append(
            PeerInfo(
                id=int(_lookup(item, "ID") or 0),
                ip=_lookup(item, "IP") or "",
                port=_lookup(item, "Port") or "",
            )
        )
    return peers