"""UDP discovery of nodes on the local network and assignment of node IDs."""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from p2pfs.node import Peer, PeerInfo

logger = logging.getLogger(__name__)

DEFAULT_DISCOVERY_PORT = 48999
BROADCAST_ADDRESS = "255.255.255.255"
BROADCAST_INTERVAL = 5.0
_RECV_SIZE = 1024
_POLL = 0.5


def _join_host_port(host: str, port: str) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


@dataclass
class NodeAnnouncement:
    """A discovery message: HELLO, ASSIGN_ID or NEW_NODE."""

    type: str
    ip: str = ""
    port: str = ""
    id: int = 0

    def to_json(self) -> bytes:
        """Encode the announcement; the ID is left out while it is zero."""
        payload: dict[str, object] = {"type": self.type, "ip": self.ip, "port": self.port}
        if self.id:
            payload["id"] = self.id
        return json.dumps(payload).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> "NodeAnnouncement":
        """Decode an announcement; raises ValueError when it is malformed."""
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("announcement must be a JSON object")
        return cls(
            type=obj.get("type") or "",
            ip=obj.get("ip") or "",
            port=obj.get("port") or "",
            id=int(obj.get("id") or 0),
        )


def parse_port(value: str) -> int:
    """Return the port number in value, or the default discovery port."""
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("invalid port: %s", value)
        return DEFAULT_DISCOVERY_PORT


def discovery_port() -> int:
    """Return the UDP discovery port, taken from DISCOVERY_PORT when set."""
    return parse_port(os.environ.get("DISCOVERY_PORT", str(DEFAULT_DISCOVERY_PORT)))


def _send(data: bytes, host: str, broadcast: bool) -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        if broadcast:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.sendto(data, (host, discovery_port()))


def send_udp_message(msg: NodeAnnouncement, ip: str) -> None:
    """Send an announcement directly to one host; failures are ignored."""
    try:
        _send(msg.to_json(), ip, broadcast=False)
    except OSError as exc:
        logger.debug("could not send %s to %s: %s", msg.type, ip, exc)


def broadcast_new_node(msg: NodeAnnouncement) -> None:
    """Broadcast an announcement to the whole local network."""
    try:
        _send(msg.to_json(), BROADCAST_ADDRESS, broadcast=True)
    except OSError as exc:
        logger.warning("could not broadcast %s: %s", msg.type, exc)


class IdRegistry:
    """Known node addresses and their IDs, and the handling of announcements."""

    def __init__(
        self,
        send: Callable[[NodeAnnouncement, str], None] | None = None,
        broadcast: Callable[[NodeAnnouncement], None] | None = None,
    ) -> None:
        self.assigned: dict[str, int] = {}
        self.next_id = 1
        self._send = send if send is not None else send_udp_message
        self._broadcast = broadcast if broadcast is not None else broadcast_new_node
        self._lock = threading.Lock()

    def next_available_id(self) -> int:
        """Return the next ID that no known node holds."""
        highest = max(self.assigned.values(), default=0)
        return highest + 1 if highest >= self.next_id else self.next_id

    def handle(self, data: bytes, peer: Peer) -> NodeAnnouncement | None:
        """Act on one received announcement and return what was sent out, if anything."""
        try:
            msg = NodeAnnouncement.from_json(data)
        except (ValueError, TypeError) as exc:
            logger.warning("could not parse announcement: %s", exc)
            return None
        key = _join_host_port(msg.ip, msg.port)

        if msg.type == "HELLO":
            with self._lock:
                if key in self.assigned:
                    return None
                new_id = self.next_available_id()
                self.assigned[key] = new_id
            logger.info("assigning ID %d to %s", new_id, key)
            reply = NodeAnnouncement(type="ASSIGN_ID", ip=msg.ip, port=msg.port, id=new_id)
            self._send(reply, msg.ip)
            self._broadcast(reply)
            return reply

        if msg.type == "ASSIGN_ID":
            if peer.id == 0 and msg.ip == peer.ip and msg.port == peer.port:
                peer.id = msg.id
                peer.last_id_assigned = datetime.now()
                logger.info("ID %d assigned to the local node", peer.id)
                announcement = NodeAnnouncement(
                    type="NEW_NODE", ip=peer.ip, port=peer.port, id=peer.id
                )
                self._broadcast(announcement)
                return announcement
            return None

        if msg.type == "NEW_NODE":
            with self._lock:
                if key in self.assigned:
                    return None
                self.assigned[key] = msg.id
                if msg.id >= self.next_id:
                    self.next_id = msg.id + 1
            logger.info("node %s registered with ID %d", key, msg.id)
            peer.add_peer(PeerInfo(id=msg.id, ip=msg.ip, port=msg.port))
        return None


def broadcast_hello(peer: Peer, stop: threading.Event | None = None) -> None:
    """Broadcast HELLO every few seconds while the node has no ID, until stopped."""
    event = stop if stop is not None else peer.stop_event
    while True:
        if peer.id == 0:
            hello = NodeAnnouncement(type="HELLO", ip=peer.ip, port=peer.port)
            try:
                _send(hello.to_json(), BROADCAST_ADDRESS, broadcast=True)
            except OSError as exc:
                logger.warning("could not broadcast HELLO: %s", exc)
            else:
                peer.last_hello_sent = datetime.now()
                logger.info("HELLO sent from %s:%s", peer.ip, peer.port)
        if event.wait(BROADCAST_INTERVAL):
            return


def listen_for_broadcasts(peer: Peer, registry: IdRegistry | None = None) -> None:
    """Receive announcements on the discovery port until the node is stopped."""
    handler = registry if registry is not None else IdRegistry()
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("", discovery_port()))
    except OSError as exc:
        logger.error("could not listen for broadcasts: %s", exc)
        return
    with sock:
        sock.settimeout(_POLL)
        while not peer.stop_event.is_set():
            try:
                data, _ = sock.recvfrom(_RECV_SIZE)
            except socket.timeout:
                continue
            except OSError:
                continue
            threading.Thread(target=handler.handle, args=(data, peer), daemon=True).start()