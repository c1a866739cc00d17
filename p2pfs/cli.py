"""Command that starts a node: discovery, file server, retries and the window."""

from __future__ import annotations

import argparse
import logging
import threading
from datetime import datetime

from p2pfs.discovery import (
    IdRegistry,
    NodeAnnouncement,
    broadcast_hello,
    broadcast_new_node,
    listen_for_broadcasts,
)
from p2pfs.node import Peer, get_local_ip

logger = logging.getLogger(__name__)

DEFAULT_PORT = "8001"
INITIAL_ID_DELAY = 5.0
RETRY_INTERVAL = 10.0


def assign_initial_id(peer: Peer, delay: float = INITIAL_ID_DELAY) -> bool:
    """After delay seconds, take ID 1 if no ID was assigned; return whether it did."""
    if peer.stop_event.wait(delay):
        return False
    if peer.id != 0:
        return False
    logger.warning("no ASSIGN_ID received, taking ID 1 as the first node")
    peer.id = 1
    peer.last_id_assigned = datetime.now()
    broadcast_new_node(NodeAnnouncement(type="NEW_NODE", ip=peer.ip, port=peer.port, id=peer.id))
    return True


def _port(value: str) -> str:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {value}") from None
    if not 0 < number < 65536:
        raise argparse.ArgumentTypeError(f"port out of range: {value}")
    return str(number)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="p2pfs", description="Peer-to-peer file sharing node.")
    parser.add_argument("--port", type=_port, default=DEFAULT_PORT, help="TCP port for files")
    parser.add_argument("--headless", action="store_true", help="run without the window")
    return parser


def _spawn(target, *args) -> None:
    threading.Thread(target=target, args=args, daemon=True).start()


def main(argv: list[str] | None = None) -> int:
    """Start a node and run until the window closes or the process is interrupted."""
    args = _parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    local_ip = get_local_ip()
    print("This machine has IP:", local_ip)
    peer = Peer(id=0, ip=local_ip, port=args.port)
    registry = IdRegistry()

    _spawn(listen_for_broadcasts, peer, registry)
    _spawn(broadcast_hello, peer)
    _spawn(peer.start_listener)
    _spawn(peer.retry_worker, RETRY_INTERVAL)
    _spawn(assign_initial_id, peer, INITIAL_ID_DELAY)

    try:
        if args.headless:
            while not peer.stop_event.wait(1.0):
                pass
        else:
            from p2pfs.gui import start_gui

            start_gui(peer.id, peer.peers, peer)
    except KeyboardInterrupt:
        pass
    finally:
        peer.stop_event.set()
    return 0