"""Handling of JSON messages received from other nodes over TCP."""

from __future__ import annotations

import json
import logging
import socket
import threading
import time

from p2pfs.files import delete_path, get_last_sync_time, save_file, sync_with_logs
from p2pfs.message import Message
from p2pfs.oplog import Operation, OperationLog, default_log

logger = logging.getLogger(__name__)


def _read_all(conn: socket.socket) -> bytes:
    chunks = []
    while chunk := conn.recv(65536):
        chunks.append(chunk)
    return b"".join(chunks)


def _parse_operations(data: bytes) -> list[Operation]:
    items = json.loads(data)
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValueError("operations must be a JSON array")
    return [Operation.from_dict(item) for item in items]


def handle_message(msg: Message, oplog: OperationLog | None = None) -> bytes | None:
    """Carry out a message and return the reply to send back, if there is one."""
    log = oplog if oplog is not None else default_log()
    logger.info("message received: %s from node %d", msg.type, msg.origin)

    if msg.type == "TRANSFER":
        try:
            save_file(msg.path, msg.data, log)
        except OSError as exc:
            logger.error("could not save file: %s", exc)
    elif msg.type == "DELETE":
        try:
            delete_path(msg.path)
        except OSError as exc:
            logger.error("could not delete file: %s", exc)
        else:
            log.append(Operation(type="DELETE", path=msg.path, time=int(time.time())))
    elif msg.type == "SYNC_REQUEST":
        return json.dumps([op.to_dict() for op in log.read()]).encode("utf-8")
    elif msg.type == "SYNC":
        try:
            ops = _parse_operations(msg.data)
        except (ValueError, TypeError) as exc:
            logger.error("could not parse SYNC operations: %s", exc)
            return None
        sync_with_logs(ops, get_last_sync_time(log), log)
    elif msg.type == "VIEW":
        pass
    else:
        logger.warning("unsupported message type: %s", msg.type)
    return None


def handle_connection(conn: socket.socket, oplog: OperationLog | None = None) -> None:
    """Read one message until the peer stops sending, act on it and reply."""
    with conn:
        try:
            data = _read_all(conn)
        except OSError as exc:
            logger.warning("could not read data: %s", exc)
            return
        try:
            msg = Message.from_json(data)
        except (ValueError, TypeError) as exc:
            logger.warning("could not parse message: %s", exc)
            return
        response = handle_message(msg, oplog)
        if response is not None:
            try:
                conn.sendall(response)
            except OSError as exc:
                logger.warning("could not send reply: %s", exc)


def start_server(port: str, oplog: OperationLog | None = None) -> None:
    """Serve messages on the given TCP port, one thread per connection."""
    try:
        listener = socket.create_server(("", int(port)))
    except (OSError, ValueError) as exc:
        logger.error("could not start server: %s", exc)
        return
    with listener:
        logger.info("server listening on :%s", port)
        while True:
            try:
                conn, _ = listener.accept()
            except OSError as exc:
                logger.warning("could not accept connection: %s", exc)
                continue
            threading.Thread(target=handle_connection, args=(conn, oplog), daemon=True).start()