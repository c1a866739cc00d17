import hashlib
import io
import ipaddress
import os
import socket
import tempfile
import threading
import time
import zipfile

import pytest

from p2pfs.archive import calculate_sha256
from p2pfs.node import MAX_SEND_ATTEMPTS, Peer, PeerInfo, SendError, get_local_ip
from p2pfs.oplog import OperationLog
from p2pfs.retry import PendingTask, RetryQueue


def _make_peer(root, peer_id=1):
    shared = root / "shared"
    shared.mkdir(parents=True, exist_ok=True)
    return Peer(
        id=peer_id,
        ip="127.0.0.1",
        port="0",
        shared_dir=str(shared),
        oplog=OperationLog(root / "oplog.json"),
        retry_queue=RetryQueue(root / "retry.json"),
        retry_delay=0,
        send_timeout=2.0,
    )


@pytest.fixture
def peer(tmp_path):
    return _make_peer(tmp_path / "node")


def _free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _closed_address():
    return f"127.0.0.1:{_free_port()}"


def _wait_for_port(port, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            socket.create_connection(("127.0.0.1", port), timeout=0.5).close()
            return
        except OSError:
            time.sleep(0.02)
    raise RuntimeError("listener did not start")


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _types(peer):
    return [op.type for op in peer.oplog.read()]


def _one_shot_receiver():
    server = socket.create_server(("127.0.0.1", 0))
    received = []

    def run():
        with server:
            conn, _ = server.accept()
            with conn:
                chunks = []
                while chunk := conn.recv(65536):
                    chunks.append(chunk)
            received.append(b"".join(chunks))

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return f"127.0.0.1:{server.getsockname()[1]}", received, thread


def _deliver(peer, payload):
    client, server = socket.socketpair()
    with client:
        client.sendall(payload)
        client.shutdown(socket.SHUT_WR)
        peer.handle_connection(server)


@pytest.fixture
def listening(tmp_path):
    node = _make_peer(tmp_path / "listener", peer_id=5)
    port = _free_port()
    node.port = str(port)
    thread = threading.Thread(target=node.start_listener, daemon=True)
    thread.start()
    _wait_for_port(port)
    yield node
    node.stop_event.set()
    thread.join(5)


def test_peer_info_address():
    assert PeerInfo(3, "10.0.0.7", "8001").address() == "10.0.0.7:8001"
    assert PeerInfo(2, "::1", "9000").address() == "[::1]:9000"


def test_add_peer_ignores_duplicate_address(peer):
    peer.add_peer(PeerInfo(2, "10.0.0.2", "8001"))
    peer.add_peer(PeerInfo(9, "10.0.0.2", "8001"))
    peer.add_peer(PeerInfo(3, "10.0.0.2", "8002"))
    assert peer.peers == [PeerInfo(2, "10.0.0.2", "8001"), PeerInfo(3, "10.0.0.2", "8002")]


def test_find_peer_by_id(peer):
    peer.add_peer(PeerInfo(2, "10.0.0.2", "8001"))
    peer.add_peer(PeerInfo(4, "10.0.0.4", "8001"))
    assert peer.find_peer_by_id(4) == PeerInfo(4, "10.0.0.4", "8001")
    assert peer.find_peer_by_id(7) is None


def test_get_local_ip_is_ipv4():
    assert ipaddress.ip_address(get_local_ip()).version == 4


def test_handle_connection_saves_file_with_valid_hash(peer):
    content = b"hello from another node"
    digest = hashlib.sha256(content).hexdigest()
    _deliver(peer, b"greeting.txt\n" + digest.encode() + b"\n" + content)
    assert (peer_shared(peer) / "greeting.txt").read_bytes() == content
    assert _types(peer) == ["TRANSFER", "HASH_OK"]
    assert [op.path for op in peer.oplog.read()] == ["greeting.txt", "greeting.txt"]


def peer_shared(peer):
    from pathlib import Path

    return Path(peer.shared_dir)


def test_handle_connection_reports_hash_mismatch(peer):
    wrong = hashlib.sha256(b"other").hexdigest()
    _deliver(peer, b"data.bin\n" + wrong.encode() + b"\n" + b"actual")
    assert (peer_shared(peer) / "data.bin").read_bytes() == b"actual"
    assert _types(peer) == ["TRANSFER", "HASH_FAIL"]


def test_handle_connection_unpacks_zip(peer):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("folder/a.txt", "inside")
    content = buffer.getvalue()
    digest = hashlib.sha256(content).hexdigest()
    _deliver(peer, b"bundle.zip\n" + digest.encode() + b"\n" + content)
    shared = peer_shared(peer)
    assert (shared / "folder" / "a.txt").read_text() == "inside"
    assert not (shared / "bundle.zip").exists()
    assert _types(peer) == ["TRANSFER", "HASH_OK", "UNZIP"]


def test_handle_connection_bad_zip_is_kept(peer):
    content = b"not an archive"
    digest = hashlib.sha256(content).hexdigest()
    _deliver(peer, b"broken.zip\n" + digest.encode() + b"\n" + content)
    assert (peer_shared(peer) / "broken.zip").read_bytes() == content
    assert _types(peer) == ["TRANSFER", "HASH_OK", "UNZIP_FAIL"]


def test_handle_connection_without_header_does_nothing(peer):
    _deliver(peer, b"no newline")
    assert list(peer_shared(peer).iterdir()) == []
    assert peer.oplog.read() == []


def test_send_file_requires_assigned_id(peer, tmp_path):
    peer.id = 0
    source = tmp_path / "x.txt"
    source.write_bytes(b"x")
    with pytest.raises(SendError):
        peer.send_file(source, "127.0.0.1:1")
    assert peer.oplog.read() == []


def test_send_file_missing_source(peer, tmp_path):
    with pytest.raises(SendError):
        peer.send_file(tmp_path / "missing.txt", "127.0.0.1:1")
    assert peer.retry_queue.load() == []


def test_send_file_writes_header_and_content(peer, tmp_path):
    source = tmp_path / "note.txt"
    source.write_bytes(b"some content")
    addr, received, thread = _one_shot_receiver()
    peer.send_file(source, addr)
    thread.join(5)
    digest = calculate_sha256(source)
    assert received == [b"note.txt\n" + digest.encode() + b"\n" + b"some content"]
    assert _types(peer) == ["TRANSFER"]


def test_send_folder_sends_zip(peer, tmp_path):
    folder = tmp_path / "docs"
    folder.mkdir()
    (folder / "a.txt").write_text("alpha")
    addr, received, thread = _one_shot_receiver()
    peer.send_file(folder, addr)
    thread.join(5)
    name, digest, body = received[0].split(b"\n", 2)
    assert name == b"docs.zip"
    assert hashlib.sha256(body).hexdigest().encode() == digest
    with zipfile.ZipFile(io.BytesIO(body)) as archive:
        assert archive.read("docs/a.txt") == b"alpha"
    assert not os.path.exists(os.path.join(tempfile.gettempdir(), "docs.zip"))
    assert _types(peer) == ["TRANSFER"]
    assert peer.retry_queue.load() == []


def test_send_file_unreachable_queues_task(peer, tmp_path):
    source = tmp_path / "file.txt"
    source.write_bytes(b"data")
    addr = _closed_address()
    with pytest.raises(SendError):
        peer.send_file(source, addr)
    assert _types(peer) == ["SEND_FAIL"] * (MAX_SEND_ATTEMPTS + 1)
    assert peer.retry_queue.load() == [
        PendingTask(type="TRANSFER", file_path=str(source), target=addr, retries=MAX_SEND_ATTEMPTS)
    ]


def test_retry_pending_with_empty_queue(peer):
    assert peer.retry_pending() == []
    assert not peer.retry_queue.path.exists()


def test_retry_pending_sends_and_keeps_other_tasks(peer, tmp_path):
    source = tmp_path / "file.txt"
    source.write_bytes(b"payload")
    addr, received, thread = _one_shot_receiver()
    other = PendingTask(type="DELETE", file_path="x", target="127.0.0.1:1", retries=2)
    peer.retry_queue.save([PendingTask("TRANSFER", str(source), addr, 0), other])
    assert peer.retry_pending() == [other]
    thread.join(5)
    assert received[0].endswith(b"payload")
    assert peer.retry_queue.load() == [other]


def test_retry_pending_increments_failed_task(peer, tmp_path):
    source = tmp_path / "file.txt"
    source.write_bytes(b"payload")
    addr = _closed_address()
    peer.retry_queue.save([PendingTask("TRANSFER", str(source), addr, 0)])
    expected = [PendingTask("TRANSFER", str(source), addr, 1)]
    assert peer.retry_pending() == expected
    assert peer.retry_queue.load() == expected


def test_send_file_between_nodes(listening, tmp_path):
    sender = _make_peer(tmp_path / "sender", peer_id=2)
    source = tmp_path / "report.txt"
    source.write_bytes(b"report body")
    sender.send_file(source, f"127.0.0.1:{listening.port}")
    assert _wait_until(lambda: "HASH_OK" in _types(listening))
    assert (peer_shared(listening) / "report.txt").read_bytes() == b"report body"


def test_send_folder_between_nodes(listening, tmp_path):
    sender = _make_peer(tmp_path / "sender", peer_id=2)
    folder = tmp_path / "album"
    (folder / "inner").mkdir(parents=True)
    (folder / "inner" / "b.txt").write_text("beta")
    sender.send_file(folder, f"127.0.0.1:{listening.port}")
    assert _wait_until(lambda: "UNZIP" in _types(listening))
    shared = peer_shared(listening)
    assert (shared / "album" / "inner" / "b.txt").read_text() == "beta"
    assert not (shared / "album.zip").exists()


def test_request_file_tree(listening, tmp_path):
    shared = peer_shared(listening)
    (shared / "a.txt").write_text("a")
    (shared / "sub").mkdir()
    (shared / "sub" / "b.txt").write_text("b")
    asker = _make_peer(tmp_path / "asker", peer_id=3)
    tree = asker.request_file_tree(f"127.0.0.1:{listening.port}")
    assert tree.name == "shared"
    assert tree.is_dir
    assert [child.name for child in tree.children] == ["a.txt", "sub"]
    assert [child.name for child in tree.children[1].children] == ["b.txt"]


def test_request_file_tree_without_shared_folder(listening, tmp_path):
    listening.shared_dir = str(tmp_path / "absent")
    asker = _make_peer(tmp_path / "asker", peer_id=3)
    with pytest.raises(ValueError):
        asker.request_file_tree(f"127.0.0.1:{listening.port}")