# p2pfs

A small peer-to-peer file sharing node for a local network. It needs only the
Python standard library (the window uses `tkinter`).

## What a node does

Running `p2pfs` starts a node that:

- broadcasts UDP `HELLO` announcements every 5 seconds while it has no ID,
  answers other nodes' `HELLO` with `ASSIGN_ID`, and records nodes announced
  with `NEW_NODE` as known peers; if no ID arrives within 5 seconds it takes
  ID 1 as the first node;
- listens on TCP for incoming files, writes each into `shared/`, checks it
  against the SHA-256 hash sent with it, and unpacks it there when it is a ZIP
  (folders are sent as ZIP archives); the same port answers requests for the
  tree of `shared/`;
- retries failed transfers every 10 seconds from a queue kept in
  `log/retry_queue.json`;
- records operations (transfers, hash checks, unpacking, failed sends) in the
  JSON log `log/oplog.json`;
- shows a window with the local files of `shared/` and a panel per known node,
  with buttons to refresh the list, delete the selected file and send it to
  every other known node. Double-clicking a file opens it with `xdg-open`.

The `shared/` folder is relative to the working directory and must exist for
received files to be saved.

## Installation

```
pip install .
```

## Running a node

```
p2pfs
p2pfs --port 8002
p2pfs --headless
```

- `--port` sets the TCP port for files (default 8001).
- `--headless` runs without the window until interrupted.

Discovery uses UDP port 48999; set the `DISCOVERY_PORT` environment variable
to use another one.

## Using it as a library

```python
from p2pfs.archive import calculate_sha256, zip_folder, unzip_file
from p2pfs.files import build_file_tree, list_files
from p2pfs.oplog import default_log

digest = calculate_sha256("shared/notes.txt")
tree = build_file_tree("shared")
for op in default_log().read():
    print(op.type, op.path, op.time)
```

The modules:

- `p2pfs.node` — `Peer` (`send_file(path, "host:port")`, `start_listener()`,
  `retry_pending()`, `request_file_tree(addr)`), `PeerInfo`, `SendError`,
  `get_local_ip()`.
- `p2pfs.discovery` — `NodeAnnouncement`, `IdRegistry`, `broadcast_hello`,
  `listen_for_broadcasts`, `broadcast_new_node`, `send_udp_message`.
- `p2pfs.healthcheck` — `check_peer_alive`, `get_live_peers`, a line-based
  TCP handshake (`start_handshake_listener`, `send_hello_and_receive_peers`,
  `merge_peer_lists`) and `save_peers` / `load_peers` for JSON peer lists.
- `p2pfs.server` — `handle_message`, `handle_connection` and `start_server`
  for JSON `Message` requests (`TRANSFER`, `DELETE`, `SYNC`, `SYNC_REQUEST`,
  `VIEW`) from `p2pfs.message`.
- `p2pfs.files` — saving, deleting, listing, tree building and
  `sync_with_logs` for applying remote operations newer than the local log.
- `p2pfs.oplog` and `p2pfs.retry` — the operation log and retry queue files.

## Limitations

- The `p2pfs` command does not start `p2pfs.server` or the handshake listener
  of `p2pfs.healthcheck`; they are only available to call from code, so nodes
  started with the command do not exchange `SYNC` logs or peer lists.
- The window is built once at start-up: nodes discovered afterwards do not get
  a panel, and panels for other nodes show only their address and whether they
  were reachable, not their files.

## Tests

```
pip install .[test]
pytest
```