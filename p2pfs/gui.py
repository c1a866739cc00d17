"""Desktop window listing the shared folder and the known nodes."""

from __future__ import annotations

import logging
import os
import socket
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import Any

from p2pfs.files import FileInfo, FileNode, list_files
from p2pfs.node import Peer, PeerInfo, SendError

logger = logging.getLogger(__name__)

BACKGROUND_COLOR = "#222831"
PANEL_COLOR = "#393E46"
BORDER_COLOR = "#00ADB5"
SELECTED_COLOR = "#007AFF"
TEXT_PRIMARY = "#EEEEEE"
TEXT_SECONDARY = "#C8C8C8"

TIME_FORMAT = "%d/%m/%Y %H:%M"
REACHABLE_TIMEOUT = 0.5
TREE_INDENT = "    "
HIDDEN_PREFIX = "recibido"
SHARED_NAME = "shared"


class Icon(Enum):
    """Kinds of file icons shown next to file names."""

    DOCUMENT = "📄"
    AUDIO = "🎵"
    VIDEO = "🎬"
    IMAGE = "🖼"
    FILE = "📁"


_ICONS_BY_EXTENSION = {
    **dict.fromkeys((".txt", ".log", ".md"), Icon.DOCUMENT),
    **dict.fromkeys((".pdf", ".doc", ".docx", ".ppt", ".pptx"), Icon.DOCUMENT),
    **dict.fromkeys((".mp3", ".wav"), Icon.AUDIO),
    **dict.fromkeys((".mp4", ".avi", ".mov", ".mkv"), Icon.VIDEO),
    **dict.fromkeys((".png", ".jpg", ".jpeg", ".gif", ".bmp"), Icon.IMAGE),
}


@dataclass(frozen=True)
class TreeRow:
    """One line of a rendered file tree."""

    text: str
    bold: bool


def _extension(name: str) -> str:
    dot = name.rfind(".")
    if dot < 0 or "/" in name[dot:] or os.sep in name[dot:]:
        return ""
    return name[dot:]


def icon_for_name(name: str) -> Icon:
    """Return the icon matching a file name's extension."""
    return _ICONS_BY_EXTENSION.get(_extension(name).lower(), Icon.FILE)


def tree_rows(node: FileNode, indent: int = 0) -> list[TreeRow]:
    """Flatten a file tree into indented rows; directories are bold."""
    rows = [TreeRow(text=TREE_INDENT * indent + node.name, bold=node.is_dir)]
    for child in node.children:
        rows.extend(tree_rows(child, indent + 1))
    return rows


def visible_files(base_dir: str | os.PathLike[str]) -> list[FileInfo]:
    """List the files shown for the shared folder, leaving out received leftovers."""
    root = os.fspath(base_dir)
    return [
        info
        for info in list_files(root)
        if info.full_path != root
        and info.name != SHARED_NAME
        and not info.name.startswith(HIDDEN_PREFIX)
    ]


def _reachable(info: PeerInfo) -> bool:
    try:
        with socket.create_connection((info.ip, int(info.port)), timeout=REACHABLE_TIMEOUT):
            return True
    except (OSError, ValueError):
        return False


def _row_text(info: FileInfo) -> str:
    return f"{icon_for_name(info.name).value}  {info.name}    {info.mod_time.strftime(TIME_FORMAT)}"


class _App:
    """The main window and its state."""

    def __init__(self, self_id: int, peers: list[PeerInfo], peer: Peer) -> None:
        import tkinter as tk
        from tkinter import messagebox

        self._tk = tk
        self._messagebox = messagebox
        self.self_id = self_id
        self.peers = peers
        self.peer = peer
        self.selected: FileInfo | None = None
        self.local_files: list[FileInfo] = []
        self.local_list: Any = None

        self.root = tk.Tk()
        self.root.title(f"P2PFS - Nodo {self_id}")
        self.root.geometry("1200x800")
        self.root.configure(bg=BACKGROUND_COLOR)

        bar = tk.Frame(self.root, bg=BACKGROUND_COLOR)
        bar.pack(side=tk.TOP, fill=tk.X)
        tk.Button(bar, text="Refresh", command=self.refresh).pack(side=tk.LEFT)
        tk.Button(bar, text="Delete selected", command=self.delete_selected).pack(side=tk.LEFT)
        tk.Button(bar, text="Transfer file", command=self.transfer_selected).pack(side=tk.LEFT)

        self.status = tk.Label(
            self.root,
            text="🟢 System started",
            font=("TkDefaultFont", 10, "bold"),
            bg=BACKGROUND_COLOR,
            fg=TEXT_PRIMARY,
            anchor="w",
        )
        self.status.pack(side=tk.TOP, fill=tk.X)

        grid = tk.Frame(self.root, bg=BACKGROUND_COLOR)
        grid.pack(side=tk.TOP, fill=tk.BOTH, expand=True)
        for column in range(2):
            grid.columnconfigure(column, weight=1)
        for index, info in enumerate(self.peers):
            panel = self._build_panel(grid, info)
            panel.grid(row=index // 2, column=index % 2, padx=5, pady=5, sticky="nsew")

    def _build_panel(self, parent: Any, info: PeerInfo) -> Any:
        tk = self._tk
        is_local = info.id == self.self_id
        frame = tk.Frame(
            parent,
            bg=PANEL_COLOR,
            highlightbackground=BORDER_COLOR,
            highlightthickness=2,
            width=560,
            height=220,
        )
        title = "" if is_local else f"Machine {info.id} ({info.ip}:{info.port})"
        mark = "✔" if _reachable(info) else "✖"
        tk.Label(frame, text=f"{title} {mark}", bg=PANEL_COLOR, fg=TEXT_PRIMARY).pack()

        if not is_local:
            return frame

        try:
            tree = self.peer.request_file_tree(info.address())
        except (OSError, ValueError) as exc:
            logger.info("could not fetch file tree from %s: %s", info.address(), exc)
            tree = None
        if tree is None:
            tk.Label(frame, text="[!] No connection", bg=PANEL_COLOR, fg=TEXT_SECONDARY).pack(
                anchor="w"
            )
        else:
            for row in tree_rows(tree):
                weight = "bold" if row.bold else "normal"
                tk.Label(
                    frame,
                    text=row.text,
                    font=("TkDefaultFont", 10, weight),
                    bg=PANEL_COLOR,
                    fg=TEXT_PRIMARY,
                ).pack(anchor="w")

        self.local_list = tk.Listbox(
            frame,
            bg=PANEL_COLOR,
            fg=TEXT_PRIMARY,
            selectbackground=SELECTED_COLOR,
            activestyle="none",
        )
        self.local_list.pack(fill=tk.BOTH, expand=True)
        self.local_list.bind("<<ListboxSelect>>", self._on_select)
        self.local_list.bind("<Double-Button-1>", self._on_open)
        self.refresh()
        return frame

    def _on_select(self, _event: Any) -> None:
        chosen = self.local_list.curselection()
        if chosen:
            self.selected = self.local_files[chosen[0]]

    def _on_open(self, _event: Any) -> None:
        self._on_select(_event)
        if self.selected is None:
            return
        try:
            subprocess.Popen(["xdg-open", self.selected.full_path])
        except OSError as exc:
            logger.warning("could not open %s: %s", self.selected.full_path, exc)

    def refresh(self) -> None:
        """Reload the local file list."""
        try:
            files = visible_files(self.peer.shared_dir)
        except OSError:
            return
        self.local_files = files
        if self.local_list is not None:
            self.local_list.delete(0, self._tk.END)
            for info in files:
                self.local_list.insert(self._tk.END, _row_text(info))
        self.status.configure(text="✅ List updated")

    def delete_selected(self) -> None:
        """Delete the selected file."""
        if self.selected is None:
            self._messagebox.showinfo("Notice", "No file selected", parent=self.root)
            return
        try:
            os.remove(self.selected.full_path)
        except OSError as exc:
            self._messagebox.showerror("Error", str(exc), parent=self.root)
            return
        name = self.selected.name
        self.selected = None
        self.refresh()
        self.status.configure(text=f"🗑️ File deleted: {name}")

    def transfer_selected(self) -> None:
        """Send the selected file to every other known node."""
        if self.selected is None:
            self._messagebox.showinfo("Notice", "Select a file first", parent=self.root)
            return
        lines = []
        success = 0
        for info in self.peers:
            if info.port == self.peer.port:
                continue
            addr = info.address()
            try:
                self.peer.send_file(self.selected.full_path, addr)
            except SendError as exc:
                lines.append(f"❌ {addr}: {exc}")
            else:
                lines.append(f"✅ {addr}: Sent")
                success += 1
        self._messagebox.showinfo("Transfer", "\n".join(lines), parent=self.root)
        self.status.configure(text=f"📤 File sent to {success} node(s)")

    def run(self) -> None:
        """Show the window until it is closed."""
        self.root.mainloop()


def start_gui(self_id: int, peers: list[PeerInfo], peer: Peer) -> None:
    """Open the main window and block until it is closed."""
    _App(self_id, peers, peer).run()