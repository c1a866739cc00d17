from datetime import datetime, timezone

import pytest

from p2pfs.files import FileNode
from p2pfs.gui import Icon, TreeRow, icon_for_name, tree_rows, visible_files


@pytest.mark.parametrize(
    "name, icon",
    [
        ("notes.txt", Icon.DOCUMENT),
        ("server.log", Icon.DOCUMENT),
        ("README.md", Icon.DOCUMENT),
        ("report.PDF", Icon.DOCUMENT),
        ("slides.pptx", Icon.DOCUMENT),
        ("song.mp3", Icon.AUDIO),
        ("sound.WAV", Icon.AUDIO),
        ("clip.mkv", Icon.VIDEO),
        ("movie.mov", Icon.VIDEO),
        ("photo.jpeg", Icon.IMAGE),
        ("anim.gif", Icon.IMAGE),
        ("archive.zip", Icon.FILE),
        ("noextension", Icon.FILE),
        (".txt", Icon.DOCUMENT),
    ],
)
def test_icon_for_name(name, icon):
    assert icon_for_name(name) is icon


def test_icon_ignores_dot_in_directory():
    assert icon_for_name("dir.txt/file") is Icon.FILE


def _node(name, is_dir, children=()):
    return FileNode(
        name=name,
        is_dir=is_dir,
        mod_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
        children=list(children),
    )


def test_tree_rows_indents_children_and_bolds_directories():
    tree = _node("shared", True, [_node("docs", True, [_node("a.txt", False)]), _node("b.txt", False)])
    assert tree_rows(tree) == [
        TreeRow("shared", True),
        TreeRow("    docs", True),
        TreeRow("        a.txt", False),
        TreeRow("    b.txt", False),
    ]


def test_tree_rows_starting_indent():
    rows = tree_rows(_node("leaf", False), 2)
    assert rows == [TreeRow("        leaf", False)]


def test_visible_files_skips_root_and_received(tmp_path):
    base = tmp_path / "shared"
    base.mkdir()
    (base / "a.txt").write_text("a")
    (base / "recibido_b.bin").write_text("b")
    (base / "sub").mkdir()
    (base / "sub" / "c.md").write_text("c")
    names = sorted(info.name for info in visible_files(base))
    assert names == ["a.txt", "c.md", "sub"]


def test_visible_files_missing_dir_is_empty(tmp_path):
    assert visible_files(tmp_path / "absent") == []