from pathlib import Path

import pytest

from foldersync.sync.local_tree import FilesystemLocalTree, LocalFolder, folder_paths


def _tree(tmp_path: Path) -> FilesystemLocalTree:
    root = tmp_path / "library"
    (root / "Albums" / "2024").mkdir(parents=True)
    (root / ".git").mkdir()
    (root / "Albums" / "2024" / "cover.jpg").write_bytes(b"jpeg")
    (root / "notes.txt").write_bytes(b"notes")
    (root / ".hidden").write_bytes(b"x")
    return FilesystemLocalTree(str(root), exclude_dirs=[".git"])


def test_folder_paths_joins_names():
    folders = [LocalFolder("b", "2024", "a"), LocalFolder("a", "Albums")]
    assert folder_paths(folders) == {"a": "Albums", "b": "Albums/2024"}


def test_list_folders_and_files_skip_excluded_entries(tmp_path):
    tree = _tree(tmp_path)

    folders = {f.id: f for f in tree.list_folders()}
    root_files = [f.name for f in tree.list_files(None)]

    assert set(folders) == {"Albums", "Albums/2024"}
    assert folders["Albums/2024"].parent_id == "Albums"
    assert root_files == ["notes.txt"]
    [cover] = tree.list_files("Albums/2024")
    assert cover.id == "Albums/2024/cover.jpg"
    assert cover.size == 4


def test_write_create_move_rename_delete(tmp_path):
    tree = _tree(tmp_path)

    tree.write_content("notes.txt", b"updated")
    assert tree.read_content("notes.txt") == b"updated"

    folder = tree.create_folder(None, "Archive")
    ref = tree.create_file(folder, "a.txt", b"a")
    assert ref == "Archive/a.txt"

    moved = tree.move(ref, "Albums")
    assert moved == "Albums/a.txt"
    renamed = tree.rename(moved, "b.txt")
    assert renamed == "Albums/b.txt"
    assert tree.read_content(renamed) == b"a"

    tree.delete("Albums")
    assert tree.get_local_mtime("Albums/b.txt") is None
    assert [f.id for f in tree.list_folders()] == ["Archive"]


def test_refs_cannot_escape_root(tmp_path):
    tree = _tree(tmp_path)
    with pytest.raises(ValueError):
        tree.read_content("../outside.txt")


def test_missing_root_lists_nothing(tmp_path):
    tree = FilesystemLocalTree(str(tmp_path / "nope"))
    assert tree.list_folders() == []
    assert tree.list_files(None) == []
