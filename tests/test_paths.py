import pytest

from foldersync.core.errors import InvalidPath
from foldersync.sync.paths import (
    is_within,
    join_remote,
    normalize_remote_path,
    path_key,
    relative_to_root,
    remote_basename,
    remote_parent,
    validate_remote_path,
)


def test_normalize_remote_path_shapes():
    assert normalize_remote_path("FolderSync//a\\b/") == "/FolderSync/a/b"
    assert normalize_remote_path("/") == ""
    assert normalize_remote_path("") == ""


def test_normalize_remote_path_uses_nfc():
    assert normalize_remote_path("/Cafe\u0301.txt") == "/Caf\u00e9.txt"


def test_path_key_is_case_insensitive():
    assert path_key("/FolderSync/Report.PDF") == path_key("/foldersync/report.pdf")


def test_join_parent_and_basename():
    path = join_remote("/FolderSync", "Albums/2024", "cover.jpg")
    assert path == "/FolderSync/Albums/2024/cover.jpg"
    assert remote_parent(path) == "/FolderSync/Albums/2024"
    assert remote_basename(path) == "cover.jpg"
    assert remote_parent("/FolderSync") == ""


def test_is_within_matches_whole_segments():
    assert is_within("/FolderSync/a.txt", "/foldersync")
    assert is_within("/FolderSync", "/FolderSync")
    assert not is_within("/FolderSyncOld/a.txt", "/FolderSync")


def test_relative_to_root():
    assert relative_to_root("/FolderSync/Albums/a.jpg", "/FolderSync") == "Albums/a.jpg"
    assert relative_to_root("/FolderSync", "/FolderSync") == ""
    with pytest.raises(InvalidPath):
        relative_to_root("/Elsewhere/a.jpg", "/FolderSync")


@pytest.mark.parametrize(
    "value",
    [
        "",
        "/FolderSync/../etc/passwd",
        "/FolderSync/bad\x01name.txt",
        "/FolderSync/trailing /a.txt",
        "/FolderSync/" + "x" * 300,
    ],
)
def test_validate_remote_path_rejects(value):
    with pytest.raises(InvalidPath):
        validate_remote_path(value)


def test_validate_remote_path_enforces_length_limit():
    with pytest.raises(InvalidPath):
        validate_remote_path("/FolderSync/" + "a/" * 20, max_length=20)
    assert validate_remote_path("/FolderSync/a.txt") == "/FolderSync/a.txt"
