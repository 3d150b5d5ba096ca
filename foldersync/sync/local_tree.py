from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass
class LocalFolder:
    id: str
    name: str
    parent_id: str | None = None


@dataclass
class LocalFile:
    id: str
    name: str
    folder_id: str | None = None
    mtime: float = 0.0
    size: int = 0


class LocalTree(Protocol):
    """Host-library folder/attachment storage as seen by the sync engine.

    ``None`` as a folder id means the library root.
    """

    def list_folders(self) -> list[LocalFolder]: ...

    def list_files(self, folder_id: str | None) -> list[LocalFile]: ...

    def get_local_mtime(self, ref: str) -> float | None: ...

    def read_content(self, ref: str) -> bytes: ...

    def write_content(self, ref: str, data: bytes) -> None: ...

    def create_folder(self, parent_id: str | None, name: str) -> str: ...

    def create_file(self, folder_id: str | None, name: str, data: bytes) -> str: ...

    def delete(self, ref: str) -> None: ...

    def move(self, ref: str, new_parent: str | None) -> str: ...

    def rename(self, ref: str, new_name: str) -> str: ...


def folder_paths(folders: list[LocalFolder]) -> dict[str, str]:
    """Map folder id -> slash-joined path of names from the root."""
    by_id = {f.id: f for f in folders}
    out: dict[str, str] = {}

    def resolve(folder_id: str, seen: set[str]) -> str:
        if folder_id in out:
            return out[folder_id]
        folder = by_id[folder_id]
        if folder.parent_id is None or folder.parent_id not in by_id or folder.parent_id in seen:
            path = folder.name
        else:
            path = f"{resolve(folder.parent_id, seen | {folder_id})}/{folder.name}"
        out[folder_id] = path
        return path

    for folder_id in by_id:
        resolve(folder_id, set())
    return out


def _safe_rel_path(value: str) -> str:
    return str(Path(value).as_posix()).lstrip("/")


class FilesystemLocalTree:
    """LocalTree over a plain directory; refs are POSIX paths relative to the root."""

    def __init__(self, root: str, exclude_dirs: list[str] | None = None, exclude_hidden: bool = True):
        self.root = Path(root).expanduser().resolve(strict=False)
        self.exclude_dirs = set(exclude_dirs or [])
        self.exclude_hidden = exclude_hidden

    def _abs(self, ref: str | None) -> Path:
        if not ref:
            return self.root
        target = (self.root / _safe_rel_path(ref)).resolve(strict=False)
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"ref_outside_root: {ref}")
        return target

    def _ref(self, path: Path) -> str:
        return _safe_rel_path(str(path.relative_to(self.root)))

    def _skip_dir(self, name: str) -> bool:
        return name in self.exclude_dirs or (self.exclude_hidden and name.startswith("."))

    def list_folders(self) -> list[LocalFolder]:
        if not self.root.exists():
            return []
        folders: list[LocalFolder] = []
        for root, dirnames, _filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if not self._skip_dir(d))
            root_path = Path(root)
            parent = None if root_path == self.root else self._ref(root_path)
            for d in dirnames:
                folders.append(LocalFolder(id=self._ref(root_path / d), name=d, parent_id=parent))
        return folders

    def list_files(self, folder_id: str | None) -> list[LocalFile]:
        base = self._abs(folder_id)
        if not base.is_dir():
            return []
        files: list[LocalFile] = []
        for entry in sorted(base.iterdir()):
            if not entry.is_file():
                continue
            if self.exclude_hidden and entry.name.startswith("."):
                continue
            st = entry.stat()
            files.append(
                LocalFile(
                    id=self._ref(entry),
                    name=entry.name,
                    folder_id=folder_id,
                    mtime=st.st_mtime,
                    size=st.st_size,
                )
            )
        return files

    def get_local_mtime(self, ref: str) -> float | None:
        path = self._abs(ref)
        if not path.exists():
            return None
        return path.stat().st_mtime

    def read_content(self, ref: str) -> bytes:
        return self._abs(ref).read_bytes()

    def write_content(self, ref: str, data: bytes) -> None:
        path = self._abs(ref)
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=str(path.parent), delete=False) as tmp:
            tmp.write(data)
            tmp_path = Path(tmp.name)
        try:
            shutil.move(str(tmp_path), str(path))
        finally:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)

    def create_folder(self, parent_id: str | None, name: str) -> str:
        path = self._abs(parent_id) / name
        path.mkdir(parents=True, exist_ok=True)
        return self._ref(path)

    def create_file(self, folder_id: str | None, name: str, data: bytes) -> str:
        ref = self._ref(self._abs(folder_id) / name)
        self.write_content(ref, data)
        return ref

    def delete(self, ref: str) -> None:
        path = self._abs(ref)
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()

    def move(self, ref: str, new_parent: str | None) -> str:
        src = self._abs(ref)
        dest_dir = self._abs(new_parent)
        dest_dir.mkdir(parents=True, exist_ok=True)
        dest = dest_dir / src.name
        shutil.move(str(src), str(dest))
        return self._ref(dest)

    def rename(self, ref: str, new_name: str) -> str:
        src = self._abs(ref)
        dest = src.with_name(new_name)
        src.rename(dest)
        return self._ref(dest)
