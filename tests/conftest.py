from __future__ import annotations

import itertools
from pathlib import Path

import pytest

from foldersync.core.config import AppConfig
from foldersync.core.db import init_db
from foldersync.core.errors import CursorReset, ReauthorizationRequired, RemoteError
from foldersync.core.log_sink import LogSink
from foldersync.providers.dropbox import DeltaPage, OAuthState, RemoteEntry, content_hash
from foldersync.service import SyncService
from foldersync.sync.delta import DeltaDetector
from foldersync.sync.local_tree import LocalFile, LocalFolder
from foldersync.sync.mappings import MappingStore
from foldersync.sync.paths import normalize_remote_path, path_key, remote_parent
from foldersync.sync.queue import TaskQueue
from foldersync.sync.worker import WorkerPool

REMOTE_ROOT = "/FolderSync"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, sec: float) -> None:
        self.now += sec


class MemoryLocalTree:
    """In-memory LocalTree with opaque ids and a monotonic mtime tick."""

    def __init__(self):
        self.folders: dict[str, LocalFolder] = {}
        self.files: dict[str, LocalFile] = {}
        self.data: dict[str, bytes] = {}
        self._ids = itertools.count(1)
        self._tick = 1_000.0

    def _next_mtime(self) -> float:
        self._tick += 10
        return self._tick

    # test helpers

    def add_file(self, name: str, data: bytes, folder_id: str | None = None, mtime: float | None = None) -> str:
        ref = self.create_file(folder_id, name, data)
        if mtime is not None:
            self.files[ref].mtime = mtime
        return ref

    def edit(self, ref: str, data: bytes, mtime: float | None = None) -> None:
        self.data[ref] = data
        self.files[ref].size = len(data)
        self.files[ref].mtime = mtime if mtime is not None else self._next_mtime()

    def path_of(self, ref: str) -> str:
        if ref in self.files:
            item = self.files[ref]
            parent = item.folder_id
        else:
            item = self.folders[ref]
            parent = item.parent_id
        parts = [item.name]
        while parent is not None:
            folder = self.folders[parent]
            parts.insert(0, folder.name)
            parent = folder.parent_id
        return "/".join(parts)

    def find(self, rel_path: str) -> str | None:
        for ref in list(self.files) + list(self.folders):
            if self.path_of(ref) == rel_path:
                return ref
        return None

    # LocalTree

    def list_folders(self) -> list[LocalFolder]:
        return [LocalFolder(f.id, f.name, f.parent_id) for f in self.folders.values()]

    def list_files(self, folder_id: str | None) -> list[LocalFile]:
        return [
            LocalFile(f.id, f.name, f.folder_id, f.mtime, f.size)
            for f in self.files.values()
            if f.folder_id == folder_id
        ]

    def get_local_mtime(self, ref: str) -> float | None:
        item = self.files.get(ref)
        return item.mtime if item else None

    def read_content(self, ref: str) -> bytes:
        return self.data[ref]

    def write_content(self, ref: str, data: bytes) -> None:
        self.edit(ref, data)

    def create_folder(self, parent_id: str | None, name: str) -> str:
        folder_id = f"folder-{next(self._ids)}"
        self.folders[folder_id] = LocalFolder(folder_id, name, parent_id)
        return folder_id

    def create_file(self, folder_id: str | None, name: str, data: bytes) -> str:
        ref = f"file-{next(self._ids)}"
        self.files[ref] = LocalFile(ref, name, folder_id, self._next_mtime(), len(data))
        self.data[ref] = data
        return ref

    def delete(self, ref: str) -> None:
        if ref in self.files:
            del self.files[ref]
            del self.data[ref]
            return
        if ref in self.folders:
            for child in [f.id for f in self.folders.values() if f.parent_id == ref]:
                self.delete(child)
            for child in [f.id for f in self.files.values() if f.folder_id == ref]:
                self.delete(child)
            del self.folders[ref]

    def move(self, ref: str, new_parent: str | None) -> str:
        if ref in self.files:
            self.files[ref].folder_id = new_parent
        else:
            self.folders[ref].parent_id = new_parent
        return ref

    def rename(self, ref: str, new_name: str) -> str:
        target = self.files.get(ref) or self.folders[ref]
        target.name = new_name
        return ref


def _under(key: str, root: str) -> bool:
    return not root or key == root or key.startswith(root + "/")


class FakeDropbox:
    """Remote store with a change log; cursors are offsets into that log."""

    def __init__(self):
        self.files: dict[str, dict] = {}
        self.folders: dict[str, str] = {}
        self.changes: list[RemoteEntry] = []
        self.calls: list[tuple] = []
        self.errors: dict[str, list[Exception]] = {}
        self.reset_cursor = False
        self._ids = itertools.count(1)
        self._tick = 1_000.0

    def _next_mtime(self) -> float:
        self._tick += 10
        return self._tick

    def _entry(self, key: str) -> RemoteEntry:
        f = self.files[key]
        return RemoteEntry(
            tag="file",
            path_display=f["path"],
            path_lower=key,
            id=f["id"],
            rev=f["rev"],
            content_hash=content_hash(f["data"]),
            server_modified=f["mtime"],
            size=len(f["data"]),
        )

    def _ensure_parents(self, path: str) -> None:
        parent = remote_parent(path)
        missing = []
        while parent:
            if path_key(parent) not in self.folders:
                missing.insert(0, parent)
            parent = remote_parent(parent)
        for folder in missing:
            self.folders[path_key(folder)] = folder
            self.changes.append(RemoteEntry("folder", folder, path_key(folder), id=f"id:{next(self._ids)}"))

    def _maybe_fail(self, op: str) -> None:
        pending = self.errors.get(op)
        if pending:
            raise pending.pop(0)

    # test helpers

    def fail(self, op: str, *errors: Exception) -> None:
        self.errors.setdefault(op, []).extend(errors)

    def count(self, op: str | None = None) -> int:
        return len([c for c in self.calls if op is None or c[0] == op])

    def put(self, path: str, data: bytes, mtime: float | None = None) -> RemoteEntry:
        path = normalize_remote_path(path)
        key = path_key(path)
        self._ensure_parents(path)
        previous = self.files.get(key)
        self.files[key] = {
            "path": previous["path"] if previous else path,
            "data": data,
            "id": previous["id"] if previous else f"id:{next(self._ids)}",
            "rev": f"rev{next(self._ids)}",
            "mtime": mtime if mtime is not None else self._next_mtime(),
        }
        entry = self._entry(key)
        self.changes.append(entry)
        return entry

    def remove(self, path: str) -> bool:
        key = path_key(path)
        gone = [k for k in self.files if _under(k, key)]
        gone_folders = [k for k in self.folders if _under(k, key)]
        for k in gone:
            del self.files[k]
        for k in gone_folders:
            del self.folders[k]
        if gone or gone_folders:
            self.changes.append(RemoteEntry("deleted", normalize_remote_path(path), key))
        return bool(gone or gone_folders)

    def relocate(self, src: str, dst: str) -> RemoteEntry:
        dst = normalize_remote_path(dst)
        if path_key(src) in self.folders:
            return self._relocate_folder(normalize_remote_path(src), dst)
        item = self.files.pop(path_key(src))
        item["path"] = dst
        self._ensure_parents(dst)
        self.files[path_key(dst)] = item
        self.changes.append(RemoteEntry("deleted", normalize_remote_path(src), path_key(src)))
        entry = self._entry(path_key(dst))
        self.changes.append(entry)
        return entry

    def _relocate_folder(self, src: str, dst: str) -> RemoteEntry:
        old_key = path_key(src)
        if path_key(dst) in self.folders or path_key(dst) in self.files:
            raise RemoteError("api_error_status_409: to/conflict/folder/", status_code=409, error_summary="to/conflict/folder/")
        self._ensure_parents(dst)
        moved_folders = {k: p for k, p in self.folders.items() if _under(k, old_key)}
        moved_files = {k: f for k, f in self.files.items() if _under(k, old_key)}
        for k in moved_folders:
            del self.folders[k]
        for k in moved_files:
            del self.files[k]
        self.changes.append(RemoteEntry("deleted", src, old_key))
        for k, p in sorted(moved_folders.items()):
            new_path = dst + p[len(src):]
            self.folders[path_key(new_path)] = new_path
            self.changes.append(RemoteEntry("folder", new_path, path_key(new_path), id=f"id:folder:{k}"))
        for k, item in sorted(moved_files.items()):
            item["path"] = dst + item["path"][len(src):]
            self.files[path_key(item["path"])] = item
            self.changes.append(self._entry(path_key(item["path"])))
        return RemoteEntry("folder", dst, path_key(dst))

    def data_at(self, path: str) -> bytes | None:
        item = self.files.get(path_key(path))
        return item["data"] if item else None

    # DropboxClient

    def list_delta(self, cursor: str | None = None, path: str = "") -> DeltaPage:
        self.calls.append(("list_delta", cursor, path))
        self._maybe_fail("list_delta")
        root = path_key(path)
        if cursor is not None and self.reset_cursor:
            self.reset_cursor = False
            raise CursorReset("cursor_reset", status_code=409, error_summary="reset/")
        if cursor is None:
            if root and root not in self.folders and not any(_under(k, root) for k in self.files):
                raise RemoteError("api_error_status_409: path/not_found/", status_code=409, error_summary="path/not_found/")
            entries = [
                RemoteEntry("folder", p, k, id=f"id:folder:{k}")
                for k, p in sorted(self.folders.items())
                if _under(k, root)
            ]
            entries += [self._entry(k) for k in sorted(self.files) if _under(k, root)]
        else:
            entries = [e for e in self.changes[int(cursor):] if _under(path_key(e.path_display), root)]
        return DeltaPage(entries=entries, cursor=str(len(self.changes)), has_more=False)

    def upload(self, path: str, data: bytes, mode: str = "overwrite") -> RemoteEntry:
        self.calls.append(("upload", path))
        self._maybe_fail("upload")
        return self.put(path, data)

    def download(self, path: str) -> tuple[bytes, RemoteEntry]:
        self.calls.append(("download", path))
        self._maybe_fail("download")
        key = path_key(path)
        if key not in self.files:
            raise RemoteError("api_error_status_409: path/not_found/", status_code=409, error_summary="path/not_found/")
        return self.files[key]["data"], self._entry(key)

    def delete(self, path: str) -> bool:
        self.calls.append(("delete", path))
        self._maybe_fail("delete")
        return self.remove(path)

    def move(self, src: str, dst: str) -> RemoteEntry:
        self.calls.append(("move", src, dst))
        self._maybe_fail("move")
        return self.relocate(src, dst)

    def create_folder(self, path: str) -> RemoteEntry:
        self.calls.append(("create_folder", path))
        self._maybe_fail("create_folder")
        path = normalize_remote_path(path)
        self._ensure_parents(path)
        if path_key(path) not in self.folders:
            self.folders[path_key(path)] = path
            self.changes.append(RemoteEntry("folder", path, path_key(path), id=f"id:{next(self._ids)}"))
        return RemoteEntry("folder", path, path_key(path))

    def get_current_account(self) -> dict:
        self.calls.append(("get_current_account",))
        return {"account_id": "dbid:test"}


class FakeOAuth:
    def __init__(self, account_id: str = "dbid:test"):
        self.account_id = account_id
        self.revoked = False

    @property
    def state(self) -> OAuthState:
        return OAuthState.REVOKED if self.revoked else OAuthState.AUTHORIZED

    def ensure_authorized(self) -> None:
        if self.revoked:
            raise ReauthorizationRequired("credentials_revoked: refresh_failed")

    def get_valid_token(self) -> str:
        self.ensure_authorized()
        return "token"

    def status(self) -> dict:
        return {"state": self.state.value, "account_id": self.account_id}

    def disconnect(self) -> bool:
        self.revoked = True
        return True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    path = str(tmp_path / "runtime" / "service.db")
    init_db(path)
    return path


@pytest.fixture
def log(db_path) -> LogSink:
    return LogSink(db_path)


@pytest.fixture
def log_messages(log):
    def _messages(component: str | None = None, level: str | None = None) -> list[str]:
        items = log.list_logs(level=level, page_size=500)["items"]
        return [i["message"] for i in items if component is None or i["component"] == component]

    return _messages


@pytest.fixture
def queue(db_path, log, clock) -> TaskQueue:
    return TaskQueue(db_path, log, clock=clock)


@pytest.fixture
def mappings(db_path) -> MappingStore:
    return MappingStore(db_path)


@pytest.fixture
def local_tree() -> MemoryLocalTree:
    return MemoryLocalTree()


@pytest.fixture
def remote() -> FakeDropbox:
    return FakeDropbox()


@pytest.fixture
def oauth() -> FakeOAuth:
    return FakeOAuth()


@pytest.fixture
def detector(remote, local_tree, mappings, queue, log) -> DeltaDetector:
    return DeltaDetector(remote, local_tree, mappings, queue, log, remote_root=REMOTE_ROOT)


@pytest.fixture
def workers(queue, remote, local_tree, mappings, oauth, log) -> WorkerPool:
    return WorkerPool(queue, remote, local_tree, mappings, oauth, log, max_workers=2, remote_root=REMOTE_ROOT)


@pytest.fixture
def sync_all(detector, workers):
    """Run a full pass, drain the queue, then store a fresh cursor."""

    def _sync() -> dict:
        first = detector.run(full=True)
        workers.process_pending()
        detector.run(full=True)
        return first

    return _sync


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    runtime = tmp_path / "runtime"
    cfg = AppConfig()
    cfg.database.path = str(runtime / "service.db")
    cfg.logging.file = str(runtime / "service.log")
    cfg.auth.token_file = str(runtime / "tokens.json")
    cfg.auth.state_file = str(runtime / "state.json")
    cfg.auth.app_key = "app-key"
    cfg.auth.app_secret = "app-secret"
    cfg.sync.local_root = str(tmp_path / "library")
    cfg.sync.remote_root = REMOTE_ROOT
    return cfg


@pytest.fixture
def service(app_config, local_tree, remote, oauth):
    svc = SyncService(app_config, local_tree=local_tree, oauth=oauth, client=remote)
    yield svc
    svc.shutdown(wait=True)
