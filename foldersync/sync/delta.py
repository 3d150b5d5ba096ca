from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from foldersync.core.errors import CursorReset, DuplicatePath, ErrorKind, InvalidPath, RemoteError
from foldersync.core.log_sink import LogSink
from foldersync.providers.dropbox.client import DropboxClient, RemoteEntry, content_hash
from foldersync.sync.local_tree import LocalFile, LocalTree, folder_paths
from foldersync.sync.mappings import ROOT_FOLDER_ID, FileMapping, FolderMapping, MappingStore
from foldersync.sync.paths import (
    is_within,
    join_remote,
    normalize_remote_path,
    path_key,
    remote_parent,
    validate_remote_path,
)
from foldersync.sync.queue import SyncTask, TaskDirection, TaskQueue

PRIORITY_FOLDER = 5
PRIORITY_FILE = 10
PRIORITY_DELETE = 20


@dataclass
class Change:
    kind: str  # added | modified | deleted | moved
    remote_path: str
    fingerprint: str = ""
    mtime: float = 0.0
    entry: RemoteEntry | None = None
    local: LocalFile | None = None


@dataclass
class LocalSnapshot:
    files: dict[str, tuple[LocalFile, str]] = field(default_factory=dict)  # ref -> (file, remote path)
    folders: dict[str, str] = field(default_factory=dict)  # folder id -> remote path
    non_empty: set[str] = field(default_factory=set)


@dataclass
class RemoteSnapshot:
    by_ref: dict[str, Change] = field(default_factory=dict)
    added: dict[str, Change] = field(default_factory=dict)  # path key -> change
    folders: dict[str, RemoteEntry] = field(default_factory=dict)
    deleted_folders: dict[str, FolderMapping] = field(default_factory=dict)
    seen: set[str] = field(default_factory=set)
    has_children: set[str] = field(default_factory=set)


def _remote_payload(entry: RemoteEntry | None) -> dict[str, Any]:
    if entry is None:
        return {}
    return {
        "remote_id": entry.id,
        "rev": entry.rev,
        "content_hash": entry.content_hash,
        "server_modified": entry.server_modified,
        "size": entry.size,
    }


def _under(key: str, parents: set[str]) -> bool:
    return any(key == p or key.startswith(p + "/") for p in parents)


class DeltaDetector:
    """Reconciles the local tree with the remote listing and emits SyncTasks.

    With a stored cursor only the remote changes since that cursor are
    fetched. A full pass lists the whole remote root, which also reveals
    remote deletions by absence.
    """

    def __init__(
        self,
        client: DropboxClient,
        local_tree: LocalTree,
        mappings: MappingStore,
        queue: TaskQueue,
        log: LogSink,
        remote_root: str = "/FolderSync",
        tie_break: str = "remote",
        max_path_length: int = 4096,
    ):
        self.client = client
        self.local_tree = local_tree
        self.mappings = mappings
        self.queue = queue
        self.log = log
        self.remote_root = normalize_remote_path(remote_root)
        self.tie_break = tie_break if tie_break in ("local", "remote") else "remote"
        self.max_path_length = max_path_length

    def run(self, full: bool = False) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "mode": "full" if full else "incremental",
            "remote_entries": 0,
            "enqueued": 0,
            "by_direction": {},
            "skipped_duplicate": 0,
            "skipped_invalid": 0,
            "suppressed": 0,
            "conflicts": 0,
            "reconciled": 0,
        }

        entries, cursor, root_exists = self._fetch_remote(full, summary)
        summary["remote_entries"] = len(entries)

        file_maps = {m.local_ref: m for m in self.mappings.list_files()}
        folder_maps = [f for f in self.mappings.list_folders() if f.local_folder_id != ROOT_FOLDER_ID]

        local = self._scan_local(summary)
        remote = self._classify_remote(entries, file_maps, folder_maps, summary)
        if summary["mode"] == "full":
            self._detect_remote_absent(remote, file_maps, folder_maps, root_exists)
        local_changes, local_added = self._classify_local(local, file_maps)

        self._suppress: dict[TaskDirection, set[str]] = {}
        self._folder_moved = self._folder_moves(local, remote, folder_maps, file_maps, summary)
        delete_local_keys, delete_remote_keys = self._folder_deletions(
            local, remote, folder_maps, file_maps, local_changes, local_added, summary
        )
        self._suppress = {
            TaskDirection.DELETE_LOCAL: delete_local_keys,
            TaskDirection.DELETE_REMOTE: delete_remote_keys,
        }

        moved_to = set(self._folder_moved.values())
        for ref in sorted(set(local_changes) | set(remote.by_ref)):
            m = file_maps[ref]
            local_change = local_changes.get(ref)
            remote_change = remote.by_ref.get(ref)
            if local_change is not None and local_change.kind == "moved":
                if self._carried_by_folder(m, local_change):
                    local_change = None
                elif remote_change is None and _under(path_key(local_change.remote_path), moved_to):
                    # Moved into a folder that is itself still moving.
                    continue
            self._resolve_mapped(m, local_change, remote_change, summary)
        for key in sorted(set(local_added) | set(remote.added)):
            if key not in remote.added and _under(key, moved_to):
                # Uploaded on the next pass, once the folder has moved.
                continue
            self._resolve_unmapped(local_added.get(key), remote.added.get(key), summary)
        self._folder_creations(local, remote, folder_maps, summary)

        if cursor:
            self.mappings.set_cursor(cursor, self.remote_root)

        self.log.info("delta", "delta_pass_completed", **summary)
        return summary

    # -- remote side -------------------------------------------------------

    def _fetch_remote(self, full: bool, summary: dict[str, Any]) -> tuple[list[RemoteEntry], str, bool]:
        cursor = None if full else self.mappings.get_cursor()
        if not cursor:
            summary["mode"] = "full"
        try:
            return self._list_all(cursor)
        except CursorReset:
            self.log.notice("delta", "cursor_reset_full_listing", remote_root=self.remote_root)
            summary["mode"] = "full"
            return self._list_all(None)

    def _list_all(self, cursor: str | None) -> tuple[list[RemoteEntry], str, bool]:
        try:
            page = self.client.list_delta(cursor, path=self.remote_root)
        except RemoteError as e:
            if cursor is None and e.status_code == 409 and "not_found" in e.error_summary:
                self.log.notice("delta", "remote_root_missing", remote_root=self.remote_root)
                return [], "", False
            raise
        entries = list(page.entries)
        while page.has_more:
            page = self.client.list_delta(page.cursor, path=self.remote_root)
            entries.extend(page.entries)
        return entries, page.cursor, True

    def _classify_remote(
        self,
        entries: list[RemoteEntry],
        file_maps: dict[str, FileMapping],
        folder_maps: list[FolderMapping],
        summary: dict[str, Any],
    ) -> RemoteSnapshot:
        by_key = {m.path_key: m for m in file_maps.values()}
        by_id = {m.remote_id: m for m in file_maps.values() if m.remote_id}
        folders_by_key = {f.path_key: f for f in folder_maps}
        root_key = path_key(self.remote_root)
        snap = RemoteSnapshot()

        for entry in entries:
            if entry.tag == "deleted":
                key = path_key(entry.path_display or entry.path_lower)
                if key == root_key or not is_within(key, root_key):
                    continue
                for m in file_maps.values():
                    if not _under(m.path_key, {key}):
                        continue
                    earlier = snap.by_ref.get(m.local_ref)
                    if earlier is not None and earlier.kind == "moved" and not _under(path_key(earlier.remote_path), {key}):
                        # Moved out before its old folder went away.
                        continue
                    snap.by_ref[m.local_ref] = Change("deleted", m.remote_path)
                if key in folders_by_key:
                    snap.deleted_folders[key] = folders_by_key[key]
                for added_key in [k for k in snap.added if _under(k, {key})]:
                    del snap.added[added_key]
                snap.seen.discard(key)
                continue

            try:
                remote_path = validate_remote_path(entry.path_display, self.max_path_length)
            except InvalidPath as e:
                summary["skipped_invalid"] += 1
                self.log.warning("delta", "remote_entry_skipped", kind=e.kind.value, path=entry.path_display, error=e.message)
                continue

            key = path_key(remote_path)
            if key == root_key or not is_within(key, root_key):
                continue
            snap.seen.add(key)
            parent = path_key(remote_parent(remote_path))
            while parent and parent != root_key and is_within(parent, root_key):
                snap.has_children.add(parent)
                parent = path_key(remote_parent(parent))

            if entry.tag == "folder":
                snap.folders[key] = entry
                snap.deleted_folders.pop(key, None)
                continue

            change = Change("added", remote_path, entry.content_hash, entry.server_modified, entry=entry)
            mapping = by_id.get(entry.id) if entry.id else None
            mapping = mapping or by_key.get(key)
            if mapping is None:
                snap.added[key] = change
            elif mapping.path_key != key:
                change.kind = "moved"
                snap.by_ref[mapping.local_ref] = change
            elif entry.content_hash != mapping.fingerprint:
                change.kind = "modified"
                snap.by_ref[mapping.local_ref] = change
            else:
                snap.by_ref.pop(mapping.local_ref, None)
        return snap

    def _detect_remote_absent(
        self,
        remote: RemoteSnapshot,
        file_maps: dict[str, FileMapping],
        folder_maps: list[FolderMapping],
        root_exists: bool,
    ) -> None:
        if not root_exists:
            if file_maps or folder_maps:
                self.log.warning("delta", "remote_root_missing_deletions_skipped", remote_root=self.remote_root)
            return
        for m in file_maps.values():
            if m.path_key not in remote.seen and m.local_ref not in remote.by_ref:
                remote.by_ref[m.local_ref] = Change("deleted", m.remote_path)
        for f in folder_maps:
            if f.path_key not in remote.seen:
                remote.deleted_folders[f.path_key] = f

    # -- local side --------------------------------------------------------

    def _scan_local(self, summary: dict[str, Any]) -> LocalSnapshot:
        snap = LocalSnapshot()
        folders = self.local_tree.list_folders()
        rel = folder_paths(folders)
        for folder in folders:
            try:
                snap.folders[folder.id] = validate_remote_path(join_remote(self.remote_root, rel[folder.id]), self.max_path_length)
            except InvalidPath as e:
                summary["skipped_invalid"] += 1
                self.log.warning("delta", "local_folder_skipped", kind=e.kind.value, folder_id=folder.id, error=e.message)
        for folder in folders:
            if folder.parent_id in snap.folders:
                snap.non_empty.add(folder.parent_id)

        for folder_id in [None, *snap.folders]:
            base = self.remote_root if folder_id is None else snap.folders[folder_id]
            for lf in self.local_tree.list_files(folder_id):
                try:
                    remote_path = validate_remote_path(join_remote(base, lf.name), self.max_path_length)
                except InvalidPath as e:
                    summary["skipped_invalid"] += 1
                    self.log.warning("delta", "local_file_skipped", kind=e.kind.value, ref=lf.id, error=e.message)
                    continue
                snap.files[lf.id] = (lf, remote_path)
                if folder_id is not None:
                    snap.non_empty.add(folder_id)
        return snap

    def _classify_local(
        self, local: LocalSnapshot, file_maps: dict[str, FileMapping]
    ) -> tuple[dict[str, Change], dict[str, Change]]:
        changes: dict[str, Change] = {}
        for ref, m in file_maps.items():
            item = local.files.get(ref)
            if item is None:
                changes[ref] = Change("deleted", m.remote_path)
                continue
            lf, remote_path = item
            if path_key(remote_path) != m.path_key:
                changes[ref] = Change("moved", remote_path, m.fingerprint, lf.mtime, local=lf)
                continue
            if lf.mtime <= m.local_mtime:
                continue
            fingerprint = content_hash(self.local_tree.read_content(ref))
            if fingerprint != m.fingerprint:
                changes[ref] = Change("modified", remote_path, fingerprint, lf.mtime, local=lf)
            else:
                # Touched without a content change.
                m.local_mtime = lf.mtime
                self.mappings.upsert_file(m)

        added: dict[str, Change] = {}
        for ref, (lf, remote_path) in local.files.items():
            if ref not in file_maps:
                added[path_key(remote_path)] = Change("added", remote_path, "", lf.mtime, local=lf)
        return changes, added

    # -- merge -------------------------------------------------------------

    def _winner(self, local_mtime: float, remote_mtime: float) -> str:
        if local_mtime > remote_mtime:
            return "local"
        if remote_mtime > local_mtime:
            return "remote"
        return self.tie_break

    def _conflict(self, path: str, winner: str, local: Change | None, remote: Change | None, summary: dict[str, Any]):
        summary["conflicts"] += 1
        self.log.notice(
            "delta",
            "conflict_resolved",
            kind=ErrorKind.CONFLICT_RESOLVED.value,
            path=path,
            winner=winner,
            local_change=local.kind if local else None,
            remote_change=remote.kind if remote else None,
            local_mtime=local.mtime if local else None,
            remote_mtime=remote.mtime if remote else None,
        )

    def _emit(self, task: SyncTask, summary: dict[str, Any]) -> None:
        if task.direction in self._suppress and _under(task.path_key, self._suppress[task.direction]):
            if task.item_type == "file":
                summary["suppressed"] += 1
                return
        try:
            self.queue.enqueue(task)
        except DuplicatePath:
            summary["skipped_duplicate"] += 1
            return
        summary["enqueued"] += 1
        by_direction = summary["by_direction"]
        by_direction[task.direction.value] = by_direction.get(task.direction.value, 0) + 1

    def _upload(self, ref: str, remote_path: str, fingerprint: str, summary: dict[str, Any]) -> None:
        self._emit(
            SyncTask(
                TaskDirection.UPLOAD,
                remote_path,
                local_ref=ref,
                payload={"fingerprint": fingerprint} if fingerprint else {},
                priority=PRIORITY_FILE,
            ),
            summary,
        )

    def _download(self, ref: str | None, change: Change, summary: dict[str, Any], remote_path: str | None = None):
        self._emit(
            SyncTask(
                TaskDirection.DOWNLOAD,
                remote_path or change.remote_path,
                local_ref=ref,
                payload=_remote_payload(change.entry),
                priority=PRIORITY_FILE,
            ),
            summary,
        )

    def _move(self, m: FileMapping, dest: str, side: str, summary: dict[str, Any], change: Change | None = None):
        same_parent = path_key(remote_parent(dest)) == path_key(remote_parent(m.remote_path))
        payload = {"side": side, "to_path": dest}
        if change is not None and change.entry is not None:
            payload.update(_remote_payload(change.entry))
        self._emit(
            SyncTask(
                TaskDirection.RENAME if same_parent else TaskDirection.MOVE,
                m.remote_path,
                local_ref=m.local_ref,
                payload=payload,
                priority=PRIORITY_FILE,
            ),
            summary,
        )

    def _delete(self, direction: TaskDirection, m: FileMapping, summary: dict[str, Any]) -> None:
        self._emit(SyncTask(direction, m.remote_path, local_ref=m.local_ref, priority=PRIORITY_DELETE), summary)

    def _resolve_mapped(self, m: FileMapping, local: Change | None, remote: Change | None, summary: dict[str, Any]):
        if local is None and remote is not None:
            if remote.kind == "modified":
                self._download(m.local_ref, remote, summary, remote_path=m.remote_path)
            elif remote.kind == "deleted":
                self._delete(TaskDirection.DELETE_LOCAL, m, summary)
            elif remote.kind == "moved":
                self._move(m, remote.remote_path, "local", summary, remote)
            return

        if remote is None and local is not None:
            if local.kind == "modified":
                self._upload(m.local_ref, m.remote_path, local.fingerprint, summary)
            elif local.kind == "deleted":
                self._delete(TaskDirection.DELETE_REMOTE, m, summary)
            elif local.kind == "moved":
                self._move(m, local.remote_path, "remote", summary)
            return

        if local is None or remote is None:
            return
        pair = (local.kind, remote.kind)

        if pair == ("deleted", "deleted"):
            self.mappings.delete_file(m.local_ref)
            summary["reconciled"] += 1
            return

        if local.kind == "deleted":
            # A modification on one side beats a deletion on the other.
            self._conflict(m.remote_path, "remote", local, remote, summary)
            if remote.kind == "moved":
                self.mappings.delete_file(m.local_ref)
            self._download(None, remote, summary)
            return

        if remote.kind == "deleted":
            self._conflict(m.remote_path, "local", local, remote, summary)
            if local.kind == "moved":
                self.mappings.delete_file(m.local_ref)
                self._upload(m.local_ref, local.remote_path, "", summary)
            else:
                self._upload(m.local_ref, m.remote_path, local.fingerprint, summary)
            return

        if pair == ("modified", "modified"):
            if local.fingerprint == remote.fingerprint:
                self._record_in_sync(m, local, remote)
                summary["reconciled"] += 1
                return
            winner = self._winner(local.mtime, remote.mtime)
            self._conflict(m.remote_path, winner, local, remote, summary)
            if winner == "local":
                self._upload(m.local_ref, m.remote_path, local.fingerprint, summary)
            else:
                self._download(m.local_ref, remote, summary, remote_path=m.remote_path)
            return

        if pair == ("moved", "modified"):
            # Content first; the local move is picked up again on the next pass.
            self._conflict(m.remote_path, "remote", local, remote, summary)
            self._download(m.local_ref, remote, summary, remote_path=m.remote_path)
            return

        if pair == ("modified", "moved"):
            # Structure first; the newer local content uploads on the next pass.
            self._conflict(m.remote_path, "remote", local, remote, summary)
            self._move(m, remote.remote_path, "local", summary)
            return

        # Both sides moved.
        if path_key(local.remote_path) == path_key(remote.remote_path):
            m.remote_path = remote.remote_path
            if remote.entry is not None:
                m.remote_id = remote.entry.id or m.remote_id
            self.mappings.upsert_file(m)
            summary["reconciled"] += 1
            return
        self._conflict(m.remote_path, self.tie_break, local, remote, summary)
        if self.tie_break == "local":
            self._move(m, local.remote_path, "remote", summary)
        else:
            self._move(m, remote.remote_path, "local", summary, remote)

    def _record_in_sync(self, m: FileMapping, local: Change, remote: Change) -> None:
        m.fingerprint = local.fingerprint
        m.local_mtime = local.mtime
        m.remote_mtime = remote.mtime
        if remote.entry is not None:
            m.remote_id = remote.entry.id or m.remote_id
        self.mappings.upsert_file(m)

    def _resolve_unmapped(self, local: Change | None, remote: Change | None, summary: dict[str, Any]) -> None:
        if local is None and remote is not None:
            self._download(None, remote, summary)
            return
        if local is None or local.local is None:
            return
        lf = local.local
        if remote is None:
            self._upload(lf.id, local.remote_path, "", summary)
            return

        fingerprint = content_hash(self.local_tree.read_content(lf.id))
        if fingerprint == remote.fingerprint:
            entry = remote.entry
            self.mappings.upsert_file(
                FileMapping(
                    local_ref=lf.id,
                    local_folder_id=lf.folder_id,
                    remote_path=remote.remote_path,
                    remote_id=entry.id if entry else "",
                    fingerprint=fingerprint,
                    local_mtime=lf.mtime,
                    remote_mtime=remote.mtime,
                )
            )
            summary["reconciled"] += 1
            return

        winner = self._winner(lf.mtime, remote.mtime)
        self._conflict(remote.remote_path, winner, local, remote, summary)
        if winner == "local":
            self._upload(lf.id, local.remote_path, fingerprint, summary)
        else:
            self._download(lf.id, remote, summary)

    # -- folders -----------------------------------------------------------

    def _folder_moves(
        self,
        local: LocalSnapshot,
        remote: RemoteSnapshot,
        folder_maps: list[FolderMapping],
        file_maps: dict[str, FileMapping],
        summary: dict[str, Any],
    ) -> dict[str, str]:
        """Emit one remote move per mapped folder that now sits at another local path.

        Returns old key -> new key for every folder moved this way. A folder
        whose old subtree also changed remotely is left to per-file resolution.
        """
        moved: dict[str, str] = {}
        for f in sorted(folder_maps, key=lambda x: x.path_key):
            new_path = local.folders.get(f.local_folder_id)
            if new_path is None or path_key(new_path) == f.path_key:
                continue
            old_key, new_key = f.path_key, path_key(new_path)
            if _under(old_key, set(moved)):
                # Follows its moved parent; any rename of its own shows up next pass.
                continue
            remote_touched = (
                old_key in remote.deleted_folders
                or any(_under(file_maps[ref].path_key, {old_key}) for ref in remote.by_ref)
                or any(_under(k, {old_key, new_key}) for k in remote.added)
                or new_key in remote.folders
            )
            if remote_touched:
                continue
            same_parent = path_key(remote_parent(new_path)) == path_key(remote_parent(f.remote_path))
            self._emit(
                SyncTask(
                    TaskDirection.RENAME if same_parent else TaskDirection.MOVE,
                    f.remote_path,
                    local_ref=f.local_folder_id,
                    item_type="folder",
                    payload={"side": "remote", "to_path": new_path},
                    priority=PRIORITY_FOLDER,
                ),
                summary,
            )
            moved[old_key] = new_key
        return moved

    def _carried_by_folder(self, m: FileMapping, local: Change) -> bool:
        new_key = path_key(local.remote_path)
        for old_key, moved_to in self._folder_moved.items():
            if _under(m.path_key, {old_key}) and moved_to + m.path_key[len(old_key):] == new_key:
                return True
        return False

    def _folder_deletions(
        self,
        local: LocalSnapshot,
        remote: RemoteSnapshot,
        folder_maps: list[FolderMapping],
        file_maps: dict[str, FileMapping],
        local_changes: dict[str, Change],
        local_added: dict[str, Change],
        summary: dict[str, Any],
    ) -> tuple[set[str], set[str]]:
        """Emit one delete task per removed folder and return the suppressed subtrees.

        A folder whose subtree still carries a modification on the other side
        is left to per-file resolution instead.
        """
        local_deleted = [f for f in folder_maps if f.local_folder_id not in local.folders]
        remote_deleted = list(remote.deleted_folders.values())
        local_deleted_keys = {f.path_key for f in local_deleted}
        remote_deleted_keys = {f.path_key for f in remote_deleted}

        delete_remote: set[str] = set()
        delete_local: set[str] = set()

        for f in sorted(local_deleted, key=lambda x: x.path_key):
            if f.path_key in remote_deleted_keys:
                self.mappings.delete_under(f.remote_path)
                summary["reconciled"] += 1
                continue
            if _under(f.path_key, delete_remote):
                continue
            remote_touched = any(
                change.kind in ("modified", "moved") and _under(file_maps[ref].path_key, {f.path_key})
                for ref, change in remote.by_ref.items()
            ) or any(_under(k, {f.path_key}) for k in remote.added)
            if remote_touched:
                self.mappings.delete_folder(f.local_folder_id)
                continue
            delete_remote.add(f.path_key)
            self._emit(
                SyncTask(
                    TaskDirection.DELETE_REMOTE,
                    f.remote_path,
                    local_ref=f.local_folder_id,
                    item_type="folder",
                    priority=PRIORITY_DELETE,
                ),
                summary,
            )

        for f in sorted(remote_deleted, key=lambda x: x.path_key):
            if f.path_key in local_deleted_keys or _under(f.path_key, delete_local):
                continue
            local_touched = any(
                change.kind in ("modified", "moved") and _under(file_maps[ref].path_key, {f.path_key})
                for ref, change in local_changes.items()
            ) or any(_under(k, {f.path_key}) for k in local_added)
            if local_touched:
                self.mappings.delete_folder(f.local_folder_id)
                continue
            delete_local.add(f.path_key)
            self._emit(
                SyncTask(
                    TaskDirection.DELETE_LOCAL,
                    f.remote_path,
                    local_ref=f.local_folder_id,
                    item_type="folder",
                    priority=PRIORITY_DELETE,
                ),
                summary,
            )
        return delete_local, delete_remote

    def _folder_creations(
        self,
        local: LocalSnapshot,
        remote: RemoteSnapshot,
        folder_maps: list[FolderMapping],
        summary: dict[str, Any],
    ) -> None:
        """Mirror empty folders; non-empty ones are created by their file tasks."""
        mapped_ids = {f.local_folder_id for f in folder_maps}
        mapped_keys = {f.path_key for f in folder_maps}
        local_by_key = {path_key(p): fid for fid, p in local.folders.items()}

        for folder_id, remote_path in sorted(local.folders.items(), key=lambda kv: kv[1]):
            key = path_key(remote_path)
            if folder_id in mapped_ids or key in mapped_keys:
                continue
            if _under(key, set(self._folder_moved.values())):
                continue
            if key in remote.folders:
                self.mappings.upsert_folder(folder_id, remote.folders[key].path_display or remote_path)
                summary["reconciled"] += 1
                continue
            if folder_id in local.non_empty:
                continue
            self._emit(
                SyncTask(
                    TaskDirection.UPLOAD,
                    remote_path,
                    local_ref=folder_id,
                    item_type="folder",
                    priority=PRIORITY_FOLDER,
                ),
                summary,
            )

        for key, entry in sorted(remote.folders.items()):
            if key in mapped_keys or key in local_by_key or key in remote.has_children:
                continue
            self._emit(
                SyncTask(
                    TaskDirection.DOWNLOAD,
                    entry.path_display,
                    item_type="folder",
                    payload={"remote_id": entry.id},
                    priority=PRIORITY_FOLDER,
                ),
                summary,
            )
