from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

from foldersync.core.errors import ReauthorizationRequired, TransientError
from foldersync.core.log_sink import LogSink
from foldersync.providers.dropbox.client import DropboxClient, content_hash
from foldersync.providers.dropbox.oauth import OAuthManager
from foldersync.sync.local_tree import LocalFolder, LocalTree
from foldersync.sync.mappings import FileMapping, MappingStore
from foldersync.sync.paths import join_remote, normalize_remote_path, relative_to_root, remote_basename, remote_parent
from foldersync.sync.queue import SyncTask, TaskDirection, TaskQueue, TaskStatus


class WorkerPool:
    """Runs queued tasks on a bounded thread pool, one remote operation per task."""

    def __init__(
        self,
        queue: TaskQueue,
        client: DropboxClient,
        local_tree: LocalTree,
        mappings: MappingStore,
        oauth: OAuthManager,
        log: LogSink,
        max_workers: int = 4,
        batch_size: int = 10,
        remote_root: str = "/FolderSync",
    ):
        self.queue = queue
        self.client = client
        self.local_tree = local_tree
        self.mappings = mappings
        self.oauth = oauth
        self.log = log
        self.max_workers = max(1, max_workers)
        self.batch_size = max(1, batch_size)
        self.remote_root = normalize_remote_path(remote_root)
        self._folder_lock = threading.Lock()

        self._handlers: dict[TaskDirection, Callable[[SyncTask], None]] = {
            TaskDirection.UPLOAD: self._handle_upload,
            TaskDirection.DOWNLOAD: self._handle_download,
            TaskDirection.DELETE_REMOTE: self._handle_delete_remote,
            TaskDirection.DELETE_LOCAL: self._handle_delete_local,
            TaskDirection.MOVE: self._handle_move,
            TaskDirection.RENAME: self._handle_move,
        }

    # -- driving -----------------------------------------------------------

    def process_pending(self, include_deferred: bool = False) -> dict[str, Any]:
        """Drain the tasks that are pending right now, each at most once."""
        summary: dict[str, Any] = {
            "processed": 0,
            "completed": 0,
            "retried": 0,
            "failed": 0,
            "released": 0,
            "halted": False,
        }
        try:
            self.oauth.ensure_authorized()
        except ReauthorizationRequired as e:
            summary["halted"] = True
            summary["error"] = e.to_dict()
            self.log.error("worker", "queue_halted_reauthorization_required", error=e.message)
            return summary

        # Walk the snapshot in windows of batch_size ids; an id passed over
        # (deferred, behind a folder barrier, or over the concurrency limit)
        # gets one more try in the next window.
        snapshot = self.queue.pending_ids()
        pos = 0
        carry: list[int] = []
        while pos < len(snapshot) or carry:
            fresh = snapshot[pos : pos + self.batch_size - len(carry)]
            pos += len(fresh)
            window = carry + fresh
            tasks = self.queue.dequeue_batch(self.batch_size, include_deferred=include_deferred, only_ids=window)
            claimed = {t.id for t in tasks}
            carry = [i for i in fresh if i not in claimed]
            if not tasks:
                if not self.queue.has_capacity():
                    break
                continue

            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(tasks))) as pool:
                outcomes = list(pool.map(self.run_task, tasks))
            for outcome in outcomes:
                summary["processed"] += 1
                summary[outcome] += 1
            if "released" in outcomes:
                summary["halted"] = True
                self.log.error("worker", "queue_halted_reauthorization_required", released=outcomes.count("released"))
                break
        return summary

    def force_process(self) -> dict[str, Any]:
        return self.process_pending(include_deferred=True)

    def run_task(self, task: SyncTask) -> str:
        handler = self._handlers[task.direction]
        try:
            handler(task)
        except ReauthorizationRequired as e:
            self.queue.release(task.id, reason=e.kind.value)
            return "released"
        except Exception as e:
            updated = self.queue.fail(task.id, e)
            if updated is not None and updated.status == TaskStatus.FAILED:
                return "failed"
            return "retried"
        self.queue.complete(task.id)
        return "completed"

    # -- helpers -----------------------------------------------------------

    def _ensure_local_folder(self, remote_path: str) -> str | None:
        """Local folder id for a remote folder path, creating missing levels."""
        rel = relative_to_root(remote_path, self.remote_root)
        if not rel:
            return None
        with self._folder_lock:
            folders = self.local_tree.list_folders()
            parent: str | None = None
            current = self.remote_root
            for segment in rel.split("/"):
                current = join_remote(current, segment)
                match = next(
                    (f for f in folders if f.parent_id == parent and f.name.casefold() == segment.casefold()),
                    None,
                )
                if match is None:
                    folder_id = self.local_tree.create_folder(parent, segment)
                    folders.append(LocalFolder(id=folder_id, name=segment, parent_id=parent))
                    self.log.debug("worker", "local_folder_created", folder_id=folder_id, path=current)
                else:
                    folder_id = match.id
                if self.mappings.get_folder(folder_id) is None:
                    self.mappings.upsert_folder(folder_id, current)
                parent = folder_id
            return parent

    def _subtree(self, folder_id: str) -> list[str]:
        children: dict[str | None, list[str]] = {}
        for f in self.local_tree.list_folders():
            children.setdefault(f.parent_id, []).append(f.id)
        out: list[str] = []
        stack = [folder_id]
        while stack:
            current = stack.pop()
            out.append(current)
            stack.extend(children.get(current, []))
        return out

    def _delete_synced_children(self, folder_id: str) -> list[str]:
        """Delete files under ``folder_id`` that match their mapping; return the refs left behind."""
        kept: list[str] = []
        for sub_id in self._subtree(folder_id):
            for lf in self.local_tree.list_files(sub_id):
                mapping = self.mappings.get_file(lf.id)
                if mapping is None or lf.mtime > mapping.local_mtime:
                    kept.append(lf.id)
                    continue
                self.local_tree.delete(lf.id)
                self.mappings.delete_file(lf.id)
        return kept

    # -- handlers ----------------------------------------------------------

    def _handle_upload(self, task: SyncTask) -> None:
        if task.item_type == "folder":
            entry = self.client.create_folder(task.remote_path)
            self.mappings.upsert_folder(task.local_ref or "", entry.path_display or task.remote_path)
            return

        ref = task.local_ref or ""
        mtime = self.local_tree.get_local_mtime(ref)
        if mtime is None:
            self.log.notice("worker", "upload_source_missing", task_id=task.id, ref=ref)
            return
        data = self.local_tree.read_content(ref)
        entry = self.client.upload(task.remote_path, data, mode="overwrite")

        previous = self.mappings.get_file(ref)
        self.mappings.upsert_file(
            FileMapping(
                local_ref=ref,
                local_folder_id=previous.local_folder_id if previous else None,
                remote_path=entry.path_display or task.remote_path,
                remote_id=entry.id,
                fingerprint=entry.content_hash or content_hash(data),
                local_mtime=mtime,
                remote_mtime=entry.server_modified,
            )
        )

    def _handle_download(self, task: SyncTask) -> None:
        if task.item_type == "folder":
            self._ensure_local_folder(task.remote_path)
            return

        data, entry = self.client.download(task.remote_path)
        fingerprint = content_hash(data)
        if entry.content_hash and entry.content_hash != fingerprint:
            raise TransientError(f"download_hash_mismatch: {task.remote_path}")

        ref = task.local_ref
        folder_id: str | None = None
        if ref and self.local_tree.get_local_mtime(ref) is not None:
            self.local_tree.write_content(ref, data)
            previous = self.mappings.get_file(ref)
            folder_id = previous.local_folder_id if previous else None
        else:
            folder_id = self._ensure_local_folder(remote_parent(task.remote_path))
            ref = self.local_tree.create_file(folder_id, remote_basename(task.remote_path), data)
            if task.local_ref and task.local_ref != ref:
                self.mappings.delete_file(task.local_ref)

        self.mappings.upsert_file(
            FileMapping(
                local_ref=ref,
                local_folder_id=folder_id,
                remote_path=entry.path_display or task.remote_path,
                remote_id=entry.id or str(task.payload.get("remote_id") or ""),
                fingerprint=fingerprint,
                local_mtime=self.local_tree.get_local_mtime(ref) or 0.0,
                remote_mtime=entry.server_modified or float(task.payload.get("server_modified") or 0),
            )
        )

    def _handle_delete_remote(self, task: SyncTask) -> None:
        existed = self.client.delete(task.remote_path)
        if task.item_type == "folder":
            self.mappings.delete_under(task.remote_path)
            self.mappings.delete_folder(task.local_ref or "")
        else:
            self.mappings.delete_file_by_path(task.remote_path)
        if not existed:
            self.log.debug("worker", "remote_already_deleted", task_id=task.id, path=task.remote_path)

    def _handle_delete_local(self, task: SyncTask) -> None:
        ref = task.local_ref or ""
        if task.item_type == "folder":
            kept = self._delete_synced_children(ref) if ref else []
            if kept:
                # Unsynced content survives; without a mapping the next pass uploads it.
                self.log.notice(
                    "worker",
                    "local_folder_delete_kept_changes",
                    task_id=task.id,
                    folder_id=ref,
                    path=task.remote_path,
                    kept=kept,
                )
            elif ref:
                self.local_tree.delete(ref)
            self.mappings.delete_under(task.remote_path)
            self.mappings.delete_folder(ref)
            return

        mapping = self.mappings.get_file(ref) if ref else None
        mtime = self.local_tree.get_local_mtime(ref) if ref else None
        if mapping is not None and mtime is not None and mtime > mapping.local_mtime:
            # Edited locally after the pass ran; the next pass uploads it as new.
            self.mappings.delete_file(ref)
            self.log.notice("worker", "local_delete_skipped_modified", task_id=task.id, ref=ref, path=task.remote_path)
            return
        if mtime is not None:
            self.local_tree.delete(ref)
        if ref:
            self.mappings.delete_file(ref)
        self.mappings.delete_file_by_path(task.remote_path)

    def _handle_move(self, task: SyncTask) -> None:
        to_path = normalize_remote_path(str(task.payload.get("to_path") or ""))
        if not to_path:
            raise ValueError(f"move_without_destination: task {task.id}")
        ref = task.local_ref or ""
        if task.item_type == "folder":
            self._move_remote_folder(task, to_path)
            return
        mapping = self.mappings.get_file(ref) or FileMapping(local_ref=ref, remote_path=task.remote_path)

        if task.payload.get("side") == "remote":
            entry = self.client.move(task.remote_path, to_path)
            mapping.remote_path = entry.path_display or to_path
            mapping.remote_id = entry.id or mapping.remote_id
            mapping.last_synced_at = None
            self.mappings.upsert_file(mapping)
            return

        new_name = remote_basename(to_path)
        if task.direction == TaskDirection.RENAME:
            new_ref = self.local_tree.rename(ref, new_name)
        else:
            parent = self._ensure_local_folder(remote_parent(to_path))
            new_ref = self.local_tree.move(ref, parent)
            mapping.local_folder_id = parent
            if remote_basename(task.remote_path) != new_name:
                new_ref = self.local_tree.rename(new_ref, new_name)

        if new_ref != ref:
            self.mappings.delete_file(ref)
        mapping.local_ref = new_ref
        mapping.remote_path = to_path
        mapping.remote_id = str(task.payload.get("remote_id") or mapping.remote_id)
        mapping.last_synced_at = None

        remote_hash = str(task.payload.get("content_hash") or "")
        if remote_hash and remote_hash != mapping.fingerprint:
            data, entry = self.client.download(to_path)
            self.local_tree.write_content(new_ref, data)
            mapping.fingerprint = content_hash(data)
            mapping.local_mtime = self.local_tree.get_local_mtime(new_ref) or 0.0
            mapping.remote_mtime = entry.server_modified
        self.mappings.upsert_file(mapping)

    def _move_remote_folder(self, task: SyncTask, to_path: str) -> None:
        """Mirror a local folder rename/move; child mappings follow the folder."""
        if task.payload.get("side") != "remote":
            raise ValueError(f"folder_move_side_unsupported: task {task.id}")
        entry = self.client.move(task.remote_path, to_path)
        new_path = normalize_remote_path(entry.path_display or to_path)
        moved = self.mappings.move_under(task.remote_path, new_path)
        if task.local_ref:
            self.mappings.upsert_folder(task.local_ref, new_path)
        self.log.info("worker", "remote_folder_moved", task_id=task.id, src=task.remote_path, dst=new_path, mappings=moved)
