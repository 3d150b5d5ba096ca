from __future__ import annotations

import json
import sqlite3
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from foldersync.core.db import get_conn, transaction
from foldersync.core.errors import DuplicatePath, RateLimited, SyncError
from foldersync.core.log_sink import LogSink
from foldersync.sync.paths import normalize_remote_path, path_key


class TaskDirection(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE_REMOTE = "delete-remote"
    DELETE_LOCAL = "delete-local"
    MOVE = "move"
    RENAME = "rename"


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (TaskStatus.PENDING.value, TaskStatus.PROCESSING.value)

BARRIER_DIRECTIONS = (
    TaskDirection.DELETE_REMOTE.value,
    TaskDirection.DELETE_LOCAL.value,
    TaskDirection.MOVE.value,
    TaskDirection.RENAME.value,
)

# Candidates read past the claim limit so barrier-blocked rows do not starve the batch.
CLAIM_SCAN_EXTRA = 200


@dataclass
class SyncTask:
    direction: TaskDirection
    remote_path: str
    local_ref: str | None = None
    item_type: str = "file"
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 10
    status: TaskStatus = TaskStatus.PENDING
    attempt_count: int = 0
    max_attempts: int | None = None
    not_before: float = 0.0
    last_error: str | None = None
    locked_at: float | None = None
    created_at: float = 0.0
    updated_at: float = 0.0
    id: int | None = None

    @property
    def path_key(self) -> str:
        return path_key(self.remote_path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "direction": self.direction.value,
            "item_type": self.item_type,
            "local_ref": self.local_ref,
            "remote_path": self.remote_path,
            "payload": self.payload,
            "priority": self.priority,
            "status": self.status.value,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "not_before": self.not_before,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def _task_from_row(row) -> SyncTask:
    try:
        payload = json.loads(row["payload_json"]) if row["payload_json"] else {}
    except ValueError:
        payload = {}
    return SyncTask(
        id=row["id"],
        direction=TaskDirection(row["direction"]),
        item_type=row["item_type"] or "file",
        local_ref=row["local_ref"],
        remote_path=row["remote_path"],
        payload=payload if isinstance(payload, dict) else {},
        priority=int(row["priority"] or 0),
        status=TaskStatus(row["status"]),
        attempt_count=int(row["attempt_count"] or 0),
        max_attempts=int(row["max_attempts"] or 1),
        not_before=float(row["not_before"] or 0),
        last_error=row["last_error"],
        locked_at=row["locked_at"],
        created_at=float(row["created_at"] or 0),
        updated_at=float(row["updated_at"] or 0),
    )


def _is_barrier(row) -> bool:
    return (row["item_type"] or "file") == "folder" and row["direction"] in BARRIER_DIRECTIONS


def _blocked(conn: sqlite3.Connection, row) -> bool:
    """True while ``row`` must wait for a folder barrier, or is one with active work beneath it."""
    key = row["path_key"]
    if _is_barrier(row):
        prefix = key + "/"
        hit = conn.execute(
            "SELECT 1 FROM sync_tasks WHERE id!=? AND status IN (?,?) AND substr(path_key, 1, ?)=? LIMIT 1",
            (row["id"], *ACTIVE_STATUSES, len(prefix), prefix),
        ).fetchone()
        if hit is not None:
            return True
    hit = conn.execute(
        f"""
        SELECT 1 FROM sync_tasks
        WHERE id!=? AND status=? AND item_type='folder'
          AND direction IN ({','.join('?' for _ in BARRIER_DIRECTIONS)})
          AND substr(?, 1, length(path_key) + 1)=path_key || '/'
        LIMIT 1
        """,
        (row["id"], TaskStatus.PROCESSING.value, *BARRIER_DIRECTIONS, key),
    ).fetchone()
    return hit is not None


class TaskQueue:
    """Durable SyncTask store. The only writer of task state.

    The path lock is the partial unique index on ``sync_tasks(path_key)`` for
    pending/processing rows; every transition runs inside ``BEGIN IMMEDIATE``
    so concurrent workers and processes see a consistent table.
    """

    def __init__(
        self,
        db_path: str,
        log: LogSink,
        max_attempts: int = 5,
        backoff_base: float = 2.0,
        backoff_cap: float = 300.0,
        max_concurrent: int = 4,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = db_path
        self.log = log
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.max_concurrent = max_concurrent
        self.clock = clock

    def backoff_delay(self, attempt: int) -> float:
        return float(min(self.backoff_cap, self.backoff_base ** max(attempt, 1)))

    # -- transitions -------------------------------------------------------

    def enqueue(self, task: SyncTask) -> SyncTask:
        remote_path = normalize_remote_path(task.remote_path)
        key = path_key(remote_path)
        now = self.clock()
        max_attempts = task.max_attempts or self.max_attempts
        try:
            with transaction(self.db_path) as conn:
                holder = conn.execute(
                    "SELECT id FROM sync_tasks WHERE path_key=? AND status IN (?,?)",
                    (key, *ACTIVE_STATUSES),
                ).fetchone()
                if holder:
                    raise DuplicatePath(key, holder["id"])
                cur = conn.execute(
                    """
                    INSERT INTO sync_tasks(
                      direction, item_type, local_ref, remote_path, path_key, payload_json, priority,
                      status, attempt_count, max_attempts, not_before, created_at, updated_at
                    ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        TaskDirection(task.direction).value,
                        task.item_type,
                        task.local_ref,
                        remote_path,
                        key,
                        json.dumps(task.payload, ensure_ascii=False) if task.payload else None,
                        task.priority,
                        TaskStatus.PENDING.value,
                        0,
                        max_attempts,
                        task.not_before,
                        now,
                        now,
                    ),
                )
                task_id = cur.lastrowid
        except sqlite3.IntegrityError as e:
            # Lost a race with another writer between the check and the insert.
            raise DuplicatePath(key) from e
        except DuplicatePath as e:
            self.log.debug("queue", "enqueue_rejected_duplicate_path", path=remote_path, holder_id=e.holder_id)
            raise

        created = self.get(task_id)
        self.log.info(
            "queue",
            "task_enqueued",
            task_id=task_id,
            direction=created.direction.value,
            item_type=created.item_type,
            path=remote_path,
        )
        return created

    def dequeue_batch(self, n: int, include_deferred: bool = False, only_ids: list[int] | None = None) -> list[SyncTask]:
        """Claim up to ``n`` runnable pending tasks and mark them processing.

        At most ``max_concurrent`` tasks are processing at once across all
        callers. ``include_deferred`` ignores ``not_before``.

        Folder deletes and folder moves act as barriers over their subtree:
        one is claimed only when no other task beneath its path is active,
        and no task beneath a processing barrier is claimed.
        """
        if n <= 0:
            return []
        if only_ids is not None and not only_ids:
            return []

        now = self.clock()
        with transaction(self.db_path) as conn:
            processing = conn.execute(
                "SELECT COUNT(1) FROM sync_tasks WHERE status=?", (TaskStatus.PROCESSING.value,)
            ).fetchone()[0]
            limit = min(n, self.max_concurrent - processing)
            if limit <= 0:
                return []

            sql = "SELECT * FROM sync_tasks WHERE status=?"
            params: list[Any] = [TaskStatus.PENDING.value]
            if not include_deferred:
                sql += " AND not_before<=?"
                params.append(now)
            if only_ids is not None:
                sql += f" AND id IN ({','.join('?' for _ in only_ids)})"
                params.extend(only_ids)
            sql += " ORDER BY priority ASC, not_before ASC, id ASC LIMIT ?"
            params.append(limit + CLAIM_SCAN_EXTRA)
            rows = conn.execute(sql, params).fetchall()

            claimed: list[SyncTask] = []
            for row in rows:
                if len(claimed) >= limit:
                    break
                if _blocked(conn, row):
                    continue
                cur = conn.execute(
                    "UPDATE sync_tasks SET status=?, locked_at=?, updated_at=? WHERE id=? AND status=?",
                    (TaskStatus.PROCESSING.value, now, now, row["id"], TaskStatus.PENDING.value),
                )
                if cur.rowcount != 1:
                    continue
                task = _task_from_row(row)
                task.status = TaskStatus.PROCESSING
                task.locked_at = now
                task.updated_at = now
                claimed.append(task)

        for task in claimed:
            self.log.debug("queue", "task_dequeued", task_id=task.id, direction=task.direction.value, path=task.remote_path)
        return claimed

    def complete(self, task_id: int) -> None:
        now = self.clock()
        with transaction(self.db_path) as conn:
            cur = conn.execute(
                """
                UPDATE sync_tasks SET status=?, locked_at=NULL, last_error=NULL, updated_at=?
                 WHERE id=? AND status=?
                """,
                (TaskStatus.COMPLETED.value, now, task_id, TaskStatus.PROCESSING.value),
            )
            updated = cur.rowcount
        if updated:
            self.log.info("queue", "task_completed", task_id=task_id)
        else:
            self.log.warning("queue", "complete_ignored_not_processing", task_id=task_id)

    def fail(self, task_id: int, error: Exception | str) -> SyncTask | None:
        """Count a failed attempt; reschedule with backoff or move to failed.

        Errors marked non-retryable go straight to failed.
        """
        message = error.message if isinstance(error, SyncError) else str(error)
        kind = error.kind.value if isinstance(error, SyncError) else type(error).__name__
        retryable = error.retryable if isinstance(error, SyncError) else True

        now = self.clock()
        with transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM sync_tasks WHERE id=?", (task_id,)).fetchone()
            if not row or row["status"] != TaskStatus.PROCESSING.value:
                row = None
            else:
                attempt = int(row["attempt_count"] or 0) + 1
                exhausted = attempt >= int(row["max_attempts"] or 1) or not retryable
                if exhausted:
                    delay = 0.0
                    conn.execute(
                        """
                        UPDATE sync_tasks SET status=?, attempt_count=?, last_error=?, locked_at=NULL, updated_at=?
                         WHERE id=?
                        """,
                        (TaskStatus.FAILED.value, attempt, f"{kind}: {message}", now, task_id),
                    )
                else:
                    if isinstance(error, RateLimited):
                        delay = error.retry_after
                    else:
                        delay = self.backoff_delay(attempt)
                    conn.execute(
                        """
                        UPDATE sync_tasks SET status=?, attempt_count=?, last_error=?, not_before=?,
                               locked_at=NULL, updated_at=?
                         WHERE id=?
                        """,
                        (TaskStatus.PENDING.value, attempt, f"{kind}: {message}", now + delay, now, task_id),
                    )

        if row is None:
            self.log.warning("queue", "fail_ignored_not_processing", task_id=task_id)
            return None

        task = self.get(task_id)
        if task.status == TaskStatus.FAILED:
            self.log.error(
                "queue",
                "task_failed",
                task_id=task_id,
                path=task.remote_path,
                attempt=task.attempt_count,
                error_kind=kind,
                error=message,
            )
        else:
            self.log.warning(
                "queue",
                "task_retry_scheduled",
                task_id=task_id,
                path=task.remote_path,
                attempt=task.attempt_count,
                delay_sec=delay,
                error_kind=kind,
                error=message,
            )
        return task

    def release(self, task_id: int, reason: str = "") -> None:
        """Processing -> pending without spending an attempt."""
        now = self.clock()
        with transaction(self.db_path) as conn:
            updated = conn.execute(
                "UPDATE sync_tasks SET status=?, locked_at=NULL, updated_at=? WHERE id=? AND status=?",
                (TaskStatus.PENDING.value, now, task_id, TaskStatus.PROCESSING.value),
            ).rowcount
        if updated:
            self.log.notice("queue", "task_released", task_id=task_id, reason=reason)

    def retry_failed(self) -> dict[str, int]:
        """Failed -> pending with attempts reset.

        A task whose path is currently held by another active task stays failed.
        """
        now = self.clock()
        retried: list[tuple[int, str]] = []
        skipped: list[tuple[int, str]] = []
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                "SELECT id, remote_path, path_key FROM sync_tasks WHERE status=? ORDER BY id DESC",
                (TaskStatus.FAILED.value,),
            ).fetchall()
            for row in rows:
                holder = conn.execute(
                    "SELECT id FROM sync_tasks WHERE path_key=? AND status IN (?,?)",
                    (row["path_key"], *ACTIVE_STATUSES),
                ).fetchone()
                if holder:
                    skipped.append((row["id"], row["remote_path"]))
                    continue
                conn.execute(
                    """
                    UPDATE sync_tasks SET status=?, attempt_count=0, not_before=0, last_error=NULL,
                           locked_at=NULL, updated_at=?
                     WHERE id=?
                    """,
                    (TaskStatus.PENDING.value, now, row["id"]),
                )
                retried.append((row["id"], row["remote_path"]))

        for task_id, path in retried:
            self.log.info("queue", "task_retried", task_id=task_id, path=path)
        for task_id, path in skipped:
            self.log.notice("queue", "task_retry_skipped_path_locked", task_id=task_id, path=path)
        return {"retried": len(retried), "skipped": len(skipped)}

    def requeue_stale(self, older_than_sec: float) -> int:
        now = self.clock()
        cutoff = now - older_than_sec
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                "SELECT id, remote_path FROM sync_tasks WHERE status=? AND locked_at IS NOT NULL AND locked_at<?",
                (TaskStatus.PROCESSING.value, cutoff),
            ).fetchall()
            for row in rows:
                conn.execute(
                    "UPDATE sync_tasks SET status=?, locked_at=NULL, updated_at=? WHERE id=?",
                    (TaskStatus.PENDING.value, now, row["id"]),
                )
        for row in rows:
            self.log.warning("queue", "task_requeued_stale", task_id=row["id"], path=row["remote_path"])
        return len(rows)

    def purge_completed(self, days: int) -> int:
        cutoff = self.clock() - max(days, 0) * 86400
        with transaction(self.db_path) as conn:
            deleted = conn.execute(
                "DELETE FROM sync_tasks WHERE status=? AND updated_at<?",
                (TaskStatus.COMPLETED.value, cutoff),
            ).rowcount
        if deleted:
            self.log.info("queue", "completed_tasks_purged", count=deleted, days=days)
        return deleted

    # -- reads -------------------------------------------------------------

    def get(self, task_id: int) -> SyncTask | None:
        conn = get_conn(self.db_path)
        row = conn.execute("SELECT * FROM sync_tasks WHERE id=?", (task_id,)).fetchone()
        conn.close()
        return _task_from_row(row) if row else None

    def list_tasks(self, status: str | None = None, limit: int = 100) -> list[SyncTask]:
        conn = get_conn(self.db_path)
        if status:
            rows = conn.execute(
                "SELECT * FROM sync_tasks WHERE status=? ORDER BY id DESC LIMIT ?", (status, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM sync_tasks ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        conn.close()
        return [_task_from_row(r) for r in rows]

    def pending_ids(self) -> list[int]:
        conn = get_conn(self.db_path)
        rows = conn.execute(
            "SELECT id FROM sync_tasks WHERE status=? ORDER BY priority ASC, id ASC", (TaskStatus.PENDING.value,)
        ).fetchall()
        conn.close()
        return [r["id"] for r in rows]

    def has_capacity(self) -> bool:
        conn = get_conn(self.db_path)
        processing = conn.execute(
            "SELECT COUNT(1) FROM sync_tasks WHERE status=?", (TaskStatus.PROCESSING.value,)
        ).fetchone()[0]
        conn.close()
        return processing < self.max_concurrent

    def active_path_keys(self) -> set[str]:
        conn = get_conn(self.db_path)
        rows = conn.execute("SELECT path_key FROM sync_tasks WHERE status IN (?,?)", ACTIVE_STATUSES).fetchall()
        conn.close()
        return {r["path_key"] for r in rows}

    def status_counts(self) -> dict[str, int]:
        conn = get_conn(self.db_path)
        rows = conn.execute("SELECT status, COUNT(1) AS n FROM sync_tasks GROUP BY status").fetchall()
        conn.close()
        counts = {s.value: 0 for s in TaskStatus}
        for r in rows:
            counts[r["status"]] = r["n"]
        return counts
