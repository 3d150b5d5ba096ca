from __future__ import annotations

from typing import Any

from foldersync.core.db import get_conn

_TOTAL_SQL = """
SELECT COUNT(1) FROM (
  SELECT path_key FROM file_mappings
  UNION
  SELECT path_key FROM sync_tasks
   WHERE item_type='file' AND status!='completed' AND direction IN ('upload', 'download')
)
"""

# A mapping is synced unless its path has an active task, or the newest task
# for that path ended failed.
_SYNCED_SQL = """
SELECT COUNT(1) FROM file_mappings m
 WHERE NOT EXISTS (
   SELECT 1 FROM sync_tasks t
    WHERE t.path_key = m.path_key
      AND (
        t.status IN ('pending', 'processing')
        OR (t.status = 'failed' AND t.id = (SELECT MAX(t2.id) FROM sync_tasks t2 WHERE t2.path_key = m.path_key))
      )
 )
"""


def queue_stats(db_path: str) -> dict[str, Any]:
    """Read-only counters over the task and mapping tables."""
    conn = get_conn(db_path)
    try:
        by_status = {"pending": 0, "processing": 0, "completed": 0, "failed": 0}
        for row in conn.execute("SELECT status, COUNT(1) AS n FROM sync_tasks GROUP BY status").fetchall():
            by_status[row["status"]] = row["n"]
        total = conn.execute(_TOTAL_SQL).fetchone()[0]
        synced = conn.execute(_SYNCED_SQL).fetchone()[0]
        folders = conn.execute("SELECT COUNT(1) FROM folder_mappings WHERE local_folder_id!=''").fetchone()[0]
    finally:
        conn.close()

    return {
        "total": total,
        "synced": synced,
        "pending_tasks": by_status["pending"] + by_status["processing"],
        "failed_tasks": by_status["failed"],
        "processing_tasks": by_status["processing"],
        "completed_tasks": by_status["completed"],
        "total_tasks": sum(by_status.values()),
        "folders": folders,
    }
