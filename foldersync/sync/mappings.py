from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from foldersync.core.db import get_conn
from foldersync.sync.paths import normalize_remote_path, path_key

ROOT_FOLDER_ID = ""


@dataclass
class FolderMapping:
    local_folder_id: str
    remote_path: str
    cursor: str | None = None
    id: int | None = None

    @property
    def path_key(self) -> str:
        return path_key(self.remote_path)


@dataclass
class FileMapping:
    local_ref: str
    remote_path: str
    local_folder_id: str | None = None
    remote_id: str = ""
    fingerprint: str = ""
    local_mtime: float = 0.0
    remote_mtime: float = 0.0
    last_synced_at: float | None = None
    id: int | None = None

    @property
    def path_key(self) -> str:
        return path_key(self.remote_path)


def _folder_from_row(row) -> FolderMapping:
    return FolderMapping(
        id=row["id"],
        local_folder_id=row["local_folder_id"],
        remote_path=row["remote_path"],
        cursor=row["cursor"],
    )


def _file_from_row(row) -> FileMapping:
    return FileMapping(
        id=row["id"],
        local_ref=row["local_ref"],
        local_folder_id=row["local_folder_id"],
        remote_path=row["remote_path"],
        remote_id=row["remote_id"] or "",
        fingerprint=row["fingerprint"] or "",
        local_mtime=float(row["local_mtime"] or 0),
        remote_mtime=float(row["remote_mtime"] or 0),
        last_synced_at=row["last_synced_at"],
    )


class MappingStore:
    """Folder/file mapping tables plus the listing cursor kept on the root folder row."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _db(self):
        return get_conn(self.db_path)

    # -- folders -----------------------------------------------------------

    def list_folders(self) -> list[FolderMapping]:
        conn = self._db()
        rows = conn.execute("SELECT * FROM folder_mappings ORDER BY remote_path").fetchall()
        conn.close()
        return [_folder_from_row(r) for r in rows]

    def get_folder(self, local_folder_id: str) -> FolderMapping | None:
        conn = self._db()
        row = conn.execute("SELECT * FROM folder_mappings WHERE local_folder_id=?", (local_folder_id,)).fetchone()
        conn.close()
        return _folder_from_row(row) if row else None

    def get_folder_by_path(self, remote_path: str) -> FolderMapping | None:
        conn = self._db()
        row = conn.execute("SELECT * FROM folder_mappings WHERE path_key=?", (path_key(remote_path),)).fetchone()
        conn.close()
        return _folder_from_row(row) if row else None

    def upsert_folder(self, local_folder_id: str, remote_path: str) -> None:
        remote_path = normalize_remote_path(remote_path)
        now = time.time()
        conn = self._db()
        conn.execute("DELETE FROM folder_mappings WHERE path_key=? AND local_folder_id!=?", (path_key(remote_path), local_folder_id))
        conn.execute(
            """
            INSERT INTO folder_mappings(local_folder_id, remote_path, path_key, created_at, updated_at)
            VALUES (?,?,?,?,?)
            ON CONFLICT(local_folder_id) DO UPDATE SET
              remote_path=excluded.remote_path,
              path_key=excluded.path_key,
              updated_at=excluded.updated_at
            """,
            (local_folder_id, remote_path, path_key(remote_path), now, now),
        )
        conn.commit()
        conn.close()

    def delete_folder(self, local_folder_id: str) -> None:
        conn = self._db()
        conn.execute("DELETE FROM folder_mappings WHERE local_folder_id=?", (local_folder_id,))
        conn.commit()
        conn.close()

    def get_cursor(self, folder_id: str = ROOT_FOLDER_ID) -> str | None:
        folder = self.get_folder(folder_id)
        return folder.cursor if folder else None

    def set_cursor(self, cursor: str | None, remote_path: str, folder_id: str = ROOT_FOLDER_ID) -> None:
        self.upsert_folder(folder_id, remote_path)
        conn = self._db()
        conn.execute(
            "UPDATE folder_mappings SET cursor=?, updated_at=? WHERE local_folder_id=?",
            (cursor, time.time(), folder_id),
        )
        conn.commit()
        conn.close()

    # -- files -------------------------------------------------------------

    def list_files(self) -> list[FileMapping]:
        conn = self._db()
        rows = conn.execute("SELECT * FROM file_mappings ORDER BY remote_path").fetchall()
        conn.close()
        return [_file_from_row(r) for r in rows]

    def get_file(self, local_ref: str) -> FileMapping | None:
        conn = self._db()
        row = conn.execute("SELECT * FROM file_mappings WHERE local_ref=?", (local_ref,)).fetchone()
        conn.close()
        return _file_from_row(row) if row else None

    def get_file_by_path(self, remote_path: str) -> FileMapping | None:
        conn = self._db()
        row = conn.execute("SELECT * FROM file_mappings WHERE path_key=?", (path_key(remote_path),)).fetchone()
        conn.close()
        return _file_from_row(row) if row else None

    def get_file_by_remote_id(self, remote_id: str) -> FileMapping | None:
        if not remote_id:
            return None
        conn = self._db()
        row = conn.execute("SELECT * FROM file_mappings WHERE remote_id=?", (remote_id,)).fetchone()
        conn.close()
        return _file_from_row(row) if row else None

    def upsert_file(self, mapping: FileMapping) -> None:
        """Insert or replace the mapping for ``mapping.local_ref``.

        Any other row holding the same remote path is dropped first, so a
        path always belongs to exactly one local file.
        """
        remote_path = normalize_remote_path(mapping.remote_path)
        key = path_key(remote_path)
        now = time.time()
        conn = self._db()
        conn.execute("DELETE FROM file_mappings WHERE path_key=? AND local_ref!=?", (key, mapping.local_ref))
        conn.execute(
            """
            INSERT INTO file_mappings(
              local_ref, local_folder_id, remote_path, path_key, remote_id, fingerprint,
              local_mtime, remote_mtime, last_synced_at, updated_at
            ) VALUES (?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(local_ref) DO UPDATE SET
              local_folder_id=excluded.local_folder_id,
              remote_path=excluded.remote_path,
              path_key=excluded.path_key,
              remote_id=excluded.remote_id,
              fingerprint=excluded.fingerprint,
              local_mtime=excluded.local_mtime,
              remote_mtime=excluded.remote_mtime,
              last_synced_at=excluded.last_synced_at,
              updated_at=excluded.updated_at
            """,
            (
                mapping.local_ref,
                mapping.local_folder_id,
                remote_path,
                key,
                mapping.remote_id,
                mapping.fingerprint,
                mapping.local_mtime,
                mapping.remote_mtime,
                mapping.last_synced_at if mapping.last_synced_at is not None else now,
                now,
            ),
        )
        conn.commit()
        conn.close()

    def delete_file(self, local_ref: str) -> None:
        conn = self._db()
        conn.execute("DELETE FROM file_mappings WHERE local_ref=?", (local_ref,))
        conn.commit()
        conn.close()

    def delete_file_by_path(self, remote_path: str) -> None:
        conn = self._db()
        conn.execute("DELETE FROM file_mappings WHERE path_key=?", (path_key(remote_path),))
        conn.commit()
        conn.close()

    def delete_under(self, remote_path: str) -> int:
        """Drop every file and folder mapping at or below ``remote_path``."""
        key = path_key(remote_path)
        like = key.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "/%"
        conn = self._db()
        removed = conn.execute(
            "DELETE FROM file_mappings WHERE path_key=? OR path_key LIKE ? ESCAPE '\\'", (key, like)
        ).rowcount
        removed += conn.execute(
            "DELETE FROM folder_mappings WHERE local_folder_id!=? AND (path_key=? OR path_key LIKE ? ESCAPE '\\')",
            (ROOT_FOLDER_ID, key, like),
        ).rowcount
        conn.commit()
        conn.close()
        return removed

    def move_under(self, old_path: str, new_path: str) -> int:
        """Re-root every file and folder mapping at or below ``old_path`` onto ``new_path``."""
        old_path = normalize_remote_path(old_path)
        new_path = normalize_remote_path(new_path)
        key = path_key(old_path)
        prefix = key + "/"
        now = time.time()
        moved = 0
        conn = self._db()
        for table in ("file_mappings", "folder_mappings"):
            rows = conn.execute(
                f"SELECT id, remote_path FROM {table} WHERE path_key=? OR substr(path_key, 1, ?)=?",
                (key, len(prefix), prefix),
            ).fetchall()
            for row in rows:
                target = normalize_remote_path(new_path + row["remote_path"][len(old_path):])
                conn.execute(f"DELETE FROM {table} WHERE path_key=? AND id!=?", (path_key(target), row["id"]))
                conn.execute(
                    f"UPDATE {table} SET remote_path=?, path_key=?, updated_at=? WHERE id=?",
                    (target, path_key(target), now, row["id"]),
                )
                moved += 1
        conn.commit()
        conn.close()
        return moved

    def reset_cursors(self) -> None:
        conn = self._db()
        conn.execute("UPDATE folder_mappings SET cursor=NULL")
        conn.commit()
        conn.close()

    def counts(self) -> dict[str, Any]:
        conn = self._db()
        files = conn.execute("SELECT COUNT(1) FROM file_mappings").fetchone()[0]
        folders = conn.execute("SELECT COUNT(1) FROM folder_mappings WHERE local_folder_id!=?", (ROOT_FOLDER_ID,)).fetchone()[0]
        conn.close()
        return {"file_mappings": files, "folder_mappings": folders}
