import sqlite3
from contextlib import contextmanager
from pathlib import Path


def get_conn(db_path: str):
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction(db_path: str):
    """Exclusive write transaction.

    BEGIN IMMEDIATE takes the database write lock up front, so concurrent
    workers (threads or processes) serialize their read-modify-write cycles.
    """
    conn = get_conn(db_path)
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def init_db(db_path: str):
    conn = get_conn(db_path)
    cur = conn.cursor()
    cur.execute("PRAGMA journal_mode=WAL")

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_tasks (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          direction TEXT NOT NULL,
          item_type TEXT NOT NULL DEFAULT 'file',
          local_ref TEXT,
          remote_path TEXT NOT NULL,
          path_key TEXT NOT NULL,
          payload_json TEXT,
          priority INTEGER DEFAULT 10,
          status TEXT NOT NULL DEFAULT 'pending',
          attempt_count INTEGER DEFAULT 0,
          max_attempts INTEGER DEFAULT 5,
          not_before REAL DEFAULT 0,
          last_error TEXT,
          locked_at REAL,
          created_at REAL NOT NULL,
          updated_at REAL NOT NULL
        )
        """
    )

    # Path lock: at most one active task per normalized remote path.
    cur.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_tasks_active_path
            ON sync_tasks(path_key) WHERE status IN ('pending', 'processing')
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_sync_tasks_status ON sync_tasks(status, not_before)")

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS folder_mappings (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          local_folder_id TEXT UNIQUE,
          remote_path TEXT NOT NULL,
          path_key TEXT UNIQUE NOT NULL,
          cursor TEXT,
          created_at REAL,
          updated_at REAL
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS file_mappings (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          local_ref TEXT UNIQUE,
          local_folder_id TEXT,
          remote_path TEXT NOT NULL,
          path_key TEXT UNIQUE NOT NULL,
          remote_id TEXT,
          fingerprint TEXT,
          local_mtime REAL DEFAULT 0,
          remote_mtime REAL DEFAULT 0,
          last_synced_at REAL,
          updated_at REAL
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS logs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          level TEXT NOT NULL,
          severity INTEGER NOT NULL,
          component TEXT,
          message TEXT NOT NULL,
          context TEXT,
          created_at REAL NOT NULL
        )
        """
    )

    cur.execute("CREATE INDEX IF NOT EXISTS idx_file_mappings_remote_id ON file_mappings(remote_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_logs_severity ON logs(severity, created_at)")

    conn.commit()
    conn.close()
