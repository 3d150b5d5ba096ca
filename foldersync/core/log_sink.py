from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any

from foldersync.core.db import get_conn
from foldersync.core.logging_setup import NOTICE

# RFC 5424 order: index 0 is the most severe.
LEVELS = ("emergency", "alert", "critical", "error", "warning", "notice", "info", "debug")

_STDLIB_LEVELS = {
    "emergency": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "notice": NOTICE,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def normalize_level(level: str | None, default: str = "info") -> str:
    value = (level or "").strip().lower()
    if value == "warn":
        value = "warning"
    return value if value in LEVELS else default


@dataclass
class LogEntry:
    level: str
    message: str
    component: str = "sync"
    context: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "level": self.level,
            "component": self.component,
            "message": self.message,
            "context": self.context,
            "created_at": self.created_at,
        }


class LogSink:
    """Append-only LogEntry store shared by every component.

    Each entry is written to the ``logs`` table and mirrored to the stdlib
    logger named after its component.
    """

    def __init__(self, db_path: str, min_level: str = "debug"):
        self.db_path = db_path
        self.min_level = normalize_level(min_level, "debug")

    def log(self, level: str, component: str, message: str, **context: Any) -> LogEntry:
        level = normalize_level(level)
        entry = LogEntry(level=level, message=message, component=component, context=context)

        detail = json.dumps(context, ensure_ascii=False, default=str) if context else ""
        logging.getLogger(component).log(_STDLIB_LEVELS[level], f"{message} {detail}".strip())

        if LEVELS.index(level) > LEVELS.index(self.min_level):
            return entry

        conn = get_conn(self.db_path)
        cur = conn.execute(
            "INSERT INTO logs(level,severity,component,message,context,created_at) VALUES (?,?,?,?,?,?)",
            (
                level,
                LEVELS.index(level),
                component,
                message,
                json.dumps(context, ensure_ascii=False, default=str) if context else None,
                entry.created_at,
            ),
        )
        entry.id = cur.lastrowid
        conn.commit()
        conn.close()
        return entry

    def debug(self, component: str, message: str, **context: Any) -> LogEntry:
        return self.log("debug", component, message, **context)

    def info(self, component: str, message: str, **context: Any) -> LogEntry:
        return self.log("info", component, message, **context)

    def notice(self, component: str, message: str, **context: Any) -> LogEntry:
        return self.log("notice", component, message, **context)

    def warning(self, component: str, message: str, **context: Any) -> LogEntry:
        return self.log("warning", component, message, **context)

    def error(self, component: str, message: str, **context: Any) -> LogEntry:
        return self.log("error", component, message, **context)

    def critical(self, component: str, message: str, **context: Any) -> LogEntry:
        return self.log("critical", component, message, **context)

    def list_logs(self, level: str | None = None, page: int = 1, page_size: int = 50) -> dict[str, Any]:
        """Return entries at ``level`` or more severe, newest first."""
        page = max(int(page), 1)
        page_size = min(max(int(page_size), 1), 500)

        where = ""
        params: list[Any] = []
        if level:
            where = "WHERE severity <= ?"
            params.append(LEVELS.index(normalize_level(level)))

        conn = get_conn(self.db_path)
        total = conn.execute(f"SELECT COUNT(1) FROM logs {where}", params).fetchone()[0]
        rows = conn.execute(
            f"SELECT * FROM logs {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            [*params, page_size, (page - 1) * page_size],
        ).fetchall()
        conn.close()

        items = [_row_to_entry(r).to_dict() for r in rows]
        return {
            "level": normalize_level(level) if level else None,
            "page": page,
            "page_size": page_size,
            "total": total,
            "pages": max(math.ceil(total / page_size), 1),
            "items": items,
        }

    def clear_logs(self) -> int:
        conn = get_conn(self.db_path)
        deleted = conn.execute("DELETE FROM logs").rowcount
        conn.commit()
        conn.close()
        return deleted

    def purge_logs(self, days: int) -> int:
        cutoff = time.time() - max(days, 0) * 86400
        conn = get_conn(self.db_path)
        deleted = conn.execute("DELETE FROM logs WHERE created_at < ?", (cutoff,)).rowcount
        conn.commit()
        conn.close()
        return deleted


def _row_to_entry(row) -> LogEntry:
    try:
        context = json.loads(row["context"]) if row["context"] else {}
    except ValueError:
        context = {"raw": row["context"]}
    return LogEntry(
        id=row["id"],
        level=row["level"],
        component=row["component"] or "",
        message=row["message"],
        context=context if isinstance(context, dict) else {"value": context},
        created_at=row["created_at"],
    )
