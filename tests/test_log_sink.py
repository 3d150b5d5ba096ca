from foldersync.core.db import get_conn
from foldersync.core.log_sink import LogSink, normalize_level


def test_normalize_level():
    assert normalize_level("WARN") == "warning"
    assert normalize_level("Error") == "error"
    assert normalize_level("verbose") == "info"
    assert normalize_level(None, "debug") == "debug"


def test_entries_below_min_level_are_not_stored(db_path):
    sink = LogSink(db_path, min_level="warning")

    dropped = sink.info("queue", "task_enqueued", task_id=1)
    kept = sink.error("queue", "task_failed", task_id=1)

    assert dropped.id is None
    assert kept.id is not None
    assert sink.list_logs()["total"] == 1


def test_list_logs_filters_by_minimum_severity(log):
    log.debug("worker", "task_started")
    log.info("queue", "task_enqueued")
    log.warning("queue", "task_retry_scheduled", delay_sec=2)
    log.error("queue", "task_failed")
    log.critical("oauth", "credentials_revoked")

    page = log.list_logs(level="warning")

    assert page["total"] == 3
    assert {i["message"] for i in page["items"]} == {"task_retry_scheduled", "task_failed", "credentials_revoked"}


def test_list_logs_pages_newest_first(log):
    for i in range(5):
        log.info("queue", f"entry_{i}", n=i)

    first = log.list_logs(page=1, page_size=2)
    last = log.list_logs(page=3, page_size=2)

    assert first["pages"] == 3
    assert [i["message"] for i in first["items"]] == ["entry_4", "entry_3"]
    assert [i["message"] for i in last["items"]] == ["entry_0"]
    assert first["items"][0]["context"] == {"n": 4}


def test_clear_and_purge_logs(db_path, log):
    log.info("queue", "old_entry")
    log.info("queue", "new_entry")
    conn = get_conn(db_path)
    conn.execute("UPDATE logs SET created_at = created_at - 40 * 86400 WHERE message='old_entry'")
    conn.commit()
    conn.close()

    assert log.purge_logs(30) == 1
    assert log.clear_logs() == 1
    assert log.list_logs()["total"] == 0
