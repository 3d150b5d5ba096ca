from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Any, Callable

import requests

from foldersync.core.config import DEFAULT_CONFIG_PATH, AppConfig, load_config
from foldersync.core.db import init_db
from foldersync.core.errors import SyncError
from foldersync.core.log_sink import LogSink
from foldersync.providers.dropbox import DropboxClient, OAuthManager
from foldersync.sync.delta import DeltaDetector
from foldersync.sync.local_tree import FilesystemLocalTree, LocalTree
from foldersync.sync.mappings import MappingStore
from foldersync.sync.queue import TaskQueue
from foldersync.sync.stats import queue_stats
from foldersync.sync.webhook import WebhookIngestor
from foldersync.sync.worker import WorkerPool

logger = logging.getLogger("service")


def _failure(e: SyncError, **extra: Any) -> dict[str, Any]:
    return {"ok": False, "message": e.message, "error": e.to_dict(), **extra}


class SyncService:
    """Control surface over the sync engine.

    Every public method returns ``{"ok": bool, "message": str, ...}`` and
    waits at most ``control_wait_sec``; longer work keeps running in the
    background and the call reports it as deferred.
    """

    def __init__(
        self,
        cfg: AppConfig,
        local_tree: LocalTree | None = None,
        oauth: OAuthManager | None = None,
        client: DropboxClient | None = None,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
        config_path: Path | None = None,
    ):
        self.cfg = cfg
        self.config_path = config_path
        self._config_stamp = self._stat_config()
        db_path = cfg.database.path
        init_db(db_path)

        self.log = LogSink(db_path, cfg.logging.db_min_level)
        self.oauth = oauth or OAuthManager(
            app_key=cfg.auth.app_key,
            app_secret=cfg.auth.app_secret,
            token_file=cfg.auth.token_file,
            state_file=cfg.auth.state_file,
            log=self.log,
            redirect_uri=cfg.auth.redirect_uri,
            timeout=cfg.auth.timeout_sec,
            refresh_margin_sec=cfg.auth.refresh_margin_sec,
            state_ttl_sec=cfg.auth.state_ttl_sec,
            session=session,
            clock=clock,
        )
        self.client = client or DropboxClient(
            self.oauth,
            timeout=cfg.auth.timeout_sec,
            upload_chunk_size=cfg.sync.upload_chunk_size,
            session=session,
        )
        self.local_tree = local_tree or FilesystemLocalTree(
            cfg.sync.local_root,
            exclude_dirs=cfg.sync.exclude_dirs,
            exclude_hidden=cfg.sync.exclude_hidden,
        )
        self.mappings = MappingStore(db_path)
        self.queue = TaskQueue(
            db_path,
            self.log,
            max_attempts=cfg.sync.max_attempts,
            backoff_base=cfg.sync.backoff_base_sec,
            backoff_cap=cfg.sync.backoff_cap_sec,
            max_concurrent=cfg.sync.max_concurrent_tasks,
            clock=clock,
        )
        self.detector = DeltaDetector(
            self.client,
            self.local_tree,
            self.mappings,
            self.queue,
            self.log,
            remote_root=cfg.sync.remote_root,
            tie_break=cfg.sync.tie_break,
            max_path_length=cfg.sync.max_path_length,
        )
        self.workers = WorkerPool(
            self.queue,
            self.client,
            self.local_tree,
            self.mappings,
            self.oauth,
            self.log,
            max_workers=cfg.sync.max_concurrent_tasks,
            batch_size=cfg.sync.batch_size,
            remote_root=cfg.sync.remote_root,
        )

        self.executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="foldersync")
        self.run_lock = threading.Lock()
        self.webhook = WebhookIngestor(
            self.current_app_secret,
            self.log,
            submit=self.executor.submit,
            run_delta=self.run_webhook_delta,
        )

    # -- internals ---------------------------------------------------------

    def _stat_config(self) -> tuple[int, int] | None:
        if self.config_path is None:
            return None
        try:
            st = Path(self.config_path).stat()
        except OSError:
            return None
        return st.st_mtime_ns, st.st_size

    def current_app_secret(self) -> str:
        """App secret from the config file, re-read whenever the file changes on disk."""
        stamp = self._stat_config()
        if stamp is not None and stamp != self._config_stamp:
            self._config_stamp = stamp
            try:
                fresh = load_config(Path(self.config_path))
            except Exception as e:
                self.log.warning("service", "app_credentials_reload_failed", path=str(self.config_path), error=str(e))
            else:
                if (fresh.auth.app_key, fresh.auth.app_secret) != (self.cfg.auth.app_key, self.cfg.auth.app_secret):
                    self.cfg.auth.app_key = fresh.auth.app_key
                    self.cfg.auth.app_secret = fresh.auth.app_secret
                    if hasattr(self.oauth, "app_secret"):
                        self.oauth.app_key = fresh.auth.app_key
                        self.oauth.app_secret = fresh.auth.app_secret
                    self.log.notice("service", "app_credentials_reloaded", path=str(self.config_path))
        return self.cfg.auth.app_secret

    def _run_locked(self, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        finally:
            self.run_lock.release()

    def _bounded(self, name: str, fn: Callable[[], Any]) -> tuple[dict[str, Any] | None, Any]:
        """Run ``fn`` under the run lock, waiting at most ``control_wait_sec``.

        Returns ``(response, None)`` when the call ends early (busy, deferred,
        error) and ``(None, result)`` on completion.
        """
        if not self.run_lock.acquire(blocking=False):
            return {"ok": False, "message": "sync_busy", "busy": True}, None
        future = self.executor.submit(self._run_locked, fn)
        try:
            result = future.result(timeout=self.cfg.control_wait_sec)
        except FutureTimeout:
            return {"ok": True, "message": f"{name}_deferred", "deferred": True}, None
        except SyncError as e:
            self.log.error("service", f"{name}_failed", kind=e.kind.value, error=e.message)
            return _failure(e), None
        except Exception as e:
            self.log.error("service", f"{name}_failed", error=str(e))
            return {"ok": False, "message": f"{name}_failed: {e}"}, None
        return None, result

    # -- control surface ---------------------------------------------------

    def start_authorization(self, redirect_uri: str | None = None) -> dict[str, Any]:
        try:
            res = self.oauth.start_authorization(redirect_uri)
        except SyncError as e:
            return _failure(e)
        return {"ok": True, "message": "open auth_url in a browser and approve access", **res}

    def finish_authorization(self, code: str, state: str) -> dict[str, Any]:
        try:
            cred = self.oauth.finish_authorization(code, state)
        except SyncError as e:
            return _failure(e)
        return {
            "ok": True,
            "message": "authorized",
            "account_id": cred.account_id,
            "expires_at": cred.expires_at,
            "has_refresh_token": bool(cred.refresh_token),
        }

    def disconnect(self) -> dict[str, Any]:
        remote_revoked = self.oauth.disconnect()
        self.mappings.reset_cursors()
        return {
            "ok": True,
            "message": "disconnected" if remote_revoked else "disconnected (remote revoke not confirmed)",
            "remote_revoked": remote_revoked,
        }

    def auth_status(self) -> dict[str, Any]:
        return {"ok": True, "message": "ok", **self.oauth.status()}

    def run_full_sync(self) -> dict[str, Any]:
        early, summary = self._bounded("full_sync", lambda: self.detector.run(full=True))
        if early is not None:
            return early
        return {"ok": True, "message": f"full sync queued {summary['enqueued']} task(s)", "summary": summary}

    def get_queue_stats(self) -> dict[str, Any]:
        return {"ok": True, "message": "ok", "auth_state": self.oauth.state.value, **queue_stats(self.cfg.database.path)}

    def force_process_queue(self) -> dict[str, Any]:
        early, summary = self._bounded("force_process", self.workers.force_process)
        if early is not None:
            return early
        if summary.get("halted"):
            return {"ok": False, "message": "reauthorization_required", "summary": summary}
        return {
            "ok": True,
            "message": f"processed {summary['processed']} task(s): {summary['completed']} completed, "
            f"{summary['retried']} retrying, {summary['failed']} failed",
            "summary": summary,
        }

    def retry_failed_tasks(self) -> dict[str, Any]:
        counts = self.queue.retry_failed()
        message = f"requeued {counts['retried']} failed task(s)"
        if counts["skipped"]:
            message += f", {counts['skipped']} skipped (path busy)"
        return {"ok": True, "message": message, **counts}

    def list_logs(self, level: str | None = None, page: int = 1, page_size: int = 50) -> dict[str, Any]:
        return {"ok": True, "message": "ok", **self.log.list_logs(level=level, page=page, page_size=page_size)}

    def clear_logs(self) -> dict[str, Any]:
        deleted = self.log.clear_logs()
        logger.info("logs_cleared deleted=%s", deleted)
        return {"ok": True, "message": f"cleared {deleted} log entries", "deleted": deleted}

    # -- scheduler / webhook entry points ----------------------------------

    def process_queue(self) -> dict[str, Any]:
        """Scheduler tick. Skips when another run holds the lock."""
        if not self.run_lock.acquire(blocking=False):
            return {"ok": False, "message": "sync_busy", "busy": True}
        try:
            summary = self.workers.process_pending()
        finally:
            self.run_lock.release()
        return {"ok": not summary.get("halted"), "message": "queue_processed", "summary": summary}

    def run_delta(self, full: bool = False) -> dict[str, Any]:
        if not self.run_lock.acquire(blocking=False):
            return {"ok": False, "message": "sync_busy", "busy": True}
        try:
            summary = self.detector.run(full=full)
        finally:
            self.run_lock.release()
        return {"ok": True, "message": "delta_completed", "summary": summary}

    def run_webhook_delta(self, account_id: str) -> None:
        known = self.oauth.account_id
        if known and account_id != known:
            self.log.notice("webhook", "webhook_account_ignored", account_id=account_id)
            return
        with self.run_lock:
            self.detector.run(full=False)

    def handle_webhook(self, raw_body: bytes, signature_header: str | None) -> dict[str, Any]:
        if not self.cfg.webhook.enabled:
            return {"ok": True, "message": "webhook_disabled", "scheduled": []}
        res = self.webhook.handle_notification(raw_body, signature_header)
        return {"ok": True, "message": "accepted", **res}

    def maintenance(self) -> dict[str, Any]:
        requeued = self.queue.requeue_stale(self.cfg.sync.stale_processing_sec)
        purged_tasks = self.queue.purge_completed(self.cfg.sync.completed_retention_days)
        purged_logs = self.log.purge_logs(self.cfg.logging.retention_days)
        return {
            "ok": True,
            "message": "maintenance_completed",
            "requeued_stale": requeued,
            "purged_tasks": purged_tasks,
            "purged_logs": purged_logs,
        }

    def shutdown(self, wait: bool = False) -> None:
        self.executor.shutdown(wait=wait)


def build_service(cfg: AppConfig | None = None, **kwargs: Any) -> SyncService:
    kwargs.setdefault("config_path", DEFAULT_CONFIG_PATH)
    return SyncService(cfg or load_config(kwargs["config_path"]), **kwargs)
