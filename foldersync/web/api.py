from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from foldersync import __version__
from foldersync.core.config import load_config
from foldersync.core.errors import SignatureInvalid
from foldersync.providers.dropbox import OAuthState
from foldersync.service import SyncService, build_service

router = APIRouter(prefix="/api")

SCHEDULER_STATE_LOCK = threading.Lock()
SCHEDULER_POLL_GRANULARITY_SEC = 1
SCHEDULER_STARTUP_FULL_SYNC_DELAY_SEC = 5
MAINTENANCE_INTERVAL_SEC = 3600

_service: SyncService | None = None
_service_lock = threading.Lock()

_scheduler_task: asyncio.Task | None = None
_scheduler_stop_event: asyncio.Event | None = None
_scheduler_state: dict[str, Any] = {
    "running": False,
    "enabled": False,
    "poll_interval_sec": 0,
    "full_sync_interval_sec": 0,
    "last_job": None,
    "last_started_at": None,
    "last_finished_at": None,
    "last_result": None,
    "last_error": None,
    "run_count": 0,
    "skipped_busy_count": 0,
    "skipped_unauthorized_count": 0,
}


def get_service() -> SyncService:
    global _service
    with _service_lock:
        if _service is None:
            _service = build_service(load_config())
        return _service


def reset_service() -> None:
    global _service
    with _service_lock:
        if _service is not None:
            _service.shutdown(wait=False)
        _service = None


def _iso_from_ts(ts: object) -> str | None:
    if not isinstance(ts, (int, float)):
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _scheduler_state_update(**kwargs) -> None:
    with SCHEDULER_STATE_LOCK:
        _scheduler_state.update(kwargs)


def _scheduler_state_bump(key: str) -> None:
    with SCHEDULER_STATE_LOCK:
        _scheduler_state[key] = int(_scheduler_state.get(key) or 0) + 1


def _scheduler_state_snapshot() -> dict[str, Any]:
    with SCHEDULER_STATE_LOCK:
        snap = dict(_scheduler_state)
    snap["last_started_at"] = _iso_from_ts(snap.get("last_started_at"))
    snap["last_finished_at"] = _iso_from_ts(snap.get("last_finished_at"))
    return snap


async def _wait_stop_or_timeout(stop_event: asyncio.Event, timeout_sec: float) -> bool:
    if timeout_sec <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_sec)
        return True
    except asyncio.TimeoutError:
        return False


async def _run_scheduled_job(svc: SyncService, job: str, logger: logging.Logger) -> None:
    if job != "maintenance" and svc.oauth.state in (
        OAuthState.UNAUTHORIZED,
        OAuthState.AUTHORIZATION_PENDING,
        OAuthState.REVOKED,
    ):
        _scheduler_state_bump("skipped_unauthorized_count")
        _scheduler_state_update(last_job=job, last_result="skipped_unauthorized")
        logger.debug("scheduled_%s_skipped not_authorized", job)
        return

    _scheduler_state_update(last_job=job, last_started_at=time.time(), last_result="running", last_error=None)
    try:
        if job == "process_queue":
            res = await asyncio.to_thread(svc.process_queue)
        elif job == "full_sync":
            res = await asyncio.to_thread(svc.run_delta, True)
        else:
            res = await asyncio.to_thread(svc.maintenance)
    except Exception as e:
        _scheduler_state_bump("run_count")
        _scheduler_state_update(last_finished_at=time.time(), last_result="failed", last_error=str(e))
        logger.exception("scheduled_%s_failed: %s", job, e)
        return

    if res.get("busy"):
        _scheduler_state_bump("skipped_busy_count")
        _scheduler_state_update(last_finished_at=time.time(), last_result="skipped_busy", last_error="sync_busy")
        logger.warning("scheduled_%s_skipped sync_busy", job)
        return

    _scheduler_state_bump("run_count")
    _scheduler_state_update(
        last_finished_at=time.time(),
        last_result="success" if res.get("ok") else "warning",
        last_error=None if res.get("ok") else res.get("message"),
    )
    logger.info("scheduled_%s_completed %s", job, res.get("summary") or res.get("message"))


async def _scheduler_loop(stop_event: asyncio.Event) -> None:
    logger = logging.getLogger("scheduler")
    svc = get_service()
    next_poll_at: float | None = None
    next_full_at: float | None = None
    next_maintenance_at = time.time() + MAINTENANCE_INTERVAL_SEC
    _scheduler_state_update(running=True, last_error=None, last_result=None)
    logger.info("scheduler_started")

    try:
        while not stop_event.is_set():
            poll_interval = int(svc.cfg.sync.poll_interval_sec or 0)
            full_interval = int(svc.cfg.sync.full_sync_interval_sec or 0)
            _scheduler_state_update(
                enabled=poll_interval > 0 or full_interval > 0,
                poll_interval_sec=poll_interval,
                full_sync_interval_sec=full_interval,
            )

            now = time.time()
            due: list[str] = []
            if full_interval > 0:
                if next_full_at is None:
                    next_full_at = now + SCHEDULER_STARTUP_FULL_SYNC_DELAY_SEC
                if now >= next_full_at:
                    due.append("full_sync")
                    next_full_at = now + full_interval
            else:
                next_full_at = None
            if poll_interval > 0:
                if next_poll_at is None:
                    next_poll_at = now + poll_interval
                if now >= next_poll_at:
                    due.append("process_queue")
                    next_poll_at = now + poll_interval
            else:
                next_poll_at = None
            if now >= next_maintenance_at:
                due.append("maintenance")
                next_maintenance_at = now + MAINTENANCE_INTERVAL_SEC

            if not due:
                await _wait_stop_or_timeout(stop_event, SCHEDULER_POLL_GRANULARITY_SEC)
                continue
            for job in due:
                if stop_event.is_set():
                    break
                await _run_scheduled_job(svc, job, logger)
    finally:
        _scheduler_state_update(running=False)
        logger.info("scheduler_stopped")


def start_scheduler() -> None:
    global _scheduler_task, _scheduler_stop_event
    if _scheduler_task and not _scheduler_task.done():
        return

    _scheduler_stop_event = asyncio.Event()
    _scheduler_task = asyncio.create_task(_scheduler_loop(_scheduler_stop_event), name="foldersync_scheduler")


async def stop_scheduler() -> None:
    global _scheduler_task, _scheduler_stop_event
    if _scheduler_stop_event is not None:
        _scheduler_stop_event.set()

    if _scheduler_task is not None:
        try:
            await _scheduler_task
        except Exception:
            logging.getLogger("scheduler").exception("scheduler_stop_error")

    _scheduler_task = None
    _scheduler_stop_event = None
    _scheduler_state_update(running=False)


@router.get("/healthz")
def healthz():
    return {"ok": True, "service": "foldersync", "version": __version__, "scheduler": _scheduler_state_snapshot()}


@router.get("/auth/url")
def auth_url(redirect_uri: str | None = None):
    return get_service().start_authorization(redirect_uri)


@router.post("/auth/exchange")
def auth_exchange(payload: dict):
    code = str(payload.get("code", "")).strip()
    state = str(payload.get("state", "")).strip()
    if not code:
        return {"ok": False, "message": "oauth_code_missing"}
    return get_service().finish_authorization(code, state)


@router.get("/auth/callback")
def auth_callback(code: str = "", state: str = "", error: str | None = None, error_description: str | None = None):
    if error:
        return {"ok": False, "message": f"authorization_denied: {error_description or error}"}
    if not code:
        return {"ok": False, "message": "oauth_code_missing"}
    return get_service().finish_authorization(code, state)


@router.post("/auth/disconnect")
def auth_disconnect():
    return get_service().disconnect()


@router.get("/auth/status")
def auth_status():
    return get_service().auth_status()


@router.post("/sync/full")
def sync_full():
    return get_service().run_full_sync()


@router.get("/queue/stats")
def queue_stats():
    return get_service().get_queue_stats()


@router.get("/queue/tasks")
def queue_tasks(status: str | None = None, limit: int = 100):
    tasks = get_service().queue.list_tasks(status=status, limit=max(1, min(limit, 500)))
    return {"ok": True, "message": "ok", "items": [t.to_dict() for t in tasks]}


@router.post("/queue/process")
def queue_process():
    return get_service().force_process_queue()


@router.post("/queue/retry-failed")
def queue_retry_failed():
    return get_service().retry_failed_tasks()


@router.get("/logs")
def get_logs(level: str | None = None, page: int = 1, page_size: int = 50):
    return get_service().list_logs(level=level, page=page, page_size=page_size)


@router.delete("/logs")
def clear_logs():
    return get_service().clear_logs()


@router.get("/status/scheduler")
def scheduler_status():
    return {"ok": True, "message": "ok", **_scheduler_state_snapshot()}


@router.get("/webhook")
def webhook_challenge(challenge: str = ""):
    svc = get_service()
    return PlainTextResponse(
        svc.webhook.handle_challenge(challenge),
        headers={"Content-Type": "text/plain", "X-Content-Type-Options": "nosniff"},
    )


@router.post("/webhook")
async def webhook_notification(request: Request):
    raw_body = await request.body()
    signature = request.headers.get("X-Dropbox-Signature")
    try:
        return await asyncio.to_thread(lambda: get_service().handle_webhook(raw_body, signature))
    except SignatureInvalid as e:
        return JSONResponse(status_code=403, content={"ok": False, "message": e.message, "error": e.to_dict()})
