from __future__ import annotations

import hashlib
import hmac
import json
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

from foldersync.core.errors import SignatureInvalid
from foldersync.core.log_sink import LogSink

EVENT_RETENTION_SEC = 3600


@dataclass
class WebhookEvent:
    account_id: str
    received_at: float
    processed: bool = False
    processed_at: float | None = None
    duplicate_count: int = 0


def sign(app_secret: str, raw_body: bytes) -> str:
    return hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def parse_accounts(payload: Any) -> list[str]:
    """Account ids from a notification body, in first-seen order."""
    if not isinstance(payload, dict):
        return []
    found: list[str] = []
    list_folder = payload.get("list_folder") or {}
    delta = payload.get("delta") or {}
    raw = list(list_folder.get("accounts") or []) if isinstance(list_folder, dict) else []
    raw += list(delta.get("users") or []) if isinstance(delta, dict) else []
    for item in raw:
        value = str(item).strip()
        if value and value not in found:
            found.append(value)
    return found


class WebhookIngestor:
    """Verifies change notifications and defers one delta pass per account.

    ``submit`` hands a callable to a background executor and must return
    immediately. A notification for an account whose previous event is still
    unprocessed is coalesced into it.
    """

    def __init__(
        self,
        app_secret: str | Callable[[], str],
        log: LogSink,
        submit: Callable[[Callable[[], None]], Any],
        run_delta: Callable[[str], Any],
        clock: Callable[[], float] = time.time,
    ):
        self.app_secret = app_secret
        self.log = log
        self.submit = submit
        self.run_delta = run_delta
        self.clock = clock
        self._lock = threading.Lock()
        self._events: dict[str, WebhookEvent] = {}

    def handle_challenge(self, challenge: str) -> str:
        return challenge

    def _secret(self) -> str:
        if callable(self.app_secret):
            return self.app_secret() or ""
        return self.app_secret or ""

    def verify(self, raw_body: bytes, signature_header: str | None) -> None:
        secret = self._secret()
        if not secret:
            self.log.error("webhook", "webhook_rejected", reason="app_secret_missing")
            raise SignatureInvalid("app_secret_missing")
        expected = sign(secret, raw_body)
        provided = (signature_header or "").strip().lower()
        if not hmac.compare_digest(expected, provided):
            self.log.warning("webhook", "webhook_rejected", reason="signature_mismatch", body_bytes=len(raw_body))
            raise SignatureInvalid("signature_mismatch")

    def handle_notification(self, raw_body: bytes, signature_header: str | None) -> dict[str, Any]:
        self.verify(raw_body, signature_header)

        try:
            payload = json.loads(raw_body.decode("utf-8") or "null")
        except (UnicodeDecodeError, ValueError):
            self.log.warning("webhook", "webhook_body_unparseable", body_bytes=len(raw_body))
            return {"accounts": [], "scheduled": [], "coalesced": []}

        accounts = parse_accounts(payload)
        now = self.clock()
        scheduled: list[str] = []
        coalesced: list[str] = []
        with self._lock:
            self._prune_locked(now)
            for account_id in accounts:
                existing = self._events.get(account_id)
                if existing is not None and not existing.processed:
                    existing.duplicate_count += 1
                    coalesced.append(account_id)
                    continue
                self._events[account_id] = WebhookEvent(account_id=account_id, received_at=now)
                scheduled.append(account_id)

        for account_id in scheduled:
            self.submit(lambda account_id=account_id: self._process(account_id))

        self.log.info("webhook", "webhook_received", accounts=accounts, scheduled=scheduled, coalesced=coalesced)
        return {"accounts": accounts, "scheduled": scheduled, "coalesced": coalesced}

    def _process(self, account_id: str) -> None:
        try:
            self.run_delta(account_id)
        except Exception as e:
            self.log.error("webhook", "webhook_delta_failed", account_id=account_id, error=str(e))
        finally:
            with self._lock:
                event = self._events.get(account_id)
                if event is not None:
                    event.processed = True
                    event.processed_at = self.clock()

    def _prune_locked(self, now: float) -> None:
        for account_id in [
            a for a, ev in self._events.items()
            if ev.processed and (ev.processed_at or 0) < now - EVENT_RETENTION_SEC
        ]:
            del self._events[account_id]

    def events(self) -> list[dict[str, Any]]:
        with self._lock:
            return [asdict(ev) for ev in self._events.values()]

    def pending_accounts(self) -> list[str]:
        with self._lock:
            return [a for a, ev in self._events.items() if not ev.processed]
