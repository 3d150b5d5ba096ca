from __future__ import annotations

import hmac
import json
import secrets
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urlencode

import requests

from foldersync.core.errors import (
    ConfigMissing,
    CsrfMismatch,
    NetworkError,
    ReauthorizationRequired,
    TokenExchangeFailed,
    TransientError,
)
from foldersync.core.log_sink import LogSink

AUTHORIZE_URL = "https://www.dropbox.com/oauth2/authorize"
TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"
REVOKE_URL = "https://api.dropboxapi.com/2/auth/token/revoke"


class OAuthState(str, Enum):
    UNAUTHORIZED = "unauthorized"
    AUTHORIZATION_PENDING = "authorization_pending"
    AUTHORIZED = "authorized"
    REFRESHING = "refreshing"
    REVOKED = "revoked"


@dataclass
class OAuthCredential:
    access_token: str
    refresh_token: str = ""
    expires_at: float = 0.0
    account_id: str = ""
    token_type: str = "bearer"

    def expires_within(self, margin_sec: float, now: float) -> bool:
        if not self.expires_at:
            return False
        return self.expires_at - margin_sec <= now

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuthCredential":
        return cls(
            access_token=str(data.get("access_token") or ""),
            refresh_token=str(data.get("refresh_token") or ""),
            expires_at=float(data.get("expires_at") or 0),
            account_id=str(data.get("account_id") or ""),
            token_type=str(data.get("token_type") or "bearer"),
        )


class OAuthManager:
    """Owner of the process-wide Dropbox credential.

    Only ``get_valid_token`` / ``refresh_rejected_token`` / ``disconnect`` are
    meant for other components. Refresh runs inside ``_lock``, so concurrent
    callers wait for the in-flight refresh and then read its result.
    """

    def __init__(
        self,
        app_key: str,
        app_secret: str,
        token_file: str,
        state_file: str,
        log: LogSink,
        redirect_uri: str = "",
        timeout: int = 30,
        refresh_margin_sec: int = 300,
        state_ttl_sec: int = 600,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.app_key = app_key or ""
        self.app_secret = app_secret or ""
        self.token_file = token_file
        self.state_file = state_file
        self.log = log
        self.redirect_uri = redirect_uri or ""
        self.timeout = timeout
        self.refresh_margin_sec = refresh_margin_sec
        self.state_ttl_sec = state_ttl_sec
        self.session = session or requests.Session()
        self.clock = clock

        self._lock = threading.Lock()
        self._refreshing = False

    # -- persistence -------------------------------------------------------

    def _load_tokens(self) -> dict[str, Any] | None:
        p = Path(self.token_file)
        if not p.exists():
            return None
        try:
            payload = json.loads(p.read_text(encoding="utf-8"))
        except ValueError:
            return None
        if isinstance(payload, dict):
            return payload
        return None

    def _save_tokens(self, data: dict[str, Any]) -> None:
        p = Path(self.token_file)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_suffix(p.suffix + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(p)

    def _load_pending_state(self) -> dict[str, Any] | None:
        p = Path(self.state_file)
        if not p.exists():
            return None
        try:
            payload = json.loads(p.read_text(encoding="utf-8"))
        except ValueError:
            return None
        if not isinstance(payload, dict) or not payload.get("state"):
            return None
        if self.clock() - float(payload.get("created_at") or 0) > self.state_ttl_sec:
            return None
        return payload

    def _consume_pending_state(self) -> dict[str, Any] | None:
        payload = self._load_pending_state()
        Path(self.state_file).unlink(missing_ok=True)
        return payload

    # -- state -------------------------------------------------------------

    @property
    def configured(self) -> bool:
        return bool(self.app_key and self.app_secret)

    @property
    def state(self) -> OAuthState:
        if self._refreshing:
            return OAuthState.REFRESHING
        data = self._load_tokens()
        if data and data.get("revoked"):
            return OAuthState.REVOKED
        if data and data.get("access_token"):
            return OAuthState.AUTHORIZED
        if self._load_pending_state():
            return OAuthState.AUTHORIZATION_PENDING
        return OAuthState.UNAUTHORIZED

    @property
    def account_id(self) -> str:
        data = self._load_tokens() or {}
        return str(data.get("account_id") or "")

    def status(self) -> dict[str, Any]:
        data = self._load_tokens() or {}
        return {
            "state": self.state.value,
            "configured": self.configured,
            "account_id": data.get("account_id") or None,
            "expires_at": data.get("expires_at"),
            "has_refresh_token": bool(data.get("refresh_token")),
            "revoked_reason": data.get("revoked_reason"),
        }

    # -- authorization flow ------------------------------------------------

    def start_authorization(self, redirect_uri: str | None = None) -> dict[str, str]:
        if not self.configured:
            self.log.error("oauth", "authorization_config_missing")
            raise ConfigMissing("app_key_or_app_secret_missing")

        redirect = redirect_uri if redirect_uri is not None else self.redirect_uri
        state = secrets.token_urlsafe(24)
        p = Path(self.state_file)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(
            json.dumps({"state": state, "created_at": self.clock(), "redirect_uri": redirect}),
            encoding="utf-8",
        )

        params = {
            "client_id": self.app_key,
            "response_type": "code",
            "token_access_type": "offline",
            "state": state,
        }
        if redirect:
            params["redirect_uri"] = redirect
        self.log.info("oauth", "authorization_started", redirect_uri=redirect)
        return {"auth_url": f"{AUTHORIZE_URL}?{urlencode(params)}", "state": state, "redirect_uri": redirect}

    def finish_authorization(self, code: str, state: str) -> OAuthCredential:
        if not self.configured:
            self.log.error("oauth", "authorization_config_missing")
            raise ConfigMissing("app_key_or_app_secret_missing")

        pending = self._consume_pending_state()
        if not pending or not hmac.compare_digest(str(pending["state"]), str(state or "")):
            self.log.error("oauth", "authorization_state_mismatch")
            raise CsrfMismatch("oauth_state_mismatch")

        code_text = (code or "").strip()
        if not code_text:
            self.log.error("oauth", "token_exchange_failed", reason="oauth_code_missing")
            raise TokenExchangeFailed("oauth_code_missing")

        data = {"code": code_text, "grant_type": "authorization_code"}
        if pending.get("redirect_uri"):
            data["redirect_uri"] = pending["redirect_uri"]
        try:
            res = self.session.post(TOKEN_URL, data=data, auth=(self.app_key, self.app_secret), timeout=self.timeout)
        except requests.RequestException as e:
            self.log.error("oauth", "token_exchange_failed", reason=str(e))
            raise TokenExchangeFailed(f"token_exchange_network_error: {e}") from e

        if not 200 <= res.status_code < 300:
            self.log.error("oauth", "token_exchange_failed", status_code=res.status_code)
            raise TokenExchangeFailed(f"token_exchange_failed_status_{res.status_code}: {(res.text or '')[:200]}")

        payload = json_or_empty(res)
        if not payload.get("access_token"):
            self.log.error("oauth", "token_exchange_failed", reason="no_access_token")
            raise TokenExchangeFailed("token_exchange_no_access_token")

        cred = OAuthCredential(
            access_token=payload["access_token"],
            refresh_token=str(payload.get("refresh_token") or ""),
            expires_at=self.clock() + int(payload.get("expires_in") or 14400),
            account_id=str(payload.get("account_id") or ""),
            token_type=str(payload.get("token_type") or "bearer"),
        )
        with self._lock:
            self._save_tokens(asdict(cred))
        self.log.info("oauth", "authorization_completed", account_id=cred.account_id)
        return cred

    # -- token access ------------------------------------------------------

    def _current_credential(self) -> OAuthCredential:
        data = self._load_tokens()
        if not data or not data.get("access_token"):
            if data and data.get("revoked"):
                raise ReauthorizationRequired(f"credentials_revoked: {data.get('revoked_reason') or ''}".strip())
            raise ReauthorizationRequired("not_authorized")
        return OAuthCredential.from_dict(data)

    def get_valid_token(self) -> str:
        with self._lock:
            cred = self._current_credential()
            if not cred.expires_within(self.refresh_margin_sec, self.clock()):
                return cred.access_token
            return self._refresh_locked(cred).access_token

    def ensure_authorized(self) -> None:
        self.get_valid_token()

    def refresh_rejected_token(self, rejected_token: str) -> str:
        """Called after a 401. Refreshes unless another caller already did."""
        with self._lock:
            cred = self._current_credential()
            if cred.access_token != rejected_token:
                return cred.access_token
            return self._refresh_locked(cred).access_token

    def _refresh_locked(self, cred: OAuthCredential) -> OAuthCredential:
        self._refreshing = True
        try:
            if not cred.refresh_token or not self.configured:
                self._mark_revoked("refresh_token_missing_or_auth_incomplete")
                raise ReauthorizationRequired("refresh_token_missing_or_auth_incomplete")

            try:
                res = self.session.post(
                    TOKEN_URL,
                    data={"grant_type": "refresh_token", "refresh_token": cred.refresh_token},
                    auth=(self.app_key, self.app_secret),
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                self.log.warning("oauth", "token_refresh_network_error", error=str(e))
                raise NetworkError(f"token_refresh_network_error: {e}") from e

            if res.status_code >= 500:
                self.log.warning("oauth", "token_refresh_server_error", status_code=res.status_code)
                raise TransientError(f"token_refresh_failed_status_{res.status_code}")

            payload = json_or_empty(res)
            if not 200 <= res.status_code < 300 or not payload.get("access_token"):
                reason = str(payload.get("error") or f"status_{res.status_code}")
                self._mark_revoked(f"refresh_failed: {reason}")
                raise ReauthorizationRequired(f"refresh_token_failed: {reason}")

            refreshed = OAuthCredential(
                access_token=payload["access_token"],
                refresh_token=str(payload.get("refresh_token") or cred.refresh_token),
                expires_at=self.clock() + int(payload.get("expires_in") or 14400),
                account_id=cred.account_id,
                token_type=str(payload.get("token_type") or cred.token_type),
            )
            self._save_tokens(asdict(refreshed))
            self.log.info("oauth", "token_refreshed", expires_at=refreshed.expires_at)
            return refreshed
        finally:
            self._refreshing = False

    def _mark_revoked(self, reason: str) -> None:
        previous = self._load_tokens() or {}
        self._save_tokens({"revoked": True, "revoked_reason": reason, "account_id": previous.get("account_id", "")})
        self.log.critical("oauth", "credentials_revoked", reason=reason)

    def disconnect(self) -> bool:
        """Revoke remotely (best effort) and always forget local credentials."""
        remote_revoked = False
        with self._lock:
            data = self._load_tokens() or {}
            token = data.get("access_token")
            if token:
                try:
                    res = self.session.post(
                        REVOKE_URL,
                        headers={"Authorization": f"Bearer {token}"},
                        timeout=self.timeout,
                    )
                    remote_revoked = 200 <= res.status_code < 300
                except requests.RequestException as e:
                    self.log.warning("oauth", "remote_revoke_failed", error=str(e))
            Path(self.token_file).unlink(missing_ok=True)
            Path(self.state_file).unlink(missing_ok=True)
        self.log.info("oauth", "disconnected", remote_revoked=remote_revoked)
        return remote_revoked


def json_or_empty(res) -> dict[str, Any]:
    try:
        payload = res.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}
