from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import requests

from foldersync.core.errors import (
    CursorReset,
    NetworkError,
    RateLimited,
    RemoteError,
    TransientError,
)
from foldersync.providers.dropbox.oauth import OAuthManager, json_or_empty

API_BASE = "https://api.dropboxapi.com/2"
CONTENT_BASE = "https://content.dropboxapi.com/2"
HASH_BLOCK_SIZE = 4 * 1024 * 1024
DEFAULT_RETRY_AFTER = 10.0


def content_hash(data: bytes) -> str:
    """Dropbox content hash: SHA-256 over the concatenated SHA-256 of 4 MiB blocks."""
    block_digests = b"".join(
        hashlib.sha256(data[i:i + HASH_BLOCK_SIZE]).digest()
        for i in range(0, len(data), HASH_BLOCK_SIZE)
    )
    return hashlib.sha256(block_digests).hexdigest()


def parse_timestamp(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    raw = str(value).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(raw).timestamp()
    except ValueError:
        return 0.0


@dataclass
class RemoteEntry:
    tag: str  # file | folder | deleted
    path_display: str
    path_lower: str = ""
    id: str = ""
    rev: str = ""
    content_hash: str = ""
    server_modified: float = 0.0
    size: int = 0

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> "RemoteEntry":
        path_display = item.get("path_display") or item.get("path_lower") or ""
        return cls(
            tag=str(item.get(".tag") or "file"),
            path_display=path_display,
            path_lower=item.get("path_lower") or path_display.lower(),
            id=str(item.get("id") or ""),
            rev=str(item.get("rev") or ""),
            content_hash=str(item.get("content_hash") or ""),
            server_modified=parse_timestamp(item.get("server_modified")),
            size=int(item.get("size") or 0),
        )


@dataclass
class DeltaPage:
    entries: list[RemoteEntry] = field(default_factory=list)
    cursor: str = ""
    has_more: bool = False


class DropboxClient:
    def __init__(
        self,
        oauth: OAuthManager,
        timeout: int = 30,
        upload_chunk_size: int = 8 * 1024 * 1024,
        session: requests.Session | None = None,
    ):
        self.oauth = oauth
        self.timeout = timeout
        self.upload_chunk_size = upload_chunk_size
        self.session = session or requests.Session()

    # -- transport ---------------------------------------------------------

    def _send(self, url: str, *, headers: dict[str, str], data: bytes, stream: bool = False) -> requests.Response:
        token = self.oauth.get_valid_token()
        for attempt in range(2):
            try:
                res = self.session.post(
                    url,
                    headers={**headers, "Authorization": f"Bearer {token}"},
                    data=data,
                    timeout=self.timeout,
                    stream=stream,
                )
            except requests.Timeout as e:
                raise NetworkError(f"timeout: {url}") from e
            except requests.ConnectionError as e:
                raise NetworkError(f"connection_error: {e}") from e
            except requests.RequestException as e:
                raise NetworkError(f"request_failed: {e}") from e

            if res.status_code == 401 and attempt == 0:
                token = self.oauth.refresh_rejected_token(token)
                continue
            self._check_status(res, url)
            return res
        raise RemoteError("unauthorized_after_refresh", status_code=401)

    def _check_status(self, res: requests.Response, url: str) -> None:
        if 200 <= res.status_code < 300:
            return

        body = json_or_empty(res)
        summary = str(body.get("error_summary") or "")
        if res.status_code == 429:
            retry_after = res.headers.get("Retry-After") or (body.get("error") or {}).get("retry_after")
            try:
                delay = float(retry_after) if retry_after is not None else DEFAULT_RETRY_AFTER
            except (TypeError, ValueError):
                delay = DEFAULT_RETRY_AFTER
            raise RateLimited(f"rate_limited: {url}", retry_after=delay)
        if res.status_code >= 500:
            raise TransientError(f"server_error_status_{res.status_code}: {url}")
        if res.status_code == 409 and summary.startswith("reset"):
            raise CursorReset("cursor_reset", status_code=409, error_summary=summary)
        text = summary or (res.text or "")[:200]
        raise RemoteError(f"api_error_status_{res.status_code}: {text}", status_code=res.status_code, error_summary=summary)

    def _rpc(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        body = json.dumps(params).encode("utf-8") if params is not None else b"null"
        res = self._send(f"{API_BASE}/{endpoint}", headers={"Content-Type": "application/json"}, data=body)
        return json_or_empty(res)

    def _content_upload(self, endpoint: str, arg: dict[str, Any], data: bytes) -> dict[str, Any]:
        headers = {
            "Content-Type": "application/octet-stream",
            "Dropbox-API-Arg": json.dumps(arg, ensure_ascii=True),
        }
        res = self._send(f"{CONTENT_BASE}/{endpoint}", headers=headers, data=data)
        return json_or_empty(res)

    # -- operations --------------------------------------------------------

    def list_delta(self, cursor: str | None = None, path: str = "") -> DeltaPage:
        if cursor:
            body = self._rpc("files/list_folder/continue", {"cursor": cursor})
        else:
            body = self._rpc(
                "files/list_folder",
                {
                    "path": "" if path in ("", "/") else path,
                    "recursive": True,
                    "include_deleted": False,
                },
            )
        entries_raw = body.get("entries") or []
        entries = [RemoteEntry.from_api(item) for item in entries_raw if isinstance(item, dict)]
        return DeltaPage(
            entries=entries,
            cursor=str(body.get("cursor") or ""),
            has_more=bool(body.get("has_more")),
        )

    def upload(self, path: str, data: bytes, mode: str = "overwrite") -> RemoteEntry:
        commit = {
            "path": path,
            "mode": _write_mode(mode),
            "autorename": False,
            "mute": True,
        }
        if len(data) <= self.upload_chunk_size:
            return RemoteEntry.from_api({".tag": "file", **self._content_upload("files/upload", commit, data)})

        chunk = self.upload_chunk_size
        started = self._content_upload("files/upload_session/start", {"close": False}, data[:chunk])
        session_id = started.get("session_id")
        if not session_id:
            raise RemoteError("upload_session_no_id")
        offset = chunk
        while len(data) - offset > chunk:
            self._content_upload(
                "files/upload_session/append_v2",
                {"cursor": {"session_id": session_id, "offset": offset}, "close": False},
                data[offset:offset + chunk],
            )
            offset += chunk
        finished = self._content_upload(
            "files/upload_session/finish",
            {"cursor": {"session_id": session_id, "offset": offset}, "commit": commit},
            data[offset:],
        )
        return RemoteEntry.from_api({".tag": "file", **finished})

    def download(self, path: str) -> tuple[bytes, RemoteEntry]:
        headers = {"Dropbox-API-Arg": json.dumps({"path": path}, ensure_ascii=True)}
        res = self._send(f"{CONTENT_BASE}/files/download", headers=headers, data=b"")
        try:
            meta = json.loads(res.headers.get("Dropbox-API-Result") or "{}")
        except ValueError:
            meta = {}
        return res.content, RemoteEntry.from_api({".tag": "file", **(meta if isinstance(meta, dict) else {})})

    def delete(self, path: str) -> bool:
        """Returns False when the path was already gone."""
        try:
            self._rpc("files/delete_v2", {"path": path})
        except RemoteError as e:
            if e.status_code == 409 and "not_found" in e.error_summary:
                return False
            raise
        return True

    def move(self, src: str, dst: str) -> RemoteEntry:
        body = self._rpc("files/move_v2", {"from_path": src, "to_path": dst, "autorename": False})
        return RemoteEntry.from_api(body.get("metadata") or {})

    def create_folder(self, path: str) -> RemoteEntry:
        try:
            body = self._rpc("files/create_folder_v2", {"path": path, "autorename": False})
        except RemoteError as e:
            if e.status_code == 409 and e.error_summary.startswith("path/conflict"):
                return RemoteEntry(tag="folder", path_display=path, path_lower=path.lower())
            raise
        return RemoteEntry.from_api({".tag": "folder", **(body.get("metadata") or {})})

    def get_current_account(self) -> dict[str, Any]:
        return self._rpc("users/get_current_account")


def _write_mode(mode: str) -> Any:
    if mode in ("add", "overwrite"):
        return mode
    # Anything else is a revision to update against.
    return {".tag": "update", "update": mode}
