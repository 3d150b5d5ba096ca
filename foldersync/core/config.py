from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

PROJECT_ROOT = Path(os.environ.get("FOLDERSYNC_HOME", str(Path.home() / ".foldersync"))).expanduser()
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"


class DropboxAuthConfig(BaseModel):
    app_key: str = ""
    app_secret: str = ""
    redirect_uri: str = "http://127.0.0.1:8765/api/auth/callback"
    token_file: str = str(RUNTIME_DIR / "dropbox_tokens.json")
    state_file: str = str(RUNTIME_DIR / "oauth_state.json")
    timeout_sec: int = 30
    # Refresh this many seconds before the access token actually expires.
    refresh_margin_sec: int = Field(default=300, ge=0)
    state_ttl_sec: int = Field(default=600, ge=1)


class SyncConfig(BaseModel):
    local_root: str = str(PROJECT_ROOT / "library")
    remote_root: str = "/FolderSync"
    # 0 disables the scheduler tick; positive values are seconds between queue runs.
    poll_interval_sec: int = Field(default=60, ge=0, le=86400)
    full_sync_interval_sec: int = Field(default=3600, ge=0, le=7 * 86400)
    # Which side wins when both changed with identical modification times.
    tie_break: Literal["remote", "local"] = "remote"
    max_attempts: int = Field(default=5, ge=1)
    backoff_base_sec: float = Field(default=2.0, gt=0)
    backoff_cap_sec: float = Field(default=300.0, gt=0)
    max_concurrent_tasks: int = Field(default=4, ge=1, le=64)
    batch_size: int = Field(default=10, ge=1)
    stale_processing_sec: int = Field(default=1800, ge=60)
    completed_retention_days: int = Field(default=7, ge=0)
    max_path_length: int = Field(default=4096, ge=16)
    upload_chunk_size: int = Field(default=8 * 1024 * 1024, ge=1024)
    exclude_dirs: list[str] = Field(default_factory=lambda: [
        ".git",
        ".sync_trash",
        "__pycache__",
    ])
    exclude_hidden: bool = True


class WebhookConfig(BaseModel):
    enabled: bool = True


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "service.log")
    db_min_level: Literal["emergency", "alert", "critical", "error", "warning", "notice", "info", "debug"] = "debug"
    retention_days: int = Field(default=30, ge=0)


class DatabaseConfig(BaseModel):
    path: str = str(RUNTIME_DIR / "service.db")


class AppConfig(BaseModel):
    auth: DropboxAuthConfig = Field(default_factory=DropboxAuthConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    web_bind_host: str = "127.0.0.1"
    web_port: int = 8765
    # Upper bound for how long a control-surface call waits before deferring.
    control_wait_sec: float = Field(default=10.0, ge=0)


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.auth.token_file).parent.mkdir(parents=True, exist_ok=True)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            try:
                template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
                data = yaml.safe_load(template_text) or {}
                cfg = AppConfig.model_validate(data)
                path.write_text(template_text, encoding="utf-8")
            except Exception:
                cfg = AppConfig()
                path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        else:
            cfg = AppConfig()
            path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        ensure_runtime_dirs(cfg)
        return cfg

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = AppConfig.model_validate(data)
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    import yaml

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
