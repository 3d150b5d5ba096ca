from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from foldersync.core.config import DEFAULT_CONFIG_PATH, load_config, save_config
from foldersync.core.log_sink import LEVELS
from foldersync.service import SyncService, build_service

app = typer.Typer(add_completion=False)
console = Console()


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _finish(payload: dict[str, Any]) -> None:
    _print_json(payload)
    if not payload.get("ok"):
        raise typer.Exit(2)


def _service(wait_sec: float | None = None) -> SyncService:
    cfg = load_config()
    if wait_sec is not None:
        cfg.control_wait_sec = wait_sec
    from foldersync.core.logging_setup import setup_logging

    setup_logging(cfg.logging.level, cfg.logging.file, console=False)
    return build_service(cfg)


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show current config.yaml (secrets masked)."""
    cfg = load_config(path)
    data = cfg.model_dump()
    if data["auth"].get("app_secret"):
        data["auth"]["app_secret"] = "***"
    _print_json(data)


@app.command("config-set-auth")
def config_set_auth(
    app_key: str = typer.Option(..., "--app-key", help="Dropbox app key"),
    app_secret: str = typer.Option(..., "--app-secret", help="Dropbox app secret"),
    redirect_uri: str | None = typer.Option(None, "--redirect-uri", help="Redirect URI registered for the app"),
):
    """Store the Dropbox app credentials in config.yaml."""
    cfg = load_config()
    cfg.auth.app_key = app_key
    cfg.auth.app_secret = app_secret
    if redirect_uri is not None:
        cfg.auth.redirect_uri = redirect_uri
    save_config(cfg)
    _print_json({"ok": True, "app_key_set": bool(app_key), "app_secret_set": bool(app_secret), "redirect_uri": cfg.auth.redirect_uri})


@app.command("auth-url")
def auth_url(
    redirect_uri: str | None = typer.Option(
        None,
        "--redirect-uri",
        help="Override the configured redirect URI. Pass an empty string for the copy-the-code flow.",
    ),
):
    """Start authorization and print the URL to open."""
    svc = _service()
    try:
        _finish(svc.start_authorization(redirect_uri))
    finally:
        svc.shutdown()


@app.command("auth-exchange")
def auth_exchange(
    code: str = typer.Option(..., "--code", help="Authorization code returned by Dropbox."),
    state: str = typer.Option(..., "--state", help="State value printed by auth-url."),
):
    """Exchange an authorization code for tokens."""
    svc = _service()
    try:
        _finish(svc.finish_authorization(code, state))
    finally:
        svc.shutdown()


@app.command()
def disconnect():
    """Revoke the token remotely (best effort) and forget local credentials."""
    svc = _service()
    try:
        _finish(svc.disconnect())
    finally:
        svc.shutdown()


@app.command("full-sync")
def full_sync(wait: float = typer.Option(600.0, "--wait", min=0, help="Seconds to wait before reporting deferred.")):
    """Run a full delta pass and queue the resulting tasks."""
    svc = _service(wait)
    try:
        _finish(svc.run_full_sync())
    finally:
        svc.shutdown(wait=True)


@app.command("process-queue")
def process_queue(wait: float = typer.Option(600.0, "--wait", min=0, help="Seconds to wait before reporting deferred.")):
    """Drain every pending task once, ignoring retry backoff."""
    svc = _service(wait)
    try:
        _finish(svc.force_process_queue())
    finally:
        svc.shutdown(wait=True)


@app.command("retry-failed")
def retry_failed():
    """Move failed tasks back to pending."""
    svc = _service()
    try:
        _finish(svc.retry_failed_tasks())
    finally:
        svc.shutdown()


@app.command()
def stats(json_output: bool = typer.Option(False, "--json", help="Output as JSON.")):
    """Show queue and mapping counters."""
    svc = _service()
    try:
        payload = svc.get_queue_stats()
    finally:
        svc.shutdown()
    if json_output:
        _print_json(payload)
        return

    table = Table(title="foldersync queue")
    table.add_column("Key")
    table.add_column("Value")
    for key in (
        "auth_state",
        "total",
        "synced",
        "pending_tasks",
        "processing_tasks",
        "failed_tasks",
        "completed_tasks",
        "total_tasks",
        "folders",
    ):
        table.add_row(key, str(payload.get(key)))
    console.print(table)


@app.command()
def logs(
    level: str | None = typer.Option(None, "--level", help=f"Minimum severity: {', '.join(LEVELS)}"),
    page: int = typer.Option(1, "--page", min=1),
    page_size: int = typer.Option(50, "--page-size", min=1, max=500),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
):
    """Show stored log entries, newest first."""
    svc = _service()
    try:
        payload = svc.list_logs(level=level, page=page, page_size=page_size)
    finally:
        svc.shutdown()
    if json_output:
        _print_json(payload)
        return

    table = Table(title=f"logs page {payload['page']}/{payload['pages']} (total {payload['total']})")
    table.add_column("id")
    table.add_column("level")
    table.add_column("component")
    table.add_column("message")
    table.add_column("context")
    for item in payload["items"]:
        table.add_row(
            str(item["id"]),
            item["level"],
            item["component"],
            item["message"],
            json.dumps(item["context"], ensure_ascii=False, default=str) if item["context"] else "",
        )
    console.print(table)


@app.command("clear-logs")
def clear_logs():
    """Delete every stored log entry."""
    svc = _service()
    try:
        _finish(svc.clear_logs())
    finally:
        svc.shutdown()


@app.command()
def serve():
    """Run the web API and scheduler."""
    from foldersync.web.main import main as web_main

    web_main()


def main():
    app()


if __name__ == "__main__":
    main()
