from __future__ import annotations

import ipaddress
import os
from typing import Iterable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

DEFAULT_ALLOWED_NETS = "127.0.0.1/32,::1/128"

# Dropbox reaches the webhook from the public internet; it is authenticated by signature instead.
WEBHOOK_PATHS = ("/api/webhook",)

Network = ipaddress.IPv4Network | ipaddress.IPv6Network


def parse_networks(values: Iterable[str]) -> list[Network]:
    nets: list[Network] = []
    for value in values:
        cidr = value.strip()
        if not cidr:
            continue
        try:
            nets.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError as exc:
            raise ValueError(f"allowed_net_invalid: {cidr}") from exc
    return nets


def _denied(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"ok": False, "message": message}, status_code=status_code)


class NetworkAllowlistMiddleware(BaseHTTPMiddleware):
    """Restrict the admin/control routes to clients inside ``allowed_nets``."""

    def __init__(self, app, allowed_nets: Iterable[str], exempt_paths: Iterable[str] = WEBHOOK_PATHS):
        super().__init__(app)
        self.exempt_paths = tuple(exempt_paths)
        self.config_error: str | None = None
        try:
            self.networks = parse_networks(allowed_nets)
        except ValueError as exc:
            self.networks = []
            self.config_error = str(exc)

    def client_allowed(self, host: str) -> bool:
        try:
            addr = ipaddress.ip_address(host)
        except ValueError:
            return False
        return not self.networks or any(addr in net for net in self.networks)

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exempt_paths:
            return await call_next(request)
        if self.config_error:
            return _denied(self.config_error, 503)
        host = request.client.host if request.client else ""
        if not self.client_allowed(host):
            return _denied(f"client_not_allowed: {host or 'unknown'}", 403)
        return await call_next(request)


def get_allowed_nets() -> list[str]:
    raw = os.environ.get("FOLDERSYNC_ALLOWED_NETS") or os.environ.get("ALLOWED_NETS") or DEFAULT_ALLOWED_NETS
    return [s.strip() for s in raw.split(",") if s.strip()]
