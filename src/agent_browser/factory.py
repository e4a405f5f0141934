"""Factories for constructing daemon components from settings."""

from __future__ import annotations

import asyncio
from typing import Optional

from .browser.base import BrowserBackend
from .browser.bridge import PlaywrightMCPBackend
from .browser.playwright_session import PlaywrightBackend
from .config import DaemonSettings
from .stream.server import StreamServer


def build_backend(settings: DaemonSettings) -> BrowserBackend:
    backend = settings.backend.lower()
    if backend == "native":
        return PlaywrightBackend()
    if backend == "playwright-mcp":
        return PlaywrightMCPBackend(
            settings.mcp_command, list(settings.mcp_args), timeout=settings.mcp_timeout
        )
    raise ValueError(f"Unsupported backend: {settings.backend}")


def build_stream_server(
    settings: DaemonSettings, backend: BrowserBackend, lock: asyncio.Lock
) -> Optional[StreamServer]:
    if settings.stream_port <= 0:
        return None
    if not backend.supports_capture:
        return None
    return StreamServer(backend, lock, host=settings.stream_host, port=settings.stream_port)
