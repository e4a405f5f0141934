"""Synchronous client for talking to a session daemon."""

from __future__ import annotations

import json
import socket
import time
from typing import Any, Optional

from pydantic import BaseModel

from .daemon.transport import SessionContext, TcpAddress, connection_info
from .errors import AgentBrowserError


class DaemonResponse(BaseModel):
    id: str
    success: bool
    data: Any = None
    error: Optional[str] = None


class DaemonConnectionError(AgentBrowserError):
    """Raised when the daemon cannot be reached."""


class DaemonClient:
    """Line-oriented client; responses are matched to requests by order."""

    def __init__(self, context: SessionContext, *, timeout: Optional[float] = 30.0) -> None:
        self._context = context
        self._timeout = timeout
        self._sock: Optional[socket.socket] = None
        self._buffer = b""
        self._counter = 0

    def __enter__(self) -> DaemonClient:
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def connect(self) -> None:
        address = connection_info(self._context)
        try:
            if isinstance(address, TcpAddress):
                sock = socket.create_connection((address.host, address.port), timeout=self._timeout)
            else:
                sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                sock.settimeout(self._timeout)
                sock.connect(str(address.path))
        except OSError as exc:
            raise DaemonConnectionError(
                f"Cannot reach session {self._context.name} at {address.describe()}: {exc}"
            ) from exc
        self._sock = sock

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        self._buffer = b""

    def send_line(self, line: str) -> DaemonResponse:
        if self._sock is None:
            self.connect()
        assert self._sock is not None
        self._sock.sendall(line.rstrip("\n").encode("utf-8") + b"\n")
        return DaemonResponse.model_validate(json.loads(self._read_line()))

    def send(self, action: str, **fields: Any) -> DaemonResponse:
        self._counter += 1
        payload = {"id": fields.pop("id", f"c{self._counter}"), "action": action, **fields}
        return self.send_line(json.dumps(payload))

    def _read_line(self) -> str:
        assert self._sock is not None
        while b"\n" not in self._buffer:
            chunk = self._sock.recv(65536)
            if not chunk:
                raise DaemonConnectionError("Daemon closed the connection")
            self._buffer += chunk
        line, self._buffer = self._buffer.split(b"\n", 1)
        return line.decode("utf-8")


def wait_for_daemon(context: SessionContext, *, timeout: float = 10.0, interval: float = 0.1) -> bool:
    """Poll until the daemon accepts connections or ``timeout`` elapses."""

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        client = DaemonClient(context, timeout=interval * 10)
        try:
            client.connect()
        except DaemonConnectionError:
            time.sleep(interval)
            continue
        client.close()
        return True
    return False
