"""Per-session addressing and marker files."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

LOGGER = logging.getLogger(__name__)

_SESSION_NAME = re.compile(r"^[A-Za-z0-9_.-]+$")
_PORT_BASE = 49152
_PORT_SPAN = 16383
LOOPBACK = "127.0.0.1"


@dataclass(frozen=True)
class SessionContext:
    """Identifies one named session and where its runtime files live."""

    name: str
    home: Path
    use_tcp: bool = False

    def __post_init__(self) -> None:
        if not _SESSION_NAME.match(self.name) or self.name in {".", ".."}:
            raise ValueError(f"Invalid session name: {self.name!r}")

    @property
    def run_dir(self) -> Path:
        return self.home / "run"

    @property
    def socket_path(self) -> Path:
        return self.run_dir / f"{self.name}.sock"

    @property
    def pid_path(self) -> Path:
        return self.run_dir / f"{self.name}.pid"

    @property
    def port_path(self) -> Path:
        return self.run_dir / f"{self.name}.port"

    @property
    def stream_path(self) -> Path:
        return self.run_dir / f"{self.name}.stream"

    @property
    def log_path(self) -> Path:
        return self.run_dir / f"{self.name}.log"


@dataclass(frozen=True)
class UnixAddress:
    path: Path

    def describe(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class TcpAddress:
    host: str
    port: int

    def describe(self) -> str:
        return f"{self.host}:{self.port}"


Address = Union[UnixAddress, TcpAddress]


def port_for_session(name: str) -> int:
    """Hash a session name into the ephemeral port range.

    Uses the 31-multiplier string hash folded to a signed 32-bit integer so the
    same name maps to the same port across runs and front ends.
    """

    value = 0
    for char in name:
        value = ((value << 5) - value + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return _PORT_BASE + abs(value) % _PORT_SPAN


def ensure_run_dir(ctx: SessionContext) -> Path:
    ctx.run_dir.mkdir(parents=True, exist_ok=True)
    return ctx.run_dir


def connection_info(ctx: SessionContext) -> Address:
    if ctx.use_tcp:
        return TcpAddress(LOOPBACK, port_for_session(ctx.name))
    return UnixAddress(ctx.socket_path)


def write_pid_file(ctx: SessionContext, pid: Optional[int] = None) -> Path:
    ensure_run_dir(ctx)
    ctx.pid_path.write_text(str(pid if pid is not None else os.getpid()))
    if ctx.use_tcp:
        ctx.port_path.write_text(str(port_for_session(ctx.name)))
    return ctx.pid_path


def read_pid(ctx: SessionContext) -> Optional[int]:
    try:
        return int(ctx.pid_path.read_text().strip())
    except (OSError, ValueError):
        return None


def write_stream_port(ctx: SessionContext, port: int) -> None:
    ensure_run_dir(ctx)
    ctx.stream_path.write_text(str(port))


def read_stream_port(ctx: SessionContext) -> Optional[int]:
    try:
        return int(ctx.stream_path.read_text().strip())
    except (OSError, ValueError):
        return None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def is_daemon_running(ctx: SessionContext) -> bool:
    """Return whether the recorded daemon process is alive.

    Stale markers left behind by a crashed daemon are removed before
    reporting ``False`` so the session name can be reused.
    """

    if not ctx.pid_path.exists():
        return False
    pid = read_pid(ctx)
    if pid is not None and _pid_alive(pid):
        return True
    LOGGER.info("Removing stale markers for session %s", ctx.name)
    cleanup(ctx)
    return False


def cleanup(ctx: SessionContext) -> None:
    """Remove every marker file of the session, ignoring missing ones."""

    paths = [ctx.pid_path, ctx.port_path, ctx.stream_path]
    if not ctx.use_tcp:
        paths.append(ctx.socket_path)
    for path in paths:
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            LOGGER.warning("Could not remove %s: %s", path, exc)


def list_sessions(home: Path) -> list[str]:
    run_dir = home / "run"
    if not run_dir.is_dir():
        return []
    return sorted(path.stem for path in run_dir.glob("*.pid"))


def state_path(ctx: SessionContext, override: Optional[Path] = None) -> Path:
    """Location of the persisted authentication state for the session."""

    if override is not None:
        return override
    return ctx.home / "sessions" / f"{ctx.name}.json"
