"""Long-lived per-session daemon serving newline-delimited JSON commands."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
import signal
from typing import Optional

from ..browser.base import BrowserBackend
from ..config import DaemonSettings
from ..errors import AgentBrowserError, UnsupportedActionError
from ..protocol import (
    BaseCommand,
    CloseCommand,
    LaunchCommand,
    ParseFailure,
    Response,
    error_response,
    parse_command,
    serialize_response,
)
from ..stream.server import StreamServer
from .actions import execute_command
from .transport import (
    SessionContext,
    UnixAddress,
    cleanup,
    connection_info,
    ensure_run_dir,
    state_path,
    write_pid_file,
    write_stream_port,
)

LOGGER = logging.getLogger(__name__)

LINE_LIMIT = 64 * 1024 * 1024
_SHUTDOWN_SIGNALS = ("SIGINT", "SIGTERM", "SIGHUP")


class DaemonState(str, enum.Enum):
    IDLE = "idle"
    AUTO_LAUNCHING = "auto_launching"
    READY = "ready"
    DRAINING = "draining"
    EXITED = "exited"


class Daemon:
    """Owns one browser backend and serves it to any number of clients.

    Lines on a single connection are answered strictly in order. All driver
    calls, including those issued by the stream server, run under one lock.
    """

    def __init__(
        self,
        settings: DaemonSettings,
        backend: BrowserBackend,
        *,
        context: Optional[SessionContext] = None,
        stream: Optional[StreamServer] = None,
        handle_signals: bool = True,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self.context = context or SessionContext(settings.session, settings.home, settings.use_tcp)
        self.lock = asyncio.Lock()
        self.stream = stream
        self.handle_signals = handle_signals
        self.state = DaemonState.IDLE
        self._server: Optional[asyncio.AbstractServer] = None
        self._stopped = asyncio.Event()
        self._shutdown_task: Optional[asyncio.Task[None]] = None
        self._connections: set[asyncio.Task[None]] = set()
        self._background: set[asyncio.Future[None]] = set()

    # Lifecycle

    async def start(self) -> None:
        ensure_run_dir(self.context)
        address = connection_info(self.context)
        if isinstance(address, UnixAddress):
            with contextlib.suppress(FileNotFoundError):
                address.path.unlink()
            self._server = await asyncio.start_unix_server(
                self._handle_connection, path=str(address.path), limit=LINE_LIMIT
            )
        else:
            self._server = await asyncio.start_server(
                self._handle_connection, host=address.host, port=address.port, limit=LINE_LIMIT
            )
        write_pid_file(self.context)
        if self.stream is not None:
            await self.stream.start()
            write_stream_port(self.context, self.stream.port)
        if self.handle_signals:
            self._install_signal_handlers()
        LOGGER.info("Session %s listening on %s", self.context.name, address.describe())

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        await self._stopped.wait()
        if self._shutdown_task is not None:
            await self._shutdown_task

    def request_shutdown(self) -> asyncio.Task[None]:
        """Begin shutting down; repeated calls return the same task."""

        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown())
        return self._shutdown_task

    async def _shutdown(self) -> None:
        LOGGER.info("Shutting down session %s", self.context.name)
        self.state = DaemonState.DRAINING
        try:
            if self._server is not None:
                self._server.close()
            if self.stream is not None:
                with contextlib.suppress(Exception):
                    await self.stream.stop()
            if self.backend.is_launched():
                async with self.lock:
                    await self._persist_state()
                    with contextlib.suppress(Exception):
                        await self.backend.close()
            for task in list(self._connections):
                task.cancel()
        finally:
            if self.handle_signals:
                self._remove_signal_handlers()
            cleanup(self.context)
            self.state = DaemonState.EXITED
            self._stopped.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for name in _SHUTDOWN_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                loop.add_signal_handler(signum, self.request_shutdown)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for name in _SHUTDOWN_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                loop.remove_signal_handler(signum)

    # Connections

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        try:
            while not reader.at_eof():
                try:
                    raw = await reader.readline()
                except (ValueError, asyncio.LimitOverrunError) as exc:
                    LOGGER.warning("Dropping connection: %s", exc)
                    break
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    response, close_requested = await self.handle_line(line)
                except Exception as exc:
                    LOGGER.exception("Unhandled error while processing a command")
                    response, close_requested = error_response("unknown", f"Internal error: {exc}"), False
                writer.write((serialize_response(response) + "\n").encode("utf-8"))
                await writer.drain()
                if close_requested:
                    await asyncio.sleep(self.settings.shutdown_grace)
                    self.request_shutdown()
                    break
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            LOGGER.debug("Client connection lost: %s", exc)
        finally:
            if task is not None:
                self._connections.discard(task)
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    async def handle_line(self, line: str) -> tuple[Response, bool]:
        """Process one protocol line; the flag tells whether close was requested."""

        result = parse_command(line)
        if isinstance(result, ParseFailure):
            LOGGER.debug("Rejected command line: %s", result.error)
            return error_response(result.id or "unknown", result.error), False
        command = result.command
        if isinstance(command, CloseCommand):
            return await self._close(command), True
        if self.state in (DaemonState.DRAINING, DaemonState.EXITED):
            return error_response(command.id, "Daemon is shutting down"), False
        response = await self.execute(command)
        return response, False

    async def execute(self, command: BaseCommand) -> Response:
        async with self.lock:
            if not isinstance(command, LaunchCommand) and not self.backend.is_launched():
                failure = await self._auto_launch(command)
                if failure is not None:
                    return failure
            response = await execute_command(command, self.backend)
            if isinstance(command, LaunchCommand) and response.success:
                self.state = DaemonState.READY
        if isinstance(command, LaunchCommand) and response.success:
            await self._browser_ready()
        return response

    async def _auto_launch(self, command: BaseCommand) -> Optional[Response]:
        self.state = DaemonState.AUTO_LAUNCHING
        LOGGER.info("Launching browser for session %s on first %s", self.context.name, command.action)
        launch = self.build_launch_command()
        response = await execute_command(launch, self.backend)
        if not response.success:
            self.state = DaemonState.IDLE
            return error_response(command.id, f"Auto-launch failed: {response.error}")
        self.state = DaemonState.READY
        if self.stream is not None:
            # Capture start needs the lock held by this command.
            task = asyncio.ensure_future(self._browser_ready())
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return None

    async def _browser_ready(self) -> None:
        if self.stream is not None:
            await self.stream.notify_browser_ready()

    def build_launch_command(self) -> LaunchCommand:
        settings = self.settings
        storage_state: Optional[str] = None
        if settings.persist:
            saved = state_path(self.context, settings.state)
            if saved.exists():
                storage_state = str(saved)
        return LaunchCommand(
            id="auto",
            action="launch",
            headless=not settings.headed,
            executable_path=settings.executable_path,
            args=settings.args or None,
            extensions=settings.extensions or None,
            profile=settings.profile,
            storage_state=storage_state,
            ignore_https_errors=settings.ignore_https_errors or None,
            user_agent=settings.user_agent,
        )

    async def _close(self, command: CloseCommand) -> Response:
        self.state = DaemonState.DRAINING
        async with self.lock:
            if self.backend.is_launched():
                await self._persist_state()
            return await execute_command(command, self.backend)

    async def _persist_state(self) -> None:
        if not self.settings.persist:
            return
        target = state_path(self.context, self.settings.state)
        try:
            state = await self.backend.storage_state()
        except UnsupportedActionError:
            LOGGER.debug("Backend %s cannot export state", self.backend.name)
            return
        except AgentBrowserError as exc:
            LOGGER.warning("Could not read browser state: %s", exc)
            return
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            LOGGER.warning("Could not write state to %s: %s", target, exc)
            return
        LOGGER.info("Saved browser state to %s", target)


async def serve(daemon: Daemon) -> None:
    try:
        await daemon.start()
        await daemon.serve_forever()
    finally:
        cleanup(daemon.context)


def run_daemon(settings: DaemonSettings, backend: Optional[BrowserBackend] = None) -> int:
    """Run a daemon for ``settings.session`` until it is closed.

    Returns the process exit code. Marker files are removed even when the
    daemon dies from an unexpected fault.
    """

    from ..factory import build_backend, build_stream_server

    context = SessionContext(settings.session, settings.home, settings.use_tcp)
    backend = backend or build_backend(settings)

    async def main() -> None:
        daemon = Daemon(settings, backend, context=context)
        daemon.stream = build_stream_server(settings, backend, daemon.lock)
        await serve(daemon)

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        return 0
    except Exception:
        LOGGER.exception("Daemon for session %s crashed", settings.session)
        cleanup(context)
        return 1
    return 0
