"""WebSocket server streaming the live viewport and relaying viewer input."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Iterator
from typing import Optional

import uvicorn
from fastapi import FastAPI, WebSocket

from ..browser.base import BrowserBackend, CaptureSubscription
from ..errors import AgentBrowserError, BrowserNotLaunchedError, ProtocolError
from ..models import CaptureOptions, Frame
from .messages import (
    ErrorMessage,
    FrameMessage,
    InputKeyboardMessage,
    InputMouseMessage,
    InputTouchMessage,
    StatusMessage,
    StatusRequest,
    encode,
    parse_client_message,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_CAPTURE = CaptureOptions(format="jpeg", quality=80, max_width=1280, max_height=720, every_nth_frame=1)
_NO_RESTART_REASONS = {"closed", "stopped"}


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the hosting daemon."""

    def install_signal_handlers(self) -> None:  # pragma: no cover - older uvicorn
        return

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class _Viewer:
    """One connected viewer with its own outbound queue.

    Frames beyond ``max_pending_frames`` are dropped for a slow viewer;
    status and error messages are always queued.
    """

    def __init__(self, websocket: WebSocket, max_pending_frames: int) -> None:
        self.websocket = websocket
        self.queue: asyncio.Queue[Optional[tuple[bool, str]]] = asyncio.Queue()
        self.max_pending_frames = max_pending_frames
        self.pending_frames = 0
        self.dropped_frames = 0

    def offer_frame(self, payload: str) -> None:
        if self.pending_frames >= self.max_pending_frames:
            self.dropped_frames += 1
            return
        self.pending_frames += 1
        self.queue.put_nowait((True, payload))

    def send(self, payload: str) -> None:
        self.queue.put_nowait((False, payload))

    def close(self) -> None:
        self.queue.put_nowait(None)

    async def run_sender(self) -> None:
        while True:
            item = await self.queue.get()
            if item is None:
                return
            is_frame, payload = item
            if is_frame:
                self.pending_frames -= 1
            try:
                await self.websocket.send_text(payload)
            except Exception as exc:
                LOGGER.debug("Viewer send failed: %s", exc)
                return


class StreamServer:
    """Fan-out of a single shared capture to any number of viewers.

    The first viewer starts capture and the last one to leave stops it.
    Input injection and capture start/stop share ``lock`` with command
    execution so they never interleave with a running command.
    """

    def __init__(
        self,
        backend: BrowserBackend,
        lock: asyncio.Lock,
        *,
        host: str = "127.0.0.1",
        port: int = 0,
        capture_options: Optional[CaptureOptions] = None,
        max_pending_frames: int = 8,
    ) -> None:
        self._backend = backend
        self._lock = lock
        self._host = host
        self._port = port
        self._capture_options = capture_options or DEFAULT_CAPTURE
        self._max_pending_frames = max_pending_frames
        self._viewers: list[_Viewer] = []
        self._capturing = False
        self._subscription: Optional[CaptureSubscription] = None
        self._server: Optional[_EmbeddedServer] = None
        self._serve_task: Optional[asyncio.Task[None]] = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def port(self) -> int:
        return self._port

    @property
    def capturing(self) -> bool:
        return self._capturing

    @property
    def viewer_count(self) -> int:
        return len(self._viewers)

    def create_app(self) -> FastAPI:
        self._attach()
        app = FastAPI(title="agent-browser stream")

        @app.websocket("/")
        async def stream(websocket: WebSocket) -> None:
            await websocket.accept()
            await self.handle_viewer(websocket)

        return app

    def _attach(self) -> None:
        if self._subscription is None:
            self._subscription = self._backend.subscribe_capture(
                self._on_frame, self._on_capture_stopped
            )

    async def start(self) -> None:
        config = uvicorn.Config(
            self.create_app(),
            host=self._host,
            port=self._port,
            log_level="warning",
            lifespan="off",
        )
        self._server = _EmbeddedServer(config)
        self._serve_task = asyncio.create_task(self._server.serve())
        while not self._server.started:
            if self._serve_task.done():
                self._serve_task.result()
                raise OSError(f"Stream server failed to bind {self._host}:{self._port}")
            await asyncio.sleep(0.01)
        sockets = self._server.servers[0].sockets if self._server.servers else []
        if sockets:
            self._port = sockets[0].getsockname()[1]
        LOGGER.info("Stream server listening on ws://%s:%s/", self._host, self._port)

    async def stop(self) -> None:
        await self._stop_capture(force=True)
        for viewer in list(self._viewers):
            viewer.close()
        for task in list(self._tasks):
            task.cancel()
        if self._server is not None:
            self._server.should_exit = True
        if self._serve_task is not None:
            await self._serve_task
        if self._subscription is not None:
            self._subscription.unsubscribe()
        self._server = None
        self._serve_task = None
        self._subscription = None

    async def handle_viewer(self, websocket: WebSocket) -> None:
        viewer = _Viewer(websocket, self._max_pending_frames)
        self._viewers.append(viewer)
        sender = asyncio.create_task(viewer.run_sender())
        LOGGER.info("Viewer connected (%d total)", len(self._viewers))
        viewer.send(self._status_payload())
        try:
            if not self._capturing:
                await self._start_capture(viewer)
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                text = message.get("text")
                if text is None:
                    viewer.send(encode(ErrorMessage(message="Binary messages are not supported")))
                    continue
                await self._handle_message(viewer, text)
        finally:
            self._viewers.remove(viewer)
            sender.cancel()
            LOGGER.info("Viewer disconnected (%d remaining)", len(self._viewers))
            if not self._viewers:
                # The handler may be cancelled while the socket closes.
                await asyncio.shield(self._stop_capture())

    async def notify_browser_ready(self) -> None:
        """Start capture for viewers that connected before the browser existed."""

        if self._viewers and not self._capturing:
            await self._start_capture(None)

    async def _handle_message(self, viewer: _Viewer, text: str) -> None:
        try:
            message = parse_client_message(text)
        except ProtocolError as exc:
            viewer.send(encode(ErrorMessage(message=str(exc))))
            return
        if isinstance(message, StatusRequest):
            viewer.send(self._status_payload())
            return
        try:
            async with self._lock:
                if isinstance(message, InputMouseMessage):
                    await self._backend.inject_mouse(message.to_event())
                elif isinstance(message, InputKeyboardMessage):
                    await self._backend.inject_keyboard(message.to_event())
                elif isinstance(message, InputTouchMessage):
                    await self._backend.inject_touch(message.to_event())
        except AgentBrowserError as exc:
            LOGGER.debug("Input injection failed: %s", exc)
            viewer.send(encode(ErrorMessage(message=str(exc))))

    async def _start_capture(self, origin: Optional[_Viewer]) -> None:
        if self._capturing:
            return
        self._capturing = True
        try:
            async with self._lock:
                if not self._backend.is_launched():
                    raise BrowserNotLaunchedError("Browser not launched")
                if not self._backend.is_capturing():
                    await self._backend.start_capture(self._capture_options)
        except AgentBrowserError as exc:
            self._capturing = False
            LOGGER.warning("Failed to start capture: %s", exc)
            if origin is not None:
                origin.send(encode(ErrorMessage(message=str(exc))))
            return
        if not self._viewers:
            await self._stop_capture()
            return
        self._broadcast_status()

    async def _stop_capture(self, force: bool = False) -> None:
        """Stop the shared capture once no viewer is left, unless ``force`` is set."""

        if not self._capturing:
            return
        try:
            async with self._lock:
                if self._viewers and not force:
                    # A viewer joined while waiting for the lock.
                    return
                await self._backend.stop_capture()
        except AgentBrowserError as exc:
            LOGGER.warning("Failed to stop capture: %s", exc)
        self._capturing = False
        self._broadcast_status()
        if self._viewers and not force:
            await self._start_capture(None)

    def _on_frame(self, frame: Frame) -> None:
        payload = encode(FrameMessage(data=frame.data, metadata=frame.metadata))
        for viewer in self._viewers:
            viewer.offer_frame(payload)

    def _on_capture_stopped(self, reason: str) -> None:
        LOGGER.debug("Capture stopped by backend: %s", reason)
        self._capturing = False
        self._broadcast_status()
        if self._viewers and reason not in _NO_RESTART_REASONS:
            task = asyncio.ensure_future(self._start_capture(None))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _status_payload(self) -> str:
        size = self._backend.viewport_size()
        return encode(
            StatusMessage(
                connected=True,
                screencasting=self._capturing,
                viewport_width=size[0] if size else None,
                viewport_height=size[1] if size else None,
            )
        )

    def _broadcast_status(self) -> None:
        payload = self._status_payload()
        for viewer in self._viewers:
            viewer.send(payload)
