"""Browser backend abstractions."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

from ..errors import UnsupportedActionError
from ..models import CaptureOptions, Frame, KeyboardEvent, MouseEvent, TouchEvent
from ..protocol import Cookie, LaunchCommand
from .snapshot import EnhancedSnapshot, SnapshotOptions

LOGGER = logging.getLogger(__name__)

FrameHandler = Callable[[Frame], None]
StopHandler = Callable[[str], None]


@dataclass
class TabInfo:
    index: int
    url: str
    title: str = ""
    active: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CaptureSubscription:
    """Handle returned by :meth:`CaptureHub.subscribe`."""

    def __init__(
        self,
        hub: CaptureHub,
        on_frame: FrameHandler,
        on_stopped: Optional[StopHandler] = None,
    ) -> None:
        self._hub = hub
        self.on_frame = on_frame
        self.on_stopped = on_stopped

    @property
    def active(self) -> bool:
        return self in self._hub.subscribers

    def unsubscribe(self) -> None:
        self._hub.remove(self)


class CaptureHub:
    """Fan-out of capture frames and stop notifications to subscribers."""

    def __init__(self) -> None:
        self.subscribers: list[CaptureSubscription] = []

    def subscribe(
        self, on_frame: FrameHandler, on_stopped: Optional[StopHandler] = None
    ) -> CaptureSubscription:
        subscription = CaptureSubscription(self, on_frame, on_stopped)
        self.subscribers.append(subscription)
        return subscription

    def remove(self, subscription: CaptureSubscription) -> None:
        if subscription in self.subscribers:
            self.subscribers.remove(subscription)

    def publish_frame(self, frame: Frame) -> None:
        for subscription in list(self.subscribers):
            try:
                subscription.on_frame(frame)
            except Exception:  # pragma: no cover - subscriber bug
                LOGGER.exception("Capture frame subscriber failed")

    def publish_stopped(self, reason: str) -> None:
        for subscription in list(self.subscribers):
            if subscription.on_stopped is None:
                continue
            try:
                subscription.on_stopped(reason)
            except Exception:  # pragma: no cover - subscriber bug
                LOGGER.exception("Capture stop subscriber failed")


class BrowserBackend(ABC):
    """Interface for a driver capable of executing protocol commands.

    Abstract methods form the capability set every backend provides. The
    remaining operations default to raising :class:`UnsupportedActionError`
    so a narrower backend reports a typed capability gap instead of
    guessing.
    """

    name = "native"

    def _unsupported(self, action: str) -> UnsupportedActionError:
        return UnsupportedActionError(self.name, action)

    # Lifecycle

    @abstractmethod
    def is_launched(self) -> bool:
        """Return whether a driver session is currently live."""

    @abstractmethod
    async def launch(self, command: LaunchCommand) -> None:
        """Start the driver or reconfigure the live one."""

    @abstractmethod
    async def close(self) -> None:
        """Tear the driver session down."""

    # Navigation

    @abstractmethod
    async def navigate(self, url: str, wait_until: Optional[str] = None) -> dict[str, str]:
        """Load ``url`` and return the resulting url and title."""

    @abstractmethod
    async def back(self) -> None:
        """Go back one history entry."""

    async def forward(self) -> None:
        raise self._unsupported("forward")

    async def reload(self) -> None:
        raise self._unsupported("reload")

    # Page inspection

    @abstractmethod
    async def snapshot(self, options: SnapshotOptions) -> EnhancedSnapshot:
        """Return the annotated accessibility tree of the active page."""

    @abstractmethod
    async def screenshot(
        self,
        *,
        path: Optional[str] = None,
        full_page: bool = False,
        format: Optional[str] = None,
        quality: Optional[int] = None,
        selector: Optional[str] = None,
    ) -> dict[str, Any]:
        """Capture an image, written to ``path`` or returned as base64."""

    @abstractmethod
    async def evaluate(self, script: str) -> Any:
        """Evaluate JavaScript in the active frame."""

    @abstractmethod
    async def console_messages(self, clear: bool = False) -> list[Any]:
        """Return buffered console messages."""

    async def page_errors(self, clear: bool = False) -> list[Any]:
        raise self._unsupported("errors")

    async def content(self, selector: Optional[str] = None) -> str:
        raise self._unsupported("content")

    async def get_text(self, selector: str) -> str:
        raise self._unsupported("gettext")

    async def current_url(self) -> str:
        raise self._unsupported("url")

    async def title(self) -> str:
        raise self._unsupported("title")

    async def is_visible(self, selector: str) -> bool:
        raise self._unsupported("isvisible")

    async def is_enabled(self, selector: str) -> bool:
        raise self._unsupported("isenabled")

    async def is_checked(self, selector: str) -> bool:
        raise self._unsupported("ischecked")

    # Element actions

    @abstractmethod
    async def click(
        self,
        selector: str,
        *,
        button: Optional[str] = None,
        click_count: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> None:
        """Click the element addressed by ``selector``."""

    @abstractmethod
    async def type_text(
        self,
        selector: str,
        text: str,
        *,
        delay: Optional[float] = None,
        clear: bool = False,
    ) -> None:
        """Type ``text`` key by key into the element."""

    @abstractmethod
    async def fill(self, selector: str, value: str) -> None:
        """Replace the element's value."""

    @abstractmethod
    async def hover(self, selector: str) -> None:
        """Move the pointer over the element."""

    @abstractmethod
    async def press(self, key: str, selector: Optional[str] = None) -> None:
        """Press a key, optionally focused on an element."""

    @abstractmethod
    async def select(self, selector: str, values: list[str]) -> list[str]:
        """Select options of a ``<select>`` element."""

    @abstractmethod
    async def drag(self, source: str, target: str) -> None:
        """Drag one element onto another."""

    @abstractmethod
    async def upload(self, selector: str, files: list[str]) -> None:
        """Attach files to a file input."""

    @abstractmethod
    async def wait(
        self,
        *,
        selector: Optional[str] = None,
        timeout: Optional[float] = None,
        text: Optional[str] = None,
        url: Optional[str] = None,
        load_state: Optional[str] = None,
    ) -> None:
        """Wait for a selector, text, url, load state or a fixed delay."""

    async def dblclick(self, selector: str) -> None:
        raise self._unsupported("dblclick")

    async def focus(self, selector: str) -> None:
        raise self._unsupported("focus")

    async def check(self, selector: str) -> None:
        raise self._unsupported("check")

    async def uncheck(self, selector: str) -> None:
        raise self._unsupported("uncheck")

    async def scroll(self, direction: str, amount: int, selector: Optional[str] = None) -> None:
        raise self._unsupported("scroll")

    async def scroll_into_view(self, selector: str) -> None:
        raise self._unsupported("scrollintoview")

    async def get_by_role(
        self, role: str, subaction: str, *, name: Optional[str] = None, value: Optional[str] = None
    ) -> None:
        raise self._unsupported("getbyrole")

    async def get_by_text(
        self, text: str, subaction: str, *, exact: bool = False, value: Optional[str] = None
    ) -> None:
        raise self._unsupported("getbytext")

    async def get_by_label(self, label: str, subaction: str, *, value: Optional[str] = None) -> None:
        raise self._unsupported("getbylabel")

    # Tabs and dialogs

    @abstractmethod
    async def list_tabs(self) -> list[TabInfo]:
        """Enumerate open tabs."""

    @abstractmethod
    async def new_tab(self, url: Optional[str] = None) -> dict[str, int]:
        """Open a tab, make it active and return its index and the tab count."""

    @abstractmethod
    async def switch_tab(self, index: int) -> TabInfo:
        """Make the tab at ``index`` active."""

    @abstractmethod
    async def close_tab(self, index: Optional[int] = None) -> int:
        """Close a tab (the active one by default) and return how many remain."""

    @abstractmethod
    async def handle_dialog(self, accept: bool, prompt_text: Optional[str] = None) -> None:
        """Set how the next JavaScript dialog is answered."""

    # Emulation

    @abstractmethod
    async def set_viewport(self, width: int, height: int) -> None:
        """Resize the active page's viewport."""

    def viewport_size(self) -> Optional[tuple[int, int]]:
        return None

    async def set_geolocation(
        self, latitude: float, longitude: float, accuracy: Optional[float] = None
    ) -> None:
        raise self._unsupported("geolocation")

    async def set_offline(self, offline: bool) -> None:
        raise self._unsupported("offline")

    # Low level pointer

    async def mouse_move(self, x: float, y: float) -> None:
        raise self._unsupported("mousemove")

    async def mouse_down(self, button: Optional[str] = None) -> None:
        raise self._unsupported("mousedown")

    async def mouse_up(self, button: Optional[str] = None) -> None:
        raise self._unsupported("mouseup")

    async def wheel(self, delta_x: float, delta_y: float) -> None:
        raise self._unsupported("wheel")

    # Frames

    async def select_frame(self, selector: str) -> None:
        raise self._unsupported("frame")

    async def main_frame(self) -> None:
        raise self._unsupported("mainframe")

    # Cookies, storage and persisted state

    async def cookies_get(self, urls: Optional[list[str]] = None) -> list[dict[str, Any]]:
        raise self._unsupported("cookies_get")

    async def cookies_set(self, cookies: list[Cookie]) -> None:
        raise self._unsupported("cookies_set")

    async def cookies_clear(self) -> None:
        raise self._unsupported("cookies_clear")

    async def storage_get(self, storage_type: str, key: Optional[str] = None) -> Any:
        raise self._unsupported("storage_get")

    async def storage_set(self, storage_type: str, key: str, value: str) -> None:
        raise self._unsupported("storage_set")

    async def storage_clear(self, storage_type: str) -> None:
        raise self._unsupported("storage_clear")

    async def storage_state(self) -> dict[str, Any]:
        """Export cookies and origin storage as a JSON-compatible document."""

        raise self._unsupported("state_save")

    async def save_state(self, path: str) -> None:
        raise self._unsupported("state_save")

    async def load_state(self, path: str) -> None:
        raise self._unsupported("state_load")

    # Tracing

    async def trace_start(self, *, screenshots: bool = True, snapshots: bool = True) -> None:
        raise self._unsupported("trace_start")

    async def trace_stop(self, path: str) -> None:
        raise self._unsupported("trace_stop")

    # Capture and input injection

    @property
    def supports_capture(self) -> bool:
        return False

    def is_capturing(self) -> bool:
        return False

    def subscribe_capture(
        self, on_frame: FrameHandler, on_stopped: Optional[StopHandler] = None
    ) -> CaptureSubscription:
        raise self._unsupported("screencast_start")

    async def start_capture(self, options: Optional[CaptureOptions] = None) -> None:
        raise self._unsupported("screencast_start")

    async def stop_capture(self) -> None:
        raise self._unsupported("screencast_stop")

    async def inject_mouse(self, event: MouseEvent) -> None:
        raise self._unsupported("input_mouse")

    async def inject_keyboard(self, event: KeyboardEvent) -> None:
        raise self._unsupported("input_keyboard")

    async def inject_touch(self, event: TouchEvent) -> None:
        raise self._unsupported("input_touch")
