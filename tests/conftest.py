from __future__ import annotations

from typing import Any, Optional

import pytest

from agent_browser.browser.base import BrowserBackend, CaptureHub, CaptureSubscription, TabInfo
from agent_browser.browser.snapshot import EnhancedSnapshot, SnapshotOptions, process_aria_tree
from agent_browser.errors import BrowserActionError, BrowserNotLaunchedError, LaunchError
from agent_browser.models import CaptureOptions, Frame, FrameMetadata
from agent_browser.protocol import LaunchCommand

SAMPLE_TREE = """- heading "Example Domain" [level=1]
- paragraph: Some text
- button "Submit"
- link "More"
"""


class FakeBackend(BrowserBackend):
    """In-memory backend recording every call it receives."""

    name = "fake"

    def __init__(self) -> None:
        self.launched = False
        self.launches: list[LaunchCommand] = []
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.url = "about:blank"
        self.tabs = ["about:blank"]
        self.active = 0
        self.fail_launch = False
        self.fail_input = False
        self.state: dict[str, Any] = {"cookies": [{"name": "sid", "value": "1"}], "origins": []}
        self.capturing = False
        self.capture_starts = 0
        self.capture_options: Optional[CaptureOptions] = None
        self.hub = CaptureHub()
        self.injected: list[Any] = []

    def _require(self) -> None:
        if not self.launched:
            raise BrowserNotLaunchedError()

    def is_launched(self) -> bool:
        return self.launched

    async def launch(self, command: LaunchCommand) -> None:
        self.launches.append(command)
        if self.fail_launch:
            raise LaunchError("browser executable not found")
        self.launched = True

    async def close(self) -> None:
        self.calls.append(("close", ()))
        if self.capturing:
            self.capturing = False
            self.hub.publish_stopped("closed")
        self.launched = False

    async def navigate(self, url: str, wait_until: Optional[str] = None) -> dict[str, str]:
        self._require()
        self.calls.append(("navigate", (url,)))
        self.url = url
        self.tabs[self.active] = url
        return {"url": url, "title": f"Title of {url}"}

    async def back(self) -> None:
        self.calls.append(("back", ()))

    async def snapshot(self, options: SnapshotOptions) -> EnhancedSnapshot:
        self._require()
        return process_aria_tree(SAMPLE_TREE, options)

    async def screenshot(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("screenshot", (kwargs,)))
        if kwargs.get("path"):
            return {"path": kwargs["path"]}
        return {"base64": "aW1n"}

    async def evaluate(self, script: str) -> Any:
        self._require()
        if "throw" in script:
            raise BrowserActionError("Error: boom")
        if "explode" in script:
            raise KeyError("explode")
        return 2

    async def console_messages(self, clear: bool = False) -> list[Any]:
        return [{"type": "log", "text": "hello"}]

    async def click(self, selector: str, **kwargs: Any) -> None:
        self._require()
        self.calls.append(("click", (selector,)))

    async def type_text(self, selector: str, text: str, **kwargs: Any) -> None:
        self.calls.append(("type", (selector, text)))

    async def fill(self, selector: str, value: str) -> None:
        self.calls.append(("fill", (selector, value)))

    async def hover(self, selector: str) -> None:
        self.calls.append(("hover", (selector,)))

    async def press(self, key: str, selector: Optional[str] = None) -> None:
        self.calls.append(("press", (key, selector)))

    async def select(self, selector: str, values: list[str]) -> list[str]:
        return values

    async def drag(self, source: str, target: str) -> None:
        self.calls.append(("drag", (source, target)))

    async def upload(self, selector: str, files: list[str]) -> None:
        self.calls.append(("upload", (selector, files)))

    async def wait(self, **kwargs: Any) -> None:
        self.calls.append(("wait", (kwargs,)))

    async def list_tabs(self) -> list[TabInfo]:
        return [
            TabInfo(index=index, url=url, title=url, active=index == self.active)
            for index, url in enumerate(self.tabs)
        ]

    async def new_tab(self, url: Optional[str] = None) -> dict[str, int]:
        self.tabs.append(url or "about:blank")
        self.active = len(self.tabs) - 1
        self._invalidate("tab_new")
        return {"index": self.active, "total": len(self.tabs)}

    async def switch_tab(self, index: int) -> TabInfo:
        if index >= len(self.tabs):
            raise BrowserActionError(f"No tab at index {index}")
        self.active = index
        self._invalidate("tab_switch")
        return TabInfo(index=index, url=self.tabs[index], title=self.tabs[index], active=True)

    async def close_tab(self, index: Optional[int] = None) -> int:
        self.tabs.pop(self.active if index is None else index)
        self.active = 0
        return len(self.tabs)

    async def handle_dialog(self, accept: bool, prompt_text: Optional[str] = None) -> None:
        self.calls.append(("dialog", (accept, prompt_text)))

    async def set_viewport(self, width: int, height: int) -> None:
        self.calls.append(("viewport", (width, height)))

    def viewport_size(self) -> Optional[tuple[int, int]]:
        return (1280, 720) if self.launched else None

    async def storage_state(self) -> dict[str, Any]:
        return self.state

    @property
    def supports_capture(self) -> bool:
        return True

    def is_capturing(self) -> bool:
        return self.capturing

    def subscribe_capture(self, on_frame, on_stopped=None) -> CaptureSubscription:  # type: ignore[no-untyped-def]
        return self.hub.subscribe(on_frame, on_stopped)

    async def start_capture(self, options: Optional[CaptureOptions] = None) -> None:
        self._require()
        if self.capturing:
            return
        self.capturing = True
        self.capture_starts += 1
        self.capture_options = options
        self.hub.publish_frame(
            Frame(data="ZnJhbWU=", metadata=FrameMetadata(device_width=1280, device_height=720))
        )

    async def stop_capture(self) -> None:
        self._invalidate("stopped")

    async def inject_mouse(self, event: Any) -> None:
        if self.fail_input:
            raise BrowserActionError("Input dispatch failed")
        self.injected.append(event)

    async def inject_keyboard(self, event: Any) -> None:
        self.injected.append(event)

    async def inject_touch(self, event: Any) -> None:
        self.injected.append(event)

    def _invalidate(self, reason: str) -> None:
        if self.capturing:
            self.capturing = False
            self.hub.publish_stopped(reason)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()
