"""Playwright-powered browser backend implementation."""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Callable, Optional

from playwright.async_api import Error, async_playwright

from ..errors import BrowserActionError, BrowserNotLaunchedError, LaunchError, to_friendly_error
from ..models import CaptureOptions, Frame, FrameMetadata, KeyboardEvent, MouseEvent, TouchEvent
from ..protocol import Cookie, LaunchCommand
from .base import BrowserBackend, CaptureSubscription, CaptureHub, FrameHandler, StopHandler, TabInfo
from .snapshot import (
    EnhancedSnapshot,
    RefMap,
    SnapshotOptions,
    get_enhanced_snapshot,
    parse_ref,
    resolve_locator,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_VIEWPORT = {"width": 1280, "height": 720}
_SCROLL_VECTORS = {"up": (0, -1), "down": (0, 1), "left": (-1, 0), "right": (1, 0)}

_STORAGE_GET_SCRIPT = """([kind, key]) => {
  const storage = kind === 'local' ? window.localStorage : window.sessionStorage;
  if (key) return storage.getItem(key);
  const data = {};
  for (let i = 0; i < storage.length; i++) {
    const name = storage.key(i);
    data[name] = storage.getItem(name);
  }
  return data;
}"""
_STORAGE_SET_SCRIPT = """([kind, key, value]) => {
  const storage = kind === 'local' ? window.localStorage : window.sessionStorage;
  storage.setItem(key, value);
}"""
_STORAGE_CLEAR_SCRIPT = """(kind) => {
  const storage = kind === 'local' ? window.localStorage : window.sessionStorage;
  storage.clear();
}"""


@contextlib.contextmanager
def _friendly_errors(selector: str) -> Iterator[None]:
    try:
        yield
    except Error as exc:
        raise to_friendly_error(exc, selector) from exc


@contextlib.contextmanager
def _driver_errors() -> Iterator[None]:
    try:
        yield
    except Error as exc:
        raise BrowserActionError(str(exc)) from exc


class PlaywrightBackend(BrowserBackend):
    """Backend driving a local or CDP-attached browser through Playwright."""

    name = "native"

    def __init__(self, playwright_factory: Optional[Callable[[], Any]] = None) -> None:
        self._playwright_factory = playwright_factory or async_playwright
        self._playwright = None
        self._browser = None
        self._context = None
        self._pages: list[Any] = []
        self._active = 0
        self._frame = None
        self._cdp_port: Optional[int] = None
        self._refs: RefMap = {}
        self._console: list[dict[str, Any]] = []
        self._errors: list[dict[str, Any]] = []
        self._dialog_accept = False
        self._dialog_prompt: Optional[str] = None
        self._cdp_session = None
        self._capturing = False
        self._capture_hub = CaptureHub()
        self._acks: set[asyncio.Future[Any]] = set()

    # Lifecycle

    def is_launched(self) -> bool:
        return self._context is not None

    @property
    def browser(self) -> Any:
        return self._browser

    async def launch(self, command: LaunchCommand) -> None:
        if self.is_launched():
            if command.cdp_port == self._cdp_port:
                LOGGER.debug("Browser already launched with equivalent options")
                return
            LOGGER.info("Connection target changed, tearing down the current browser")
            await self.close()

        try:
            self._playwright = await self._playwright_factory().start()
            if command.cdp_port is not None:
                await self._connect_over_cdp(command.cdp_port)
            else:
                await self._launch_local(command)
        except Error as exc:
            await self.close()
            raise LaunchError(str(exc)) from exc
        except Exception:
            await self.close()
            raise
        self._cdp_port = command.cdp_port

    async def _connect_over_cdp(self, port: int) -> None:
        LOGGER.debug("Connecting to browser over CDP on port %s", port)
        self._browser = await self._playwright.chromium.connect_over_cdp(f"http://localhost:{port}")
        contexts = self._browser.contexts
        context = contexts[0] if contexts else await self._browser.new_context()
        self._attach_context(context)
        if not self._pages:
            self._track_page(await context.new_page())

    async def _launch_local(self, command: LaunchCommand) -> None:
        browser_type = getattr(self._playwright, command.browser or "chromium")
        headless = True if command.headless is None else command.headless
        args = list(command.args or [])
        if command.extensions:
            joined = ",".join(command.extensions)
            args += [f"--disable-extensions-except={joined}", f"--load-extension={joined}"]
        viewport = command.viewport.model_dump() if command.viewport else dict(DEFAULT_VIEWPORT)
        context_kwargs: dict[str, Any] = {"viewport": viewport}
        if command.ignore_https_errors:
            context_kwargs["ignore_https_errors"] = True
        if command.user_agent:
            context_kwargs["user_agent"] = command.user_agent

        LOGGER.debug("Launching %s (headless=%s)", command.browser or "chromium", headless)
        if command.profile or command.extensions:
            user_data_dir = command.profile or tempfile.mkdtemp(prefix="agent-browser-")
            Path(user_data_dir).expanduser().mkdir(parents=True, exist_ok=True)
            context = await browser_type.launch_persistent_context(
                str(Path(user_data_dir).expanduser()),
                headless=headless,
                executable_path=command.executable_path,
                args=args,
                **context_kwargs,
            )
            self._attach_context(context)
        else:
            self._browser = await browser_type.launch(
                headless=headless,
                executable_path=command.executable_path,
                args=args,
            )
            if command.storage_state:
                context_kwargs["storage_state"] = command.storage_state
            self._attach_context(await self._browser.new_context(**context_kwargs))
        if not self._pages:
            self._track_page(await self._context.new_page())
        if command.storage_state and self._browser is None:
            await self.load_state(command.storage_state)

    def _attach_context(self, context: Any) -> None:
        self._context = context
        self._pages = []
        self._active = 0
        context.on("page", self._track_page)
        for page in context.pages:
            self._track_page(page)

    def _track_page(self, page: Any) -> None:
        if page in self._pages:
            return
        self._pages.append(page)
        page.on("console", self._on_console)
        page.on("pageerror", self._on_page_error)
        page.on("dialog", self._on_dialog)
        page.on("close", self._on_page_closed)

    def _on_console(self, message: Any) -> None:
        self._console.append({"type": message.type, "text": message.text})

    def _on_page_error(self, error: Any) -> None:
        self._errors.append({"message": getattr(error, "message", str(error))})

    async def _on_dialog(self, dialog: Any) -> None:
        LOGGER.debug("Answering %s dialog (accept=%s)", dialog.type, self._dialog_accept)
        if self._dialog_accept:
            await dialog.accept(self._dialog_prompt or "")
        else:
            await dialog.dismiss()

    def _on_page_closed(self, page: Any) -> None:
        if page not in self._pages:
            return
        index = self._pages.index(page)
        self._pages.remove(page)
        if index == self._active:
            self._drop_page_session()
        if index < self._active or self._active >= len(self._pages):
            self._active = max(self._active - 1, 0)

    def _drop_page_session(self) -> None:
        """Forget the CDP session of an active page that closed on its own."""

        self._frame = None
        session, self._cdp_session = self._cdp_session, None
        if not self._capturing:
            return
        self._capturing = False
        if session is not None:
            session.remove_listener("Page.screencastFrame", self._on_screencast_frame)
        LOGGER.info("Active page closed during screencast")
        self._capture_hub.publish_stopped("tab_close")

    async def close(self) -> None:
        LOGGER.debug("Stopping Playwright browser backend")
        if self._capturing:
            await self._invalidate_capture("closed")
        try:
            if self._context and self._browser is None:
                await self._context.close()
            if self._browser:
                await self._browser.close()
        except Error as exc:
            LOGGER.warning("Error while closing browser: %s", exc)
        finally:
            if self._playwright:
                with contextlib.suppress(Error):
                    await self._playwright.stop()
            self._playwright = None
            self._browser = None
            self._context = None
            self._pages = []
            self._active = 0
            self._frame = None
            self._cdp_port = None
            self._refs = {}
            self._cdp_session = None

    # Helpers

    def _require_page(self) -> Any:
        if not self.is_launched() or not self._pages:
            raise BrowserNotLaunchedError()
        return self._pages[self._active]

    def _scope(self) -> Any:
        page = self._require_page()
        return self._frame or page

    def _locator(self, selector: str) -> Any:
        scope = self._scope()
        token = parse_ref(selector)
        if token is not None:
            entry = self._refs.get(token)
            if entry is not None:
                return resolve_locator(scope, entry)
            if selector != token:
                raise BrowserActionError(
                    f"Unknown ref: {token}. Run 'snapshot' to get fresh refs."
                )
        return scope.locator(selector)

    # Navigation

    async def navigate(self, url: str, wait_until: Optional[str] = None) -> dict[str, str]:
        page = self._require_page()
        self._frame = None
        with _driver_errors():
            await page.goto(url, wait_until=wait_until or "load")
            return {"url": page.url, "title": await page.title()}

    async def back(self) -> None:
        with _driver_errors():
            await self._require_page().go_back()

    async def forward(self) -> None:
        with _driver_errors():
            await self._require_page().go_forward()

    async def reload(self) -> None:
        with _driver_errors():
            await self._require_page().reload()

    # Page inspection

    async def snapshot(self, options: SnapshotOptions) -> EnhancedSnapshot:
        with _driver_errors():
            result = await get_enhanced_snapshot(self._scope(), options)
        self._refs = result.refs
        return result

    async def screenshot(
        self,
        *,
        path: Optional[str] = None,
        full_page: bool = False,
        format: Optional[str] = None,
        quality: Optional[int] = None,
        selector: Optional[str] = None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"type": format or "png"}
        if path:
            kwargs["path"] = path
        if quality is not None and kwargs["type"] == "jpeg":
            kwargs["quality"] = quality
        if selector:
            with _friendly_errors(selector):
                image = await self._locator(selector).screenshot(**kwargs)
        else:
            with _driver_errors():
                image = await self._require_page().screenshot(full_page=full_page, **kwargs)
        if path:
            return {"path": path}
        return {"base64": base64.b64encode(image).decode("ascii")}

    async def evaluate(self, script: str) -> Any:
        with _driver_errors():
            return await self._scope().evaluate(script)

    async def console_messages(self, clear: bool = False) -> list[Any]:
        messages = list(self._console)
        if clear:
            self._console.clear()
        return messages

    async def page_errors(self, clear: bool = False) -> list[Any]:
        errors = list(self._errors)
        if clear:
            self._errors.clear()
        return errors

    async def content(self, selector: Optional[str] = None) -> str:
        if selector:
            with _friendly_errors(selector):
                return await self._locator(selector).inner_html()
        with _driver_errors():
            return await self._scope().content()

    async def get_text(self, selector: str) -> str:
        with _friendly_errors(selector):
            return await self._locator(selector).inner_text()

    async def current_url(self) -> str:
        return self._require_page().url

    async def title(self) -> str:
        with _driver_errors():
            return await self._require_page().title()

    async def is_visible(self, selector: str) -> bool:
        with _friendly_errors(selector):
            return await self._locator(selector).is_visible()

    async def is_enabled(self, selector: str) -> bool:
        with _friendly_errors(selector):
            return await self._locator(selector).is_enabled()

    async def is_checked(self, selector: str) -> bool:
        with _friendly_errors(selector):
            return await self._locator(selector).is_checked()

    # Element actions

    async def click(
        self,
        selector: str,
        *,
        button: Optional[str] = None,
        click_count: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> None:
        kwargs: dict[str, Any] = {}
        if button:
            kwargs["button"] = button
        if click_count:
            kwargs["click_count"] = click_count
        if delay is not None:
            kwargs["delay"] = delay
        with _friendly_errors(selector):
            await self._locator(selector).click(**kwargs)

    async def dblclick(self, selector: str) -> None:
        with _friendly_errors(selector):
            await self._locator(selector).dblclick()

    async def type_text(
        self,
        selector: str,
        text: str,
        *,
        delay: Optional[float] = None,
        clear: bool = False,
    ) -> None:
        locator = self._locator(selector)
        with _friendly_errors(selector):
            if clear:
                await locator.fill("")
            await locator.press_sequentially(text, delay=delay or 0)

    async def fill(self, selector: str, value: str) -> None:
        with _friendly_errors(selector):
            await self._locator(selector).fill(value)

    async def hover(self, selector: str) -> None:
        with _friendly_errors(selector):
            await self._locator(selector).hover()

    async def focus(self, selector: str) -> None:
        with _friendly_errors(selector):
            await self._locator(selector).focus()

    async def check(self, selector: str) -> None:
        with _friendly_errors(selector):
            await self._locator(selector).check()

    async def uncheck(self, selector: str) -> None:
        with _friendly_errors(selector):
            await self._locator(selector).uncheck()

    async def press(self, key: str, selector: Optional[str] = None) -> None:
        if selector:
            with _friendly_errors(selector):
                await self._locator(selector).press(key)
            return
        with _driver_errors():
            await self._require_page().keyboard.press(key)

    async def select(self, selector: str, values: list[str]) -> list[str]:
        with _friendly_errors(selector):
            return await self._locator(selector).select_option(values)

    async def drag(self, source: str, target: str) -> None:
        with _friendly_errors(source):
            await self._locator(source).drag_to(self._locator(target))

    async def upload(self, selector: str, files: list[str]) -> None:
        with _friendly_errors(selector):
            await self._locator(selector).set_input_files(files)

    async def scroll(self, direction: str, amount: int, selector: Optional[str] = None) -> None:
        unit_x, unit_y = _SCROLL_VECTORS[direction]
        delta_x, delta_y = unit_x * amount, unit_y * amount
        if selector:
            with _friendly_errors(selector):
                await self._locator(selector).evaluate(
                    "(el, [dx, dy]) => el.scrollBy(dx, dy)", [delta_x, delta_y]
                )
            return
        with _driver_errors():
            await self._require_page().mouse.wheel(delta_x, delta_y)

    async def scroll_into_view(self, selector: str) -> None:
        with _friendly_errors(selector):
            await self._locator(selector).scroll_into_view_if_needed()

    async def wait(
        self,
        *,
        selector: Optional[str] = None,
        timeout: Optional[float] = None,
        text: Optional[str] = None,
        url: Optional[str] = None,
        load_state: Optional[str] = None,
    ) -> None:
        page = self._require_page()
        if selector:
            with _friendly_errors(selector):
                await self._locator(selector).wait_for(state="visible", timeout=timeout)
        elif text:
            with _friendly_errors(text):
                await self._scope().get_by_text(text).first.wait_for(timeout=timeout)
        elif url:
            with _driver_errors():
                await page.wait_for_url(url, timeout=timeout)
        elif load_state:
            with _driver_errors():
                await page.wait_for_load_state(load_state, timeout=timeout)
        elif timeout:
            await page.wait_for_timeout(timeout)

    async def get_by_role(
        self, role: str, subaction: str, *, name: Optional[str] = None, value: Optional[str] = None
    ) -> None:
        kwargs = {"name": name} if name else {}
        locator = self._scope().get_by_role(role, **kwargs)
        await self._run_subaction(locator, subaction, value, f"role={role}")

    async def get_by_text(
        self, text: str, subaction: str, *, exact: bool = False, value: Optional[str] = None
    ) -> None:
        locator = self._scope().get_by_text(text, exact=exact)
        await self._run_subaction(locator, subaction, value, text)

    async def get_by_label(self, label: str, subaction: str, *, value: Optional[str] = None) -> None:
        locator = self._scope().get_by_label(label)
        await self._run_subaction(locator, subaction, value, label)

    async def _run_subaction(
        self, locator: Any, subaction: str, value: Optional[str], description: str
    ) -> None:
        with _friendly_errors(description):
            if subaction == "click":
                await locator.click()
            elif subaction == "fill":
                await locator.fill(value or "")
            elif subaction == "check":
                await locator.check()
            elif subaction == "hover":
                await locator.hover()
            else:
                raise BrowserActionError(f"Unknown subaction: {subaction}")

    # Tabs and dialogs

    async def list_tabs(self) -> list[TabInfo]:
        self._require_page()
        tabs = []
        with _driver_errors():
            for index, page in enumerate(self._pages):
                tabs.append(
                    TabInfo(index=index, url=page.url, title=await page.title(), active=index == self._active)
                )
        return tabs

    async def new_tab(self, url: Optional[str] = None) -> dict[str, int]:
        self._require_page()
        await self._invalidate_capture("tab_new")
        with _driver_errors():
            page = await self._context.new_page()
            self._track_page(page)
            self._active = self._pages.index(page)
            self._frame = None
            if url:
                await page.goto(url)
        return {"index": self._active, "total": len(self._pages)}

    async def switch_tab(self, index: int) -> TabInfo:
        self._require_page()
        if index < 0 or index >= len(self._pages):
            raise BrowserActionError(
                f"Invalid tab index: {index}. Available: 0-{len(self._pages) - 1}"
            )
        if index != self._active:
            await self._invalidate_capture("tab_switch")
            self._active = index
            self._frame = None
        page = self._pages[index]
        with _driver_errors():
            await page.bring_to_front()
            return TabInfo(index=index, url=page.url, title=await page.title(), active=True)

    async def close_tab(self, index: Optional[int] = None) -> int:
        self._require_page()
        target = self._active if index is None else index
        if target < 0 or target >= len(self._pages):
            raise BrowserActionError(
                f"Invalid tab index: {target}. Available: 0-{len(self._pages) - 1}"
            )
        if len(self._pages) == 1:
            raise BrowserActionError("Cannot close the last tab. Use 'close' to end the session.")
        if target == self._active:
            await self._invalidate_capture("tab_close")
            self._frame = None
        page = self._pages[target]
        with _driver_errors():
            await page.close()
        self._on_page_closed(page)
        return len(self._pages)

    async def handle_dialog(self, accept: bool, prompt_text: Optional[str] = None) -> None:
        self._dialog_accept = accept
        self._dialog_prompt = prompt_text

    # Emulation

    async def set_viewport(self, width: int, height: int) -> None:
        with _driver_errors():
            await self._require_page().set_viewport_size({"width": width, "height": height})

    def viewport_size(self) -> Optional[tuple[int, int]]:
        if not self.is_launched() or not self._pages:
            return None
        size = self._pages[self._active].viewport_size
        if not size:
            return None
        return size["width"], size["height"]

    async def set_geolocation(
        self, latitude: float, longitude: float, accuracy: Optional[float] = None
    ) -> None:
        self._require_page()
        location: dict[str, float] = {"latitude": latitude, "longitude": longitude}
        if accuracy is not None:
            location["accuracy"] = accuracy
        with _driver_errors():
            await self._context.grant_permissions(["geolocation"])
            await self._context.set_geolocation(location)

    async def set_offline(self, offline: bool) -> None:
        self._require_page()
        with _driver_errors():
            await self._context.set_offline(offline)

    # Low level pointer

    async def mouse_move(self, x: float, y: float) -> None:
        with _driver_errors():
            await self._require_page().mouse.move(x, y)

    async def mouse_down(self, button: Optional[str] = None) -> None:
        with _driver_errors():
            await self._require_page().mouse.down(button=button or "left")

    async def mouse_up(self, button: Optional[str] = None) -> None:
        with _driver_errors():
            await self._require_page().mouse.up(button=button or "left")

    async def wheel(self, delta_x: float, delta_y: float) -> None:
        with _driver_errors():
            await self._require_page().mouse.wheel(delta_x, delta_y)

    # Frames

    async def select_frame(self, selector: str) -> None:
        page = self._require_page()
        with _friendly_errors(selector):
            handle = await page.wait_for_selector(selector)
            frame = await handle.content_frame() if handle else None
        if frame is None:
            raise BrowserActionError(f'Element "{selector}" is not a frame')
        self._frame = frame

    async def main_frame(self) -> None:
        self._require_page()
        self._frame = None

    # Cookies, storage and persisted state

    async def cookies_get(self, urls: Optional[list[str]] = None) -> list[dict[str, Any]]:
        self._require_page()
        with _driver_errors():
            if urls:
                return await self._context.cookies(urls)
            return await self._context.cookies()

    async def cookies_set(self, cookies: list[Cookie]) -> None:
        page = self._require_page()
        payload = []
        for cookie in cookies:
            data = cookie.to_wire()
            if "url" not in data and "domain" not in data:
                data["url"] = page.url
            payload.append(data)
        with _driver_errors():
            await self._context.add_cookies(payload)

    async def cookies_clear(self) -> None:
        self._require_page()
        with _driver_errors():
            await self._context.clear_cookies()

    async def storage_get(self, storage_type: str, key: Optional[str] = None) -> Any:
        with _driver_errors():
            return await self._require_page().evaluate(_STORAGE_GET_SCRIPT, [storage_type, key])

    async def storage_set(self, storage_type: str, key: str, value: str) -> None:
        with _driver_errors():
            await self._require_page().evaluate(_STORAGE_SET_SCRIPT, [storage_type, key, value])

    async def storage_clear(self, storage_type: str) -> None:
        with _driver_errors():
            await self._require_page().evaluate(_STORAGE_CLEAR_SCRIPT, storage_type)

    async def storage_state(self) -> dict[str, Any]:
        self._require_page()
        with _driver_errors():
            return await self._context.storage_state()

    async def save_state(self, path: str) -> None:
        self._require_page()
        target = Path(path).expanduser()
        target.parent.mkdir(parents=True, exist_ok=True)
        with _driver_errors():
            await self._context.storage_state(path=str(target))

    async def load_state(self, path: str) -> None:
        self._require_page()
        state = json.loads(Path(path).expanduser().read_text())
        with _driver_errors():
            if state.get("cookies"):
                await self._context.add_cookies(state["cookies"])
            for origin in state.get("origins", []):
                entries = {item["name"]: item["value"] for item in origin.get("localStorage", [])}
                if not entries:
                    continue
                await self._context.add_init_script(
                    script=(
                        f"if (location.origin === {json.dumps(origin['origin'])}) {{"
                        f" const entries = {json.dumps(entries)};"
                        " for (const [k, v] of Object.entries(entries)) localStorage.setItem(k, v); }"
                    )
                )

    # Tracing

    async def trace_start(self, *, screenshots: bool = True, snapshots: bool = True) -> None:
        self._require_page()
        with _driver_errors():
            await self._context.tracing.start(screenshots=screenshots, snapshots=snapshots)

    async def trace_stop(self, path: str) -> None:
        self._require_page()
        with _driver_errors():
            await self._context.tracing.stop(path=path)

    # Capture and input injection

    @property
    def supports_capture(self) -> bool:
        return True

    def is_capturing(self) -> bool:
        return self._capturing

    def subscribe_capture(
        self, on_frame: FrameHandler, on_stopped: Optional[StopHandler] = None
    ) -> CaptureSubscription:
        return self._capture_hub.subscribe(on_frame, on_stopped)

    async def cdp_session(self) -> Any:
        """Return the CDP session bound to the active page, creating it on demand."""

        page = self._require_page()
        if self._cdp_session is None:
            with _driver_errors():
                self._cdp_session = await self._context.new_cdp_session(page)
        return self._cdp_session

    async def start_capture(self, options: Optional[CaptureOptions] = None) -> None:
        if self._capturing:
            LOGGER.debug("Screencast already active")
            return
        options = options or CaptureOptions()
        session = await self.cdp_session()
        self._capturing = True
        session.on("Page.screencastFrame", self._on_screencast_frame)
        try:
            await session.send(
                "Page.startScreencast",
                {
                    "format": options.format,
                    "quality": options.quality,
                    "maxWidth": options.max_width,
                    "maxHeight": options.max_height,
                    "everyNthFrame": options.every_nth_frame,
                },
            )
        except Error as exc:
            self._capturing = False
            session.remove_listener("Page.screencastFrame", self._on_screencast_frame)
            raise BrowserActionError(str(exc)) from exc
        LOGGER.debug("Screencast started")

    async def stop_capture(self) -> None:
        if await self._halt_capture():
            self._capture_hub.publish_stopped("stopped")

    async def _halt_capture(self) -> bool:
        """Stop the screencast without notifying subscribers; report whether one was running."""

        if not self._capturing:
            return False
        self._capturing = False
        session = self._cdp_session
        if session is None:
            return True
        session.remove_listener("Page.screencastFrame", self._on_screencast_frame)
        try:
            await session.send("Page.stopScreencast")
        except Error as exc:
            LOGGER.debug("Stop screencast error: %s", exc)
        LOGGER.debug("Screencast stopped")
        return True

    def _on_screencast_frame(self, event: dict[str, Any]) -> None:
        if not self._capturing or self._cdp_session is None:
            return
        ack = asyncio.ensure_future(
            self._cdp_session.send("Page.screencastFrameAck", {"sessionId": event["sessionId"]})
        )
        self._acks.add(ack)
        ack.add_done_callback(self._on_ack_done)
        frame = Frame(
            data=event["data"],
            metadata=FrameMetadata.model_validate(event.get("metadata", {})),
        )
        self._capture_hub.publish_frame(frame)

    def _on_ack_done(self, ack: asyncio.Future[Any]) -> None:
        self._acks.discard(ack)
        if not ack.cancelled() and ack.exception() is not None:
            LOGGER.debug("Frame ack failed: %s", ack.exception())

    async def _invalidate_capture(self, reason: str) -> None:
        """Drop the page-bound CDP session, stopping any capture on it."""

        was_capturing = await self._halt_capture()
        session, self._cdp_session = self._cdp_session, None
        if session is not None:
            with contextlib.suppress(Error):
                await session.detach()
        if was_capturing:
            self._capture_hub.publish_stopped(reason)

    async def inject_mouse(self, event: MouseEvent) -> None:
        params: dict[str, Any] = {
            "type": event.type,
            "x": event.x,
            "y": event.y,
            "button": event.button or "none",
            "clickCount": event.click_count if event.click_count is not None else 0,
            "modifiers": event.modifiers or 0,
        }
        if event.type == "mouseWheel":
            params["deltaX"] = event.delta_x or 0
            params["deltaY"] = event.delta_y or 0
        session = await self.cdp_session()
        with _driver_errors():
            await session.send("Input.dispatchMouseEvent", params)

    async def inject_keyboard(self, event: KeyboardEvent) -> None:
        params: dict[str, Any] = {"type": event.type, "modifiers": event.modifiers or 0}
        for field_name in ("key", "code", "text"):
            value = getattr(event, field_name)
            if value is not None:
                params[field_name] = value
        session = await self.cdp_session()
        with _driver_errors():
            await session.send("Input.dispatchKeyEvent", params)

    async def inject_touch(self, event: TouchEvent) -> None:
        params = {
            "type": event.type,
            "touchPoints": [point.to_wire() for point in event.touch_points],
            "modifiers": event.modifiers or 0,
        }
        session = await self.cdp_session()
        with _driver_errors():
            await session.send("Input.dispatchTouchEvent", params)
