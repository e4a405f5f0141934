"""Backend that proxies actions to a Playwright MCP server over stdio."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import timedelta
from typing import Any, Optional

import anyio
from mcp import ClientSession, McpError, StdioServerParameters
from mcp.client.stdio import stdio_client

from ..errors import BridgeError, BridgeTimeoutError
from ..protocol import LaunchCommand
from .base import BrowserBackend, TabInfo
from .snapshot import EnhancedSnapshot, RefEntry, SnapshotOptions, parse_ref

LOGGER = logging.getLogger(__name__)

# JSON-RPC error codes the MCP SDK uses for an expired read and a lost transport.
REQUEST_TIMEOUT = 408
CONNECTION_CLOSED = -32000
_CLOSE_TIMEOUT = 10.0

_TITLE_PATTERN = re.compile(r"Page Title: (.+)")
_URL_PATTERN = re.compile(r"Page URL: (.+)")
_TAB_PATTERN = re.compile(r"\[(\d+)\]\s+(.+)")
_REF_PATTERN = re.compile(r"\[ref=([^\]]+)\]")


def _leaf_exception(exc: BaseException) -> BaseException:
    # Task groups wrap the failure of the stdio transport in an exception group.
    while getattr(exc, "exceptions", None):
        exc = exc.exceptions[0]  # type: ignore[attr-defined]
    return exc


def _bridge_error(exc: BaseException, method: str, command: str) -> BridgeError:
    exc = _leaf_exception(exc)
    if isinstance(exc, BridgeError):
        return exc
    if isinstance(exc, McpError):
        if exc.error.code == REQUEST_TIMEOUT:
            return BridgeTimeoutError(f"MCP request timed out: {method}")
        return BridgeError(f"MCP error: {exc.error.message}")
    if isinstance(exc, OSError):
        return BridgeError(f"Failed to spawn {command}: {exc}")
    return BridgeError(f"MCP session failed: {exc}")


class MCPStdioClient:
    """MCP client session for a server spawned as a subprocess.

    The SDK transport is entered and left by one dedicated task so callers on
    any task can share the session. Every request carries a hard read
    timeout; the SDK drops the pending entry when it expires and fails
    outstanding requests when the child exits.
    """

    def __init__(self, command: str, args: list[str], *, timeout: float = 60.0) -> None:
        self.command = command
        self.args = list(args)
        self.timeout = timeout
        self._session: Optional[ClientSession] = None
        self._runner: Optional[asyncio.Task[None]] = None
        self._stop: Optional[asyncio.Event] = None

    def is_connected(self) -> bool:
        return self._session is not None and self._runner is not None and not self._runner.done()

    async def connect(self) -> None:
        if self.is_connected():
            return
        await self.close()
        LOGGER.debug("Spawning MCP server: %s %s", self.command, " ".join(self.args))
        ready: asyncio.Future[ClientSession] = asyncio.get_running_loop().create_future()
        self._stop = asyncio.Event()
        self._runner = asyncio.create_task(self._run(ready, self._stop))
        try:
            self._session = await ready
        except BridgeError:
            await self.close()
            raise

    async def _run(self, ready: asyncio.Future[ClientSession], stop: asyncio.Event) -> None:
        params = StdioServerParameters(command=self.command, args=self.args)
        try:
            async with stdio_client(params) as (read_stream, write_stream):
                async with ClientSession(
                    read_stream,
                    write_stream,
                    read_timeout_seconds=timedelta(seconds=self.timeout),
                ) as session:
                    await session.initialize()
                    ready.set_result(session)
                    await stop.wait()
        except Exception as exc:
            error = _bridge_error(exc, "initialize", self.command)
            if ready.done():
                LOGGER.warning("MCP session ended: %s", error)
            else:
                ready.set_exception(error)
        finally:
            if not ready.done():
                ready.set_exception(BridgeError("MCP session ended before initialization"))

    async def call_tool(self, name: str, arguments: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Call a tool and return the result as a plain dict (``content``, ``isError``)."""

        if not self.is_connected():
            await self.connect()
        session = self._session
        assert session is not None
        cleaned = {key: value for key, value in (arguments or {}).items() if value is not None}
        LOGGER.debug("Calling MCP tool %s", name)
        try:
            result = await session.call_tool(
                name, cleaned, read_timeout_seconds=timedelta(seconds=self.timeout)
            )
        except McpError as exc:
            if exc.error.code == CONNECTION_CLOSED:
                await self.close()
            raise _bridge_error(exc, f"tools/call {name}", self.command) from exc
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as exc:
            await self.close()
            raise BridgeError("MCP process not running") from exc
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    async def close(self) -> None:
        runner, self._runner = self._runner, None
        stop, self._stop = self._stop, None
        self._session = None
        if runner is None:
            return
        if stop is not None:
            stop.set()
        try:
            await asyncio.wait_for(runner, timeout=_CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            LOGGER.warning("MCP server did not shut down within %ss", _CLOSE_TIMEOUT)


def extract_text(result: dict[str, Any]) -> str:
    """Return the first text block of a tool result, raising on tool errors."""

    text = ""
    for item in result.get("content") or []:
        if item.get("type") == "text":
            text = item.get("text", "")
            break
    if result.get("isError"):
        raise BridgeError(text or "MCP tool call failed")
    return text


def extract_image(result: dict[str, Any]) -> Optional[str]:
    for item in result.get("content") or []:
        if item.get("type") == "image":
            return item.get("data")
    return None


def extract_ref(selector: str) -> Optional[str]:
    """Map a selector that already encodes an ``e<N>`` token to the token."""

    token = parse_ref(selector)
    if token is not None:
        return token
    match = _REF_PATTERN.search(selector)
    return match.group(1) if match else None


def parse_tabs(text: str) -> list[TabInfo]:
    tabs = []
    for line in text.split("\n"):
        match = _TAB_PATTERN.search(line)
        if not match:
            continue
        active = "*" in line or "(active)" in line
        url = match.group(2).replace("(active)", "").strip(" *")
        tabs.append(TabInfo(index=int(match.group(1)), url=url, active=active))
    return tabs


class PlaywrightMCPBackend(BrowserBackend):
    """Bridge variant: every action becomes a ``tools/call`` on the MCP server."""

    name = "playwright-mcp"

    def __init__(
        self,
        command: str = "npx",
        args: Optional[list[str]] = None,
        *,
        timeout: float = 60.0,
        client: Optional[MCPStdioClient] = None,
    ) -> None:
        if args is None:
            args = ["@playwright/mcp@latest", "--extension"]
        self._client = client or MCPStdioClient(command, args, timeout=timeout)
        self._launched = False
        self._last_snapshot = ""

    @property
    def client(self) -> MCPStdioClient:
        return self._client

    def is_launched(self) -> bool:
        return self._launched

    async def launch(self, command: LaunchCommand) -> None:
        await self._client.connect()
        await self.snapshot(SnapshotOptions())
        self._launched = True

    async def close(self) -> None:
        try:
            if self._client.is_connected():
                await self._client.call_tool("browser_close")
        finally:
            await self._client.close()
            self._launched = False

    async def _call(self, name: str, arguments: Optional[dict[str, Any]] = None) -> str:
        return extract_text(await self._client.call_tool(name, arguments))

    def _target(self, selector: str) -> dict[str, str]:
        return {"element": selector, "ref": extract_ref(selector) or selector}

    async def navigate(self, url: str, wait_until: Optional[str] = None) -> dict[str, str]:
        text = await self._call("browser_navigate", {"url": url})
        title = _TITLE_PATTERN.search(text)
        found_url = _URL_PATTERN.search(text)
        return {
            "url": found_url.group(1).strip() if found_url else url,
            "title": title.group(1).strip() if title else "",
        }

    async def back(self) -> None:
        # browser_navigate_back drops the target in extension mode.
        await self._call("browser_evaluate", {"function": "() => history.back()"})

    async def snapshot(self, options: SnapshotOptions) -> EnhancedSnapshot:
        text = await self._call("browser_snapshot")
        self._last_snapshot = text
        refs = {
            token: RefEntry(selector=token, role="element")
            for token in _REF_PATTERN.findall(text)
        }
        return EnhancedSnapshot(tree=text, refs=refs)

    async def screenshot(
        self,
        *,
        path: Optional[str] = None,
        full_page: bool = False,
        format: Optional[str] = None,
        quality: Optional[int] = None,
        selector: Optional[str] = None,
    ) -> dict[str, Any]:
        arguments: dict[str, Any] = {"filename": path, "fullPage": full_page or None, "type": format}
        if selector:
            arguments.update(self._target(selector))
        result = await self._client.call_tool("browser_take_screenshot", arguments)
        extract_text(result)
        if path:
            return {"path": path}
        image = extract_image(result)
        return {"base64": image} if image else {}

    async def evaluate(self, script: str) -> Any:
        text = await self._call("browser_evaluate", {"function": script})
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text

    async def console_messages(self, clear: bool = False) -> list[Any]:
        text = await self._call("browser_console_messages")
        return [line for line in text.split("\n") if line.strip()]

    async def click(
        self,
        selector: str,
        *,
        button: Optional[str] = None,
        click_count: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> None:
        arguments: dict[str, Any] = dict(self._target(selector), button=button)
        if click_count == 2:
            arguments["doubleClick"] = True
        await self._call("browser_click", arguments)

    async def dblclick(self, selector: str) -> None:
        await self._call("browser_click", dict(self._target(selector), doubleClick=True))

    async def type_text(
        self,
        selector: str,
        text: str,
        *,
        delay: Optional[float] = None,
        clear: bool = False,
    ) -> None:
        arguments: dict[str, Any] = dict(self._target(selector), text=text)
        if delay:
            arguments["slowly"] = True
        await self._call("browser_type", arguments)

    async def fill(self, selector: str, value: str) -> None:
        await self._call("browser_type", dict(self._target(selector), text=value))

    async def hover(self, selector: str) -> None:
        await self._call("browser_hover", self._target(selector))

    async def press(self, key: str, selector: Optional[str] = None) -> None:
        if selector:
            raise self._unsupported("press with selector")
        await self._call("browser_press_key", {"key": key})

    async def select(self, selector: str, values: list[str]) -> list[str]:
        await self._call("browser_select_option", dict(self._target(selector), values=values))
        return values

    async def drag(self, source: str, target: str) -> None:
        await self._call(
            "browser_drag",
            {
                "startElement": source,
                "startRef": extract_ref(source) or source,
                "endElement": target,
                "endRef": extract_ref(target) or target,
            },
        )

    async def upload(self, selector: str, files: list[str]) -> None:
        await self._call("browser_file_upload", {"paths": files})

    async def wait(
        self,
        *,
        selector: Optional[str] = None,
        timeout: Optional[float] = None,
        text: Optional[str] = None,
        url: Optional[str] = None,
        load_state: Optional[str] = None,
    ) -> None:
        if selector or url or load_state:
            raise self._unsupported("wait")
        if text:
            await self._call("browser_wait_for", {"text": text})
        elif timeout:
            await self._call("browser_wait_for", {"time": timeout / 1000})

    async def list_tabs(self) -> list[TabInfo]:
        return parse_tabs(await self._call("browser_tabs", {"action": "list"}))

    async def new_tab(self, url: Optional[str] = None) -> dict[str, int]:
        await self._call("browser_tabs", {"action": "new"})
        if url:
            await self.navigate(url)
        tabs = await self.list_tabs()
        return {"index": len(tabs) - 1, "total": len(tabs)}

    async def switch_tab(self, index: int) -> TabInfo:
        await self._call("browser_tabs", {"action": "select", "index": index})
        for tab in await self.list_tabs():
            if tab.index == index:
                return tab
        return TabInfo(index=index, url="", active=True)

    async def close_tab(self, index: Optional[int] = None) -> int:
        await self._call("browser_tabs", {"action": "close", "index": index})
        return len(await self.list_tabs())

    async def handle_dialog(self, accept: bool, prompt_text: Optional[str] = None) -> None:
        await self._call("browser_handle_dialog", {"accept": accept, "promptText": prompt_text})

    async def set_viewport(self, width: int, height: int) -> None:
        await self._call("browser_resize", {"width": width, "height": height})
