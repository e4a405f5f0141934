from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Optional

import pytest

from agent_browser.browser.bridge import (
    MCPStdioClient,
    PlaywrightMCPBackend,
    extract_image,
    extract_ref,
    extract_text,
    parse_tabs,
)
from agent_browser.browser.snapshot import SnapshotOptions
from agent_browser.errors import BridgeError, BridgeTimeoutError, UnsupportedActionError
from agent_browser.protocol import LaunchCommand

FAKE_SERVER = r'''
import json
import sys

while True:
    line = sys.stdin.readline()
    if not line:
        break
    message = json.loads(line)
    if "id" not in message:
        continue
    method = message["method"]
    if method == "initialize":
        result = {
            "protocolVersion": message["params"]["protocolVersion"],
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "fake", "version": "1.0"},
        }
    elif method == "tools/list":
        result = {"tools": []}
    elif method != "tools/call":
        result = {}
    else:
        name = message["params"]["name"]
        arguments = message["params"].get("arguments") or {}
        if name == "hang":
            continue
        if name == "exit":
            sys.exit(3)
        if name == "fail":
            result = {"content": [{"type": "text", "text": "Element not found"}], "isError": True}
        else:
            if name == "browser_navigate":
                text = "Page Title: Example\nPage URL: " + arguments["url"]
            elif name == "browser_snapshot":
                text = '- button "Go" [ref=e5]\n- link "Docs" [ref=e6]'
            else:
                text = json.dumps({"tool": name, "arguments": arguments})
            result = {"content": [{"type": "text", "text": text}]}
    sys.stdout.write(json.dumps({"jsonrpc": "2.0", "id": message["id"], "result": result}) + "\n")
    sys.stdout.flush()
'''


@pytest.fixture
def server_script(tmp_path: Path) -> Path:
    path = tmp_path / "fake_mcp.py"
    path.write_text(FAKE_SERVER)
    return path


@pytest.fixture
async def client(server_script: Path):  # type: ignore[no-untyped-def]
    mcp = MCPStdioClient(sys.executable, [str(server_script)], timeout=5)
    yield mcp
    await mcp.close()


async def test_handshake_and_tool_call(client: MCPStdioClient) -> None:
    await client.connect()

    assert client.is_connected()
    result = await client.call_tool("echo", {"a": 1, "skip": None})
    assert json.loads(extract_text(result)) == {"tool": "echo", "arguments": {"a": 1}}


async def test_timed_out_call_does_not_block_later_calls(client: MCPStdioClient) -> None:
    await client.connect()
    client.timeout = 0.2

    with pytest.raises(BridgeTimeoutError, match="MCP request timed out: tools/call hang"):
        await client.call_tool("hang")

    client.timeout = 5
    assert client.is_connected()
    assert extract_text(await client.call_tool("echo")) != ""


async def test_process_exit_fails_pending_request(client: MCPStdioClient) -> None:
    await client.connect()
    client.timeout = 2

    with pytest.raises(BridgeError):
        await client.call_tool("exit")


async def test_tool_error_is_raised(client: MCPStdioClient) -> None:
    await client.connect()

    with pytest.raises(BridgeError, match="Element not found"):
        extract_text(await client.call_tool("fail"))


async def test_spawn_failure_is_reported(tmp_path: Path) -> None:
    mcp = MCPStdioClient(str(tmp_path / "missing-binary"), [])

    with pytest.raises(BridgeError):
        await mcp.connect()
    assert not mcp.is_connected()


async def test_close_is_idempotent(client: MCPStdioClient) -> None:
    await client.connect()

    await client.close()
    await client.close()

    assert not client.is_connected()


async def test_backend_launch_and_navigate(server_script: Path) -> None:
    backend = PlaywrightMCPBackend(sys.executable, [str(server_script)], timeout=5)
    try:
        await backend.launch(LaunchCommand(id="1", action="launch"))
        result = await backend.navigate("https://example.com")
        snapshot = await backend.snapshot(SnapshotOptions())
    finally:
        await backend.close()

    assert result == {"url": "https://example.com", "title": "Example"}
    assert list(snapshot.refs) == ["e5", "e6"]
    assert not backend.is_launched()


class RecordingClient:
    def __init__(self, text: str = "ok") -> None:
        self.text = text
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def is_connected(self) -> bool:
        return True

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def call_tool(self, name: str, arguments: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        cleaned = {key: value for key, value in (arguments or {}).items() if value is not None}
        self.calls.append((name, cleaned))
        return {"content": [{"type": "text", "text": self.text}]}


def _backend(text: str = "ok") -> tuple[PlaywrightMCPBackend, RecordingClient]:
    recorder = RecordingClient(text)
    return PlaywrightMCPBackend(client=recorder), recorder  # type: ignore[arg-type]


async def test_ref_selectors_map_to_remote_refs() -> None:
    backend, recorder = _backend()

    await backend.click("@e5")
    await backend.fill("ref=e7", "hello")
    await backend.drag("e1", "e2")

    assert recorder.calls == [
        ("browser_click", {"element": "@e5", "ref": "e5"}),
        ("browser_type", {"element": "ref=e7", "ref": "e7", "text": "hello"}),
        ("browser_drag", {"startElement": "e1", "startRef": "e1", "endElement": "e2", "endRef": "e2"}),
    ]


async def test_wait_converts_milliseconds() -> None:
    backend, recorder = _backend()

    await backend.wait(timeout=1500)

    assert recorder.calls == [("browser_wait_for", {"time": 1.5})]


async def test_evaluate_parses_json_results() -> None:
    backend, _ = _backend('{"answer": 42}')

    assert await backend.evaluate("() => ({answer: 42})") == {"answer": 42}


@pytest.mark.parametrize(
    ("operation", "action"),
    [
        (lambda backend: backend.cookies_get(), "cookies_get"),
        (lambda backend: backend.storage_get("local"), "storage_get"),
        (lambda backend: backend.start_capture(), "screencast_start"),
        (lambda backend: backend.press("Enter", "#field"), "press with selector"),
        (lambda backend: backend.wait(selector="#done"), "wait"),
    ],
)
async def test_capability_gaps_are_explicit(operation: Any, action: str) -> None:
    backend, recorder = _backend()

    with pytest.raises(UnsupportedActionError) as excinfo:
        await operation(backend)

    assert excinfo.value.backend == "playwright-mcp"
    assert str(excinfo.value) == f'Action "{action}" not supported in playwright-mcp mode'
    assert recorder.calls == []
    assert backend.supports_capture is False


def test_parse_tabs() -> None:
    tabs = parse_tabs("### Open tabs\n- [0] https://a.test\n- [1] https://b.test (active)")

    assert [(tab.index, tab.url, tab.active) for tab in tabs] == [
        (0, "https://a.test", False),
        (1, "https://b.test", True),
    ]


@pytest.mark.parametrize(
    ("selector", "expected"),
    [("@e3", "e3"), ("ref=e4", "e4"), ('button "Go" [ref=e9]', "e9"), ("#css", None)],
)
def test_extract_ref(selector: str, expected: Optional[str]) -> None:
    assert extract_ref(selector) == expected


def test_extract_helpers() -> None:
    result = {
        "content": [
            {"type": "image", "data": "aW1n", "mimeType": "image/png"},
            {"type": "text", "text": "done"},
        ]
    }

    assert extract_text(result) == "done"
    assert extract_image(result) == "aW1n"
    with pytest.raises(BridgeError, match="MCP tool call failed"):
        extract_text({"content": [], "isError": True})
