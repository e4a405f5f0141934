from __future__ import annotations

import json
import os
import socket
import threading
from pathlib import Path

import pytest
from typer.testing import CliRunner

from agent_browser.cli import app
from agent_browser.client import DaemonClient, DaemonConnectionError, DaemonResponse
from agent_browser.daemon.transport import (
    SessionContext,
    ensure_run_dir,
    write_pid_file,
    write_stream_port,
)


class DummyClient:
    sent: list[str] = []
    closes = 0

    def __init__(self, context: SessionContext, **kwargs: object) -> None:
        self.context = context

    def __enter__(self) -> "DummyClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def send_line(self, line: str) -> DaemonResponse:
        DummyClient.sent.append(line)
        command = json.loads(line)
        if command["action"] == "fly":
            return DaemonResponse(id=command["id"], success=False, error="Unknown action: fly")
        return DaemonResponse(id=command["id"], success=True, data={"ok": True})

    def send(self, action: str, **fields: object) -> DaemonResponse:
        DummyClient.closes += 1
        return DaemonResponse(id="c1", success=True, data={"closed": True})


@pytest.fixture
def dummy_client(monkeypatch: pytest.MonkeyPatch) -> type[DummyClient]:
    DummyClient.sent = []
    DummyClient.closes = 0
    monkeypatch.setattr("agent_browser.cli.DaemonClient", DummyClient)
    return DummyClient


def test_version_command() -> None:
    result = CliRunner().invoke(app, ["version"])

    assert result.exit_code == 0
    assert result.stdout.strip()


def test_daemon_command_runs_with_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    captured = {}

    def fake_run_daemon(settings):  # type: ignore[no-untyped-def]
        captured["settings"] = settings
        return 0

    monkeypatch.setattr("agent_browser.cli.run_daemon", fake_run_daemon)

    result = CliRunner().invoke(
        app,
        [
            "daemon",
            "--session",
            "work",
            "--home",
            str(tmp_path),
            "--headed",
            "--stream-port",
            "9223",
            "--persist",
        ],
    )

    assert result.exit_code == 0, result.output
    settings = captured["settings"]
    assert settings.session == "work"
    assert settings.home == tmp_path
    assert settings.headed is True
    assert settings.stream_port == 9223
    assert settings.persist is True


def test_daemon_command_refuses_running_session(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr("agent_browser.cli.is_daemon_running", lambda ctx: True)
    monkeypatch.setattr("agent_browser.cli.run_daemon", lambda settings: pytest.fail("started twice"))

    result = CliRunner().invoke(app, ["daemon", "--session", "work", "--home", str(tmp_path)])

    assert result.exit_code == 1
    assert "already running" in result.output


def test_invalid_session_name_is_rejected(tmp_path: Path) -> None:
    result = CliRunner().invoke(app, ["send", "{}", "--session", "../etc", "--home", str(tmp_path)])

    assert result.exit_code == 2
    assert "Invalid session name" in result.output


def test_send_prints_responses_from_stdin(dummy_client: type[DummyClient], tmp_path: Path) -> None:
    stdin = "\n".join(
        [
            json.dumps({"id": "1", "action": "navigate", "url": "https://example.com"}),
            "",
            json.dumps({"id": "2", "action": "fly"}),
        ]
    )

    result = CliRunner().invoke(app, ["send", "-", "--home", str(tmp_path)], input=stdin)

    assert result.exit_code == 1
    lines = [json.loads(line) for line in result.stdout.splitlines()]
    assert lines == [
        {"id": "1", "success": True, "data": {"ok": True}},
        {"id": "2", "success": False, "error": "Unknown action: fly"},
    ]
    assert len(dummy_client.sent) == 2


def test_send_reports_unreachable_daemon(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    class Unreachable(DummyClient):
        def __enter__(self) -> "Unreachable":
            raise DaemonConnectionError("Cannot reach session default")

    monkeypatch.setattr("agent_browser.cli.DaemonClient", Unreachable)

    result = CliRunner().invoke(app, ["send", '{"id": "1", "action": "url"}', "--home", str(tmp_path)])

    assert result.exit_code == 2
    assert "Cannot reach session" in result.output


def test_stop_sends_close(
    dummy_client: type[DummyClient], monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setattr("agent_browser.cli.is_daemon_running", lambda ctx: True)

    result = CliRunner().invoke(app, ["stop", "--session", "work", "--home", str(tmp_path)])

    assert result.exit_code == 0, result.output
    assert dummy_client.closes == 1
    assert "Stopped session work" in result.output


def test_stop_when_not_running(dummy_client: type[DummyClient], tmp_path: Path) -> None:
    result = CliRunner().invoke(app, ["stop", "--home", str(tmp_path)])

    assert result.exit_code == 0
    assert "is not running" in result.output
    assert dummy_client.closes == 0


def test_status_lists_sessions(tmp_path: Path) -> None:
    ctx = SessionContext("work", tmp_path)
    ensure_run_dir(ctx)
    write_pid_file(ctx, os.getpid())
    write_stream_port(ctx, 9555)

    result = CliRunner().invoke(
        app, ["status", "--home", str(tmp_path), "--session", "idle"], env={"COLUMNS": "240"}
    )

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    rows = {name: next(line for line in lines if f" {name} " in line) for name in ("work", "idle")}
    assert "yes" in rows["work"]
    assert str(os.getpid()) in rows["work"]
    assert "ws://127.0.0.1:9555/" in rows["work"]
    assert "no" in rows["idle"]


def _serve_once(path: Path, ready: threading.Event, received: list[bytes]) -> None:
    server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    server.bind(str(path))
    server.listen(1)
    ready.set()
    conn, _ = server.accept()
    with conn, server, conn.makefile("rb") as lines:
        for line in lines:
            received.append(line)
            command = json.loads(line)
            reply = {"id": command["id"], "success": True, "data": {"action": command["action"]}}
            conn.sendall(json.dumps(reply).encode() + b"\n")


def test_client_matches_responses_by_order(tmp_path: Path) -> None:
    ctx = SessionContext("work", tmp_path)
    ensure_run_dir(ctx)
    ready = threading.Event()
    received: list[bytes] = []
    thread = threading.Thread(target=_serve_once, args=(ctx.socket_path, ready, received))
    thread.start()
    ready.wait(5)

    with DaemonClient(ctx, timeout=5) as client:
        first = client.send("navigate", url="https://example.com")
        second = client.send("snapshot")
    thread.join(5)

    assert len(received) == 2
    assert (first.id, first.data) == ("c1", {"action": "navigate"})
    assert (second.id, second.data) == ("c2", {"action": "snapshot"})


def test_client_reports_missing_daemon(tmp_path: Path) -> None:
    client = DaemonClient(SessionContext("ghost", tmp_path), timeout=1)

    with pytest.raises(DaemonConnectionError, match="Cannot reach session"):
        client.connect()
