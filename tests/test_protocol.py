from __future__ import annotations

import json

import pytest

from agent_browser.protocol import (
    COMMAND_MODELS,
    LaunchCommand,
    NavigateCommand,
    ParseFailure,
    ParseSuccess,
    error_response,
    parse_command,
    serialize_response,
    success_response,
)

MINIMAL_FIELDS: dict[str, dict[str, object]] = {
    "launch": {},
    "navigate": {"url": "https://example.com"},
    "back": {},
    "forward": {},
    "reload": {},
    "click": {"selector": "@e1"},
    "dblclick": {"selector": "#a"},
    "type": {"selector": "#q", "text": "hello"},
    "fill": {"selector": "#q", "value": "hello"},
    "hover": {"selector": "#a"},
    "focus": {"selector": "#a"},
    "check": {"selector": "#a"},
    "uncheck": {"selector": "#a"},
    "press": {"key": "Enter"},
    "select": {"selector": "#s", "values": ["a"]},
    "drag": {"source": "#a", "target": "#b"},
    "upload": {"selector": "#f", "files": "/tmp/a.txt"},
    "scroll": {},
    "scrollintoview": {"selector": "#a"},
    "wait": {},
    "screenshot": {},
    "snapshot": {},
    "evaluate": {"script": "1 + 1"},
    "content": {},
    "gettext": {"selector": "#a"},
    "url": {},
    "title": {},
    "isvisible": {"selector": "#a"},
    "isenabled": {"selector": "#a"},
    "ischecked": {"selector": "#a"},
    "getbyrole": {"role": "button", "subaction": "click"},
    "getbytext": {"text": "Submit", "subaction": "click"},
    "getbylabel": {"label": "Email", "subaction": "fill"},
    "tab_new": {},
    "tab_list": {},
    "tab_switch": {"index": 1},
    "tab_close": {},
    "dialog": {"response": "accept"},
    "cookies_get": {},
    "cookies_set": {"cookies": [{"name": "a", "value": "b", "url": "https://example.com"}]},
    "cookies_clear": {},
    "storage_get": {"type": "local"},
    "storage_set": {"type": "session", "key": "k", "value": "v"},
    "storage_clear": {"type": "local"},
    "viewport": {"width": 800, "height": 600},
    "geolocation": {"latitude": 52.5, "longitude": 13.4},
    "offline": {"offline": True},
    "mousemove": {"x": 1, "y": 2},
    "mousedown": {},
    "mouseup": {},
    "wheel": {},
    "console": {},
    "errors": {},
    "frame": {"selector": "iframe"},
    "mainframe": {},
    "trace_start": {},
    "trace_stop": {"path": "trace.zip"},
    "state_save": {"path": "state.json"},
    "state_load": {"path": "state.json"},
    "screencast_start": {},
    "screencast_stop": {},
    "input_mouse": {"type": "mousePressed", "x": 10, "y": 20},
    "input_keyboard": {"type": "keyDown"},
    "input_touch": {"type": "touchStart", "touchPoints": [{"x": 1, "y": 1}]},
    "close": {},
}


def _line(action: str, **fields: object) -> str:
    return json.dumps({"id": "c1", "action": action, **fields})


def test_every_action_has_minimal_fixture() -> None:
    assert set(MINIMAL_FIELDS) == set(COMMAND_MODELS)


@pytest.mark.parametrize("action", sorted(MINIMAL_FIELDS))
def test_minimal_command_is_accepted(action: str) -> None:
    result = parse_command(_line(action, **MINIMAL_FIELDS[action]))

    assert isinstance(result, ParseSuccess), result
    assert result.command.action == action
    assert isinstance(result.command, COMMAND_MODELS[action])


@pytest.mark.parametrize(
    ("action", "field"),
    [(action, field) for action, fields in sorted(MINIMAL_FIELDS.items()) for field in fields],
)
def test_missing_required_field_is_rejected(action: str, field: str) -> None:
    fields = dict(MINIMAL_FIELDS[action])
    fields.pop(field)

    result = parse_command(_line(action, **fields))

    assert isinstance(result, ParseFailure)
    assert result.id == "c1"
    assert result.error.startswith("Validation error:")
    assert field in result.error


def test_invalid_json_has_no_id() -> None:
    result = parse_command("{not json")

    assert isinstance(result, ParseFailure)
    assert result.error.startswith("Invalid JSON")
    assert result.id is None


def test_deeply_nested_json_is_rejected() -> None:
    result = parse_command("[" * 200000)

    assert isinstance(result, ParseFailure)
    assert result.error == "Invalid JSON: nesting too deep"
    assert result.id is None


def test_non_object_payload_is_rejected() -> None:
    result = parse_command("[1, 2]")

    assert isinstance(result, ParseFailure)
    assert "expected a JSON object" in result.error


def test_unknown_action_keeps_id() -> None:
    result = parse_command(json.dumps({"id": "x9", "action": "teleport"}))

    assert isinstance(result, ParseFailure)
    assert result.error == "Unknown action: teleport"
    assert result.id == "x9"


def test_missing_action_is_reported() -> None:
    result = parse_command(json.dumps({"id": "x1"}))

    assert isinstance(result, ParseFailure)
    assert "action" in result.error
    assert result.id == "x1"


def test_unexpected_field_is_rejected() -> None:
    result = parse_command(_line("navigate", url="https://example.com", bogus=1))

    assert isinstance(result, ParseFailure)
    assert "bogus" in result.error


def test_missing_id_is_rejected() -> None:
    result = parse_command(json.dumps({"action": "back"}))

    assert isinstance(result, ParseFailure)
    assert result.id is None
    assert "id" in result.error


def test_camel_case_fields_map_to_python_names() -> None:
    result = parse_command(
        _line("navigate", url="https://example.com", waitUntil="networkidle")
    )

    assert isinstance(result, ParseSuccess)
    command = result.command
    assert isinstance(command, NavigateCommand)
    assert command.wait_until == "networkidle"


def test_launch_accepts_ignore_https_errors_alias() -> None:
    result = parse_command(_line("launch", ignoreHTTPSErrors=True, userAgent="bot/1.0"))

    assert isinstance(result, ParseSuccess)
    command = result.command
    assert isinstance(command, LaunchCommand)
    assert command.ignore_https_errors is True
    assert command.user_agent == "bot/1.0"


@pytest.mark.parametrize(("raw", "expected"), [(9222, 9222), ("9333", 9333), (" 9444 ", 9444)])
def test_cdp_port_coerces_numeric_values(raw: object, expected: int) -> None:
    result = parse_command(_line("launch", cdpPort=raw))

    assert isinstance(result, ParseSuccess)
    assert result.command.cdp_port == expected  # type: ignore[attr-defined]


@pytest.mark.parametrize("raw", ["abc", -1, 0, True, 12.5])
def test_cdp_port_rejects_invalid_values(raw: object) -> None:
    result = parse_command(_line("launch", cdpPort=raw))

    assert isinstance(result, ParseFailure)
    assert "cdpPort" in result.error


def test_input_mouse_converts_to_event() -> None:
    result = parse_command(
        _line("input_mouse", type="mousePressed", x=5, y=6, button="left", clickCount=1, modifiers=8)
    )

    assert isinstance(result, ParseSuccess)
    event = result.command.to_event()  # type: ignore[attr-defined]
    assert event.type == "mousePressed"
    assert (event.x, event.y) == (5, 6)
    assert event.click_count == 1
    assert event.modifiers == 8


def test_screencast_start_fills_capture_defaults() -> None:
    result = parse_command(_line("screencast_start", format="png", maxWidth=640))

    assert isinstance(result, ParseSuccess)
    options = result.command.to_options()  # type: ignore[attr-defined]
    assert options.format == "png"
    assert options.max_width == 640
    assert options.max_height == 720
    assert options.quality == 80


def test_response_wire_shapes() -> None:
    ok = json.loads(serialize_response(success_response("1")))
    failed = json.loads(serialize_response(error_response("2", "boom")))

    assert ok == {"id": "1", "success": True, "data": {}}
    assert failed == {"id": "2", "success": False, "error": "boom"}
