from __future__ import annotations

import json
from typing import Any

from agent_browser.daemon.actions import HANDLERS, execute_command
from agent_browser.protocol import COMMAND_MODELS, ParseSuccess, parse_command


def _command(action: str, **fields: Any):  # type: ignore[no-untyped-def]
    result = parse_command(json.dumps({"id": "t1", "action": action, **fields}))
    assert isinstance(result, ParseSuccess), result
    return result.command


def test_every_command_has_a_handler() -> None:
    assert set(HANDLERS) == set(COMMAND_MODELS.values())


async def test_navigate_returns_url_and_title(backend) -> None:
    backend.launched = True

    response = await execute_command(_command("navigate", url="https://example.com"), backend)

    assert response.success
    assert response.id == "t1"
    assert response.data == {"url": "https://example.com", "title": "Title of https://example.com"}


async def test_snapshot_returns_tree_refs_and_stats(backend) -> None:
    backend.launched = True

    response = await execute_command(_command("snapshot", interactive=True), backend)

    assert response.success
    assert response.data["snapshot"].startswith('- button "Submit" [ref=e1]')
    assert response.data["refs"]["e2"] == {
        "selector": 'get_by_role("link", name="More", exact=True)',
        "role": "link",
        "name": "More",
    }
    assert response.data["stats"]["refs"] == 2


async def test_select_and_upload_accept_single_values(backend) -> None:
    selected = await execute_command(_command("select", selector="#s", values="red"), backend)
    uploaded = await execute_command(_command("upload", selector="#f", files="/tmp/a"), backend)

    assert selected.data == {"selected": ["red"]}
    assert uploaded.data == {"uploaded": ["/tmp/a"]}


async def test_tab_list_reports_active_index(backend) -> None:
    backend.tabs = ["https://a.test", "https://b.test"]
    backend.active = 1

    response = await execute_command(_command("tab_list"), backend)

    assert response.data["active"] == 1
    assert [tab["url"] for tab in response.data["tabs"]] == ["https://a.test", "https://b.test"]


async def test_driver_error_becomes_error_response(backend) -> None:
    backend.launched = True

    response = await execute_command(_command("evaluate", script="throw new Error()"), backend)

    assert not response.success
    assert response.error == "Error: boom"


async def test_unexpected_exception_becomes_error_response(backend) -> None:
    backend.launched = True

    response = await execute_command(_command("evaluate", script="explode()"), backend)

    assert not response.success
    assert "explode" in response.error


async def test_not_launched_is_reported(backend) -> None:
    response = await execute_command(_command("click", selector="@e1"), backend)

    assert not response.success
    assert response.error == "Browser not launched. Call launch first."


async def test_capability_gap_is_reported_with_backend_name(backend) -> None:
    response = await execute_command(_command("cookies_get"), backend)

    assert not response.success
    assert response.error == 'Action "cookies_get" not supported in fake mode'


async def test_dialog_maps_response_to_accept_flag(backend) -> None:
    await execute_command(_command("dialog", response="accept", promptText="yes"), backend)
    await execute_command(_command("dialog", response="dismiss"), backend)

    assert ("dialog", (True, "yes")) in backend.calls
    assert ("dialog", (False, None)) in backend.calls


async def test_screencast_start_passes_capture_options(backend) -> None:
    backend.launched = True

    response = await execute_command(_command("screencast_start", quality=50), backend)

    assert response.data == {"screencasting": True}
    assert backend.capture_options.quality == 50
    assert backend.capture_options.format == "jpeg"


async def test_repeated_screencast_start_is_a_no_op(backend) -> None:
    backend.launched = True

    first = await execute_command(_command("screencast_start"), backend)
    second = await execute_command(_command("screencast_start"), backend)

    assert first.success and second.success
    assert second.data == {"screencasting": True}
    assert backend.capture_starts == 1


async def test_screencast_stop_notifies_capture_subscribers(backend) -> None:
    backend.launched = True
    reasons: list[str] = []
    backend.subscribe_capture(lambda frame: None, reasons.append)
    await execute_command(_command("screencast_start"), backend)

    response = await execute_command(_command("screencast_stop"), backend)
    await execute_command(_command("screencast_stop"), backend)

    assert response.success
    assert reasons == ["stopped"]
    assert backend.is_capturing() is False


async def test_input_commands_are_injected(backend) -> None:
    await execute_command(
        _command("input_keyboard", type="keyDown", key="a", modifiers=2), backend
    )
    await execute_command(
        _command("input_touch", type="touchStart", touchPoints=[{"x": 1, "y": 2}]), backend
    )

    keyboard, touch = backend.injected
    assert keyboard.key == "a"
    assert keyboard.modifiers == 2
    assert touch.touch_points[0].y == 2
