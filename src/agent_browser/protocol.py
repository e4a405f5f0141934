"""Newline-delimited JSON command protocol spoken between clients and the daemon."""

from __future__ import annotations

import json
import typing
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from .models import (
    CaptureOptions,
    KeyboardEvent,
    KeyboardEventType,
    MouseButton,
    MouseEvent,
    MouseEventType,
    TouchEvent,
    TouchEventType,
    TouchPoint,
    WireModel,
)

StorageType = Literal["local", "session"]
LoadState = Literal["load", "domcontentloaded", "networkidle"]
Subaction = Literal["click", "fill", "check", "hover"]


class BaseCommand(WireModel):
    """Fields common to every command."""

    id: str
    action: str


class Viewport(WireModel):
    width: int = Field(gt=0)
    height: int = Field(gt=0)


class LaunchCommand(BaseCommand):
    action: Literal["launch"]
    headless: Optional[bool] = None
    browser: Optional[Literal["chromium", "firefox", "webkit"]] = None
    viewport: Optional[Viewport] = None
    executable_path: Optional[str] = None
    args: Optional[list[str]] = None
    extensions: Optional[list[str]] = None
    profile: Optional[str] = None
    storage_state: Optional[str] = None
    ignore_https_errors: Optional[bool] = Field(default=None, alias="ignoreHTTPSErrors")
    user_agent: Optional[str] = None
    cdp_port: Optional[int] = None

    @field_validator("cdp_port", mode="before")
    @classmethod
    def _coerce_cdp_port(cls, value: object) -> object:
        # Numeric strings are accepted so shell front ends can pass arguments through.
        if value is None:
            return None
        if isinstance(value, bool):
            raise ValueError("cdpPort must be a positive number")
        if isinstance(value, str):
            if not value.strip().isdigit():
                raise ValueError("cdpPort must be numeric")
            value = int(value.strip())
        if isinstance(value, (int, float)) and value > 0 and int(value) == value:
            return int(value)
        raise ValueError("cdpPort must be a positive number")


class NavigateCommand(BaseCommand):
    action: Literal["navigate"]
    url: str = Field(min_length=1)
    wait_until: Optional[Literal["load", "domcontentloaded", "networkidle", "commit"]] = None


class BackCommand(BaseCommand):
    action: Literal["back"]


class ForwardCommand(BaseCommand):
    action: Literal["forward"]


class ReloadCommand(BaseCommand):
    action: Literal["reload"]


class ClickCommand(BaseCommand):
    action: Literal["click"]
    selector: str = Field(min_length=1)
    button: Optional[Literal["left", "right", "middle"]] = None
    click_count: Optional[int] = Field(default=None, gt=0)
    delay: Optional[float] = Field(default=None, ge=0)


class DblclickCommand(BaseCommand):
    action: Literal["dblclick"]
    selector: str = Field(min_length=1)


class TypeCommand(BaseCommand):
    action: Literal["type"]
    selector: str = Field(min_length=1)
    text: str
    delay: Optional[float] = Field(default=None, ge=0)
    clear: Optional[bool] = None


class FillCommand(BaseCommand):
    action: Literal["fill"]
    selector: str = Field(min_length=1)
    value: str


class HoverCommand(BaseCommand):
    action: Literal["hover"]
    selector: str = Field(min_length=1)


class FocusCommand(BaseCommand):
    action: Literal["focus"]
    selector: str = Field(min_length=1)


class CheckCommand(BaseCommand):
    action: Literal["check"]
    selector: str = Field(min_length=1)


class UncheckCommand(BaseCommand):
    action: Literal["uncheck"]
    selector: str = Field(min_length=1)


class PressCommand(BaseCommand):
    action: Literal["press"]
    key: str = Field(min_length=1)
    selector: Optional[str] = None


class SelectCommand(BaseCommand):
    action: Literal["select"]
    selector: str = Field(min_length=1)
    values: Union[str, list[str]]


class DragCommand(BaseCommand):
    action: Literal["drag"]
    source: str = Field(min_length=1)
    target: str = Field(min_length=1)


class UploadCommand(BaseCommand):
    action: Literal["upload"]
    selector: str = Field(min_length=1)
    files: Union[str, list[str]]


class ScrollCommand(BaseCommand):
    action: Literal["scroll"]
    direction: Literal["up", "down", "left", "right"] = "down"
    amount: int = Field(default=300, ge=0)
    selector: Optional[str] = None


class ScrollIntoViewCommand(BaseCommand):
    action: Literal["scrollintoview"]
    selector: str = Field(min_length=1)


class WaitCommand(BaseCommand):
    action: Literal["wait"]
    selector: Optional[str] = None
    timeout: Optional[float] = Field(default=None, ge=0)
    text: Optional[str] = None
    url: Optional[str] = None
    load_state: Optional[LoadState] = None


class ScreenshotCommand(BaseCommand):
    action: Literal["screenshot"]
    path: Optional[str] = None
    full_page: Optional[bool] = None
    format: Optional[Literal["png", "jpeg"]] = None
    quality: Optional[int] = Field(default=None, ge=0, le=100)
    selector: Optional[str] = None


class SnapshotCommand(BaseCommand):
    action: Literal["snapshot"]
    interactive: Optional[bool] = None
    max_depth: Optional[int] = Field(default=None, ge=0)
    compact: Optional[bool] = None
    selector: Optional[str] = None


class EvaluateCommand(BaseCommand):
    action: Literal["evaluate"]
    script: str = Field(min_length=1)


class ContentCommand(BaseCommand):
    action: Literal["content"]
    selector: Optional[str] = None


class GetTextCommand(BaseCommand):
    action: Literal["gettext"]
    selector: str = Field(min_length=1)


class UrlCommand(BaseCommand):
    action: Literal["url"]


class TitleCommand(BaseCommand):
    action: Literal["title"]


class IsVisibleCommand(BaseCommand):
    action: Literal["isvisible"]
    selector: str = Field(min_length=1)


class IsEnabledCommand(BaseCommand):
    action: Literal["isenabled"]
    selector: str = Field(min_length=1)


class IsCheckedCommand(BaseCommand):
    action: Literal["ischecked"]
    selector: str = Field(min_length=1)


class GetByRoleCommand(BaseCommand):
    action: Literal["getbyrole"]
    role: str = Field(min_length=1)
    subaction: Subaction
    name: Optional[str] = None
    value: Optional[str] = None


class GetByTextCommand(BaseCommand):
    action: Literal["getbytext"]
    text: str = Field(min_length=1)
    subaction: Subaction
    exact: Optional[bool] = None
    value: Optional[str] = None


class GetByLabelCommand(BaseCommand):
    action: Literal["getbylabel"]
    label: str = Field(min_length=1)
    subaction: Subaction
    value: Optional[str] = None


class TabNewCommand(BaseCommand):
    action: Literal["tab_new"]
    url: Optional[str] = None


class TabListCommand(BaseCommand):
    action: Literal["tab_list"]


class TabSwitchCommand(BaseCommand):
    action: Literal["tab_switch"]
    index: int = Field(ge=0)


class TabCloseCommand(BaseCommand):
    action: Literal["tab_close"]
    index: Optional[int] = Field(default=None, ge=0)


class DialogCommand(BaseCommand):
    action: Literal["dialog"]
    response: Literal["accept", "dismiss"]
    prompt_text: Optional[str] = None


class Cookie(WireModel):
    name: str
    value: str
    url: Optional[str] = None
    domain: Optional[str] = None
    path: Optional[str] = None
    expires: Optional[float] = None
    http_only: Optional[bool] = None
    secure: Optional[bool] = None
    same_site: Optional[Literal["Strict", "Lax", "None"]] = None


class CookiesGetCommand(BaseCommand):
    action: Literal["cookies_get"]
    urls: Optional[list[str]] = None


class CookiesSetCommand(BaseCommand):
    action: Literal["cookies_set"]
    cookies: list[Cookie]


class CookiesClearCommand(BaseCommand):
    action: Literal["cookies_clear"]


class StorageGetCommand(BaseCommand):
    action: Literal["storage_get"]
    type: StorageType
    key: Optional[str] = None


class StorageSetCommand(BaseCommand):
    action: Literal["storage_set"]
    type: StorageType
    key: str
    value: str


class StorageClearCommand(BaseCommand):
    action: Literal["storage_clear"]
    type: StorageType


class ViewportCommand(BaseCommand):
    action: Literal["viewport"]
    width: int = Field(gt=0)
    height: int = Field(gt=0)


class GeolocationCommand(BaseCommand):
    action: Literal["geolocation"]
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)


class OfflineCommand(BaseCommand):
    action: Literal["offline"]
    offline: bool


class MouseMoveCommand(BaseCommand):
    action: Literal["mousemove"]
    x: float
    y: float


class MouseDownCommand(BaseCommand):
    action: Literal["mousedown"]
    button: Optional[Literal["left", "right", "middle"]] = None


class MouseUpCommand(BaseCommand):
    action: Literal["mouseup"]
    button: Optional[Literal["left", "right", "middle"]] = None


class WheelCommand(BaseCommand):
    action: Literal["wheel"]
    delta_x: float = 0
    delta_y: float = 0


class ConsoleCommand(BaseCommand):
    action: Literal["console"]
    clear: Optional[bool] = None


class ErrorsCommand(BaseCommand):
    action: Literal["errors"]
    clear: Optional[bool] = None


class FrameCommand(BaseCommand):
    action: Literal["frame"]
    selector: str = Field(min_length=1)


class MainFrameCommand(BaseCommand):
    action: Literal["mainframe"]


class TraceStartCommand(BaseCommand):
    action: Literal["trace_start"]
    screenshots: Optional[bool] = None
    snapshots: Optional[bool] = None


class TraceStopCommand(BaseCommand):
    action: Literal["trace_stop"]
    path: str = Field(min_length=1)


class StateSaveCommand(BaseCommand):
    action: Literal["state_save"]
    path: str = Field(min_length=1)


class StateLoadCommand(BaseCommand):
    action: Literal["state_load"]
    path: str = Field(min_length=1)


class ScreencastStartCommand(BaseCommand):
    action: Literal["screencast_start"]
    format: Optional[Literal["jpeg", "png"]] = None
    quality: Optional[int] = Field(default=None, ge=0, le=100)
    max_width: Optional[int] = Field(default=None, gt=0)
    max_height: Optional[int] = Field(default=None, gt=0)
    every_nth_frame: Optional[int] = Field(default=None, gt=0)

    def to_options(self) -> CaptureOptions:
        values = self.model_dump(
            include={"format", "quality", "max_width", "max_height", "every_nth_frame"},
            exclude_none=True,
        )
        return CaptureOptions(**values)


class ScreencastStopCommand(BaseCommand):
    action: Literal["screencast_stop"]


class InputMouseCommand(BaseCommand):
    action: Literal["input_mouse"]
    type: MouseEventType
    x: float
    y: float
    button: Optional[MouseButton] = None
    click_count: Optional[int] = Field(default=None, ge=0)
    delta_x: Optional[float] = None
    delta_y: Optional[float] = None
    modifiers: Optional[int] = Field(default=None, ge=0)

    def to_event(self) -> MouseEvent:
        return MouseEvent(**self.model_dump(exclude={"id", "action"}))


class InputKeyboardCommand(BaseCommand):
    action: Literal["input_keyboard"]
    type: KeyboardEventType
    key: Optional[str] = None
    code: Optional[str] = None
    text: Optional[str] = None
    modifiers: Optional[int] = Field(default=None, ge=0)

    def to_event(self) -> KeyboardEvent:
        return KeyboardEvent(**self.model_dump(exclude={"id", "action"}))


class InputTouchCommand(BaseCommand):
    action: Literal["input_touch"]
    type: TouchEventType
    touch_points: list[TouchPoint]
    modifiers: Optional[int] = Field(default=None, ge=0)

    def to_event(self) -> TouchEvent:
        return TouchEvent(type=self.type, touch_points=self.touch_points, modifiers=self.modifiers)


class CloseCommand(BaseCommand):
    action: Literal["close"]


Command = Annotated[
    Union[
        LaunchCommand,
        NavigateCommand,
        BackCommand,
        ForwardCommand,
        ReloadCommand,
        ClickCommand,
        DblclickCommand,
        TypeCommand,
        FillCommand,
        HoverCommand,
        FocusCommand,
        CheckCommand,
        UncheckCommand,
        PressCommand,
        SelectCommand,
        DragCommand,
        UploadCommand,
        ScrollCommand,
        ScrollIntoViewCommand,
        WaitCommand,
        ScreenshotCommand,
        SnapshotCommand,
        EvaluateCommand,
        ContentCommand,
        GetTextCommand,
        UrlCommand,
        TitleCommand,
        IsVisibleCommand,
        IsEnabledCommand,
        IsCheckedCommand,
        GetByRoleCommand,
        GetByTextCommand,
        GetByLabelCommand,
        TabNewCommand,
        TabListCommand,
        TabSwitchCommand,
        TabCloseCommand,
        DialogCommand,
        CookiesGetCommand,
        CookiesSetCommand,
        CookiesClearCommand,
        StorageGetCommand,
        StorageSetCommand,
        StorageClearCommand,
        ViewportCommand,
        GeolocationCommand,
        OfflineCommand,
        MouseMoveCommand,
        MouseDownCommand,
        MouseUpCommand,
        WheelCommand,
        ConsoleCommand,
        ErrorsCommand,
        FrameCommand,
        MainFrameCommand,
        TraceStartCommand,
        TraceStopCommand,
        StateSaveCommand,
        StateLoadCommand,
        ScreencastStartCommand,
        ScreencastStopCommand,
        InputMouseCommand,
        InputKeyboardCommand,
        InputTouchCommand,
        CloseCommand,
    ],
    Field(discriminator="action"),
]


def _build_command_table() -> dict[str, type[BaseCommand]]:
    union = typing.get_args(Command)[0]
    table: dict[str, type[BaseCommand]] = {}
    for model in typing.get_args(union):
        (action,) = typing.get_args(model.model_fields["action"].annotation)
        table[action] = model
    return table


COMMAND_MODELS: dict[str, type[BaseCommand]] = _build_command_table()


@dataclass
class ParseSuccess:
    command: BaseCommand
    success: Literal[True] = True


@dataclass
class ParseFailure:
    error: str
    id: Optional[str] = None
    success: Literal[False] = False


ParseResult = Union[ParseSuccess, ParseFailure]


class Response(BaseModel):
    """Reply to exactly one command, keyed by the command id."""

    id: str
    success: bool
    data: Any = None
    error: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        if self.success:
            return {"id": self.id, "success": True, "data": self.data}
        return {"id": self.id, "success": False, "error": self.error}


def success_response(command_id: str, data: Any = None) -> Response:
    return Response(id=command_id, success=True, data=data if data is not None else {})


def error_response(command_id: str, message: str) -> Response:
    return Response(id=command_id, success=False, error=message)


def serialize_response(response: Response) -> str:
    return json.dumps(response.to_wire(), default=str)


def parse_command(line: str) -> ParseResult:
    """Validate one untrusted protocol line.

    Never raises: malformed JSON, unknown actions and schema violations all come
    back as :class:`ParseFailure`, carrying the request id whenever it could be
    read so the caller can still correlate the failure.
    """

    try:
        data = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        return ParseFailure(error=f"Invalid JSON: {exc.msg if hasattr(exc, 'msg') else exc}")
    except RecursionError:
        return ParseFailure(error="Invalid JSON: nesting too deep")
    if not isinstance(data, dict):
        return ParseFailure(error="Invalid command: expected a JSON object")

    raw_id = data.get("id")
    command_id = raw_id if isinstance(raw_id, str) else None
    action = data.get("action")
    if not isinstance(action, str):
        return ParseFailure(error="Validation error: action: Field required", id=command_id)
    model = COMMAND_MODELS.get(action)
    if model is None:
        return ParseFailure(error=f"Unknown action: {action}", id=command_id)
    try:
        command = model.model_validate(data)
    except ValidationError as exc:
        return ParseFailure(error=_format_validation_error(exc), id=command_id)
    return ParseSuccess(command=command)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for item in exc.errors():
        location = ".".join(str(segment) for segment in item["loc"])
        parts.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "Validation error: " + "; ".join(parts)
