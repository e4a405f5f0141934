"""Messages exchanged with stream viewers over the WebSocket."""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import Field, TypeAdapter, ValidationError

from ..errors import ProtocolError
from ..models import (
    FrameMetadata,
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


class FrameMessage(WireModel):
    type: Literal["frame"] = "frame"
    data: str
    metadata: FrameMetadata


class StatusMessage(WireModel):
    type: Literal["status"] = "status"
    connected: bool = True
    screencasting: bool = False
    viewport_width: Optional[int] = None
    viewport_height: Optional[int] = None


class ErrorMessage(WireModel):
    type: Literal["error"] = "error"
    message: str


class InputMouseMessage(WireModel):
    type: Literal["input_mouse"]
    event_type: MouseEventType
    x: float
    y: float
    button: Optional[MouseButton] = None
    click_count: Optional[int] = Field(default=None, ge=0)
    delta_x: Optional[float] = None
    delta_y: Optional[float] = None
    modifiers: Optional[int] = Field(default=None, ge=0)

    def to_event(self) -> MouseEvent:
        return MouseEvent(type=self.event_type, **self.model_dump(exclude={"type", "event_type"}))


class InputKeyboardMessage(WireModel):
    type: Literal["input_keyboard"]
    event_type: KeyboardEventType
    key: Optional[str] = None
    code: Optional[str] = None
    text: Optional[str] = None
    modifiers: Optional[int] = Field(default=None, ge=0)

    def to_event(self) -> KeyboardEvent:
        return KeyboardEvent(type=self.event_type, **self.model_dump(exclude={"type", "event_type"}))


class InputTouchMessage(WireModel):
    type: Literal["input_touch"]
    event_type: TouchEventType
    touch_points: list[TouchPoint]
    modifiers: Optional[int] = Field(default=None, ge=0)

    def to_event(self) -> TouchEvent:
        return TouchEvent(
            type=self.event_type, touch_points=self.touch_points, modifiers=self.modifiers
        )


class StatusRequest(WireModel):
    type: Literal["status"]


ClientMessage = Annotated[
    Union[InputMouseMessage, InputKeyboardMessage, InputTouchMessage, StatusRequest],
    Field(discriminator="type"),
]

_CLIENT_ADAPTER: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_client_message(text: str) -> ClientMessage:
    """Validate one inbound viewer message."""

    try:
        return _CLIENT_ADAPTER.validate_json(text)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        detail = f"{location}: {first['msg']}" if location else first["msg"]
        raise ProtocolError(f"Invalid stream message: {detail}") from exc


def encode(message: WireModel) -> str:
    return message.model_dump_json(by_alias=True, exclude_none=True)
