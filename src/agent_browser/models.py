"""Value objects shared by the command protocol, the backends and the stream server."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model using camelCase names on the wire and snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    def to_wire(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


MouseEventType = Literal["mousePressed", "mouseReleased", "mouseMoved", "mouseWheel"]
KeyboardEventType = Literal["keyDown", "keyUp", "char"]
TouchEventType = Literal["touchStart", "touchEnd", "touchMove", "touchCancel"]
MouseButton = Literal["left", "right", "middle", "none"]


# Modifier bitmask on every input event: Alt=1, Ctrl=2, Meta=4, Shift=8.
class MouseEvent(WireModel):
    """Pointer event injected into the active page."""

    type: MouseEventType
    x: float
    y: float
    button: Optional[MouseButton] = None
    click_count: Optional[int] = Field(default=None, ge=0)
    delta_x: Optional[float] = None
    delta_y: Optional[float] = None
    modifiers: Optional[int] = Field(default=None, ge=0)


class KeyboardEvent(WireModel):
    """Key event injected into the active page."""

    type: KeyboardEventType
    key: Optional[str] = None
    code: Optional[str] = None
    text: Optional[str] = None
    modifiers: Optional[int] = Field(default=None, ge=0)


class TouchPoint(WireModel):
    x: float
    y: float
    id: Optional[int] = None


class TouchEvent(WireModel):
    """Touch event injected into the active page."""

    type: TouchEventType
    touch_points: list[TouchPoint]
    modifiers: Optional[int] = Field(default=None, ge=0)


class CaptureOptions(WireModel):
    """Encoding parameters for a viewport capture."""

    format: Literal["jpeg", "png"] = "jpeg"
    quality: int = Field(default=80, ge=0, le=100)
    max_width: int = Field(default=1280, gt=0)
    max_height: int = Field(default=720, gt=0)
    every_nth_frame: int = Field(default=1, gt=0)


class FrameMetadata(WireModel):
    offset_top: float = 0
    page_scale_factor: float = 1
    device_width: float = 0
    device_height: float = 0
    scroll_offset_x: float = 0
    scroll_offset_y: float = 0
    timestamp: Optional[float] = None


class Frame(WireModel):
    """One encoded viewport image produced by an active capture."""

    data: str = Field(description="Base64 encoded image bytes.")
    metadata: FrameMetadata = Field(default_factory=FrameMetadata)
