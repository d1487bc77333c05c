"""Inbound events from the command/transport layer.

Raw payloads are validated into one of a closed set of event models at the
boundary; nothing past ``parse_event`` sees an untyped dict.
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator


class InvalidEvent(ValueError):
    """Raised when an inbound payload does not match any event shape."""


class LineBatchEvent(BaseModel):
    event: Literal["line-batch"] = "line-batch"
    serial: str
    line: Optional[str] = None
    lines: list[str] = Field(default_factory=list)
    trace_id: Optional[str] = None

    def all_lines(self) -> list[str]:
        if self.line is None:
            return list(self.lines)
        return [self.line, *self.lines]


class _Addressed(BaseModel):
    serial: Optional[str] = None
    trace_id: Optional[str] = None

    @model_validator(mode="after")
    def _require_address(self):
        if not self.serial and not self.trace_id:
            raise ValueError("either serial or trace_id is required")
        return self


class ProgressEvent(_Addressed):
    event: Literal["progress"] = "progress"
    kind: str = "bugreport"
    progress: int = Field(ge=0, le=100)
    message: Optional[str] = None


class CompletionResult(BaseModel):
    success: bool
    output_path: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False
    exit_code: Optional[int] = None

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        return "success" if self.success else "error"


class CompleteEvent(_Addressed):
    event: Literal["complete"] = "complete"
    kind: str = "bugreport"
    result: CompletionResult


class DeviceStateEvent(BaseModel):
    event: Literal["device-state"] = "device-state"
    serial: str
    summary: str


InboundEvent = Annotated[
    Union[LineBatchEvent, ProgressEvent, CompleteEvent, DeviceStateEvent],
    Field(discriminator="event"),
]

_adapter: TypeAdapter[Any] = TypeAdapter(InboundEvent)


def parse_event(payload: Mapping[str, Any]) -> Union[LineBatchEvent, ProgressEvent, CompleteEvent, DeviceStateEvent]:
    try:
        return _adapter.validate_python(payload)
    except ValidationError as exc:
        raise InvalidEvent(str(exc)) from exc
