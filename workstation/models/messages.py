"""WebSocket frames exchanged between the browser terminal and the PTY bridge."""

from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from workstation.core.errors import TransportError


# struct winsize holds unsigned shorts
MAX_DIMENSION = 65535


def coerce_dimension(value) -> Optional[int]:
    """Terminal sizes arrive from JavaScript; anything outside 1..65535 becomes None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int) and 0 < value <= MAX_DIMENSION:
        return value
    return None


class _Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class _SizedFrame(_Frame):
    cols: Optional[int] = None
    rows: Optional[int] = None

    @field_validator("cols", "rows", mode="before")
    @classmethod
    def _dimension(cls, value):
        return coerce_dimension(value)


# Inbound

class StartMessage(_SizedFrame):
    type: Literal["start"]
    cwd: Optional[str] = None
    env: Dict[str, str] = {}
    args: List[str] = []
    input: Optional[str] = None


class AttachMessage(_Frame):
    type: Literal["attach"]
    session_id: str = Field(alias="sessionId")


class InputMessage(_Frame):
    type: Literal["input", "pty_input"]
    data: str


class ResizeMessage(_SizedFrame):
    type: Literal["resize", "pty_resize"]


class CloseMessage(_Frame):
    type: Literal["close"]


ClientMessage = Annotated[
    Union[StartMessage, AttachMessage, InputMessage, ResizeMessage, CloseMessage],
    Field(discriminator="type"),
]

_client_message = TypeAdapter(ClientMessage)


def parse_client_message(raw) -> ClientMessage:
    try:
        return _client_message.validate_json(raw)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ()))
        detail = f"{where}: {first['msg']}" if where else first["msg"]
        raise TransportError(f"Invalid message: {detail}") from e


# Outbound

class StartedMessage(_Frame):
    type: Literal["started"] = "started"
    session_id: str = Field(alias="sessionId")
    pid: int
    cwd: str


class AttachedMessage(_Frame):
    type: Literal["attached"] = "attached"
    session_id: str = Field(alias="sessionId")


class ClosedMessage(_Frame):
    type: Literal["closed"] = "closed"
    session_id: str = Field(alias="sessionId")


class OutputMessage(_Frame):
    type: Literal["output", "pty_output"] = "output"
    data: str


class ExitMessage(_Frame):
    type: Literal["exit", "pty_exit"] = "exit"
    exit_code: Optional[int] = Field(default=None, alias="exitCode")
    signal: Optional[int] = None


class ErrorMessage(_Frame):
    type: Literal["error"] = "error"
    message: str
    code: str = "error"


ServerMessage = Union[StartedMessage, AttachedMessage, ClosedMessage, OutputMessage, ExitMessage, ErrorMessage]


def dump_message(message: ServerMessage) -> Dict:
    return message.model_dump(by_alias=True)
