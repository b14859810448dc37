"""Error types shared by the terminal bridge and the command executor."""

from dataclasses import dataclass


@dataclass
class WorkstationError(Exception):
    message: str
    code: str = "internal_error"

    def __str__(self) -> str:
        return self.message


@dataclass
class SpawnError(WorkstationError):
    """The process could not be started (missing executable, bad cwd, permissions)."""

    code: str = "spawn_error"


@dataclass
class TransportError(WorkstationError):
    """A WebSocket frame could not be parsed or delivered."""

    code: str = "bad_message"
