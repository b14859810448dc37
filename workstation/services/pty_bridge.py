"""Bridges one WebSocket connection to one PTY session.

Inbound frames are validated into tagged messages and applied to the session
synchronously on the event loop. Outbound frames go through a queue drained
by a single sender task, so output reaches the socket in the order the PTY
produced it and a closed socket never raises back into a PTY callback.
"""

import asyncio
import codecs
import uuid
from typing import Callable, List, Optional

from starlette.websockets import WebSocketDisconnect

from workstation.core.errors import SpawnError, TransportError
from workstation.core.log import global_log
from workstation.models.messages import (
    AttachMessage,
    AttachedMessage,
    CloseMessage,
    ClosedMessage,
    ErrorMessage,
    ExitMessage,
    InputMessage,
    OutputMessage,
    ResizeMessage,
    StartMessage,
    StartedMessage,
    dump_message,
    parse_client_message,
)
from workstation.services.session_registry import Session
from workstation.services.terminal_service import TerminalService

IDLE = "idle"
ACTIVE = "active"
CLOSED = "closed"

# Output frames queued for the socket before PTY reads are paused, and the
# level the queue must drain to before they resume
OUTBOX_HIGH_WATER = 256
OUTBOX_LOW_WATER = 64


class PtyBridge:
    def __init__(self, websocket, terminal: TerminalService, connection_id: Optional[str] = None):
        self.websocket = websocket
        self.terminal = terminal
        self.registry = terminal.registry
        self.connection_id = connection_id or uuid.uuid4().hex
        self.state = IDLE
        self.session_id: Optional[str] = None
        self.prefix = ""
        self._handle = None
        self._decoder = None
        self._unsubscribers: List[Callable[[], None]] = []
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._socket_open = True
        self._sender: Optional[asyncio.Task] = None
        self._reads_paused = False

    def log(self, msg, level="INFO"):
        global_log(f"[ws {self.connection_id[:8]}] {msg}", level=level)

    async def run(self):
        """Serves the connection until the client goes away, then tears the session down."""
        self._sender = asyncio.create_task(self._pump())
        self.log("Connected")
        try:
            while True:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                self.handle_raw(raw)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            self.log(f"Connection error: {e!r}", level="ERROR")
        finally:
            self.connection_lost()
            await self._stop_sender()

    def connection_lost(self):
        """Socket closed or failed: the process must not outlive it."""
        self._socket_open = False
        self.detach()
        self.state = CLOSED
        self.log("Disconnected")

    def handle_raw(self, raw):
        try:
            if raw is None:
                raise TransportError("Empty frame")
            message = parse_client_message(raw)
        except TransportError as e:
            self.log(str(e), level="DEBUG")
            self.send(ErrorMessage(message=str(e), code=e.code))
            return

        if message.type.startswith("pty_"):
            self.prefix = "pty_"

        try:
            if isinstance(message, StartMessage):
                self._start(message)
            elif isinstance(message, AttachMessage):
                self._attach(message)
            elif isinstance(message, InputMessage):
                self._input(message)
            elif isinstance(message, ResizeMessage):
                self._resize(message)
            elif isinstance(message, CloseMessage):
                self._close()
        except Exception as e:
            # One bad frame must not take the session down with it
            self.log(f"Failed to handle {message.type}: {e!r}", level="ERROR")
            self.send(ErrorMessage(message=f"Failed to handle {message.type}: {e}", code="internal_error"))

    def send(self, message):
        if not self._socket_open:
            self.log(f"Socket closed, dropping {message.type} frame", level="DEBUG")
            return
        self._outbox.put_nowait(message)
        if self._handle is not None and not self._reads_paused and self._outbox.qsize() >= OUTBOX_HIGH_WATER:
            # Slow client: let the PTY buffer fill so the child blocks on write
            self._reads_paused = True
            self._handle.pause_reading()
            self.log(f"Outbox at {self._outbox.qsize()} frames, pausing PTY reads", level="DEBUG")

    def _resume_reads(self):
        if not self._reads_paused:
            return
        self._reads_paused = False
        if self._handle is not None:
            self._handle.resume_reading()
            self.log("Outbox drained, resuming PTY reads", level="DEBUG")

    def detach(self):
        """Unsubscribes, kills the process and forgets the session. Safe to repeat."""
        handle = self._handle
        session_id = self.session_id
        self._unbind()
        if session_id is None:
            return
        self.registry.remove(session_id)
        if handle is not None:
            handle.kill()
        self.log(f"Detached from session {session_id}")

    def current_session(self) -> Optional[Session]:
        if self.session_id is None:
            return None
        session = self.registry.get(self.session_id)
        if session is None or session.handle.exited:
            return None
        return session

    def _start(self, message: StartMessage):
        if self.state == ACTIVE:
            self.send(ErrorMessage(message="A session is already active on this connection", code="already_active"))
            return
        try:
            session = self.terminal.create_session(
                cwd=message.cwd,
                env=message.env,
                cols=message.cols,
                rows=message.rows,
                args=message.args,
                owner=self.connection_id,
            )
        except SpawnError as e:
            self.log(f"Spawn failed: {e}", level="ERROR")
            self.send(ErrorMessage(message=str(e), code=e.code))
            return

        self._bind(session)
        self.send(StartedMessage(session_id=session.id, pid=session.handle.pid, cwd=session.cwd))
        if message.input:
            session.handle.write(message.input)

    def _attach(self, message: AttachMessage):
        if self.state == ACTIVE:
            self.send(ErrorMessage(message="A session is already active on this connection", code="already_active"))
            return
        session = self.registry.get(message.session_id)
        if session is None or session.handle.exited:
            self.send(ErrorMessage(message="Session not found", code="session_not_found"))
            return
        if session.owner is not None and session.owner != self.connection_id:
            self.send(ErrorMessage(message="Session is attached to another connection", code="session_busy"))
            return

        session.owner = self.connection_id
        backlog = session.handle.backlog()
        self._bind(session)
        self.send(AttachedMessage(session_id=session.id))
        if backlog:
            self._on_data(backlog)

    def _input(self, message: InputMessage):
        session = self.current_session()
        if session is None:
            self.send(ErrorMessage(message="No active session", code="no_session"))
            return
        session.handle.write(message.data)

    def _resize(self, message: ResizeMessage):
        if message.cols is None or message.rows is None:
            self.log("Ignoring resize without valid cols/rows", level="DEBUG")
            return
        session = self.current_session()
        if session is None:
            return
        session.handle.resize(message.cols, message.rows)

    def _close(self):
        session_id = self.session_id
        if session_id is None:
            self.send(ErrorMessage(message="No active session", code="no_session"))
            return
        self.detach()
        self.send(ClosedMessage(session_id=session_id))

    def _bind(self, session: Session):
        self.session_id = session.id
        self._handle = session.handle
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._unsubscribers = [
            session.handle.on_data(self._on_data),
            session.handle.on_exit(self._on_exit),
        ]
        self.state = ACTIVE
        self.log(f"Bound to session {session.id} (pid={session.handle.pid})")

    def _unbind(self):
        self._resume_reads()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._handle = None
        self._decoder = None
        self.session_id = None
        if self.state == ACTIVE:
            self.state = IDLE

    def _on_data(self, data: bytes):
        if self._decoder is None:
            return
        text = self._decoder.decode(data)
        if text:
            self.send(OutputMessage(type=self.prefix + "output", data=text))

    def _on_exit(self, exit_code, signal):
        session_id = self.session_id
        if self._decoder is not None:
            tail = self._decoder.decode(b"", final=True)
            if tail:
                self.send(OutputMessage(type=self.prefix + "output", data=tail))
        self.send(ExitMessage(type=self.prefix + "exit", exit_code=exit_code, signal=signal))
        self._unbind()
        if session_id is not None:
            self.registry.remove(session_id)
        self.log(f"Session {session_id} exited (code={exit_code}, signal={signal})")

    async def _pump(self):
        while True:
            message = await self._outbox.get()
            if self._socket_open:
                try:
                    await self.websocket.send_json(dump_message(message))
                except Exception as e:
                    # The client may vanish while the process is still flushing output
                    self._socket_open = False
                    self.log(f"Send failed, socket closed: {e!r}", level="DEBUG")
            if self._reads_paused and self._outbox.qsize() <= OUTBOX_LOW_WATER:
                self._resume_reads()

    async def _stop_sender(self):
        if self._sender is None:
            return
        self._sender.cancel()
        try:
            await self._sender
        except asyncio.CancelledError:
            pass
        self._sender = None
