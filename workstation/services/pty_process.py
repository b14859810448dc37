"""PTY-backed child processes driven from the asyncio event loop.

`spawn_pty` starts a command inside a pseudo-terminal with ptyprocess and hands
back a `PtyHandle`. The master side of the terminal is registered with the
running loop, so output, exit and signal escalation all happen on the loop
thread and subscribers never need locking.
"""

import asyncio
import fcntl
import os
import shutil
import signal
import struct
from typing import Callable, Dict, List, Optional

import ptyprocess

from workstation.core import config
from workstation.core.errors import SpawnError
from workstation.core.log import global_log

READ_SIZE = 65536
EXIT_POLL_INTERVAL = 0.05
MAX_DIMENSION = 65535

DataCallback = Callable[[bytes], None]
ExitCallback = Callable[[Optional[int], Optional[int]], None]


class PtyHandle:
    """A live PTY child process.

    Subscriptions return an unsubscribe callable. Exit callbacks fire exactly
    once with ``(exit_code, signal)``; ``exit_code`` is None when the process
    was killed by a signal.
    """

    def __init__(self, process: ptyprocess.PtyProcess, argv: List[str], cwd: str, env: Dict[str, str],
                 cols: int, rows: int, scrollback_bytes: Optional[int] = None,
                 kill_grace: Optional[float] = None):
        self._process = process
        self._fd = process.fd
        self._loop = asyncio.get_running_loop()
        self.argv = argv
        self.cwd = cwd
        self.env = env
        self.cols = cols
        self.rows = rows
        self.exit_code: Optional[int] = None
        self.signal: Optional[int] = None
        self.exited = False

        self._scrollback_bytes = config.PTY_SCROLLBACK_BYTES if scrollback_bytes is None else scrollback_bytes
        self._kill_grace = config.KILL_GRACE_SECONDS if kill_grace is None else kill_grace
        self._backlog = bytearray()
        self._data_callbacks: List[DataCallback] = []
        self._exit_callbacks: List[ExitCallback] = []
        self._exited_event = asyncio.Event()
        self._kill_requested = False
        self._escalation: Optional[asyncio.TimerHandle] = None
        self._reading = False
        self._paused = False
        self._pending_input = bytearray()
        self._writing = False

        flags = fcntl.fcntl(self._fd, fcntl.F_GETFL)
        fcntl.fcntl(self._fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)
        self._loop.add_reader(self._fd, self._on_readable)
        self._reading = True
        self._watcher = self._loop.create_task(self._watch_exit())

    @property
    def pid(self) -> int:
        return self._process.pid

    def on_data(self, callback: DataCallback) -> Callable[[], None]:
        self._data_callbacks.append(callback)

        def unsubscribe():
            if callback in self._data_callbacks:
                self._data_callbacks.remove(callback)
        return unsubscribe

    def on_exit(self, callback: ExitCallback) -> Callable[[], None]:
        if self.exited:
            pending = self._loop.call_soon(callback, self.exit_code, self.signal)
            return pending.cancel

        self._exit_callbacks.append(callback)

        def unsubscribe():
            if callback in self._exit_callbacks:
                self._exit_callbacks.remove(callback)
        return unsubscribe

    def backlog(self) -> bytes:
        return bytes(self._backlog)

    def write(self, data) -> None:
        """Queues input for the process. Bytes reach the PTY in call order."""
        if self.exited:
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not data:
            return
        self._pending_input.extend(data)
        if not self._writing:
            self._flush_input()

    def pause_reading(self) -> None:
        """Stops reading output so the child blocks once the PTY buffer fills."""
        if self._reading and not self._paused:
            self._paused = True
            self._loop.remove_reader(self._fd)

    def resume_reading(self) -> None:
        if not self._paused:
            return
        self._paused = False
        if self._reading:
            self._loop.add_reader(self._fd, self._on_readable)

    def resize(self, cols: int, rows: int) -> None:
        if not (0 < cols <= MAX_DIMENSION and 0 < rows <= MAX_DIMENSION):
            raise ValueError(f"Invalid terminal size {cols}x{rows}")
        if self.exited:
            return
        try:
            self._process.setwinsize(rows, cols)
        except (OSError, struct.error) as e:
            global_log(f"PTY {self.pid}: resize failed: {e}", level="ERROR")
            return
        self.cols = cols
        self.rows = rows

    def kill(self, force: bool = False) -> None:
        """Terminates the process group; SIGKILL follows after the grace period."""
        if self.exited:
            return
        if force:
            self._cancel_escalation()
            self._kill_requested = True
            self._signal_group(signal.SIGKILL)
            return
        if self._kill_requested:
            return
        self._kill_requested = True
        global_log(f"PTY {self.pid}: sending SIGTERM", level="DEBUG")
        self._signal_group(signal.SIGTERM)
        self._escalation = self._loop.call_later(self._kill_grace, self._escalate)

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Waits for the exit callbacks to have fired. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._exited_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _escalate(self):
        self._escalation = None
        if not self.exited:
            global_log(f"PTY {self.pid}: still alive after {self._kill_grace}s, sending SIGKILL", level="INFO")
            self._signal_group(signal.SIGKILL)

    def _cancel_escalation(self):
        if self._escalation is not None:
            self._escalation.cancel()
            self._escalation = None

    def _signal_group(self, sig):
        # The child is a session leader, so its pid is also its process group id
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            global_log(f"PTY {self.pid}: cannot signal process group: {e}", level="ERROR")

    def _on_readable(self):
        try:
            data = os.read(self._fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO: every slave descriptor is closed
            self._stop_reading()
            return
        if not data:
            self._stop_reading()
            return
        self._emit(data)

    def _emit(self, data: bytes):
        if self._scrollback_bytes > 0:
            self._backlog.extend(data)
            excess = len(self._backlog) - self._scrollback_bytes
            if excess > 0:
                del self._backlog[:excess]
        for callback in list(self._data_callbacks):
            try:
                callback(data)
            except Exception as e:
                global_log(f"PTY {self.pid}: data subscriber failed: {e!r}", level="ERROR")

    def _stop_reading(self):
        if self._reading:
            self._reading = False
            if not self._paused:
                self._loop.remove_reader(self._fd)
            self._paused = False

    def _flush_input(self):
        while self._pending_input:
            try:
                written = os.write(self._fd, self._pending_input)
            except BlockingIOError:
                # Child has not read yet; retry when the PTY can take more
                if not self._writing:
                    self._writing = True
                    self._loop.add_writer(self._fd, self._flush_input)
                return
            except OSError as e:
                global_log(f"PTY {self.pid}: write failed, dropped {len(self._pending_input)} bytes: {e}",
                           level="ERROR")
                self._pending_input.clear()
                break
            del self._pending_input[:written]
        self._stop_writing()

    def _stop_writing(self):
        if self._writing:
            self._writing = False
            self._loop.remove_writer(self._fd)

    def _is_alive(self) -> bool:
        try:
            return self._process.isalive()
        except ptyprocess.PtyProcessError as e:
            global_log(f"PTY {self.pid}: status check failed: {e}", level="ERROR")
            return False

    def _drain(self):
        # Output written right before exit can still sit in the master buffer
        while self._reading:
            try:
                data = os.read(self._fd, READ_SIZE)
            except OSError:
                break
            if not data:
                break
            self._emit(data)

    async def _watch_exit(self):
        while self._is_alive():
            await asyncio.sleep(EXIT_POLL_INTERVAL)
        self._drain()
        self._finish()

    def _finish(self):
        if self.exited:
            return
        self.exited = True
        self._stop_reading()
        self._stop_writing()
        if self._pending_input:
            global_log(f"PTY {self.pid}: exited with {len(self._pending_input)} input bytes unread", level="DEBUG")
            self._pending_input.clear()
        self._cancel_escalation()
        self.exit_code = self._process.exitstatus
        self.signal = self._process.signalstatus
        try:
            # Already reaped, so close() must not sleep waiting for it
            self._process.delayafterclose = 0
            self._process.close(force=True)
        except (OSError, ptyprocess.PtyProcessError) as e:
            global_log(f"PTY {self.pid}: close failed: {e}", level="ERROR")
        global_log(f"PTY {self.pid}: exited (code={self.exit_code}, signal={self.signal})")

        callbacks = list(self._exit_callbacks)
        self._exit_callbacks.clear()
        self._data_callbacks.clear()
        self._exited_event.set()
        for callback in callbacks:
            try:
                callback(self.exit_code, self.signal)
            except Exception as e:
                global_log(f"PTY {self.pid}: exit subscriber failed: {e!r}", level="ERROR")


def spawn_pty(command: str, args: Optional[List[str]] = None, cwd: Optional[str] = None,
              env: Optional[Dict[str, str]] = None, cols: Optional[int] = None,
              rows: Optional[int] = None) -> PtyHandle:
    """Starts ``command`` in a new pseudo-terminal.

    Must be called from a coroutine running on the event loop that will
    service the handle. Raises SpawnError instead of returning a handle to a
    process that could never have started.
    """
    cwd = os.path.abspath(cwd or config.DEFAULT_PROJECT_DIR)
    if not os.path.isdir(cwd):
        raise SpawnError(f"Working directory does not exist: {cwd}")

    merged_env = dict(os.environ)
    merged_env.update({str(k): str(v) for k, v in (env or {}).items()})

    executable = shutil.which(command, path=merged_env.get("PATH"))
    if not executable:
        raise SpawnError(f"Executable not found on PATH: {command}")

    cols = cols or config.PTY_COLS
    rows = rows or config.PTY_ROWS
    argv = [executable] + [str(a) for a in (args or [])]
    try:
        process = ptyprocess.PtyProcess.spawn(argv, cwd=cwd, env=merged_env, dimensions=(rows, cols))
    except Exception as e:
        raise SpawnError(f"Failed to start {command}: {e}") from e

    global_log(f"PTY {process.pid}: started {' '.join(argv)} in {cwd}")
    return PtyHandle(process, argv, cwd, merged_env, cols, rows)
