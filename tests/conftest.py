import pytest

from workstation.services.terminal_service import TerminalService


class FakeHandle:
    """Stands in for PtyHandle: records calls, emits output and exit on demand."""

    def __init__(self, pid, cwd, cols=120, rows=30, backlog=b""):
        self.pid = pid
        self.cwd = cwd
        self.cols = cols
        self.rows = rows
        self.exited = False
        self.exit_code = None
        self.signal = None
        self.written = []
        self.resizes = []
        self.kill_calls = 0
        self.paused = False
        self.pause_calls = 0
        self._backlog = backlog
        self._data_callbacks = []
        self._exit_callbacks = []

    def on_data(self, callback):
        self._data_callbacks.append(callback)

        def unsubscribe():
            if callback in self._data_callbacks:
                self._data_callbacks.remove(callback)
        return unsubscribe

    def on_exit(self, callback):
        self._exit_callbacks.append(callback)

        def unsubscribe():
            if callback in self._exit_callbacks:
                self._exit_callbacks.remove(callback)
        return unsubscribe

    def backlog(self):
        return self._backlog

    def write(self, data):
        self.written.append(data)

    def resize(self, cols, rows):
        self.cols = cols
        self.rows = rows
        self.resizes.append((cols, rows))

    def kill(self, force=False):
        self.kill_calls += 1

    def pause_reading(self):
        self.paused = True
        self.pause_calls += 1

    def resume_reading(self):
        self.paused = False

    async def wait(self, timeout=None):
        return self.exited

    def emit(self, data: bytes):
        for callback in list(self._data_callbacks):
            callback(data)

    def finish(self, exit_code=0, signal=None):
        if self.exited:
            return
        self.exited = True
        self.exit_code = exit_code
        self.signal = signal
        callbacks = list(self._exit_callbacks)
        self._exit_callbacks.clear()
        self._data_callbacks.clear()
        for callback in callbacks:
            callback(exit_code, signal)

    @property
    def subscriber_count(self):
        return len(self._data_callbacks) + len(self._exit_callbacks)


class FakeSpawner:
    def __init__(self):
        self.calls = []
        self.handles = []
        self.error = None

    def __call__(self, command, args, cwd=None, env=None, cols=None, rows=None):
        if self.error:
            raise self.error
        self.calls.append({"command": command, "args": args, "cwd": cwd, "env": env, "cols": cols, "rows": rows})
        handle = FakeHandle(pid=1000 + len(self.handles), cwd=cwd or "/tmp", cols=cols or 120, rows=rows or 30)
        self.handles.append(handle)
        return handle


@pytest.fixture
def fake_spawner():
    return FakeSpawner()


@pytest.fixture
def fake_terminal(fake_spawner):
    return TerminalService(spawner=fake_spawner, command="gemini")
