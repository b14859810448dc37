import asyncio
import os
import shlex
import signal
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union

from workstation.core import config
from workstation.core.errors import SpawnError
from workstation.core.log import global_log
from workstation.services.output_filter import filter_output, is_noise_line

READ_SIZE = 65536


@dataclass
class CommandResult:
    output: str
    exit_code: Optional[int] = None
    timed_out: bool = False
    has_error: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "output": self.output,
            "hasError": self.has_error,
            "exitCode": self.exit_code,
            "timedOut": self.timed_out,
        }


class CommandExecutor:
    """Runs one non-interactive command and collects its output.

    `execute` always resolves with a CommandResult, so the HTTP layer can
    answer every request with JSON. A command that outlives its timeout gets
    SIGTERM, then SIGKILL after the grace period; the result is returned
    even if the process tree refuses to die.
    """

    def __init__(self, kill_grace: Optional[float] = None, drain_timeout: float = 1.0):
        self.kill_grace = config.KILL_GRACE_SECONDS if kill_grace is None else kill_grace
        self.drain_timeout = drain_timeout

    async def execute(self, command: Union[str, Sequence[str]], cwd: Optional[str] = None,
                      env: Optional[Dict[str, str]] = None, timeout_ms: Optional[int] = None,
                      input_text: Optional[str] = None) -> CommandResult:
        timeout_ms = timeout_ms or config.COMMAND_TIMEOUT_MS
        try:
            argv = shlex.split(command) if isinstance(command, str) else [str(a) for a in command]
        except ValueError as e:
            global_log(f"Could not parse command {command!r}: {e}", level="ERROR")
            return CommandResult(output=f"Invalid command: {e}", has_error=True)
        if not argv:
            return CommandResult(output="No command given", has_error=True)

        try:
            proc = await self._spawn(argv, cwd, env)
        except SpawnError as e:
            global_log(f"Command spawn failed: {e}", level="ERROR")
            return CommandResult(output=str(e), has_error=True)

        global_log(f"Running {' '.join(argv)} (pid={proc.pid}, timeout={timeout_ms}ms)", level="DEBUG")
        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []
        readers = [
            asyncio.create_task(self._read_stream(proc.stdout, stdout_chunks)),
            asyncio.create_task(self._read_stream(proc.stderr, stderr_chunks)),
        ]

        timed_out = False
        try:
            await asyncio.wait_for(self._communicate(proc, readers, input_text), timeout_ms / 1000)
        except asyncio.TimeoutError:
            timed_out = True
            global_log(f"Command {argv[0]} (pid={proc.pid}) timed out after {timeout_ms}ms", level="INFO")
            await self._terminate(proc)
        finally:
            await self._drain(readers)

        exit_code = None if timed_out else proc.returncode
        return self._build_result(stdout_chunks, stderr_chunks, exit_code, timed_out, timeout_ms)

    async def _spawn(self, argv: List[str], cwd: Optional[str], env: Optional[Dict[str, str]]):
        if cwd:
            cwd = os.path.abspath(cwd)
            if not os.path.isdir(cwd):
                raise SpawnError(f"Working directory does not exist: {cwd}")
        merged_env = dict(os.environ)
        merged_env.update({str(k): str(v) for k, v in (env or {}).items()})
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=merged_env,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise SpawnError(f"Executable not found on PATH: {argv[0]}") from e
        except PermissionError as e:
            raise SpawnError(f"Permission denied: {argv[0]}") from e
        except OSError as e:
            raise SpawnError(f"Failed to start {argv[0]}: {e}") from e
        except (ValueError, TypeError) as e:
            # e.g. an embedded NUL in an argument or environment value
            raise SpawnError(f"Invalid arguments or environment for {argv[0]}: {e}") from e

    async def _communicate(self, proc, readers, input_text: Optional[str]):
        if input_text is not None:
            try:
                proc.stdin.write(input_text.encode("utf-8"))
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                global_log(f"Command (pid={proc.pid}) closed stdin early: {e!r}", level="DEBUG")
        proc.stdin.close()
        # asyncio.wait leaves the readers running if this coroutine is cancelled
        await asyncio.wait(readers)
        return await proc.wait()

    async def _read_stream(self, stream, sink: List[bytes]):
        while True:
            chunk = await stream.read(READ_SIZE)
            if not chunk:
                break
            sink.append(chunk)

    async def _terminate(self, proc):
        self._signal(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), self.kill_grace)
            return
        except asyncio.TimeoutError:
            global_log(f"Command (pid={proc.pid}) ignored SIGTERM, sending SIGKILL", level="INFO")
        self._signal(proc, signal.SIGKILL)
        try:
            await asyncio.wait_for(proc.wait(), self.kill_grace)
        except asyncio.TimeoutError:
            global_log(f"Command (pid={proc.pid}) still running after SIGKILL", level="ERROR")

    def _signal(self, proc, sig):
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass

    async def _drain(self, readers):
        # Grandchildren can hold the pipes open after the command itself is gone
        _, pending = await asyncio.wait(readers, timeout=self.drain_timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _build_result(self, stdout_chunks, stderr_chunks, exit_code, timed_out, timeout_ms) -> CommandResult:
        stdout_text = b"".join(stdout_chunks).decode("utf-8", errors="replace")
        stderr_text = b"".join(stderr_chunks).decode("utf-8", errors="replace")

        has_error = timed_out or exit_code != 0
        kept_stderr = []
        for line in stderr_text.splitlines():
            if not line.strip() or is_noise_line(line):
                continue
            kept_stderr.append(line)
            # The CLI sometimes prints an error and still exits 0
            if "error" in line.lower():
                has_error = True

        parts = [filter_output(stdout_text), "\n".join(kept_stderr).strip()]
        output = "\n".join(p for p in parts if p)
        if timed_out:
            notice = f"[Command timed out after {timeout_ms} ms]"
            output = f"{output}\n\n{notice}" if output else notice

        return CommandResult(output=output, exit_code=exit_code, timed_out=timed_out, has_error=has_error)
