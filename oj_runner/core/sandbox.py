"""Run a compiled submission as a supervised child process.

The child gets the workspace as its working directory, a scrubbed
environment, an isolated interpreter (``-I -S``: no user site, no
site-packages, no PYTHON* variables), POSIX resource limits, and its own
process group so that a timeout can kill everything it spawned.

Resource limits are applied by a short launcher that runs in the freshly
exec'd child and then execs the submission, so the service never runs
Python code between fork and exec. stdout is drained incrementally and
capped; a child that writes past the cap is killed.
"""
import logging
import os
import signal
import subprocess
import threading
import time
from typing import Callable, Optional

from oj_runner.core.config import settings
from oj_runner.core.errors import ExecutionError, ExecutionTimeoutError, OutputLimitExceededError
from oj_runner.core.workspace import Workspace

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 2000
STDERR_TAIL_BYTES = 64 * 1024
READ_CHUNK_BYTES = 64 * 1024
# Grace period for pipe readers after the process group is gone
PIPE_DRAIN_SECONDS = 1.0

# argv: memory_bytes cpu_seconds max_file_bytes max_open_files executable artifact
_LAUNCHER = """\
import os, resource, sys
mem, cpu, fsize, nofile = (int(v) for v in sys.argv[1:5])
executable, artifact = sys.argv[5], sys.argv[6]
def cap(res, soft, hard):
    _, current = resource.getrlimit(res)
    if current != resource.RLIM_INFINITY:
        soft, hard = min(soft, current), min(hard, current)
    resource.setrlimit(res, (soft, hard))
cap(resource.RLIMIT_AS, mem, mem)
cap(resource.RLIMIT_CPU, cpu, cpu + 1)
cap(resource.RLIMIT_FSIZE, fsize, fsize)
cap(resource.RLIMIT_NOFILE, nofile, nofile)
cap(resource.RLIMIT_CORE, 0, 0)
os.execv(executable, [executable, "-I", "-S", artifact])
"""


class Deadline:
    """Wall-clock budget shared by every step of one invocation."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    def expired(self) -> bool:
        return self.remaining() <= 0.0


def tail_text(text: str, limit: int = STDERR_TAIL_CHARS) -> str:
    return text if len(text) <= limit else "..." + text[-limit:]


def describe_exit(returncode: int) -> str:
    if returncode < 0:
        try:
            return f"killed by signal {signal.Signals(-returncode).name}"
        except ValueError:
            return f"killed by signal {-returncode}"
    return f"exit code {returncode}"


def _kill_process_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.kill()


class _PipeCapture(threading.Thread):
    """Drain one pipe, keeping at most ``limit`` bytes.

    With ``keep_tail`` the newest bytes are kept and draining continues;
    otherwise the first ``limit`` bytes are kept and ``on_overflow`` fires
    once the pipe delivers more.
    """

    def __init__(self, stream, limit: int, keep_tail: bool = False, on_overflow: Optional[Callable[[], None]] = None):
        super().__init__(daemon=True)
        self.stream = stream
        self.limit = limit
        self.keep_tail = keep_tail
        self.on_overflow = on_overflow
        self.overflowed = False
        self.error: Optional[OSError] = None
        self._buffer = bytearray()

    def run(self) -> None:
        try:
            while True:
                chunk = self.stream.read1(READ_CHUNK_BYTES)
                if not chunk:
                    return
                self._buffer.extend(chunk)
                if len(self._buffer) <= self.limit:
                    continue
                if self.keep_tail:
                    del self._buffer[: len(self._buffer) - self.limit]
                    continue
                del self._buffer[self.limit:]
                self.overflowed = True
                if self.on_overflow is not None:
                    self.on_overflow()
                return
        except ValueError:
            # Closed under us once the drain grace period ran out
            return
        except OSError as e:
            self.error = e

    def text(self) -> str:
        return bytes(self._buffer).decode("utf-8", errors="replace")


def _feed(stream, data: bytes) -> None:
    try:
        if data:
            stream.write(data)
        stream.close()
    except (OSError, ValueError) as e:
        # The child exited or closed stdin before reading all of it
        logger.debug(f"Stopped feeding stdin: {e}", extra={"stage": "run"})


def _close_pipes(proc: subprocess.Popen) -> None:
    for stream in (proc.stdin, proc.stdout, proc.stderr):
        if stream is None:
            continue
        try:
            stream.close()
        except OSError:
            pass


class ProcessSandboxRunner:
    def __init__(
        self,
        python_executable: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        memory_limit_mb: Optional[int] = None,
        max_file_bytes: Optional[int] = None,
        max_open_files: Optional[int] = None,
        max_output_bytes: Optional[int] = None,
    ):
        self.python_executable = python_executable or settings.PYTHON_EXECUTABLE
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.RUN_TIMEOUT_SECONDS
        self.memory_limit_mb = memory_limit_mb or settings.RUN_MEMORY_LIMIT_MB
        self.max_file_bytes = max_file_bytes or settings.RUN_MAX_FILE_BYTES
        self.max_open_files = max_open_files or settings.RUN_MAX_OPEN_FILES
        self.max_output_bytes = max_output_bytes or settings.RUN_MAX_OUTPUT_BYTES

    def _environment(self, workspace: Workspace) -> dict[str, str]:
        return {
            "PATH": os.defpath,
            "HOME": str(workspace.path),
            "TMPDIR": str(workspace.path),
            "LANG": "C.UTF-8",
        }

    def command(self, artifact_name: str) -> list[str]:
        if os.name != "posix":
            return [self.python_executable, "-I", "-S", artifact_name]
        cpu_seconds = max(1, int(self.timeout_seconds + 0.999))
        return [
            self.python_executable, "-I", "-S", "-c", _LAUNCHER,
            str(self.memory_limit_mb * 1024 * 1024),
            str(cpu_seconds),
            str(self.max_file_bytes),
            str(self.max_open_files),
            self.python_executable,
            artifact_name,
        ]

    def effective_timeout(self, deadline: Optional[Deadline]) -> float:
        if deadline is None:
            return self.timeout_seconds
        return min(self.timeout_seconds, deadline.remaining())

    def run(self, artifact, workspace: Workspace, stdin_text: str, deadline: Optional[Deadline] = None) -> str:
        timeout = self.effective_timeout(deadline)
        log_extra = {"workspace": str(workspace.path), "stage": "run"}
        if timeout <= 0:
            raise ExecutionTimeoutError("Execution timed out before it could start", timeout_seconds=0.0)

        try:
            proc = subprocess.Popen(
                self.command(artifact.path.name),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(workspace.path),
                env=self._environment(workspace),
                start_new_session=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"Failed to launch child process: {e}", extra=log_extra)
            raise ExecutionError(f"Execution error: failed to launch process: {e}") from e

        logger.debug(f"Child process started: pid={proc.pid}", extra=log_extra)
        stdout = _PipeCapture(proc.stdout, self.max_output_bytes, on_overflow=lambda: _kill_process_group(proc))
        stderr = _PipeCapture(proc.stderr, STDERR_TAIL_BYTES, keep_tail=True)
        feeder = threading.Thread(target=_feed, args=(proc.stdin, stdin_text.encode("utf-8")), daemon=True)
        for worker in (stdout, stderr, feeder):
            worker.start()

        timed_out = False
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
        finally:
            # Also takes down grandchildren left behind in the group
            _kill_process_group(proc)
            proc.wait()
            for worker in (stdout, stderr, feeder):
                worker.join(PIPE_DRAIN_SECONDS)
            if any(worker.is_alive() for worker in (stdout, stderr)):
                logger.warning("Child pipes still open after the process group was killed", extra=log_extra)
            _close_pipes(proc)

        if stdout.overflowed:
            logger.warning(f"Child process exceeded {self.max_output_bytes} bytes of output", extra=log_extra)
            raise OutputLimitExceededError(
                f"Output limit exceeded: more than {self.max_output_bytes} bytes written to stdout",
                limit_bytes=self.max_output_bytes,
            )
        if timed_out:
            logger.warning(f"Child process killed after {timeout:.2f}s", extra=log_extra)
            raise ExecutionTimeoutError(f"Execution timed out after {timeout:.2f}s", timeout_seconds=timeout)
        for capture in (stdout, stderr):
            if capture.error is not None:
                logger.error(f"I/O with child process failed: {capture.error}", extra=log_extra)
                raise ExecutionError(f"Execution error: {capture.error}") from capture.error

        if proc.returncode != 0:
            logger.info(f"Child process exited with {proc.returncode}", extra=log_extra)
            cause = describe_exit(proc.returncode)
            raise ExecutionError(f"Runtime error ({cause}):\n{tail_text(stderr.text().strip())}")
        return stdout.text()
