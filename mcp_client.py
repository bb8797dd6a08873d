"""Client side of the stdio MCP protocol.

McpClient spawns the worker (mcp_worker.py by default), writes requests to
its stdin and matches the responses coming back on its stdout to the
callers waiting on them:

  client = McpClient()
  future = client.call("math.add", {"a": 2, "b": 3})
  future.result()   # {"protocolVersion": "2.0", "result": 5, "id": 1}
  client.request("ping")   # "pong"
  client.close()

One client is meant to be shared by many threads. If the worker dies,
every outstanding call fails with TransportError; protocol-level failures
("the server said no") come back as error responses, or as RemoteError
from request().
"""

import concurrent.futures
import itertools
import json
import os
import shlex
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from mcp_protocol import FramedChannel, encode, is_response, is_valid_id, make_request

WORKER_SCRIPT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "mcp_worker.py")


def _log(message: str) -> None:
    print(f"[mcp-client] {message}", file=sys.stderr, flush=True)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class McpError(Exception):
    pass


class TransportError(McpError):
    """The worker is gone or could not be reached."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class RemoteError(McpError):
    """The worker answered with an error response."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"{message} (code {code})" if data is None else f"{message} (code {code}): {data}")
        self.code = code
        self.message = message
        self.data = data


# ---------------------------------------------------------------------------
# Worker command
# ---------------------------------------------------------------------------

def _detect_project_python() -> str | None:
    """Detect the project's Python interpreter (MCP_PYTHON, VIRTUAL_ENV, .venv)."""
    def _find_python_in_venv(venv_path: str) -> str | None:
        for candidate in (os.path.join(venv_path, "bin", "python3"),
                          os.path.join(venv_path, "Scripts", "python.exe")):
            if os.path.isfile(candidate):
                return candidate
        return None

    if os.environ.get("MCP_PYTHON"):
        return os.environ["MCP_PYTHON"]
    venv = os.environ.get("VIRTUAL_ENV")
    if venv:
        candidate = _find_python_in_venv(venv)
        if candidate:
            return candidate
    for base in (os.getcwd(), os.path.dirname(os.path.abspath(__file__))):
        candidate = _find_python_in_venv(os.path.join(base, ".venv"))
        if candidate:
            return candidate
    return None


def default_worker_command() -> list[str]:
    """MCP_WORKER_COMMAND if set, else the bundled worker under the project Python."""
    override = os.environ.get("MCP_WORKER_COMMAND")
    if override:
        return shlex.split(override)
    return [_detect_project_python() or sys.executable, WORKER_SCRIPT]


# ---------------------------------------------------------------------------
# WorkerProcess — owns the spawned worker
# ---------------------------------------------------------------------------

class WorkerProcess:
    """A spawned worker with piped stdin/stdout and inherited stderr.

    A daemon thread pumps stdout into a FramedChannel; when stdout hits EOF
    it reaps the process and reports the exit status through *on_exit*.
    """

    SIGTERM_GRACE_SECONDS = 2

    def __init__(self, command: list[str],
                 on_frame: Callable[["WorkerProcess", str], None],
                 on_exit: Callable[["WorkerProcess", int], None],
                 env: dict[str, str] | None = None):
        self.command = list(command)
        self._on_frame = on_frame
        self._on_exit = on_exit
        self._env = env
        self.proc: subprocess.Popen | None = None
        self._channel: FramedChannel | None = None
        self._reader: threading.Thread | None = None

    def start(self) -> None:
        env = os.environ.copy()
        if self._env:
            env.update(self._env)
        try:
            self.proc = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=None,
                bufsize=0,
                env=env,
            )
        except OSError as e:
            raise TransportError(f"Failed to spawn MCP worker {self.command[0]!r}: {e}") from e

        self._channel = FramedChannel(self.proc.stdin)
        self._channel.on_frame(lambda line: self._on_frame(self, line))
        self._reader = threading.Thread(
            target=self._read_stdout, name=f"mcp-client-reader-{self.proc.pid}", daemon=True)
        self._reader.start()
        _log(f"started worker pid {self.proc.pid}: {' '.join(self.command)}")

    @property
    def pid(self) -> int | None:
        return self.proc.pid if self.proc else None

    @property
    def running(self) -> bool:
        return self.proc is not None and self.proc.poll() is None

    def write_frame(self, data: bytes) -> None:
        self._channel.write_frame(data)

    def _read_stdout(self) -> None:
        proc = self.proc
        try:
            self._channel.pump(proc.stdout)
        except (OSError, ValueError) as e:
            _log(f"stdout reader for pid {proc.pid} stopped: {e}")
        finally:
            code = proc.wait()
            self._on_exit(self, code)

    def terminate(self) -> None:
        """SIGTERM, then SIGKILL after SIGTERM_GRACE_SECONDS."""
        proc = self.proc
        if proc is None or proc.poll() is not None:
            return
        try:
            proc.stdin.close()
        except OSError:
            pass
        proc.terminate()
        try:
            proc.wait(timeout=self.SIGTERM_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

    def join(self, timeout: float | None = None) -> None:
        """Wait for the reader thread, i.e. until on_exit has run."""
        if self._reader is not None:
            self._reader.join(timeout)


# ---------------------------------------------------------------------------
# McpClient — correlates responses with outstanding calls
# ---------------------------------------------------------------------------

@dataclass
class PendingCall:
    id: int
    method: str
    future: concurrent.futures.Future
    start_time: float = field(default_factory=time.time)


def _settle(future: concurrent.futures.Future, result: Any = None,
            exc: BaseException | None = None) -> None:
    # A caller may have cancelled the future while it was pending.
    if future.done():
        return
    try:
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(result)
    except concurrent.futures.InvalidStateError:
        pass


class McpClient:
    """Shared client for one worker process.

    The pending map and id counter are guarded by one lock; futures are
    settled outside it. A worker that exits on its own is re-spawned by the
    next call; after close() every call fails with TransportError.
    """

    def __init__(self, command: list[str] | None = None, env: dict[str, str] | None = None,
                 timeout: float | None = None):
        self._command = list(command) if command else default_worker_command()
        self._env = env
        if timeout is None and os.environ.get("MCP_CALL_TIMEOUT_SECONDS"):
            timeout = float(os.environ["MCP_CALL_TIMEOUT_SECONDS"])
        self.timeout = timeout
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._pending: dict[int, PendingCall] = {}
        self._worker: WorkerProcess | None = None
        self._closed = False
        with self._lock:
            self._ensure_worker()

    # -- lifecycle ---------------------------------------------------------

    def _ensure_worker(self) -> WorkerProcess:
        # Caller holds self._lock.
        if self._worker is None:
            worker = WorkerProcess(self._command, self._on_frame, self._on_exit, env=self._env)
            worker.start()
            self._worker = worker
        return self._worker

    @property
    def worker(self) -> WorkerProcess | None:
        return self._worker

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def close(self) -> None:
        """Terminate the worker. Safe to call more than once.

        Outstanding calls are failed by the exit handler once the worker is
        reaped, not here.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            worker = self._worker
        if worker is not None:
            worker.terminate()
            _log(f"closed worker pid {worker.pid}")

    def __enter__(self) -> "McpClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- calls ---------------------------------------------------------------

    def call(self, method: str, params: Any = None) -> concurrent.futures.Future:
        """Send a call; the future resolves to the full response message."""
        _, future = self._call(method, params)
        return future

    def _call(self, method: str, params: Any) -> tuple[int, concurrent.futures.Future]:
        future: concurrent.futures.Future = concurrent.futures.Future()
        with self._lock:
            request_id = next(self._ids)
        # Unencodable params raise here, before anything is registered.
        data = encode(make_request(method, params, request_id))

        with self._lock:
            if self._closed:
                _settle(future, exc=TransportError("MCP client is closed"))
                return request_id, future
            try:
                worker = self._ensure_worker()
            except TransportError as e:
                _settle(future, exc=e)
                return request_id, future
            self._pending[request_id] = PendingCall(request_id, method, future)

        try:
            worker.write_frame(data)
        except (OSError, ValueError) as e:
            if self._discard(request_id) is not None:
                _settle(future, exc=TransportError(f"Failed to send {method}: {e}"))
        return request_id, future

    def request(self, method: str, params: Any = None, timeout: float | None = None) -> Any:
        """Call *method* and wait for it.

        Returns the result, raises RemoteError for an error response,
        TransportError if the worker is gone, and TimeoutError if *timeout*
        (or the client default) elapses first.
        """
        if timeout is None:
            timeout = self.timeout
        request_id, future = self._call(method, params)
        try:
            response = future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            self._discard(request_id)
            raise TimeoutError(f"{method} timed out after {timeout}s") from None

        error = response.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise RemoteError(error.get("code", 0), error.get("message", "Unknown error"), error.get("data"))
        return response.get("result")

    def notify(self, method: str, params: Any = None) -> None:
        """Send a notification; no response is expected or tracked."""
        data = encode(make_request(method, params))
        with self._lock:
            if self._closed:
                raise TransportError("MCP client is closed")
            worker = self._ensure_worker()
        try:
            worker.write_frame(data)
        except (OSError, ValueError) as e:
            raise TransportError(f"Failed to send {method}: {e}") from e

    def _discard(self, request_id) -> PendingCall | None:
        with self._lock:
            return self._pending.pop(request_id, None)

    # -- worker callbacks (reader thread) -----------------------------------

    def _on_frame(self, worker: WorkerProcess, line: str) -> None:
        try:
            msg = json.loads(line)
        except ValueError:
            _log(f"ignoring malformed frame from pid {worker.pid}: {line[:120]!r}")
            return
        if not is_response(msg) or not is_valid_id(msg["id"]):
            return
        pending = self._discard(msg["id"])
        if pending is None:
            # Late, duplicate, or never ours
            return
        _settle(pending.future, msg)

    def _on_exit(self, worker: WorkerProcess, code: int) -> None:
        with self._lock:
            if self._worker is not worker:
                return
            self._worker = None
            pending = list(self._pending.values())
            self._pending.clear()
            closing = self._closed

        if closing:
            _log(f"worker pid {worker.pid} exited with code {code}")
            reason = f"MCP worker closed (code {code})"
        else:
            _log(f"worker pid {worker.pid} exited unexpectedly with code {code}, "
                 f"failing {len(pending)} pending calls")
            reason = f"MCP worker exited unexpectedly (code {code})"
        for call in pending:
            _settle(call.future, exc=TransportError(reason, exit_code=code))
