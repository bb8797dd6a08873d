#!/usr/bin/env python3
"""Stdio MCP worker.

Reads newline-delimited JSON requests from stdin, dispatches them to the
registered methods, and writes responses to stdout. stderr carries
diagnostics only.

  {"protocolVersion": "2.0", "method": "ping", "id": 1}
      -> {"protocolVersion": "2.0", "result": "pong", "id": 1}
  {"protocolVersion": "2.0", "method": "ping"}
      -> (nothing: notifications are never answered)

Every frame is handled as its own asyncio task, so a slow handler does not
hold up the frames behind it and responses can leave in a different order
than their requests arrived.
"""

import asyncio
import concurrent.futures
import inspect
import json
import os
import signal
import sys
import threading
from types import MappingProxyType
from typing import Any, Callable

from dotenv import load_dotenv

from mcp_protocol import (
    PROTOCOL_VERSION,
    VERSION_KEY,
    ErrorCode,
    FramedChannel,
    encode,
    make_error,
    make_result,
)

Handler = Callable[[Any], Any]


def _log(message: str) -> None:
    print(f"[mcp-worker] {message}", file=sys.stderr, flush=True)


# ---------------------------------------------------------------------------
# Method registry
# ---------------------------------------------------------------------------

class MethodRegistry:
    """Method name -> handler. Mutable until freeze(), read-only after."""

    def __init__(self):
        self._handlers: dict[str, Handler] = {}
        self._frozen = False

    def register(self, name: str, handler: Handler | None = None):
        """Register *handler* under *name*; usable as a decorator when handler is omitted."""
        if handler is None:
            def decorator(func: Handler) -> Handler:
                self.register(name, func)
                return func
            return decorator

        if self._frozen:
            raise RuntimeError(f"Registry is frozen; cannot register {name!r}")
        if not isinstance(name, str) or not name.strip():
            raise ValueError(f"Invalid method name: {name!r}")
        if not callable(handler):
            raise ValueError(f"Handler for {name!r} is not callable")
        if name in self._handlers:
            raise ValueError(f"Method already registered: {name}")
        self._handlers[name] = handler
        return handler

    def freeze(self) -> "MethodRegistry":
        if not self._frozen:
            self._handlers = MappingProxyType(dict(self._handlers))
            self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Handler | None:
        return self._handlers.get(name)

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, name) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class Dispatcher:
    """Routes request frames to a MethodRegistry and writes the responses.

    Starts without a registry. Until install() is called, calls are either
    answered with SERVER_NOT_READY or, with queue_until_ready, held back
    and dispatched once the registry arrives. install() is a single
    attribute swap on the loop thread, so a frame sees either no registry
    or the complete one.
    """

    def __init__(self, channel: FramedChannel, registry: MethodRegistry | None = None,
                 executor: concurrent.futures.Executor | None = None,
                 queue_until_ready: bool = False):
        self._channel = channel
        self._registry = None
        if executor is None:
            max_workers = int(os.environ.get("MCP_MAX_WORKERS", "20"))
            executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="mcp-handler")
        self._executor = executor
        self._tasks: set[asyncio.Task] = set()
        self._backlog: list[str] | None = [] if queue_until_ready else None
        if registry is not None:
            self.install(registry)
        channel.on_frame(self._on_frame)

    @property
    def executor(self) -> concurrent.futures.Executor:
        return self._executor

    @property
    def ready(self) -> bool:
        return self._registry is not None

    def install(self, registry: MethodRegistry) -> None:
        self._registry = registry.freeze()
        backlog, self._backlog = self._backlog, None
        _log(f"ready with {len(registry)} methods: {', '.join(registry.names())}")
        for line in backlog or ():
            self._spawn(line)

    def _on_frame(self, line: str) -> None:
        if self._registry is None and self._backlog is not None:
            self._backlog.append(line)
            return
        self._spawn(line)

    def _spawn(self, line: str) -> None:
        task = asyncio.get_running_loop().create_task(self.handle_frame(line))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_frame(self, line: str) -> None:
        """Parse, validate, dispatch and answer one frame."""
        try:
            request = json.loads(line)
        except ValueError:
            return
        if not isinstance(request, dict):
            return
        if request.get(VERSION_KEY) != PROTOCOL_VERSION or not isinstance(request.get("method"), str):
            return

        response = await self.dispatch(request)
        if response is not None:
            self._send(response)

    async def dispatch(self, request: dict) -> dict | None:
        """Run the request's handler; returns the response, or None for notifications."""
        method = request["method"]
        is_call = "id" in request
        request_id = request.get("id")

        registry = self._registry
        if registry is None:
            if is_call:
                return make_error(request_id, ErrorCode.SERVER_NOT_READY, "Server not ready")
            return None

        handler = registry.get(method)
        if handler is None:
            if is_call:
                return make_error(request_id, ErrorCode.METHOD_NOT_FOUND, "Method not found")
            return None

        params = request.get("params")
        if params is None:
            params = {}

        try:
            result = await self._invoke(handler, params)
        except Exception as e:
            detail = str(e) or type(e).__name__
            if not is_call:
                _log(f"notification {method} failed: {type(e).__name__}: {detail[:200]}")
                return None
            return make_error(request_id, ErrorCode.INTERNAL_ERROR, "Internal error", detail)

        if is_call:
            return make_result(request_id, result)
        return None

    async def _invoke(self, handler: Handler, params: Any) -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(params)
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(self._executor, handler, params)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _send(self, response: dict) -> None:
        try:
            data = encode(response)
        except Exception as e:
            # The call is still answered once, with the encoding failure.
            detail = f"Result is not JSON serializable: {type(e).__name__}: {e}"
            try:
                data = encode(make_error(response.get("id"), ErrorCode.INTERNAL_ERROR, "Internal error", detail))
            except ValueError as e:
                _log(f"dropping response {response.get('id')!r}: {e}")
                return
        try:
            self._channel.write_frame(data)
        except OSError as e:
            _log(f"dropping response {response.get('id')!r}: {e}")

    async def drain(self) -> None:
        """Wait for every in-flight handler to finish and answer."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# ---------------------------------------------------------------------------
# Stdio server
# ---------------------------------------------------------------------------

def _call_soon(loop: asyncio.AbstractEventLoop, callback: Callable[..., Any], *args) -> bool:
    """Schedule *callback* on *loop* from another thread; False once the loop is closed."""
    try:
        loop.call_soon_threadsafe(callback, *args)
    except RuntimeError:
        return False
    return True


async def serve_stdio(build_registry: Callable[[], MethodRegistry] | None = None,
                      stdin=None, stdout=None) -> None:
    """Serve requests from *stdin* until EOF.

    Frames are read as soon as the loop starts. Calls that arrive before
    *build_registry* returns are queued (MCP_QUEUE_UNTIL_READY=1, the
    default) or answered with SERVER_NOT_READY. At EOF, in-flight handlers
    are allowed to finish so every call that was read gets its response.
    """
    if build_registry is None:
        from mcp_tools import build_registry
    stdin = stdin if stdin is not None else sys.stdin.buffer
    stdout = stdout if stdout is not None else sys.stdout.buffer
    queue_until_ready = os.environ.get("MCP_QUEUE_UNTIL_READY", "1") != "0"

    loop = asyncio.get_running_loop()
    channel = FramedChannel(stdout)
    dispatcher = Dispatcher(channel, queue_until_ready=queue_until_ready)
    eof = asyncio.Event()

    def _deliver(chunk: bytes) -> None:
        _call_soon(loop, channel.feed, chunk)

    def _read_stdin() -> None:
        try:
            channel.pump(stdin, feed=_deliver)
        except (OSError, ValueError) as e:
            _log(f"stdin read failed: {e}")
        finally:
            _call_soon(loop, eof.set)

    reader = threading.Thread(target=_read_stdin, name="mcp-worker-stdin", daemon=True)
    reader.start()

    try:
        registry = await loop.run_in_executor(dispatcher.executor, build_registry)
        dispatcher.install(registry)
        await eof.wait()
        await dispatcher.drain()
    finally:
        dispatcher.executor.shutdown(wait=False, cancel_futures=True)


def _terminate(signum, frame) -> None:
    _log(f"received signal {signum}, exiting")
    os._exit(0)


def main() -> None:
    load_dotenv()
    signal.signal(signal.SIGTERM, _terminate)
    signal.signal(signal.SIGINT, _terminate)
    asyncio.run(serve_stdio())


if __name__ == "__main__":
    main()
