"""Tests for McpClient and WorkerProcess.

Runs against the real worker (mcp_worker.py) and against small scripted
workers written to tmp_path. The scripted workers control exactly how
responses come back: reordered, split across writes, merged into one
write, or never.
"""

import concurrent.futures
import os
import sys
import textwrap
import threading
import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from mcp_client import (
    McpClient,
    RemoteError,
    TransportError,
    WorkerProcess,
    default_worker_command,
)


@pytest.fixture(autouse=True)
def no_rag(monkeypatch):
    monkeypatch.setenv("MCP_RAG_ENABLED", "0")
    monkeypatch.delenv("MCP_CALL_TIMEOUT_SECONDS", raising=False)
    monkeypatch.delenv("MCP_WORKER_COMMAND", raising=False)


@pytest.fixture
def client():
    c = McpClient()
    try:
        yield c
    finally:
        c.close()


@pytest.fixture
def scripted_worker(tmp_path):
    """Write a worker script and return the command that runs it."""
    def make(source: str) -> list[str]:
        path = tmp_path / "worker.py"
        path.write_text(textwrap.dedent(source))
        return [sys.executable, str(path)]
    return make


# Reads two requests, answers them in reverse order.
REVERSING_WORKER = """
    import json, sys
    reqs = [json.loads(sys.stdin.readline()) for _ in range(2)]
    for req in reversed(reqs):
        p = req["params"]
        sys.stdout.write(json.dumps({"protocolVersion": "2.0", "result": p["a"] + p["b"], "id": req["id"]}) + "\\n")
        sys.stdout.flush()
    sys.stdin.read()
"""

# Reads requests forever, never answers.
SILENT_WORKER = """
    import sys
    for line in sys.stdin:
        pass
"""


def wait_for_exit(client: McpClient, timeout: float = 10) -> None:
    worker = client.worker
    if worker is not None:
        worker.join(timeout)


# ============================================================
# Round trip against the real worker
# ============================================================


class TestRoundTrip:
    def test_ping(self, client):
        assert client.request("ping") == "pong"

    def test_call_returns_full_response(self, client):
        response = client.call("math.add", {"a": 2, "b": 3}).result(timeout=10)
        assert response["protocolVersion"] == "2.0"
        assert response["result"] == 5
        assert isinstance(response["id"], int)
        assert "error" not in response

    def test_error_response_resolves_not_raises(self, client):
        response = client.call("unknown.method").result(timeout=10)
        assert response["error"]["code"] == -32601

    def test_request_raises_remote_error(self, client):
        with pytest.raises(RemoteError) as exc_info:
            client.request("math.add", {"a": "x", "b": 1})
        assert exc_info.value.code == -32000
        assert exc_info.value.message == "Internal error"
        assert "must be numbers" in exc_info.value.data

    def test_method_not_found_via_request(self, client):
        with pytest.raises(RemoteError) as exc_info:
            client.request("unknown.method")
        assert exc_info.value.code == -32601

    def test_remote_error_is_not_transport_error(self, client):
        with pytest.raises(RemoteError) as exc_info:
            client.request("unknown.method")
        assert not isinstance(exc_info.value, TransportError)

    def test_ids_are_unique(self, client):
        futures = [client.call("ping") for _ in range(10)]
        ids = [f.result(timeout=10)["id"] for f in futures]
        assert len(set(ids)) == 10

    def test_pending_cleared_after_response(self, client):
        client.request("ping")
        assert client.pending_count == 0

    def test_non_finite_params_rejected_before_send(self, client):
        with pytest.raises(ValueError):
            client.call("math.add", {"a": float("nan"), "b": 1})
        assert client.pending_count == 0
        assert client.request("ping") == "pong"

    def test_notify_sends_no_response(self, client):
        client.notify("ping")
        client.notify("math.add", {"a": 1, "b": 2})
        assert client.pending_count == 0
        assert client.request("ping") == "pong"

    def test_context_manager_closes(self):
        with McpClient() as c:
            assert c.request("ping") == "pong"
            worker = c.worker
        assert c.closed
        worker.join(10)
        assert not worker.running


# ============================================================
# Correlation
# ============================================================


class TestCorrelation:
    def test_concurrent_callers_no_cross_talk(self, client):
        """Many threads sharing one client each get their own result."""
        def add(i):
            return i, client.request("math.add", {"a": i, "b": 1000})

        with concurrent.futures.ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(add, range(100)))
        for i, total in results:
            assert total == i + 1000
        assert client.pending_count == 0

    def test_reversed_responses(self, scripted_worker):
        """A=(2,3) and B=(10,-1) resolve to 5 and 9 even when B is answered first."""
        c = McpClient(command=scripted_worker(REVERSING_WORKER))
        try:
            a = c.call("math.add", {"a": 2, "b": 3})
            b = c.call("math.add", {"a": 10, "b": -1})
            assert a.result(timeout=10)["result"] == 5
            assert b.result(timeout=10)["result"] == 9
        finally:
            c.close()

    def test_frame_split_across_writes(self, scripted_worker):
        command = scripted_worker("""
            import json, sys, time
            req = json.loads(sys.stdin.readline())
            data = json.dumps({"protocolVersion": "2.0", "result": "joined", "id": req["id"]}) + "\\n"
            half = len(data) // 2
            sys.stdout.write(data[:half]); sys.stdout.flush()
            time.sleep(0.2)
            sys.stdout.write(data[half:]); sys.stdout.flush()
            sys.stdin.read()
        """)
        c = McpClient(command=command)
        try:
            assert c.request("anything", timeout=10) == "joined"
        finally:
            c.close()

    def test_two_frames_in_one_write(self, scripted_worker):
        command = scripted_worker("""
            import json, sys
            reqs = [json.loads(sys.stdin.readline()) for _ in range(2)]
            out = "".join(
                json.dumps({"protocolVersion": "2.0", "result": r["method"], "id": r["id"]}) + "\\n"
                for r in reqs
            )
            sys.stdout.write(out); sys.stdout.flush()
            sys.stdin.read()
        """)
        c = McpClient(command=command)
        try:
            first = c.call("first")
            second = c.call("second")
            assert first.result(timeout=10)["result"] == "first"
            assert second.result(timeout=10)["result"] == "second"
        finally:
            c.close()

    def test_unknown_ids_and_garbage_discarded(self, scripted_worker):
        command = scripted_worker("""
            import json, sys
            req = json.loads(sys.stdin.readline())
            for line in (
                "this is not json",
                json.dumps({"protocolVersion": "2.0", "result": "stale", "id": 99999}),
                json.dumps({"protocolVersion": "2.0", "method": "server.event"}),
                json.dumps({"protocolVersion": "2.0", "result": "mine", "id": req["id"]}),
                json.dumps({"protocolVersion": "2.0", "result": "duplicate", "id": req["id"]}),
            ):
                sys.stdout.write(line + "\\n")
            sys.stdout.flush()
            sys.stdin.read()
        """)
        c = McpClient(command=command)
        try:
            assert c.request("x", timeout=10) == "mine"
            time.sleep(0.2)
            assert c.pending_count == 0
            assert c.worker.running
        finally:
            c.close()


# ============================================================
# Worker death
# ============================================================


class TestWorkerDeath:
    def test_kill_rejects_all_pending(self, scripted_worker):
        c = McpClient(command=scripted_worker(SILENT_WORKER))
        try:
            futures = [c.call("math.add", {"a": i, "b": i}) for i in range(3)]
            assert c.pending_count == 3
            c.worker.proc.kill()
            done, not_done = concurrent.futures.wait(futures, timeout=10)
            assert not not_done
            for f in futures:
                exc = f.exception()
                assert isinstance(exc, TransportError)
                assert exc.exit_code is not None and exc.exit_code != 0
                assert "exited unexpectedly" in str(exc)
            assert c.pending_count == 0
        finally:
            c.close()

    def test_worker_exit_rejects_request(self, scripted_worker):
        command = scripted_worker("""
            import sys
            sys.stdin.readline()
            sys.exit(3)
        """)
        c = McpClient(command=command)
        try:
            with pytest.raises(TransportError) as exc_info:
                c.request("ping", timeout=10)
            assert exc_info.value.exit_code == 3
        finally:
            c.close()

    def test_restart_after_crash(self, client):
        assert client.request("ping") == "pong"
        first_pid = client.worker.pid
        client.worker.proc.kill()
        wait_for_exit(client)
        assert client.worker is None
        assert client.request("ping") == "pong"
        assert client.worker.pid != first_pid

    def test_spawn_failure_surfaces_immediately(self):
        with pytest.raises(TransportError, match="Failed to spawn"):
            McpClient(command=["/nonexistent/mcp-worker-binary"])


# ============================================================
# close()
# ============================================================


class TestClose:
    def test_close_is_idempotent(self, client):
        client.close()
        client.close()
        assert client.closed

    def test_close_terminates_worker(self, client):
        worker = client.worker
        client.close()
        worker.join(10)
        assert not worker.running

    def test_call_after_close_fails(self, client):
        client.close()
        future = client.call("ping")
        with pytest.raises(TransportError, match="closed"):
            future.result(timeout=5)
        with pytest.raises(TransportError):
            client.notify("ping")

    def test_close_rejects_pending_via_exit(self, scripted_worker):
        c = McpClient(command=scripted_worker(SILENT_WORKER))
        futures = [c.call("ping") for _ in range(2)]
        worker = c.worker
        c.close()
        worker.join(10)
        for f in futures:
            assert isinstance(f.exception(timeout=5), TransportError)
        assert c.pending_count == 0


# ============================================================
# Timeouts
# ============================================================


class TestTimeout:
    def test_request_timeout(self, scripted_worker):
        c = McpClient(command=scripted_worker(SILENT_WORKER))
        try:
            t0 = time.perf_counter()
            with pytest.raises(TimeoutError, match="timed out"):
                c.request("ping", timeout=0.5)
            assert time.perf_counter() - t0 < 5
            assert c.pending_count == 0
        finally:
            c.close()

    def test_default_timeout_from_env(self, monkeypatch, scripted_worker):
        monkeypatch.setenv("MCP_CALL_TIMEOUT_SECONDS", "0.3")
        c = McpClient(command=scripted_worker(SILENT_WORKER))
        try:
            assert c.timeout == 0.3
            with pytest.raises(TimeoutError):
                c.request("ping")
        finally:
            c.close()

    def test_late_response_after_timeout_discarded(self, scripted_worker):
        command = scripted_worker("""
            import json, sys, time
            req = json.loads(sys.stdin.readline())
            time.sleep(0.6)
            sys.stdout.write(json.dumps({"protocolVersion": "2.0", "result": "late", "id": req["id"]}) + "\\n")
            sys.stdout.flush()
            req = json.loads(sys.stdin.readline())
            sys.stdout.write(json.dumps({"protocolVersion": "2.0", "result": "on time", "id": req["id"]}) + "\\n")
            sys.stdout.flush()
            sys.stdin.read()
        """)
        c = McpClient(command=command)
        try:
            with pytest.raises(TimeoutError):
                c.request("slow", timeout=0.2)
            time.sleep(0.6)
            assert c.request("fast", timeout=10) == "on time"
        finally:
            c.close()


# ============================================================
# Worker command
# ============================================================


class TestWorkerCommand:
    def test_default_runs_bundled_worker(self):
        command = default_worker_command()
        assert command[-1].endswith("mcp_worker.py")
        assert os.path.isfile(command[-1])

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("MCP_WORKER_COMMAND", "node server.js --flag")
        assert default_worker_command() == ["node", "server.js", "--flag"]

    def test_explicit_python(self, monkeypatch):
        monkeypatch.setenv("MCP_PYTHON", "/usr/bin/python3")
        assert default_worker_command()[0] == "/usr/bin/python3"

    def test_worker_process_reports_exit(self, scripted_worker):
        exits = []
        done = threading.Event()

        def on_exit(worker, code):
            exits.append(code)
            done.set()

        worker = WorkerProcess(scripted_worker("import sys; sys.exit(5)"), lambda w, line: None, on_exit)
        worker.start()
        assert done.wait(10)
        assert exits == [5]
