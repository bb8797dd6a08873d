"""HTTP and MCP front-end for the stdio MCP worker.

Forwards each request to one shared McpClient, which owns the worker
subprocess:

  HTTP POST /mcp/call --\
                         +--> McpClient --JSON lines/stdio--> mcp_worker.py
  MCP tool call_method --/

Routes:
  POST /mcp/call  {"method": "...", "params": {...}}
      200 {"result": ...}
      400 {"error": "..."}                         invalid request body
      400 {"error": "...", "code": -32601}         worker answered with an error
      500 {"error": "Internal MCP error", "message": "..."}   worker unreachable
  GET /health     {"status": "ok", "mcp": "connected"}
"""

import asyncio
import json
import os
import sys
import threading

from dotenv import load_dotenv
load_dotenv()

from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from mcp_client import McpClient, McpError

HOST = os.environ.get("HOST", "127.0.0.1")
PORT = int(os.environ.get("PORT", "3000"))

mcp = FastMCP("mcp-bridge", host=HOST, port=PORT)


def _log(message: str) -> None:
    print(f"[mcp-http] {message}", file=sys.stderr, flush=True)


# ---------------------------------------------------------------------------
# Shared client
# ---------------------------------------------------------------------------

_client = None
_client_lock = threading.Lock()


def get_client() -> McpClient:
    global _client
    with _client_lock:
        if _client is None or _client.closed:
            _client = McpClient()
        return _client


def shutdown_client() -> None:
    global _client
    with _client_lock:
        client, _client = _client, None
    if client is not None:
        _log("closing MCP client...")
        client.close()


async def forward_call(method: str, params) -> dict:
    """Send one call through the shared client and await the full response."""
    future = get_client().call(method, params)
    return await asyncio.wrap_future(future)


# ---------------------------------------------------------------------------
# HTTP routes
# ---------------------------------------------------------------------------

@mcp.custom_route("/mcp/call", methods=["POST"])
async def mcp_call(request: Request) -> JSONResponse:
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)

    method = body.get("method")
    if not method or not isinstance(method, str):
        return JSONResponse({"error": 'Missing or invalid "method"'}, status_code=400)

    try:
        response = await forward_call(method, body.get("params"))
    except McpError as e:
        _log(f"call {method} failed: {e}")
        return JSONResponse({"error": "Internal MCP error", "message": str(e)}, status_code=500)
    except ValueError as e:
        return JSONResponse({"error": 'Invalid "params"', "message": str(e)}, status_code=400)

    error = response.get("error")
    if error is not None:
        return JSONResponse(
            {"error": error.get("message"), "code": error.get("code")},
            status_code=400,
        )
    return JSONResponse({"result": response.get("result")})


@mcp.custom_route("/health", methods=["GET"])
async def health(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok", "mcp": "connected"})


# ---------------------------------------------------------------------------
# MCP tools
# ---------------------------------------------------------------------------

@mcp.tool(description="Call a method on the MCP worker and return its raw response.")
async def call_method(method: str, params: dict | None = None) -> str:
    """Call *method* on the worker with *params*.

    Returns the worker's response message as JSON text: either
    {"result": ...} or {"error": {"code": ..., "message": ...}}.
    Raises if the worker cannot be reached.
    """
    response = await forward_call(method, params or {})
    return json.dumps(response)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    transport = os.environ.get("MCP_BRIDGE_TRANSPORT", "streamable-http")
    get_client()
    _log(f"HTTP MCP API on http://{HOST}:{PORT} (POST /mcp/call, GET /health)")
    try:
        mcp.run(transport=transport)
    finally:
        shutdown_client()


if __name__ == "__main__":
    main()
