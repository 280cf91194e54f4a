"""MCP server for the OpenClaw activity monitor.

Exposes monitor REST endpoints as MCP tools so AI clients can inspect
tracked sessions, agent actions and the action graph over a standard MCP interface.
"""

from __future__ import annotations

import json
import os
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from mcp.server.fastmcp import FastMCP

BASE_URL = os.environ.get("OPENCLAW_DASHBOARD_BASE_URL", "http://127.0.0.1:5050").rstrip("/")
REQUEST_TIMEOUT_SEC = float(os.environ.get("OPENCLAW_MCP_TIMEOUT_SEC", "10"))

mcp = FastMCP("openclaw-activity-monitor")


def _build_url(path: str, params: dict[str, Any] | None = None) -> str:
    query = urlencode(params or {}, doseq=True)
    return f"{BASE_URL}{path}{'?' + query if query else ''}"


def _http_get(path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    url = _build_url(path, params)
    request = Request(url=url, method="GET")

    try:
        with urlopen(request, timeout=REQUEST_TIMEOUT_SEC) as response:
            charset = response.headers.get_content_charset() or "utf-8"
            body = response.read().decode(charset)
            return {
                "ok": True,
                "base_url": BASE_URL,
                "status_code": int(response.status),
                "data": json.loads(body) if body else {},
            }
    except HTTPError as exc:
        details = ""
        try:
            details = exc.read().decode("utf-8", errors="replace")
        except Exception:
            details = ""
        return {
            "ok": False,
            "base_url": BASE_URL,
            "status_code": int(exc.code),
            "error": f"HTTP error {exc.code}",
            "details": details,
        }
    except URLError as exc:
        return {
            "ok": False,
            "base_url": BASE_URL,
            "error": "Connection error",
            "details": str(exc.reason),
        }
    except json.JSONDecodeError as exc:
        return {
            "ok": False,
            "base_url": BASE_URL,
            "error": "Invalid JSON response",
            "details": str(exc),
        }
    except Exception as exc:
        return {
            "ok": False,
            "base_url": BASE_URL,
            "error": "Unexpected error",
            "details": str(exc),
        }


@mcp.tool()
def dashboard_ready() -> dict[str, Any]:
    """Return monitor readiness from /ready."""
    return _http_get("/ready")


@mcp.tool()
def dashboard_capabilities() -> dict[str, Any]:
    """Return runtime capabilities, ingest stats and table sizes from /capabilities."""
    return _http_get("/capabilities")


@mcp.tool()
def list_sessions(status: str | None = None, platform: str | None = None, agent: str | None = None) -> dict[str, Any]:
    """Return tracked sessions from /sessions, optionally filtered."""
    params = {"status": status, "platform": platform, "agent": agent}
    return _http_get("/sessions", {k: v for k, v in params.items() if v})


@mcp.tool()
def list_actions(session_key: str | None = None, run_id: str | None = None, limit: int = 50) -> dict[str, Any]:
    """Return recent actions from /actions for one session or run."""
    params: dict[str, Any] = {"limit": max(1, limit)}
    if session_key:
        params["session"] = session_key
    if run_id:
        params["run"] = run_id
    return _http_get("/actions", params)


@mcp.tool()
def action_graph(session_key: str | None = None, include_data: bool = True) -> dict[str, Any]:
    """Return the projected node/edge graph from /graph.

    With include_data=False node payloads are dropped, leaving only ids, types
    and edges.
    """
    payload = _http_get("/graph", {"session": session_key} if session_key else None)
    if not payload.get("ok") or include_data:
        return payload

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    data["nodes"] = [
        {"id": node.get("id"), "type": node.get("type")}
        for node in data.get("nodes", [])
        if isinstance(node, dict)
    ]
    payload["data"] = data
    return payload


if __name__ == "__main__":
    mcp.run()
