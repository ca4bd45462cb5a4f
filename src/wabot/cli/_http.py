"""
Shared HTTP helpers for CLI commands that talk to the running server.
"""

import os
from typing import Dict, Optional

import httpx
import typer


def get_server_url() -> str:
    """Get the server URL from environment or default."""
    explicit = os.getenv("WABOT_SERVER_URL")
    if explicit:
        return explicit.rstrip("/")

    port = os.getenv("WABOT_PORT") or os.getenv("PORT") or "3000"
    host = os.getenv("WABOT_CLI_HOST", "localhost")
    return f"http://{host}:{port}"


def _headers() -> Dict[str, str]:
    api_key = os.getenv("WABOT_API_KEY")
    return {"X-API-Key": api_key} if api_key else {}


def _error_detail(response: httpx.Response) -> str:
    try:
        return response.json().get("error") or str(response.status_code)
    except Exception:
        return str(response.status_code)


def _request(method: str, path: str, data: Optional[dict] = None, timeout: float = 10.0) -> dict:
    url = f"{get_server_url()}{path}"
    try:
        resp = httpx.request(method, url, json=data, headers=_headers(), timeout=timeout)
        resp.raise_for_status()
        return resp.json()
    except httpx.ConnectError:
        typer.echo("❌ Cannot connect to wabot server. Is it running?")
        raise typer.Exit(code=1)
    except httpx.HTTPStatusError as e:
        typer.echo(f"❌ Server error: {_error_detail(e.response)}")
        raise typer.Exit(code=1)
    except Exception as e:
        typer.echo(f"❌ Error: {e}")
        raise typer.Exit(code=1)


def _http_get(path: str) -> dict:
    """Make a GET request to the running server."""
    return _request("GET", path)


def _http_post(path: str, data: dict = None) -> dict:
    """Make a POST request to the running server."""
    return _request("POST", path, data=data or {}, timeout=30.0)


def _http_put(path: str, data: dict = None) -> dict:
    """Make a PUT request to the running server."""
    return _request("PUT", path, data=data or {})


def _http_delete(path: str) -> dict:
    """Make a DELETE request to the running server."""
    return _request("DELETE", path)
