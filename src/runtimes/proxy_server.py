"""Client-facing proxy: forwards `/api/*` calls to the sandbox orchestrator.

Each route POSTs its JSON body to `CLOUDFLARE_WORKER_URL` + a fixed
`/sandbox/*` path. Event-stream responses are relayed as they arrive; any
other response is parsed as JSON and re-emitted. Every failure becomes
HTTP 500 `{error, details}`.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from typing import Any

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

# Load local env after imports to keep linting (E402) happy.
load_dotenv()

app = FastAPI(title="Sandbox Proxy")
logger = logging.getLogger(__name__)

DEFAULT_WORKER_URL = "https://open-lovable-sandbox.your-subdomain.workers.dev"
ERROR_DETAILS = "Error communicating with Cloudflare Worker"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


class UpstreamError(RuntimeError):
    pass


def _worker_url() -> str:
    return (
        (os.environ.get("CLOUDFLARE_WORKER_URL") or DEFAULT_WORKER_URL).strip().rstrip("/")
    )


def _timeout() -> httpx.Timeout:
    # No timeout unless configured.
    raw = (os.environ.get("PROXY_TIMEOUT_S") or "").strip()
    try:
        seconds = float(raw) if raw else None
    except ValueError:
        seconds = None
    return httpx.Timeout(seconds)


def _make_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=_timeout())


async def _read_json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw.strip():
        return {}
    return await request.json()


async def _close(upstream: httpx.Response, client: httpx.AsyncClient) -> None:
    await upstream.aclose()
    await client.aclose()


async def _relay(
    name: str, upstream: httpx.Response, client: httpx.AsyncClient
) -> AsyncIterator[bytes]:
    try:
        async for chunk in upstream.aiter_bytes():
            yield chunk
    except Exception as exc:
        logger.error("[%s] Upstream stream failed: %s", name, exc)
        raise
    finally:
        await _close(upstream, client)


def _error_envelope(name: str, exc: Exception, fallback_error: str) -> JSONResponse:
    logger.error("[%s] Proxy error: %s", name, exc)
    return JSONResponse(
        {"error": str(exc) or fallback_error, "details": ERROR_DETAILS},
        status_code=500,
    )


async def forward(
    name: str,
    sub_path: str,
    payload: Any,
    *,
    method: str = "POST",
    allow_stream: bool = False,
    fallback_error: str,
) -> Response:
    logger.info("[%s] Proxying to Cloudflare Worker...", name)
    client = _make_client()
    upstream: httpx.Response | None = None
    streaming = False
    try:
        req = client.build_request(
            method,
            f"{_worker_url()}{sub_path}",
            json=payload if method != "GET" else None,
            headers={"Content-Type": "application/json"},
        )
        upstream = await client.send(req, stream=True)
        if not upstream.is_success:
            raise UpstreamError(f"Worker response not ok: {upstream.status_code}")

        content_type = upstream.headers.get("content-type") or ""
        if allow_stream and "text/event-stream" in content_type:
            streaming = True
            return StreamingResponse(
                _relay(name, upstream, client),
                headers=SSE_HEADERS,
                media_type="text/event-stream",
                # Covers a client that goes away before the relay starts.
                background=BackgroundTask(_close, upstream, client),
            )

        await upstream.aread()
        data = upstream.json()
        logger.info("[%s] Received response from worker", name)
        return JSONResponse(data)
    except Exception as exc:
        return _error_envelope(name, exc, fallback_error)
    finally:
        if not streaming:
            if upstream is not None:
                await upstream.aclose()
            await client.aclose()


async def _forward_body(
    request: Request,
    name: str,
    sub_path: str,
    *,
    allow_stream: bool = False,
    fallback_error: str,
) -> Response:
    try:
        body = await _read_json_body(request)
    except Exception as exc:
        return _error_envelope(name, exc, fallback_error)
    return await forward(
        name, sub_path, body, allow_stream=allow_stream, fallback_error=fallback_error
    )


@app.post("/api/create-ai-sandbox")
async def create_ai_sandbox() -> Response:
    # Creation takes no input; the worker always gets an empty object.
    return await forward(
        "create-ai-sandbox",
        "/sandbox/create",
        {},
        fallback_error="Failed to create sandbox",
    )


@app.post("/api/apply-ai-code-stream")
async def apply_ai_code_stream(request: Request) -> Response:
    return await _forward_body(
        request,
        "apply-ai-code-stream",
        "/sandbox/apply-code",
        allow_stream=True,
        fallback_error="Failed to apply code stream",
    )


@app.post("/api/install-packages")
async def install_packages(request: Request) -> Response:
    return await _forward_body(
        request,
        "install-packages",
        "/sandbox/install-packages",
        allow_stream=True,
        fallback_error="Failed to install packages",
    )


@app.post("/api/run-command")
async def run_command(request: Request) -> Response:
    return await _forward_body(
        request,
        "run-command",
        "/sandbox/run-command",
        fallback_error="Failed to run command",
    )


@app.get("/api/sandbox-status")
async def sandbox_status() -> Response:
    return await forward(
        "sandbox-status",
        "/sandbox/status",
        None,
        method="GET",
        fallback_error="Failed to get sandbox status",
    )


@app.post("/api/kill-sandbox")
async def kill_sandbox() -> Response:
    return await forward(
        "kill-sandbox",
        "/sandbox/kill",
        {},
        fallback_error="Failed to kill sandbox",
    )
