from __future__ import annotations

import json
import logging
import traceback
from collections.abc import AsyncIterator
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from src.orchestrator.code_blocks import collect_edits
from src.orchestrator.errors import InvalidRequestError, SandboxError
from src.orchestrator.operations import (
    apply_code_events,
    install_packages_events,
    run_command,
    validate_command,
    validate_packages,
)
from src.orchestrator.provisioning import SandboxOrchestrator

# Load local env after imports to keep linting (E402) happy.
load_dotenv()

app = FastAPI(title="Sandbox Orchestrator")
logger = logging.getLogger(__name__)

_orchestrator: SandboxOrchestrator | None = None

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def _get_orchestrator() -> SandboxOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        from src.sandbox_backends.factory import get_provider

        _orchestrator = SandboxOrchestrator(provider=get_provider())
    return _orchestrator


# CORSMiddleware only decorates requests carrying an Origin and rejects
# unknown preflights; these headers go on every response.
@app.middleware("http")
async def _cors(request: Request, call_next) -> Response:
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=CORS_HEADERS)
    response = await call_next(request)
    for key, value in CORS_HEADERS.items():
        response.headers[key] = value
    return response


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except ValueError as exc:
        raise InvalidRequestError(f"Invalid JSON body: {exc}") from exc
    if not isinstance(body, dict):
        raise InvalidRequestError("JSON body must be an object")
    return body


def _error_response(exc: Exception, *, fallback: str) -> JSONResponse:
    status = exc.status_code if isinstance(exc, SandboxError) else 500
    if status >= 500:
        details: str | None = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
    else:
        details = type(exc).__name__
    return JSONResponse(
        {"error": str(exc) or fallback, "details": details}, status_code=status
    )


def _sse(events: AsyncIterator[dict[str, Any]]) -> StreamingResponse:
    async def _frames() -> AsyncIterator[bytes]:
        try:
            async for event in events:
                yield f"data: {json.dumps(event)}\n\n".encode("utf-8")
        except Exception as exc:
            # Status and headers are already sent; report the failure in-band.
            logger.exception("Event stream failed")
            payload = {"type": "error", "message": str(exc) or type(exc).__name__}
            yield f"data: {json.dumps(payload)}\n\n".encode("utf-8")

    return StreamingResponse(
        _frames(), media_type="text/event-stream", headers=SSE_HEADERS
    )


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/sandbox/create")
async def sandbox_create() -> JSONResponse:
    try:
        result = await _get_orchestrator().create()
    except Exception as exc:
        logger.error("[create-sandbox] Error: %s", exc, exc_info=True)
        return _error_response(exc, fallback="Failed to create sandbox")
    return JSONResponse(result)


@app.post("/sandbox/apply-code")
async def sandbox_apply_code(request: Request) -> Response:
    orch = _get_orchestrator()
    try:
        body = await _json_body(request)
        response_text = body.get("response")
        if response_text is not None and not isinstance(response_text, str):
            raise InvalidRequestError("'response' must be a string")
        files = body.get("files")
        if files is not None and not isinstance(files, list):
            raise InvalidRequestError("'files' must be a list")
        edits = collect_edits(
            files=files,
            response=response_text,
            workspace_dir=orch.settings.workspace_dir,
        )
        if not edits:
            raise InvalidRequestError("No file edits provided")
        _session, sandbox = await orch.require_active(body.get("sandboxId"))
    except Exception as exc:
        logger.warning("[apply-code] Rejected: %s", exc)
        return _error_response(exc, fallback="Failed to apply code")

    logger.info("[apply-code] Applying %d edit(s)", len(edits))
    return _sse(apply_code_events(orch, sandbox, edits))


@app.post("/sandbox/install-packages")
async def sandbox_install_packages(request: Request) -> Response:
    orch = _get_orchestrator()
    try:
        body = await _json_body(request)
        packages = validate_packages(body.get("packages"))
        session, sandbox = await orch.require_active(body.get("sandboxId"))
    except Exception as exc:
        logger.warning("[install-packages] Rejected: %s", exc)
        return _error_response(exc, fallback="Failed to install packages")

    restart = body.get("restartServer", True) is not False
    logger.info("[install-packages] Installing %s", packages)
    return _sse(
        install_packages_events(orch, session, sandbox, packages, restart_server=restart)
    )


@app.post("/sandbox/run-command")
async def sandbox_run_command(request: Request) -> JSONResponse:
    orch = _get_orchestrator()
    try:
        body = await _json_body(request)
        command = validate_command(body.get("command"))
        _session, sandbox = await orch.require_active(body.get("sandboxId"))
        result = await run_command(orch, sandbox, command)
    except Exception as exc:
        logger.warning("[run-command] Error: %s", exc)
        return _error_response(exc, fallback="Failed to run command")
    return JSONResponse(result)


@app.get("/sandbox/status")
async def sandbox_status() -> JSONResponse:
    return JSONResponse(await _get_orchestrator().status())


@app.post("/sandbox/kill")
async def sandbox_kill() -> JSONResponse:
    try:
        result = await _get_orchestrator().kill()
    except Exception as exc:
        logger.error("[kill-sandbox] Error: %s", exc, exc_info=True)
        return _error_response(exc, fallback="Failed to kill sandbox")
    return JSONResponse(result)
