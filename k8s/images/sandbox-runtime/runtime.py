from __future__ import annotations

import asyncio
import base64
import contextlib
import os
import selectors
import shlex
import signal
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel


WORKSPACE_ROOT = Path(os.environ.get("SANDBOX_WORKSPACE_DIR") or "/workspace")

app = FastAPI(title="Sandbox Runtime", version="1.0.0")


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _exec_timeout_s() -> int:
    return max(1, _env_int("SANDBOX_EXEC_TIMEOUT_S", 600))


def _exec_max_output_chars() -> int:
    # Bound stdout/stderr so a noisy command can't OOM the runtime.
    return max(10_000, _env_int("SANDBOX_EXEC_MAX_OUTPUT_CHARS", 200_000))


def _preview_url_template() -> str:
    return (os.environ.get("SANDBOX_PREVIEW_URL_TEMPLATE") or "http://localhost:{port}").strip()


@dataclass
class _ManagedProcess:
    id: str
    command: list[str]
    proc: subprocess.Popen[bytes]
    log_path: str
    started_ts_ms: int = field(default_factory=lambda: int(time.time() * 1000))


_processes: dict[str, _ManagedProcess] = {}
_processes_lock = threading.Lock()


def _decode_output(b: bytes) -> str:
    return b.decode("utf-8", errors="replace")


def _kill_process_tree(proc: subprocess.Popen[bytes]) -> None:
    # `start_new_session=True` makes proc.pid the process group id on Linux.
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except Exception:
        with contextlib.suppress(Exception):
            proc.terminate()
    try:
        proc.wait(timeout=1.0)
        return
    except subprocess.TimeoutExpired:
        pass
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except Exception:
        with contextlib.suppress(Exception):
            proc.kill()


class _BoundedBuffer:
    def __init__(self, max_bytes: int) -> None:
        self.data = bytearray()
        self.max_bytes = max_bytes
        self.truncated = False

    def extend(self, chunk: bytes) -> None:
        room = self.max_bytes - len(self.data)
        if room <= 0:
            self.truncated = True
            return
        self.data.extend(chunk[:room])
        if len(chunk) > room:
            self.truncated = True

    def text(self, max_chars: int) -> str:
        out = _decode_output(bytes(self.data))
        if self.truncated:
            out = out[:max_chars] + "\n<output truncated>"
        return out


def _run_command_limited(
    *, args: list[str], cwd: str, timeout_s: int, max_output_chars: int
) -> tuple[str, str, int]:
    # Run without shell; capture stdout/stderr with truncation and a hard timeout.
    max_bytes = max_output_chars * 4  # worst-case utf-8 expansion
    proc: subprocess.Popen[bytes] = subprocess.Popen(
        args,
        cwd=cwd,
        env=os.environ.copy(),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,
    )
    assert proc.stdout is not None
    assert proc.stderr is not None

    sel = selectors.DefaultSelector()
    buffers = {"stdout": _BoundedBuffer(max_bytes), "stderr": _BoundedBuffer(max_bytes)}
    sel.register(proc.stdout, selectors.EVENT_READ, data="stdout")
    sel.register(proc.stderr, selectors.EVENT_READ, data="stderr")

    def _drain(timeout: float) -> None:
        for key, _ in sel.select(timeout=timeout):
            stream = key.fileobj
            try:
                chunk = stream.read1(8192)  # type: ignore[union-attr]
            except OSError:
                chunk = b""
            if not chunk:
                with contextlib.suppress(Exception):
                    sel.unregister(stream)
                with contextlib.suppress(Exception):
                    stream.close()  # type: ignore[union-attr]
                continue
            buffers[key.data].extend(chunk)

    deadline = time.monotonic() + float(timeout_s)
    timed_out = False
    while True:
        # Drain pipes until EOF and process exit.
        if proc.poll() is not None and not sel.get_map():
            break
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            timed_out = True
            _kill_process_tree(proc)
            # Grandchildren may hold the pipes open; drain briefly, then give up.
            drain_deadline = time.monotonic() + 1.0
            while sel.get_map() and time.monotonic() < drain_deadline:
                _drain(0.05)
            break
        if sel.get_map():
            _drain(min(0.2, remaining))
        else:
            time.sleep(min(0.05, remaining))

    sel.close()
    stdout = buffers["stdout"].text(max_output_chars)
    stderr = buffers["stderr"].text(max_output_chars)
    if timed_out:
        return stdout, stderr or f"Command timed out after {timeout_s}s", 124
    return stdout, stderr, int(proc.returncode or 0)


def _safe_path(path: str) -> Path:
    # Accept absolute paths inside the workspace and workspace-relative paths.
    p = path.strip()
    root = str(WORKSPACE_ROOT)
    if p == root or p.startswith(root + "/"):
        p = p[len(root) :]
    p = p.lstrip("/")
    if not p:
        raise ValueError("empty path")

    base = WORKSPACE_ROOT.resolve()
    full = (base / p).resolve()
    if base not in full.parents:
        raise ValueError(f"path escapes {root}")
    return full


class ExecRequest(BaseModel):
    command: str


class ExecResponse(BaseModel):
    stdout: str
    stderr: str
    exit_code: int


class WriteB64Request(BaseModel):
    path: str
    content_b64: str


class StartProcessRequest(BaseModel):
    command: str


class ExposePortRequest(BaseModel):
    port: int


@app.on_event("startup")
async def _on_startup() -> None:
    WORKSPACE_ROOT.mkdir(parents=True, exist_ok=True)


@app.on_event("shutdown")
async def _on_shutdown() -> None:
    with _processes_lock:
        procs = list(_processes.values())
        _processes.clear()
    for managed in procs:
        _kill_process_tree(managed.proc)


@app.get("/healthz")
async def healthz() -> dict:
    with _processes_lock:
        running = sum(1 for m in _processes.values() if m.proc.poll() is None)
    return {"status": "ok", "processes": running}


@app.post("/exec", response_model=ExecResponse)
async def exec_cmd(req: ExecRequest) -> ExecResponse:
    try:
        args = shlex.split(req.command)
        if not args:
            raise ValueError("empty command")
        stdout, stderr, code = await asyncio.to_thread(
            _run_command_limited,
            args=args,
            cwd=str(WORKSPACE_ROOT),
            timeout_s=_exec_timeout_s(),
            max_output_chars=_exec_max_output_chars(),
        )
        return ExecResponse(stdout=stdout, stderr=stderr, exit_code=code)
    except ValueError as exc:
        return ExecResponse(stdout="", stderr=f"Invalid command: {exc}", exit_code=2)
    except OSError as exc:
        return ExecResponse(stdout="", stderr=f"Failed to execute command: {exc}", exit_code=1)


@app.post("/write_b64")
async def write_b64(req: WriteB64Request) -> dict:
    try:
        full = _safe_path(req.path)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        payload = base64.b64decode(req.content_b64.encode("ascii"), validate=True)
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid base64")

    def _write_sync() -> None:
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_bytes(payload)

    await asyncio.to_thread(_write_sync)
    return {"ok": True, "path": str(req.path)}


@app.post("/processes")
async def start_process(req: StartProcessRequest) -> dict:
    try:
        args = shlex.split(req.command)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid command: {exc}")
    if not args:
        raise HTTPException(status_code=400, detail="Invalid command: empty command")

    process_id = uuid.uuid4().hex[:12]
    log_path = f"/tmp/sandbox-process-{process_id}.log"

    def _start_sync() -> subprocess.Popen[bytes]:
        with open(log_path, "ab") as logf:
            return subprocess.Popen(
                args,
                cwd=str(WORKSPACE_ROOT),
                env=os.environ.copy(),
                stdout=logf,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )

    try:
        proc = await asyncio.to_thread(_start_sync)
    except OSError as exc:
        raise HTTPException(status_code=500, detail=f"Failed to start process: {exc}")

    with _processes_lock:
        _processes[process_id] = _ManagedProcess(
            id=process_id, command=args, proc=proc, log_path=log_path
        )
    return {"id": process_id, "pid": proc.pid}


@app.get("/processes/{process_id}")
async def process_status(process_id: str) -> dict:
    with _processes_lock:
        managed = _processes.get(process_id)
    if managed is None:
        raise HTTPException(status_code=404, detail="process not found")
    rc = managed.proc.poll()
    return {
        "id": managed.id,
        "pid": managed.proc.pid,
        "running": rc is None,
        "exit_code": rc,
        "started_ts_ms": managed.started_ts_ms,
    }


@app.delete("/processes/{process_id}")
async def kill_process(process_id: str) -> dict:
    with _processes_lock:
        managed = _processes.pop(process_id, None)
    if managed is None:
        raise HTTPException(status_code=404, detail="process not found")
    await asyncio.to_thread(_kill_process_tree, managed.proc)
    return {"ok": True, "id": process_id}


@app.post("/ports")
async def expose_port(
    req: ExposePortRequest, x_sandbox_id: str | None = Header(default=None)
) -> dict:
    if not 1 <= req.port <= 65535:
        raise HTTPException(status_code=400, detail="invalid port")
    url = _preview_url_template().format(port=req.port, sandbox_id=x_sandbox_id or "")
    return {"url": url, "port": req.port}
