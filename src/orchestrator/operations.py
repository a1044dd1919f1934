"""Operations against the active sandbox: apply code, install packages, run commands.

apply-code and install-packages are async generators of event dicts; the
HTTP layer frames them as server-sent events.
"""

from __future__ import annotations

import logging
import posixpath
import re
import shlex
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from src.orchestrator.code_blocks import FileEdit, normalize_path
from src.orchestrator.errors import InvalidRequestError

if TYPE_CHECKING:  # pragma: no cover
    from src.orchestrator.provisioning import SandboxOrchestrator
    from src.orchestrator.session_store import SandboxSession
    from src.sandbox_backends.base import SandboxRuntime

logger = logging.getLogger(__name__)

_PACKAGE_RE = re.compile(
    r"^(@[a-z0-9][a-z0-9._~-]*/)?[a-z0-9][a-z0-9._~-]*(@[A-Za-z0-9.^~<>=*|+_-]+)?$"
)


def validate_packages(packages: Any) -> list[str]:
    if not isinstance(packages, list) or not packages:
        raise InvalidRequestError("'packages' must be a non-empty list")
    out: list[str] = []
    for raw in packages:
        if not isinstance(raw, str):
            raise InvalidRequestError(f"Invalid package name: {raw!r}")
        name = raw.strip()
        if not _PACKAGE_RE.match(name):
            raise InvalidRequestError(f"Invalid package name: {raw!r}")
        if name not in out:
            out.append(name)
    return out


def validate_command(command: Any) -> str:
    if not isinstance(command, str) or not command.strip():
        raise InvalidRequestError("'command' must be a non-empty string")
    return command.strip()


async def apply_code_events(
    orch: SandboxOrchestrator, sandbox: SandboxRuntime, edits: list[FileEdit]
) -> AsyncIterator[dict[str, Any]]:
    registry = orch.store.files
    workspace_dir = orch.settings.workspace_dir
    created: list[str] = []
    updated: list[str] = []
    errors: list[dict[str, str]] = []
    made_dirs: set[str] = {"", "src"}
    css_written = False

    yield {"type": "start", "message": "Applying code changes...", "total": len(edits)}

    for index, edit in enumerate(edits, start=1):
        try:
            rel = normalize_path(edit.path, workspace_dir=workspace_dir)
        except ValueError as exc:
            errors.append({"path": edit.path, "error": str(exc)})
            yield {
                "type": "file",
                "index": index,
                "path": edit.path,
                "success": False,
                "error": str(exc),
            }
            continue

        action = "updated" if rel in registry else "created"
        try:
            parent = posixpath.dirname(rel)
            if parent not in made_dirs:
                res = await orch.call(
                    sandbox.execute, f"mkdir -p {shlex.quote(orch.workspace_path(parent))}"
                )
                if res.exit_code != 0:
                    raise RuntimeError(
                        res.stderr.strip() or f"mkdir exited with code {res.exit_code}"
                    )
                made_dirs.add(parent)
            await orch.call(sandbox.write_file, orch.workspace_path(rel), edit.content)
        except Exception as exc:
            logger.warning("[apply-code] Failed to write %s: %s", rel, exc)
            errors.append({"path": rel, "error": str(exc)})
            yield {"type": "file", "index": index, "path": rel, "success": False, "error": str(exc)}
            continue

        registry.add(rel)
        (updated if action == "updated" else created).append(rel)
        if rel.endswith(".css"):
            css_written = True
        logger.info("[apply-code] %s %s", action, rel)
        yield {"type": "file", "index": index, "path": rel, "action": action, "success": True}

    if css_written:
        yield {"type": "status", "message": "Waiting for styles to rebuild..."}
        await orch.sleep_ms(orch.settings.css_rebuild_delay_ms)

    applied = len(created) + len(updated)
    yield {
        "type": "complete",
        "results": {
            "filesCreated": created,
            "filesUpdated": updated,
            "errors": errors,
        },
        "message": f"Applied {applied} of {len(edits)} file(s)",
    }


async def install_packages_events(
    orch: SandboxOrchestrator,
    session: SandboxSession,
    sandbox: SandboxRuntime,
    packages: list[str],
    *,
    restart_server: bool = True,
) -> AsyncIterator[dict[str, Any]]:
    yield {
        "type": "start",
        "message": f"Installing {len(packages)} package(s)...",
        "packages": packages,
    }

    command = orch.workspace_command(
        "npm install " + " ".join(shlex.quote(p) for p in packages)
    )
    try:
        res = await orch.call(sandbox.execute, command)
    except Exception as exc:
        logger.warning("[install-packages] npm install failed: %s", exc)
        yield {"type": "error", "message": str(exc) or "Failed to install packages"}
        return

    for stream, text in (("stdout", res.stdout), ("stderr", res.stderr)):
        for line in text.splitlines():
            if line.strip():
                yield {"type": "output", "stream": stream, "text": line}

    if res.exit_code != 0:
        yield {
            "type": "error",
            "message": f"npm install exited with code {res.exit_code}",
            "exitCode": res.exit_code,
        }
        return

    restarted = False
    if restart_server:
        yield {"type": "status", "message": "Restarting dev server..."}
        await orch.kill_quietly(sandbox, session.process_id)
        # Until a new process starts the session has no dev server.
        session.process_id = ""
        try:
            handle = await orch.call(sandbox.start_process, orch.dev_server_command())
            session.process_id = handle.id
            await orch.wait_for_dev_server(sandbox)
        except Exception as exc:
            logger.warning("[install-packages] Dev server restart failed: %s", exc)
            yield {"type": "error", "message": str(exc) or "Failed to restart dev server"}
            return
        restarted = True

    yield {
        "type": "complete",
        "message": f"Installed {', '.join(packages)}",
        "packages": packages,
        "restarted": restarted,
    }


async def run_command(
    orch: SandboxOrchestrator, sandbox: SandboxRuntime, command: str
) -> dict[str, Any]:
    logger.info("[run-command] %s", command)
    res = await orch.call(sandbox.execute, orch.workspace_command(command))
    return {
        "success": res.exit_code == 0,
        "output": res.output,
        "stdout": res.stdout,
        "stderr": res.stderr,
        "exitCode": res.exit_code,
    }
