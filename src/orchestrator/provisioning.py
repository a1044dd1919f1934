from __future__ import annotations

import asyncio
import logging
import shlex
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

from src.orchestrator.config import OrchestratorSettings
from src.orchestrator.errors import (
    NoActiveSandboxError,
    ProvisioningError,
    ReadinessTimeoutError,
    SandboxError,
    SandboxMismatchError,
)
from src.orchestrator.scaffold import INITIAL_FILES, MANIFEST_PATH, scaffold_files
from src.orchestrator.session_store import SandboxSession, SessionStore

if TYPE_CHECKING:  # pragma: no cover
    from src.sandbox_backends.base import (
        ExecResult,
        ProcessHandle,
        SandboxProvider,
        SandboxRuntime,
    )

logger = logging.getLogger(__name__)

T = TypeVar("T")

CREATED_MESSAGE = "Cloudflare sandbox created and Vite React app initialized"


def port_probe_command(port: int) -> str:
    # node is always present once npm is; exit 0 iff the port accepts a connection.
    script = (
        f'require("net").connect({{port:{int(port)},host:"127.0.0.1"}})'
        '.on("connect",()=>process.exit(0))'
        '.on("error",()=>process.exit(1))'
    )
    return f"node -e {shlex.quote(script)}"


class SandboxOrchestrator:
    """Drives the single active sandbox through provisioning and teardown."""

    def __init__(
        self,
        *,
        provider: SandboxProvider,
        settings: OrchestratorSettings | None = None,
        store: SessionStore | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.settings = settings or OrchestratorSettings.from_env()
        self.store = store or SessionStore(timeout_s=self.settings.timeout_ms / 1000)
        self._sleep = sleep
        self._clock = clock
        self._last_id_ms = 0

    # ---- helpers

    async def call(self, fn: Callable[..., T], *args: Any) -> T:
        # Runtime clients block on network I/O.
        return await asyncio.to_thread(fn, *args)

    async def sleep_ms(self, ms: int) -> None:
        if ms > 0:
            await self._sleep(ms / 1000)

    def workspace_path(self, rel_path: str) -> str:
        return f"{self.settings.workspace_dir}/{rel_path.lstrip('/')}"

    def workspace_command(self, command: str) -> str:
        return f"cd {shlex.quote(self.settings.workspace_dir)} && {command}"

    def dev_server_command(self) -> str:
        return self.workspace_command("npm run dev")

    def _new_session_id(self) -> str:
        ms = int(time.time() * 1000)
        if ms <= self._last_id_ms:
            ms = self._last_id_ms + 1
        self._last_id_ms = ms
        return f"sandbox-{ms}"

    async def _step(self, name: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await self.call(fn, *args)
        except SandboxError:
            raise
        except Exception as exc:
            raise ProvisioningError(name, str(exc) or type(exc).__name__) from exc

    async def _exec_checked(
        self, name: str, sandbox: SandboxRuntime, command: str
    ) -> ExecResult:
        res = await self._step(name, sandbox.execute, command)
        if res.exit_code != 0:
            detail = res.stderr.strip() or res.stdout.strip() or f"exit code {res.exit_code}"
            raise ProvisioningError(name, detail)
        return res

    async def kill_quietly(self, sandbox: SandboxRuntime | None, process_id: str) -> bool:
        if sandbox is None or not process_id:
            return False
        try:
            await self.call(sandbox.kill_process, process_id)
            return True
        except Exception:
            logger.warning(
                "Could not kill process %s in sandbox %s", process_id, sandbox.id, exc_info=True
            )
            return False

    # ---- create

    async def create(self) -> dict[str, Any]:
        async with self.store.creation_lock:
            return await self._create_locked()

    async def _create_locked(self) -> dict[str, Any]:
        logger.info("[create-sandbox] Creating sandbox...")

        previous, previous_sandbox = self.store.detach_active()
        if previous is not None:
            logger.info("[create-sandbox] Cleaning up existing sandbox %s", previous.session_id)
            await self.kill_quietly(previous_sandbox, previous.process_id)

        self.store.files.clear()

        session_id = self._new_session_id()
        logger.info("[create-sandbox] Creating sandbox with session ID: %s", session_id)
        sandbox = self.provider.get_sandbox(session_id)

        started: ProcessHandle | None = None
        try:
            probe = await self._exec_checked(
                "sanity_probe", sandbox, 'echo "Hello from sandbox"'
            )
            logger.info("[create-sandbox] Test result: %r", probe.stdout.strip())

            await self._exec_checked(
                "scaffold_directories",
                sandbox,
                f"mkdir -p {shlex.quote(self.workspace_path('src'))}",
            )

            files = scaffold_files(port=self.settings.dev_server_port)
            for path, content in files:
                step = "write_manifest" if path == MANIFEST_PATH else "write_scaffold"
                await self._step(step, sandbox.write_file, self.workspace_path(path), content)
                logger.info("[create-sandbox] Wrote %s", path)

            logger.info("[create-sandbox] Installing dependencies...")
            await self._exec_checked(
                "install_dependencies", sandbox, self.workspace_command("npm install")
            )

            logger.info("[create-sandbox] Starting dev server...")
            started = await self._step(
                "start_dev_server", sandbox.start_process, self.dev_server_command()
            )

            await self.wait_for_dev_server(sandbox)

            url = await self._step(
                "expose_port", sandbox.expose_port, self.settings.dev_server_port
            )
        except Exception:
            if started is not None:
                await self.kill_quietly(sandbox, started.id)
            raise

        session = SandboxSession(session_id=session_id, url=url, process_id=started.id)
        self.store.commit(session, sandbox)
        self.store.files.update(INITIAL_FILES)

        logger.info("[create-sandbox] Sandbox ready at: %s", url)
        return {
            "success": True,
            "sandboxId": session_id,
            "url": url,
            "message": CREATED_MESSAGE,
        }

    async def wait_for_dev_server(self, sandbox: SandboxRuntime) -> None:
        s = self.settings
        if s.readiness_mode == "delay":
            await self.sleep_ms(s.startup_delay_ms)
            return

        probe = port_probe_command(s.dev_server_port)
        interval_s = max(1, s.readiness_interval_ms) / 1000
        # Probe time counts against the budget; no probe starts after the deadline.
        deadline = self._clock() + s.readiness_timeout_ms / 1000
        probes = 0
        while True:
            probes += 1
            res = await self._step("wait_for_dev_server", sandbox.execute, probe)
            if res.exit_code == 0:
                logger.info(
                    "[create-sandbox] Dev server accepting connections after %d probe(s)",
                    probes,
                )
                return
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._sleep(min(interval_s, remaining))
        raise ReadinessTimeoutError(s.dev_server_port, s.readiness_timeout_ms)

    # ---- session access

    async def require_active(
        self, sandbox_id: str | None = None
    ) -> tuple[SandboxSession, SandboxRuntime]:
        session = self.store.active()
        if session is not None and self.store.is_expired(session):
            logger.info("Sandbox session %s expired", session.session_id)
            await self._teardown(session.session_id)
            session = None
        if session is None:
            raise NoActiveSandboxError()
        if sandbox_id and sandbox_id != session.session_id:
            raise SandboxMismatchError(
                f"Sandbox {sandbox_id} is not the active sandbox ({session.session_id})"
            )
        sandbox = self.store.sandbox_for(session.session_id)
        if sandbox is None:
            raise NoActiveSandboxError()
        self.store.touch(session.session_id)
        return session, sandbox

    async def _teardown(self, session_id: str) -> bool:
        session, sandbox = self.store.destroy(session_id)
        self.store.files.clear()
        if session is None:
            return False
        await self.kill_quietly(sandbox, session.process_id)
        return True

    async def kill(self) -> dict[str, Any]:
        async with self.store.creation_lock:
            session = self.store.active()
            killed = False
            if session is not None:
                logger.info("[kill-sandbox] Killing sandbox %s", session.session_id)
                killed = await self._teardown(session.session_id)
            return {"success": True, "sandboxKilled": killed}

    async def status(self) -> dict[str, Any]:
        session = self.store.active()
        if session is not None and self.store.is_expired(session):
            await self._teardown(session.session_id)
            session = None
        return {
            "active": session is not None,
            "sandbox": session.to_public() if session is not None else None,
            "files": self.store.files.snapshot() if session is not None else [],
        }
