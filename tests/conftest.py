import sys
from pathlib import Path

import pytest

# Ensure the repo root is on sys.path so tests can import the local `src/` package.
ROOT = str(Path(__file__).resolve().parents[1])
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from src.orchestrator.config import OrchestratorSettings  # noqa: E402
from src.orchestrator.provisioning import SandboxOrchestrator  # noqa: E402
from src.sandbox_backends.base import ExecResult, ProcessHandle  # noqa: E402


class FakeSandbox:
    """In-memory sandbox runtime recording every call."""

    def __init__(
        self,
        sandbox_id: str,
        *,
        exec_rules=None,
        fail_ops=None,
        probe_failures: int = 0,
        on_probe=None,
    ) -> None:
        self._id = sandbox_id
        # [(substring, ExecResult | Exception)], first match wins.
        self.exec_rules = list(exec_rules or [])
        # op name -> exception raised by that op.
        self.fail_ops = dict(fail_ops or {})
        self.probe_failures = probe_failures
        # Called on every port probe; lets tests charge time to a probe.
        self.on_probe = on_probe
        self.calls: list[tuple[str, object]] = []
        self.files: dict[str, str] = {}
        self.killed: list[str] = []
        self._next_pid = 0

    @property
    def id(self) -> str:
        return self._id

    def _maybe_fail(self, op: str) -> None:
        exc = self.fail_ops.get(op)
        if exc is not None:
            raise exc

    def execute(self, command: str) -> ExecResult:
        self.calls.append(("execute", command))
        self._maybe_fail("execute")
        for needle, outcome in self.exec_rules:
            if needle in command:
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        if 'require("net")' in command:
            if self.on_probe is not None:
                self.on_probe()
            if self.probe_failures > 0:
                self.probe_failures -= 1
                return ExecResult(stdout="", stderr="ECONNREFUSED", exit_code=1)
            return ExecResult(stdout="", stderr="", exit_code=0)
        if command.startswith("echo"):
            return ExecResult(stdout="Hello from sandbox\n", stderr="", exit_code=0)
        return ExecResult(stdout="ok\n", stderr="", exit_code=0)

    def write_file(self, path: str, content: str) -> None:
        self.calls.append(("write_file", path))
        self._maybe_fail("write_file")
        self.files[path] = content

    def start_process(self, command: str) -> ProcessHandle:
        self.calls.append(("start_process", command))
        self._maybe_fail("start_process")
        self._next_pid += 1
        return ProcessHandle(id=f"{self._id}-proc-{self._next_pid}")

    def kill_process(self, process_id: str) -> None:
        self.calls.append(("kill_process", process_id))
        self._maybe_fail("kill_process")
        self.killed.append(process_id)

    def expose_port(self, port: int) -> str:
        self.calls.append(("expose_port", port))
        self._maybe_fail("expose_port")
        return f"https://{port}-{self._id}.preview.test"

    def ops(self) -> list[str]:
        return [op for op, _ in self.calls]


class FakeProvider:
    def __init__(self) -> None:
        self.sandboxes: list[FakeSandbox] = []
        # Keyword arguments applied to every sandbox handed out from now on.
        self.sandbox_kwargs: dict = {}

    def get_sandbox(self, sandbox_id: str) -> FakeSandbox:
        sandbox = FakeSandbox(sandbox_id, **self.sandbox_kwargs)
        self.sandboxes.append(sandbox)
        return sandbox


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Keep a developer's shell/.env settings out of the unit tests.
    for name in (
        "CLOUDFLARE_WORKER_URL",
        "PROXY_TIMEOUT_S",
        "SANDBOX_RUNTIME_URL",
        "SANDBOX_WORKSPACE_DIR",
        "SANDBOX_READINESS_MODE",
        "SANDBOX_STARTUP_DELAY_MS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> OrchestratorSettings:
    return OrchestratorSettings(readiness_timeout_ms=2000, readiness_interval_ms=500)


@pytest.fixture
def orchestrator(fake_provider, sleeps, clock, settings) -> SandboxOrchestrator:
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        clock.advance(seconds)

    return SandboxOrchestrator(
        provider=fake_provider, settings=settings, sleep=_sleep, clock=clock
    )
