from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


@dataclass(frozen=True)
class ProcessHandle:
    id: str


class SandboxRuntime(Protocol):
    """One remote sandbox: a workspace filesystem plus process execution.

    Calls are blocking; async callers wrap them in `asyncio.to_thread`.
    Paths given to `write_file` are absolute paths inside the sandbox.
    """

    @property
    def id(self) -> str: ...

    def execute(self, command: str) -> ExecResult: ...

    def write_file(self, path: str, content: str) -> None: ...

    def start_process(self, command: str) -> ProcessHandle: ...

    def kill_process(self, process_id: str) -> None: ...

    def expose_port(self, port: int) -> str: ...


class SandboxProvider(Protocol):
    """Hands out sandbox handles keyed by session identifier."""

    def get_sandbox(self, sandbox_id: str) -> SandboxRuntime: ...
