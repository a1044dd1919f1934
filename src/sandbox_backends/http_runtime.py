from __future__ import annotations

import base64
import logging
import shlex

import requests

from src.orchestrator import config
from src.sandbox_backends.base import ExecResult, ProcessHandle

logger = logging.getLogger(__name__)


def _shell_wrap(command: str) -> str:
    # The sandbox runtime executes argv, not a shell. Wrap everything in sh -lc.
    return f"sh -lc {shlex.quote(command)}"


class HttpSandboxRuntime:
    """Client for the sandbox runtime service.

    It uses the runtime API endpoints:
      - POST   /exec
      - POST   /write_b64
      - POST   /processes
      - DELETE /processes/{id}
      - POST   /ports

    Every request carries the sandbox id in the `X-Sandbox-Id` header.
    """

    def __init__(
        self,
        *,
        sandbox_id: str,
        base_url: str,
        session: requests.Session | None = None,
        request_timeout_s: int = 60,
        exec_timeout_s: int = 600,
    ) -> None:
        self._sandbox_id = sandbox_id
        self._base_url = base_url.rstrip("/")
        self._http = session or requests.Session()
        self._request_timeout_s = request_timeout_s
        self._exec_timeout_s = exec_timeout_s

    @property
    def id(self) -> str:
        return self._sandbox_id

    def execute(self, command: str) -> ExecResult:
        resp = self._request(
            "POST",
            "exec",
            json={"command": _shell_wrap(command)},
            timeout=self._exec_timeout_s,
        )
        data = resp.json()
        return ExecResult(
            stdout=str(data.get("stdout") or ""),
            stderr=str(data.get("stderr") or ""),
            exit_code=int(
                data.get("exit_code") if data.get("exit_code") is not None else -1
            ),
        )

    def write_file(self, path: str, content: str) -> None:
        content_b64 = base64.b64encode(content.encode("utf-8")).decode("ascii")
        self._request("POST", "write_b64", json={"path": path, "content_b64": content_b64})

    def start_process(self, command: str) -> ProcessHandle:
        resp = self._request(
            "POST", "processes", json={"command": _shell_wrap(command)}
        )
        data = resp.json()
        process_id = str(data.get("id") or "")
        if not process_id:
            raise RuntimeError(f"Sandbox runtime returned no process id: {data!r}")
        return ProcessHandle(id=process_id)

    def kill_process(self, process_id: str) -> None:
        try:
            self._request("DELETE", f"processes/{process_id}")
        except requests.HTTPError as exc:
            status = getattr(getattr(exc, "response", None), "status_code", None)
            if status == 404:
                logger.info("Process %s already gone in sandbox %s", process_id, self._sandbox_id)
                return
            raise

    def expose_port(self, port: int) -> str:
        resp = self._request("POST", "ports", json={"port": int(port)})
        url = str(resp.json().get("url") or "")
        if not url:
            raise RuntimeError(f"Sandbox runtime returned no URL for port {port}")
        return url

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self._base_url}/{path.lstrip('/')}"
        timeout = kwargs.pop("timeout", self._request_timeout_s)
        headers = dict(kwargs.pop("headers", None) or {})
        headers["X-Sandbox-Id"] = self._sandbox_id
        resp = self._http.request(method, url, timeout=timeout, headers=headers, **kwargs)
        resp.raise_for_status()
        return resp


class HttpSandboxProvider:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url or config.runtime_base_url()
        self._http = session or requests.Session()
        self._request_timeout_s = config.runtime_request_timeout_s()
        self._exec_timeout_s = config.runtime_exec_timeout_s()

    def runtime_url(self, sandbox_id: str) -> str:
        if "{sandbox_id}" in self._base_url:
            return self._base_url.replace("{sandbox_id}", sandbox_id)
        return self._base_url

    def get_sandbox(self, sandbox_id: str) -> HttpSandboxRuntime:
        return HttpSandboxRuntime(
            sandbox_id=sandbox_id,
            base_url=self.runtime_url(sandbox_id),
            session=self._http,
            request_timeout_s=self._request_timeout_s,
            exec_timeout_s=self._exec_timeout_s,
        )
