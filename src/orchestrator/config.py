from __future__ import annotations

import os
from dataclasses import dataclass


def _env_str(name: str, default: str) -> str:
    return (os.environ.get(name) or default).strip() or default


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def runtime_base_url() -> str:
    # May contain a `{sandbox_id}` placeholder for per-sandbox runtime hosts.
    return _env_str("SANDBOX_RUNTIME_URL", "http://localhost:8888").rstrip("/")


def runtime_request_timeout_s() -> int:
    return max(1, _env_int("SANDBOX_REQUEST_TIMEOUT_S", 60))


def runtime_exec_timeout_s() -> int:
    return max(1, _env_int("SANDBOX_EXEC_TIMEOUT_S", 600))


@dataclass(frozen=True)
class OrchestratorSettings:
    workspace_dir: str = "/workspace"
    timeout_minutes: int = 15
    dev_server_port: int = 5173
    startup_delay_ms: int = 7000
    css_rebuild_delay_ms: int = 2000
    # "poll" probes the dev server port; "delay" sleeps startup_delay_ms.
    readiness_mode: str = "poll"
    readiness_timeout_ms: int = 60_000
    readiness_interval_ms: int = 500

    @property
    def timeout_ms(self) -> int:
        return self.timeout_minutes * 60 * 1000

    @classmethod
    def from_env(cls) -> OrchestratorSettings:
        mode = _env_str("SANDBOX_READINESS_MODE", "poll").lower()
        if mode not in ("poll", "delay"):
            mode = "poll"
        return cls(
            workspace_dir=_env_str("SANDBOX_WORKSPACE_DIR", "/workspace").rstrip("/")
            or "/workspace",
            timeout_minutes=max(1, _env_int("SANDBOX_TIMEOUT_MINUTES", 15)),
            dev_server_port=_env_int("SANDBOX_DEV_SERVER_PORT", 5173),
            startup_delay_ms=max(0, _env_int("SANDBOX_STARTUP_DELAY_MS", 7000)),
            css_rebuild_delay_ms=max(0, _env_int("SANDBOX_CSS_REBUILD_DELAY_MS", 2000)),
            readiness_mode=mode,
            readiness_timeout_ms=max(0, _env_int("SANDBOX_READINESS_TIMEOUT_MS", 60_000)),
            readiness_interval_ms=max(50, _env_int("SANDBOX_READINESS_INTERVAL_MS", 500)),
        )
