from __future__ import annotations


class SandboxError(RuntimeError):
    status_code = 500


class InvalidRequestError(SandboxError, ValueError):
    status_code = 400


class NoActiveSandboxError(SandboxError):
    status_code = 400

    def __init__(self, message: str = "No active sandbox") -> None:
        super().__init__(message)


class SandboxMismatchError(SandboxError):
    status_code = 409


class ProvisioningError(SandboxError):
    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step} failed: {message}")
        self.step = step


class ReadinessTimeoutError(ProvisioningError):
    def __init__(self, port: int, timeout_ms: int) -> None:
        super().__init__(
            "wait_for_dev_server",
            f"port {port} not accepting connections after {timeout_ms}ms",
        )
        self.port = port
