from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .base import SandboxProvider


def get_provider() -> SandboxProvider:
    from .http_runtime import HttpSandboxProvider

    return HttpSandboxProvider()
