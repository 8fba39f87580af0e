from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable

    from sandbox_orchestrator.config import SandboxSettings
    from sandbox_orchestrator.sandbox_backends.base import SandboxProvider


def get_provider_factory(backend: str) -> Callable[[SandboxSettings], SandboxProvider]:
    name = (backend or "k8s").strip().lower()
    if name == "k8s":
        from .k8s_backend import K8sSandboxProvider

        return K8sSandboxProvider
    if name == "local":
        from .local_backend import LocalSandboxProvider

        return LocalSandboxProvider
    raise ValueError(f"Unknown sandbox provider: {backend!r} (expected 'k8s' or 'local')")


def create_provider(settings: SandboxSettings) -> SandboxProvider:
    return get_provider_factory(settings.backend)(settings)
