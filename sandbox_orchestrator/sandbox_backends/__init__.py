"""Sandbox provider interface, shared behavior, and backend implementations."""

from sandbox_orchestrator.sandbox_backends.base import (
    BaseSandboxProvider,
    CommandResult,
    SandboxInfo,
    SandboxProvider,
    materialize_output,
)
from sandbox_orchestrator.sandbox_backends.factory import (
    create_provider,
    get_provider_factory,
)
from sandbox_orchestrator.sandbox_backends.file_write import (
    TwoTierFileWriter,
    build_fallback_write_command,
    escape_shell_content,
)

__all__ = [
    "BaseSandboxProvider",
    "CommandResult",
    "SandboxInfo",
    "SandboxProvider",
    "TwoTierFileWriter",
    "build_fallback_write_command",
    "create_provider",
    "escape_shell_content",
    "get_provider_factory",
    "materialize_output",
]
