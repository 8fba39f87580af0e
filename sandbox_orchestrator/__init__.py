"""Lifecycle and execution orchestration for ephemeral Vite preview sandboxes."""

from sandbox_orchestrator.config import SandboxSettings
from sandbox_orchestrator.errors import (
    BootstrapError,
    DevServerProbeError,
    NoActiveSandboxError,
    ProvisioningError,
    ReadError,
    RestartFailed,
    SandboxError,
    SandboxExpiredError,
    WriteError,
)

__all__ = [
    "BootstrapError",
    "DevServerProbeError",
    "NoActiveSandboxError",
    "ProvisioningError",
    "ReadError",
    "RestartFailed",
    "SandboxError",
    "SandboxExpiredError",
    "SandboxSettings",
    "WriteError",
]
