from __future__ import annotations

from typing import Any


class SandboxError(RuntimeError):
    pass


class NoActiveSandboxError(SandboxError):
    def __init__(self, message: str = "No active sandbox") -> None:
        super().__init__(message)


class ProvisioningError(SandboxError):
    pass


class SandboxExpiredError(SandboxError):
    def __init__(
        self,
        message: str = (
            "SANDBOX_EXPIRED: The sandbox has expired due to time limits. "
            "Please start a new session."
        ),
        *,
        sandbox_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.sandbox_id = sandbox_id


class WriteError(SandboxError):
    def __init__(self, message: str, *, path: str | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.path = path
        self.stderr = stderr


class ReadError(SandboxError):
    def __init__(self, message: str, *, path: str | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.path = path
        self.stderr = stderr


class BootstrapError(SandboxError):
    def __init__(self, message: str, *, step: str, result: Any = None) -> None:
        super().__init__(message)
        self.step = step
        self.result = result


class RestartFailed(SandboxError):
    pass


class DevServerProbeError(SandboxError):
    pass
