"""Local sandbox provider: one temporary directory per sandbox, commands via subprocess.

Intended for development and tests. Nothing is isolated beyond the working
directory; the dev server runs as a child of the host.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import tempfile
import time
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sandbox_orchestrator.sandbox_backends.base import (
    BaseSandboxProvider,
    CommandResult,
    SandboxInfo,
    materialize_output,
    utc_now,
)

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Sequence

    from sandbox_orchestrator.config import SandboxSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _LocalSandbox:
    root: Path
    deadline: float


class LocalSandboxProvider(BaseSandboxProvider):
    provider_name = "local"

    def __init__(
        self,
        settings: SandboxSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(settings, sleep=sleep)
        self._clock = clock

    @property
    def root_dir(self) -> str:
        if self._handle is None:
            return super().root_dir
        return str(self._handle.root)

    # ---- Backend hooks

    def _open(self) -> tuple[Any, SandboxInfo]:
        base_dir = self.settings.local_base_dir or None
        if base_dir:
            Path(base_dir).mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix="sandbox-", dir=base_dir)).resolve()
        handle = _LocalSandbox(
            root=root, deadline=self._clock() + self.settings.session_timeout_s
        )
        info = SandboxInfo(
            sandbox_id=root.name,
            url=f"http://localhost:{self.settings.preview_port}/",
            provider=self.provider_name,
            created_at=utc_now(),
        )
        return handle, info

    def _close(self, handle: Any) -> None:
        pid = self.dev_server.pid
        if pid:
            with suppress(ProcessLookupError, PermissionError):
                os.kill(pid, signal.SIGTERM)
        shutil.rmtree(handle.root, ignore_errors=True)

    def _exec(self, argv: Sequence[str], *, cwd: str) -> CommandResult:
        self._check_deadline()
        proc = subprocess.run(
            list(argv),
            cwd=cwd,
            env=os.environ.copy(),
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=self.settings.exec_timeout_s,
            check=False,
        )
        return CommandResult(
            stdout=materialize_output(proc.stdout),
            stderr=materialize_output(proc.stderr),
            exit_code=proc.returncode,
        )

    def _bulk_write(self, full_path: str, payload: bytes) -> None:
        self._check_deadline()
        target = Path(full_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(payload)

    def _is_expired_error(self, exc: BaseException) -> bool:
        if not isinstance(exc, FileNotFoundError) or self._handle is None:
            return False
        return not self._handle.root.exists()

    def _describe_failure(self, exc: BaseException) -> tuple[int, str]:
        if isinstance(exc, subprocess.TimeoutExpired):
            return 124, f"Command timed out after {self.settings.exec_timeout_s}s"
        return super()._describe_failure(exc)

    def _check_deadline(self) -> None:
        handle = self._handle
        if handle is None or self._clock() < handle.deadline:
            return
        if handle.root.exists():
            logger.info("Local sandbox %s reached its session timeout", handle.root.name)
            shutil.rmtree(handle.root, ignore_errors=True)
        raise FileNotFoundError(f"Sandbox directory {handle.root} has been reclaimed")
