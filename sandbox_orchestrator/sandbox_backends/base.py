from __future__ import annotations

import logging
import posixpath
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

from sandbox_orchestrator.dev_server import DevServerSupervisor
from sandbox_orchestrator.errors import (
    NoActiveSandboxError,
    ProvisioningError,
    ReadError,
    RestartFailed,
)
from sandbox_orchestrator.sandbox_backends.file_write import TwoTierFileWriter

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Sequence

    from sandbox_orchestrator.config import SandboxSettings

logger = logging.getLogger(__name__)

LIST_EXCLUDED_DIRS = ("node_modules", ".git", ".next", "dist", "build")


@dataclass(frozen=True)
class SandboxInfo:
    sandbox_id: str
    url: str
    provider: str
    created_at: datetime


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @classmethod
    def from_failure(cls, message: str, *, exit_code: int = 1) -> CommandResult:
        return cls(stdout="", stderr=message, exit_code=exit_code or 1)


def materialize_output(value: Any) -> str:
    """Normalize stdout/stderr as delivered by a backend into plain text.

    Backends hand back str, bytes, None, or a zero-arg callable producing one of
    those. Anything that cannot be materialized becomes "".
    """
    try:
        if callable(value):
            value = value()
        if value is None:
            return ""
        if isinstance(value, bytes | bytearray):
            return bytes(value).decode("utf-8", errors="replace")
        return str(value)
    except Exception:
        return ""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SandboxProvider(Protocol):
    """Uniform sandbox operations, independent of the backend that provides them."""

    dev_server: DevServerSupervisor

    def create_sandbox(self) -> SandboxInfo: ...

    def run_command(self, command: str) -> CommandResult: ...

    def write_file(self, path: str, content: str) -> None: ...

    def read_file(self, path: str) -> str: ...

    def list_files(self, directory: str = ".") -> list[str]: ...

    def install_packages(self, names: Sequence[str]) -> CommandResult: ...

    def get_sandbox_info(self) -> SandboxInfo | None: ...

    def get_sandbox_url(self) -> str | None: ...

    def terminate(self) -> None: ...

    def is_alive(self) -> bool: ...

    @property
    def tracked_files(self) -> frozenset[str]: ...

    def untrack_file(self, path: str) -> None: ...


class BaseSandboxProvider(ABC):
    """Shared command-level behavior on top of five backend hooks.

    Subclasses implement:
      - _open(): provision an environment, return (handle, SandboxInfo)
      - _close(handle): tear the environment down
      - _exec(argv, cwd): run argv remotely, return a CommandResult (may raise)
      - _bulk_write(full_path, payload): native file transfer (may raise)
      - _is_expired_error(exc): True if exc confirms the environment is gone

    Only the handle, the SandboxInfo and the tracked file set live here.
    """

    provider_name = ""

    def __init__(
        self,
        settings: SandboxSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self._handle: Any = None
        self._info: SandboxInfo | None = None
        self._tracked_files: set[str] = set()
        self._writer = TwoTierFileWriter(
            bulk_write=self._bulk_write,
            run=self._run,
            is_expired=self._is_expired_error,
        )
        self.dev_server = DevServerSupervisor(self, settings, sleep=sleep)

    # ---- Backend hooks

    @abstractmethod
    def _open(self) -> tuple[Any, SandboxInfo]: ...

    @abstractmethod
    def _close(self, handle: Any) -> None: ...

    @abstractmethod
    def _exec(self, argv: Sequence[str], *, cwd: str) -> CommandResult: ...

    @abstractmethod
    def _bulk_write(self, full_path: str, payload: bytes) -> None: ...

    @abstractmethod
    def _is_expired_error(self, exc: BaseException) -> bool: ...

    def _describe_failure(self, exc: BaseException) -> tuple[int, str]:
        return 1, str(exc) or type(exc).__name__

    # ---- Lifecycle

    @property
    def root_dir(self) -> str:
        return posixpath.normpath(self.settings.root_dir)

    def create_sandbox(self) -> SandboxInfo:
        if self._handle is not None:
            logger.info(
                "Terminating existing %s sandbox before creating a new one",
                self.provider_name,
            )
            self.terminate()

        self._tracked_files.clear()
        self.dev_server.reset()
        try:
            handle, info = self._open()
        except ProvisioningError:
            raise
        except Exception as exc:
            raise ProvisioningError(
                f"Failed to create {self.provider_name} sandbox: {exc}"
            ) from exc

        self._handle = handle
        self._info = info
        logger.info(
            "Created %s sandbox %s (%s)", self.provider_name, info.sandbox_id, info.url
        )
        return info

    def terminate(self) -> None:
        handle = self._handle
        sandbox_id = self._info.sandbox_id if self._info else None
        self._handle = None
        self._info = None
        self._tracked_files.clear()
        self.dev_server.mark_stopped()
        if handle is None:
            return
        try:
            self._close(handle)
            logger.info("Terminated %s sandbox %s", self.provider_name, sandbox_id)
        except Exception:
            logger.warning(
                "Failed to terminate %s sandbox %s",
                self.provider_name,
                sandbox_id,
                exc_info=True,
            )

    def is_alive(self) -> bool:
        return self._handle is not None

    def get_sandbox_info(self) -> SandboxInfo | None:
        return self._info

    def get_sandbox_url(self) -> str | None:
        return self._info.url if self._info else None

    @property
    def tracked_files(self) -> frozenset[str]:
        return frozenset(self._tracked_files)

    def untrack_file(self, path: str) -> None:
        self._tracked_files.discard(path)

    # ---- Operations

    def run_command(self, command: str) -> CommandResult:
        self._require_handle()
        return self._run(["sh", "-c", command])

    def write_file(self, path: str, content: str) -> None:
        self._require_handle()
        self._writer.write(self.resolve_path(path), content)
        self._tracked_files.add(path)

    def read_file(self, path: str) -> str:
        self._require_handle()
        full_path = self.resolve_path(path)
        res = self._run(["cat", full_path])
        if not res.success:
            raise ReadError(
                f"Failed to read file: {res.stderr.strip() or full_path}",
                path=path,
                stderr=res.stderr,
            )
        return res.stdout

    def list_files(self, directory: str = ".") -> list[str]:
        if self._handle is None:
            return []
        base = self.resolve_path(directory)
        argv = ["find", base, "-type", "f"]
        for name in LIST_EXCLUDED_DIRS:
            argv.extend(["-not", "-path", f"*/{name}/*"])
        res = self._run(argv)
        if not res.success:
            logger.warning(
                "list_files failed for %r exit_code=%d stderr=%r",
                directory,
                res.exit_code,
                res.stderr,
            )
            return []

        out: list[str] = []
        for line in res.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            out.append(posixpath.relpath(line, base))
        out.sort()
        return out

    def install_packages(self, names: Sequence[str]) -> CommandResult:
        self._require_handle()
        argv = [
            self.settings.package_manager,
            "install",
            *self.settings.installer_flag_list,
            *names,
        ]
        res = self._run(argv)
        if res.success and self.settings.auto_restart_dev_server:
            try:
                self.dev_server.restart()
            except RestartFailed:
                logger.warning(
                    "Dev server did not come back after installing %s", list(names)
                )
        return res

    # ---- Helpers

    def resolve_path(self, path: str) -> str:
        if path.startswith("/"):
            return posixpath.normpath(path)
        return posixpath.normpath(posixpath.join(self.root_dir, path))

    def _require_handle(self) -> None:
        if self._handle is None:
            raise NoActiveSandboxError()

    def _run(self, argv: Sequence[str], *, cwd: str | None = None) -> CommandResult:
        try:
            return self._exec(list(argv), cwd=cwd or self.root_dir)
        except Exception as exc:
            exit_code, message = self._describe_failure(exc)
            logger.warning("Command %r failed in transport: %s", list(argv)[:3], message)
            return CommandResult.from_failure(message, exit_code=exit_code)
