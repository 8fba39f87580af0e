"""Supervision of the long-running dev server inside a sandbox.

State machine:

    NOT_STARTED -> STARTING -> RUNNING -> (UNRESPONSIVE -> RESTARTING -> RUNNING) -> STOPPED

Liveness is probed on demand by looking for the dev-server process in the
sandbox process table. Only absence is detected: a process that is present but
hung still counts as running. Restarts are attempted once per call and never
looped; a restart that does not bring the process back raises RestartFailed.
STOPPED is entered only when the owning provider terminates its sandbox.
"""

from __future__ import annotations

import logging
import shlex
import time
from enum import Enum
from typing import TYPE_CHECKING

from sandbox_orchestrator import vite_scaffold
from sandbox_orchestrator.errors import (
    BootstrapError,
    DevServerProbeError,
    NoActiveSandboxError,
    RestartFailed,
)

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Mapping

    from sandbox_orchestrator.config import SandboxSettings
    from sandbox_orchestrator.sandbox_backends.base import (
        CommandResult,
        SandboxProvider,
    )

logger = logging.getLogger(__name__)

NOT_RUNNING_MARKER = "DEV_SERVER_NOT_RUNNING"
NO_LOG_MARKER = "NO_LOG_FILE"


class DevServerState(Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    UNRESPONSIVE = "unresponsive"
    RESTARTING = "restarting"
    STOPPED = "stopped"


def process_pattern(process_name: str) -> str:
    # "[v]ite" matches "vite" but not the shell command line that carries the pattern.
    name = process_name.strip()
    if not name:
        raise ValueError("process_name must not be empty")
    return f"[{name[0]}]{name[1:]}"


class DevServerSupervisor:
    def __init__(
        self,
        provider: SandboxProvider,
        settings: SandboxSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._provider = provider
        self._settings = settings
        self._sleep = sleep
        self.command = settings.dev_server_command
        self.log_path = settings.dev_server_log_path
        self.pattern = process_pattern(settings.dev_server_process)
        self.settle_s = settings.dev_server_settle_s
        self.kill_settle_s = settings.dev_server_kill_settle_s
        self.state = DevServerState.NOT_STARTED
        self.pid: int | None = None

    # ---- Lifecycle

    def bootstrap(self, files: Mapping[str, str] | None = None) -> None:
        """Scaffold, install, launch. One pass, no retries.

        Any failed step raises BootstrapError and leaves the state NOT_STARTED so the
        caller can decide whether to try again.
        """
        self._require_provider()
        if files is None:
            files = vite_scaffold.scaffold_files(
                port=self._settings.preview_port,
                allowed_hosts=vite_scaffold.allowed_hosts_for(
                    self._settings.preview_base_domain
                ),
            )

        self.state = DevServerState.STARTING
        try:
            for path, content in files.items():
                self._provider.write_file(path, content)

            install = self._provider.run_command(
                shlex.join(
                    [
                        self._settings.package_manager,
                        "install",
                        *self._settings.installer_flag_list,
                    ]
                )
            )
            self._check("install dependencies", install)
            self._check("stop stray dev server", self._kill())
            self._check("launch dev server", self._launch())
        except Exception:
            self.state = DevServerState.NOT_STARTED
            raise

        self._sleep(self.settle_s)
        self.state = DevServerState.RUNNING
        logger.info("Dev server started (pid=%s, log=%s)", self.pid, self.log_path)

    def probe(self) -> bool:
        """True if a dev-server process is present in the sandbox."""
        res = self._provider.run_command(
            f"pgrep -f {shlex.quote(self.pattern)} || echo {NOT_RUNNING_MARKER}"
        )
        if not res.success:
            raise DevServerProbeError(
                f"Dev server probe failed: {res.stderr.strip() or res.exit_code}"
            )
        running = NOT_RUNNING_MARKER not in res.stdout and bool(res.stdout.strip())
        if not running and self.state is DevServerState.RUNNING:
            logger.warning("Dev server process %r not found", self.pattern)
            self.state = DevServerState.UNRESPONSIVE
        return running

    def restart(self) -> None:
        self._require_provider()
        self.state = DevServerState.RESTARTING
        logger.info("Restarting dev server")

        kill = self._kill()
        if not kill.success:
            logger.warning("Stopping dev server before restart failed: %s", kill.stderr)
        self._sleep(self.kill_settle_s)

        launch = self._launch()
        if not launch.success:
            self.state = DevServerState.UNRESPONSIVE
            raise RestartFailed(
                f"Dev server relaunch failed: {launch.stderr.strip() or launch.exit_code}"
            )
        self._sleep(self.settle_s)

        try:
            running = self.probe()
        except DevServerProbeError as exc:
            self.state = DevServerState.UNRESPONSIVE
            raise RestartFailed(str(exc)) from exc
        if not running:
            self.state = DevServerState.UNRESPONSIVE
            raise RestartFailed(
                f"Dev server process {self.pattern!r} not found after restart"
            )
        self.state = DevServerState.RUNNING
        logger.info("Dev server restarted (pid=%s)", self.pid)

    def recent_log(self, lines: int = 20) -> str | None:
        """Last `lines` lines of the dev-server log, or None if there is no log."""
        res = self._provider.run_command(
            f"tail -n {int(lines)} {shlex.quote(self.log_path)} 2>/dev/null "
            f"|| echo {NO_LOG_MARKER}"
        )
        if not res.success:
            raise DevServerProbeError(
                f"Reading dev server log failed: {res.stderr.strip() or res.exit_code}"
            )
        if NO_LOG_MARKER in res.stdout:
            return None
        return res.stdout

    def reset(self) -> None:
        self.state = DevServerState.NOT_STARTED
        self.pid = None

    def mark_stopped(self) -> None:
        self.state = DevServerState.STOPPED

    # ---- Helpers

    def _kill(self) -> CommandResult:
        return self._provider.run_command(f"pkill -f {shlex.quote(self.pattern)} || true")

    def _launch(self) -> CommandResult:
        res = self._provider.run_command(
            f"nohup {self.command} > {shlex.quote(self.log_path)} 2>&1 & echo $!"
        )
        if res.success:
            lines = [ln.strip() for ln in res.stdout.splitlines() if ln.strip()]
            try:
                self.pid = int(lines[-1]) if lines else None
            except ValueError:
                self.pid = None
        return res

    def _check(self, step: str, res: CommandResult) -> None:
        if res.success:
            return
        detail = res.stderr.strip() or f"exit code {res.exit_code}"
        logger.error("Dev server bootstrap step %r failed: %s", step, detail)
        raise BootstrapError(f"{step} failed: {detail}", step=step, result=res)

    def _require_provider(self) -> None:
        if not self._provider.is_alive():
            raise NoActiveSandboxError()
