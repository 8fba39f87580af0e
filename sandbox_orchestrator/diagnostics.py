from __future__ import annotations

import logging
import os
import shlex
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal

import requests
from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Sequence

    from sandbox_orchestrator.sandbox_backends.base import SandboxProvider
    from sandbox_orchestrator.session_sandbox_manager import SandboxManager

logger = logging.getLogger(__name__)

NO_LOG_SENTINEL = "No log file found"
DEFAULT_KEY_FILES = ("src/App.jsx", "src/main.jsx", "index.html")
PREVIEW_CHARS = 200

ViteStatus = Literal[
    "unknown",
    "no_provider",
    "running",
    "not_running",
    "restarted",
    "restart_failed",
    "error",
]


class _ReportModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class FileProbe(_ReportModel):
    exists: bool
    size: int | None = None
    preview: str | None = None
    error: str | None = None


class FileRoundTrip(_ReportModel):
    success: bool
    write_path: str | None = Field(default=None, alias="writePath")
    content_match: bool | None = Field(default=None, alias="contentMatch")
    read_content: str | None = Field(default=None, alias="readContent")
    error: str | None = None


class CommandProbe(_ReportModel):
    success: bool
    exit_code: int | None = Field(default=None, alias="exitCode")
    stdout: str | None = None
    stderr: str | None = None
    error: str | None = None


class SandboxSummary(_ReportModel):
    sandbox_id: str = Field(alias="sandboxId")
    url: str
    provider: str


class DiagnosticsReport(_ReportModel):
    timestamp: str
    vite_status: ViteStatus = Field(default="unknown", alias="viteStatus")
    vite_log: str = Field(default="", alias="viteLog")
    file_contents: dict[str, FileProbe] = Field(default_factory=dict, alias="fileContents")
    network_test: bool = Field(default=False, alias="networkTest")
    error: str | None = None
    sandbox_info: SandboxSummary | None = Field(default=None, alias="sandboxInfo")
    file_test: FileRoundTrip | None = Field(default=None, alias="fileTest")
    command_test: CommandProbe | None = Field(default=None, alias="commandTest")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _set_or_not(name: str) -> str:
    return "SET" if (os.environ.get(name) or "").strip() else "NOT_SET"


class DiagnosticsProbe:
    """Health report for the active sandbox.

    Every check records its own failure and the remaining checks still run. The
    only side effect beyond a throwaway file is a single dev-server restart when
    the dev server is found not running.
    """

    def __init__(
        self,
        manager: SandboxManager,
        *,
        key_files: Sequence[str] = DEFAULT_KEY_FILES,
        log_lines: int | None = None,
        network_timeout_s: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._manager = manager
        self._key_files = tuple(key_files)
        self._log_lines = log_lines or manager.settings.diagnostics_log_lines
        self._network_timeout_s = (
            network_timeout_s or manager.settings.network_probe_timeout_s
        )
        self._owns_session = session is None
        self._http = session or requests.Session()

    def close(self) -> None:
        if self._owns_session:
            self._http.close()

    def check(self) -> DiagnosticsReport:
        report = DiagnosticsReport(timestamp=_utc_timestamp())

        provider = self._manager.get_active_provider()
        if provider is None:
            report.vite_status = "no_provider"
            return report

        info = provider.get_sandbox_info()
        if info is not None:
            report.sandbox_info = SandboxSummary(
                sandbox_id=info.sandbox_id, url=info.url, provider=info.provider
            )

        supervisor = provider.dev_server
        try:
            report.vite_status = "running" if supervisor.probe() else "not_running"
        except Exception as exc:
            logger.warning("Dev server probe failed: %s", exc)
            report.vite_status = "error"
            report.error = str(exc)

        try:
            log = supervisor.recent_log(self._log_lines)
            report.vite_log = NO_LOG_SENTINEL if log is None else log
        except Exception as exc:
            report.vite_log = f"Error reading log: {exc}"

        for path in self._key_files:
            report.file_contents[path] = self._probe_file(provider, path)

        report.file_test = self._file_round_trip(provider)
        report.command_test = self._command_test(provider)
        report.network_test = self._network_test(provider)

        if report.vite_status == "not_running":
            logger.info("Dev server not running; attempting one restart")
            try:
                supervisor.restart()
                report.vite_status = "restarted"
            except Exception as exc:
                logger.error("Dev server restart failed: %s", exc)
                report.vite_status = "restart_failed"
                report.error = str(exc)

        return report

    def snapshot(self) -> dict[str, Any]:
        """Registry and configuration view; does not contact any sandbox."""
        settings = self._manager.settings
        out: dict[str, Any] = {
            "timestamp": _utc_timestamp(),
            "environment": {
                "SANDBOX_PROVIDER": settings.backend,
                "credentialMode": settings.credential_mode,
                "K8S_API_HOST": _set_or_not("K8S_API_HOST"),
                "K8S_API_TOKEN": _set_or_not("K8S_API_TOKEN"),
                "K8S_SANDBOX_NAMESPACE": settings.k8s_namespace,
                "K8S_SANDBOX_TEMPLATE_NAME": settings.k8s_template_name,
                "PREVIEW_BASE_DOMAIN": settings.preview_base_domain or "NOT_SET",
            },
            "sandboxManager": {
                "activeSandboxes": self._manager.list_sessions(),
                "providerCount": len(self._manager.list_sessions()),
                "activeSession": self._manager.get_active_session_id(),
            },
        }

        provider = self._manager.get_active_provider()
        if provider is None:
            return out
        info = provider.get_sandbox_info()
        tracked = sorted(provider.tracked_files)
        out["activeProvider"] = {
            "alive": provider.is_alive(),
            "devServerState": provider.dev_server.state.value,
            "existingFilesCount": len(tracked),
            "existingFiles": tracked,
        }
        if info is not None:
            out["sandboxInfo"] = {
                "sandboxId": info.sandbox_id,
                "url": info.url,
                "provider": info.provider,
                "createdAt": info.created_at.isoformat(),
            }
        return out

    # ---- Individual checks

    def _probe_file(self, provider: SandboxProvider, path: str) -> FileProbe:
        try:
            content = provider.read_file(path)
        except Exception as exc:
            return FileProbe(exists=False, error=str(exc))
        return FileProbe(exists=True, size=len(content), preview=content[:PREVIEW_CHARS])

    def _file_round_trip(self, provider: SandboxProvider) -> FileRoundTrip:
        path = f".diagnostics-{uuid.uuid4().hex[:8]}.txt"
        content = (
            f"Diagnostics probe at {_utc_timestamp()}\n"
            'quote=" dollar=$HOME backtick=` backslash=\\ tab=\\t\n'
        )
        try:
            provider.write_file(path, content)
            read_back = provider.read_file(path)
        except Exception as exc:
            result = FileRoundTrip(success=False, write_path=path, error=str(exc))
        else:
            result = FileRoundTrip(
                success=True,
                write_path=path,
                content_match=read_back == content,
                read_content=read_back[:100],
            )

        try:
            provider.run_command(f"rm -f {shlex.quote(path)}")
        except Exception:
            logger.debug("Could not remove diagnostics file %s", path, exc_info=True)
        provider.untrack_file(path)
        return result

    def _command_test(self, provider: SandboxProvider) -> CommandProbe:
        try:
            res = provider.run_command("pwd && ls -la")
        except Exception as exc:
            return CommandProbe(success=False, error=str(exc))
        return CommandProbe(
            success=res.success,
            exit_code=res.exit_code,
            stdout=res.stdout[:PREVIEW_CHARS],
            stderr=res.stderr[:PREVIEW_CHARS],
        )

    def _network_test(self, provider: SandboxProvider) -> bool:
        url = provider.get_sandbox_url()
        if not url:
            return False
        try:
            resp = self._http.get(url, timeout=self._network_timeout_s)
        except requests.RequestException as exc:
            logger.info("Preview %s unreachable: %s", url, exc)
            return False
        except Exception as exc:
            logger.warning("Network probe of %s failed: %s", url, exc)
            return False
        return resp.status_code < 400
