from __future__ import annotations

import pytest

from sandbox_orchestrator.config import SandboxSettings
from sandbox_orchestrator.dev_server import NOT_RUNNING_MARKER
from sandbox_orchestrator.diagnostics import NO_LOG_SENTINEL, DiagnosticsProbe
from sandbox_orchestrator.sandbox_backends.base import CommandResult
from sandbox_orchestrator.session_sandbox_manager import SandboxManager

requests = pytest.importorskip("requests")


class _FakeResp:
    def __init__(self, status_code: int):
        self.status_code = status_code


class _FakeSession:
    def __init__(self, status_code: int = 200, exc: Exception | None = None):
        self.status_code = status_code
        self.exc = exc
        self.calls: list[tuple[str, float]] = []

    def get(self, url, timeout=None):
        self.calls.append((url, timeout))
        if self.exc is not None:
            raise self.exc
        return _FakeResp(self.status_code)

    def close(self):
        self.closed = True


def _ok(stdout=""):
    return CommandResult(stdout, "", 0)


def _setup(make_provider, *, pgrep=None, tail=None):
    provider = make_provider()
    mgr = SandboxManager(settings=SandboxSettings(), provider_factory=lambda _s: provider)
    mgr.create_session("sess-1")
    provider.on("nohup", _ok("77\n"))
    provider.dev_server.bootstrap()
    provider.on("pgrep", *(pgrep or [_ok("77\n")]))
    provider.on("tail", *(tail or [_ok("VITE ready\n")]))
    return mgr, provider


def test_no_provider_short_circuits():
    mgr = SandboxManager(settings=SandboxSettings(), provider_factory=lambda _s: None)
    http = _FakeSession()
    report = DiagnosticsProbe(mgr, session=http).check()

    payload = report.to_payload()
    assert payload["viteStatus"] == "no_provider"
    assert payload["fileContents"] == {}
    assert payload["networkTest"] is False
    assert http.calls == []


def test_running_sandbox_full_report(make_provider):
    mgr, provider = _setup(make_provider)
    http = _FakeSession(200)

    report = DiagnosticsProbe(mgr, session=http, network_timeout_s=3).check()
    payload = report.to_payload()

    assert payload["viteStatus"] == "running"
    assert payload["viteLog"] == "VITE ready\n"
    assert payload["fileContents"]["src/App.jsx"]["exists"] is True
    assert payload["fileContents"]["index.html"]["size"] > 0
    assert len(payload["fileContents"]["src/main.jsx"]["preview"]) <= 200
    assert payload["fileTest"]["success"] is True
    assert payload["fileTest"]["contentMatch"] is True
    assert payload["commandTest"]["exitCode"] == 0
    assert payload["networkTest"] is True
    assert payload["sandboxInfo"]["sandboxId"] == "sbx-1"
    assert http.calls == [("https://sbx-1.preview.test/", 3)]
    assert "error" not in payload


def test_round_trip_file_is_removed_and_untracked(make_provider):
    mgr, provider = _setup(make_provider)
    report = DiagnosticsProbe(mgr, session=_FakeSession()).check()

    path = report.file_test.write_path
    assert path not in provider.tracked_files
    assert any(c.startswith("rm -f") and path in c for c in provider.commands)


def test_missing_log_uses_sentinel(make_provider):
    mgr, _ = _setup(make_provider, tail=[_ok("NO_LOG_FILE\n")])
    report = DiagnosticsProbe(mgr, session=_FakeSession()).check()
    assert report.vite_log == NO_LOG_SENTINEL


def test_missing_key_file_reported_not_raised(make_provider):
    mgr, provider = _setup(make_provider)
    del provider.files["/app/index.html"]
    report = DiagnosticsProbe(mgr, session=_FakeSession()).check()

    entry = report.file_contents["index.html"]
    assert entry.exists is False
    assert "No such file" in entry.error
    assert report.file_contents["src/App.jsx"].exists is True


def test_not_running_triggers_single_restart(make_provider):
    absent = _ok(f"{NOT_RUNNING_MARKER}\n")
    mgr, provider = _setup(make_provider, pgrep=[absent, _ok("88\n")])
    launches_before = provider.count("nohup")

    report = DiagnosticsProbe(mgr, session=_FakeSession()).check()

    assert report.vite_status == "restarted"
    assert provider.count("nohup") == launches_before + 1


def test_restart_failure_is_reported(make_provider):
    absent = _ok(f"{NOT_RUNNING_MARKER}\n")
    mgr, provider = _setup(make_provider, pgrep=[absent])
    launches_before = provider.count("nohup")

    report = DiagnosticsProbe(mgr, session=_FakeSession()).check()

    assert report.vite_status == "restart_failed"
    assert report.error
    assert provider.count("nohup") == launches_before + 1


def test_failing_checks_do_not_abort_the_report(make_provider):
    mgr, provider = _setup(
        make_provider,
        pgrep=[ConnectionError("runtime down")],
        tail=[ConnectionError("runtime down")],
    )
    http = _FakeSession(exc=requests.ConnectionError("dns"))

    report = DiagnosticsProbe(mgr, session=http).check()

    assert report.vite_status == "error"
    assert "runtime down" in report.error
    assert report.vite_log.startswith("Error reading log")
    assert report.network_test is False
    assert report.command_test is not None
    assert report.file_test is not None
    # No restart is attempted when the probe itself failed.
    assert provider.count("pkill") == 1


def test_preview_http_error_status_is_unreachable(make_provider):
    mgr, _ = _setup(make_provider)
    report = DiagnosticsProbe(mgr, session=_FakeSession(502)).check()
    assert report.network_test is False


def test_snapshot_reports_registry_without_secrets(make_provider, monkeypatch):
    monkeypatch.setenv("K8S_API_TOKEN", "super-secret")
    mgr, provider = _setup(make_provider)

    snap = DiagnosticsProbe(mgr, session=_FakeSession()).snapshot()

    assert snap["environment"]["K8S_API_TOKEN"] == "SET"
    assert snap["environment"]["K8S_API_HOST"] == "NOT_SET"
    assert "super-secret" not in repr(snap)
    assert snap["sandboxManager"]["activeSession"] == "sess-1"
    assert snap["sandboxManager"]["activeSandboxes"] == ["sess-1"]
    assert snap["activeProvider"]["devServerState"] == "running"
    assert "src/App.jsx" in snap["activeProvider"]["existingFiles"]
    assert snap["sandboxInfo"]["sandboxId"] == "sbx-1"
    assert provider.count("pgrep") == 0


def test_close_leaves_injected_session_open(make_provider):
    mgr, _ = _setup(make_provider)
    http = _FakeSession()
    DiagnosticsProbe(mgr, session=http).close()
    assert not getattr(http, "closed", False)
