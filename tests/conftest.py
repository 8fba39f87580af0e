import os
import shlex
import sys
from pathlib import Path

import pytest

# Ensure the repo root is on sys.path so tests can import the local package.
ROOT = str(Path(__file__).resolve().parents[1])
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from sandbox_orchestrator.config import SandboxSettings  # noqa: E402
from sandbox_orchestrator.sandbox_backends.base import (  # noqa: E402
    BaseSandboxProvider,
    CommandResult,
    SandboxInfo,
    utc_now,
)

_ENV_PREFIXES = ("SANDBOX_", "K8S_", "PREVIEW_")
_ENV_NAMES = ("NPM_FLAGS", "AUTO_RESTART_VITE")


@pytest.fixture(autouse=True)
def _clean_sandbox_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Settings come from the environment; keep the developer's shell out of tests.
    for name in list(os.environ):
        if name.startswith(_ENV_PREFIXES) or name in _ENV_NAMES:
            monkeypatch.delenv(name, raising=False)


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(stdout=stdout, stderr="", exit_code=0)


def fail(stderr: str = "boom", exit_code: int = 1) -> CommandResult:
    return CommandResult(stdout="", stderr=stderr, exit_code=exit_code)


class ScriptedProvider(BaseSandboxProvider):
    """In-memory provider whose shell commands are answered from a script.

    Files written through the bulk tier land in `files`; `cat` reads them back.
    Any other command is matched by substring against `script`; the first match
    wins, repeated results are consumed in order and the last one sticks.
    Unmatched commands succeed with empty output.
    """

    provider_name = "scripted"

    def __init__(self, settings=None, **overrides):
        base = {"dev_server_settle_s": 0, "dev_server_kill_settle_s": 0}
        base.update(overrides)
        super().__init__(
            settings or SandboxSettings(**base), sleep=lambda _s: None
        )
        self.files: dict[str, str] = {}
        self.commands: list[str] = []
        self.script: list[tuple[str, list]] = []
        self.bulk_error: Exception | None = None
        self.expired = False
        self.open_error: Exception | None = None
        self.opened = 0
        self.closed = 0

    def on(self, needle: str, *results) -> "ScriptedProvider":
        self.script.append((needle, list(results)))
        return self

    def count(self, needle: str) -> int:
        return sum(1 for c in self.commands if needle in c)

    def _open(self):
        if self.open_error is not None:
            raise self.open_error
        self.opened += 1
        sid = f"sbx-{self.opened}"
        info = SandboxInfo(
            sandbox_id=sid,
            url=f"https://{sid}.preview.test/",
            provider=self.provider_name,
            created_at=utc_now(),
        )
        return sid, info

    def _close(self, handle):
        self.closed += 1

    def _exec(self, argv, *, cwd):
        argv = list(argv)
        if argv[0] == "cat":
            self.commands.append(shlex.join(argv))
            if argv[1] in self.files:
                return ok(self.files[argv[1]])
            return fail(f"cat: {argv[1]}: No such file or directory")

        command = argv[2] if argv[:2] == ["sh", "-c"] else shlex.join(argv)
        self.commands.append(command)
        for needle, results in self.script:
            if needle in command:
                result = results.pop(0) if len(results) > 1 else results[0]
                if isinstance(result, Exception):
                    raise result
                return result
        return ok()

    def _bulk_write(self, full_path, payload):
        if self.bulk_error is not None:
            raise self.bulk_error
        self.files[full_path] = payload.decode("utf-8")

    def _is_expired_error(self, exc):
        return self.expired


@pytest.fixture
def make_provider():
    def _make(settings=None, **overrides) -> ScriptedProvider:
        return ScriptedProvider(settings, **overrides)

    return _make
