import pytest

from sandbox_orchestrator.errors import (
    NoActiveSandboxError,
    ProvisioningError,
    ReadError,
    SandboxExpiredError,
)
from sandbox_orchestrator.sandbox_backends.base import CommandResult, materialize_output


def test_success_tracks_exit_code():
    assert CommandResult("", "", 0).success is True
    assert CommandResult("", "", 2).success is False
    assert CommandResult("", "", -1).success is False


def test_from_failure_never_reports_success():
    res = CommandResult.from_failure("transport down", exit_code=0)
    assert res.exit_code == 1
    assert res.success is False
    assert res.stderr == "transport down"


def test_materialize_output_variants():
    assert materialize_output(None) == ""
    assert materialize_output("x") == "x"
    assert materialize_output(b"caf\xc3\xa9") == "café"
    assert materialize_output(lambda: b"lazy") == "lazy"

    def _boom():
        raise RuntimeError("stream closed")

    assert materialize_output(_boom) == ""


def test_operations_require_a_sandbox(make_provider):
    p = make_provider()
    with pytest.raises(NoActiveSandboxError):
        p.run_command("echo hi")
    with pytest.raises(NoActiveSandboxError):
        p.write_file("a.txt", "x")
    assert p.list_files() == []
    assert p.get_sandbox_url() is None


def test_write_tracks_relative_path_and_resolves_under_root(make_provider):
    p = make_provider()
    p.create_sandbox()
    p.write_file("src/App.jsx", "export default 1\n")
    assert p.files == {"/app/src/App.jsx": "export default 1\n"}
    assert p.tracked_files == frozenset({"src/App.jsx"})
    assert p.read_file("src/App.jsx") == "export default 1\n"


def test_read_missing_file_raises(make_provider):
    p = make_provider()
    p.create_sandbox()
    with pytest.raises(ReadError) as ctx:
        p.read_file("nope.txt")
    assert "Failed to read file" in str(ctx.value)
    assert ctx.value.path == "nope.txt"


def test_transport_fault_becomes_failed_result(make_provider):
    p = make_provider()
    p.create_sandbox()
    p.on("flaky", ConnectionError("reset by peer"))
    res = p.run_command("flaky")
    assert res.success is False
    assert res.exit_code == 1
    assert "reset by peer" in res.stderr


def test_write_expired_raises_without_fallback(make_provider):
    p = make_provider()
    p.create_sandbox()
    p.bulk_error = ConnectionError("gone")
    p.expired = True
    with pytest.raises(SandboxExpiredError):
        p.write_file("a.txt", "x")
    assert p.commands == []
    assert "a.txt" not in p.tracked_files


def test_list_files_relative_and_sorted(make_provider):
    p = make_provider()
    p.create_sandbox()
    p.on("find", CommandResult("/app/src/b.js\n/app/a.js\n\n", "", 0))
    assert p.list_files(".") == ["a.js", "src/b.js"]
    find_cmd = p.commands[-1]
    for excluded in ("node_modules", ".git", ".next", "dist", "build"):
        assert f"*/{excluded}/*" in find_cmd


def test_list_files_failure_gives_empty(make_provider):
    p = make_provider()
    p.create_sandbox()
    p.on("find", CommandResult("", "permission denied", 1))
    assert p.list_files() == []


def test_terminate_is_idempotent(make_provider):
    p = make_provider()
    p.create_sandbox()
    p.write_file("a.txt", "x")
    p.terminate()
    p.terminate()
    assert p.is_alive() is False
    assert p.closed == 1
    assert p.tracked_files == frozenset()


def test_failed_create_leaves_provider_dead_and_retry_works(make_provider):
    p = make_provider()
    p.open_error = RuntimeError("quota exceeded")
    with pytest.raises(ProvisioningError) as ctx:
        p.create_sandbox()
    assert "quota exceeded" in str(ctx.value)
    assert p.is_alive() is False

    p.open_error = None
    info = p.create_sandbox()
    assert p.is_alive() is True
    assert p.get_sandbox_url() == info.url


def test_create_replaces_existing_sandbox(make_provider):
    p = make_provider()
    first = p.create_sandbox()
    p.write_file("a.txt", "x")
    second = p.create_sandbox()
    assert first.sandbox_id != second.sandbox_id
    assert p.closed == 1
    assert p.tracked_files == frozenset()


def test_install_packages_uses_flags(make_provider):
    p = make_provider(installer_flags="--legacy-peer-deps")
    p.create_sandbox()
    res = p.install_packages(["zod", "clsx"])
    assert res.success
    assert p.commands[-1] == "npm install --legacy-peer-deps zod clsx"
