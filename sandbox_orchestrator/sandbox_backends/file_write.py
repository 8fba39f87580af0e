from __future__ import annotations

import logging
import posixpath
import shlex
from typing import TYPE_CHECKING

from sandbox_orchestrator.errors import SandboxExpiredError, WriteError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Sequence

    from sandbox_orchestrator.sandbox_backends.base import CommandResult

logger = logging.getLogger(__name__)

# Order matters: backslashes first, otherwise the backslashes introduced by the
# later substitutions would be escaped a second time.
_ESCAPES: tuple[tuple[str, str], ...] = (
    # Two layers consume backslashes: the shell's double quotes, then printf %b.
    ("\\", "\\\\\\\\"),
    ('"', '\\"'),
    ("$", "\\$"),
    ("`", "\\`"),
    ("\n", "\\n"),
)


def escape_shell_content(content: str) -> str:
    out = content
    for raw, escaped in _ESCAPES:
        out = out.replace(raw, escaped)
    return out


def build_fallback_write_command(full_path: str, content: str) -> str:
    return f'printf %b "{escape_shell_content(content)}" > {shlex.quote(full_path)}'


class TwoTierFileWriter:
    """Bulk transfer first, shell redirection second.

    `bulk_write(full_path, payload)` is the backend's native file transfer and may
    raise anything. `run(argv)` must return a CommandResult and never raise.
    `is_expired(exc)` decides whether a bulk failure means the environment is gone,
    in which case the command tier is skipped entirely.
    """

    def __init__(
        self,
        *,
        bulk_write: Callable[[str, bytes], None],
        run: Callable[[Sequence[str]], CommandResult],
        is_expired: Callable[[BaseException], bool],
    ) -> None:
        self._bulk_write = bulk_write
        self._run = run
        self._is_expired = is_expired

    def write(self, full_path: str, content: str) -> str:
        """Write `content` to `full_path`; returns the tier that succeeded."""
        try:
            self._bulk_write(full_path, content.encode("utf-8"))
            return "bulk"
        except Exception as exc:
            if self._is_expired(exc):
                logger.error("Sandbox reclaimed while writing %s: %s", full_path, exc)
                raise SandboxExpiredError() from exc
            logger.warning(
                "Bulk write failed for %s, falling back to command write: %s",
                full_path,
                exc,
            )

        parent = posixpath.dirname(full_path)
        if parent:
            mkdir = self._run(["mkdir", "-p", parent])
            if not mkdir.success:
                logger.warning(
                    "mkdir -p %s failed (exit %d): %s",
                    parent,
                    mkdir.exit_code,
                    mkdir.stderr.strip(),
                )

        res = self._run(["sh", "-c", build_fallback_write_command(full_path, content)])
        if not res.success:
            detail = res.stderr.strip() or f"exit code {res.exit_code}"
            raise WriteError(
                f"Failed to write file via command: {detail}",
                path=full_path,
                stderr=res.stderr,
            )
        return "command"
