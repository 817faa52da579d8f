from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Mapping, Sequence

from ..cleanup import deferred_signals
from .redact import redact

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str | bytes
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandError(RuntimeError):
    def __init__(self, result: CmdResult):
        self.result = result
        super().__init__(
            f"Command failed ({result.returncode}): {_fmt_argv(result.argv)}\n{redact(result.stderr.strip())}"
        )


def _fmt_argv(argv: Sequence[str]) -> str:
    return redact(" ".join(shlex.quote(a) for a in argv)) or ""


def needs_sudo() -> bool:
    return os.geteuid() != 0


def elevated(argv: Sequence[str]) -> list[str]:
    """Prefix *argv* with non-interactive sudo unless already root."""
    if needs_sudo():
        return ["sudo", "-n", *argv]
    return list(argv)


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
    dry_run: bool = False,
    as_root: bool = False,
    probe: bool = False,
    binary: bool = False,
) -> CmdResult:
    """Run a command with consistent logging.

    - Always logs the command, with credential values masked.
    - Captures stdout/stderr; failures are logged verbatim (masked).
    - dry_run logs but does not execute.
    - probe commands (queries whose non-zero exit is an answer) log failures
      at DEBUG only.
    - binary keeps stdout as the exact bytes the command wrote.
    - Signals received while the command runs are handled after it returns.
    """

    argv_list = elevated(argv) if as_root else list(argv)
    logger.info("CMD %s", _fmt_argv(argv_list))

    if dry_run:
        return CmdResult(argv=argv_list, returncode=0, stdout=b"" if binary else "", stderr="")

    stdin = input_text.encode("utf-8") if binary and input_text is not None else input_text
    with deferred_signals():
        try:
            p = subprocess.run(
                argv_list,
                input=stdin,
                text=not binary,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=dict(os.environ, **(env or {})),
            )
        except FileNotFoundError as e:
            result = CmdResult(argv=argv_list, returncode=127, stdout=b"" if binary else "", stderr=str(e))
        else:
            stderr = p.stderr.decode("utf-8", errors="replace") if binary else p.stderr
            result = CmdResult(argv=argv_list, returncode=p.returncode, stdout=p.stdout, stderr=stderr)

    if isinstance(result.stdout, bytes):
        logger.debug("STDOUT %d bytes", len(result.stdout))
    elif result.stdout:
        logger.debug("STDOUT %s", redact(result.stdout.strip()))
    if result.returncode != 0:
        logger.log(
            logging.DEBUG if probe else logging.WARNING,
            "Command exited %s: %s\n%s",
            result.returncode,
            _fmt_argv(argv_list),
            redact(result.stderr.strip()),
        )
    elif result.stderr:
        logger.debug("STDERR %s", redact(result.stderr.strip()))

    if check and result.returncode != 0:
        raise CommandError(result)

    return result
