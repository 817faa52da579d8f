from __future__ import annotations

import logging
import os
import pwd
import subprocess
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from .command import CommandError, needs_sudo, run_cmd

logger = logging.getLogger(__name__)


class Privilege(str, Enum):
    SYSTEM = "system"
    USER = "user"


@dataclass(frozen=True)
class Principal:
    name: str
    uid: int
    gid: int
    home: str


ROOT = Principal(name="root", uid=0, gid=0, home="/root")


def invoking_user() -> Principal:
    """The human behind this run: SUDO_* when elevated through sudo, else us."""

    if os.geteuid() == 0 and os.environ.get("SUDO_UID"):
        try:
            uid = int(os.environ["SUDO_UID"])
            gid = int(os.environ.get("SUDO_GID") or uid)
        except ValueError:
            uid, gid = os.getuid(), os.getgid()
        try:
            pw = pwd.getpwuid(uid)
            return Principal(name=pw.pw_name, uid=uid, gid=gid, home=pw.pw_dir)
        except KeyError:
            name = os.environ.get("SUDO_USER") or str(uid)
            return Principal(name=name, uid=uid, gid=gid, home=str(Path("/home") / name))

    uid = os.getuid()
    try:
        pw = pwd.getpwuid(uid)
        return Principal(name=pw.pw_name, uid=uid, gid=pw.pw_gid, home=pw.pw_dir)
    except KeyError:
        return Principal(name=str(uid), uid=uid, gid=os.getgid(), home=os.path.expanduser("~"))


def default_owners(user: Optional[Principal] = None) -> Dict[Privilege, Principal]:
    return {Privilege.SYSTEM: ROOT, Privilege.USER: user or invoking_user()}


def read_bytes(path: Path, *, elevate: bool = False) -> bytes:
    """Read *path*, falling back to ``sudo -n cat`` when permission is denied.

    Raises OSError when the file cannot be read either way; callers treat that
    as "not installed".
    """

    try:
        with open(path, "rb") as fh:
            return fh.read()
    except PermissionError:
        if not (elevate and needs_sudo()):
            raise
    try:
        r = run_cmd(["cat", "--", str(path)], as_root=True, probe=True, binary=True)
    except CommandError as e:
        raise PermissionError(f"privileged read failed: {path}") from e
    return r.stdout


def ensure_sudo(*, non_interactive: bool) -> bool:
    """Make sure sudo credentials are cached; prompt only when interactive."""

    if not needs_sudo():
        return True
    argv = ["sudo", "-n", "true"] if non_interactive else ["sudo", "-v"]
    if non_interactive:
        return run_cmd(argv, check=False, probe=True).returncode == 0
    # sudo prompts on the terminal itself, so do not capture here.
    logger.info("CMD %s", " ".join(argv))
    return subprocess.call(argv) == 0


class SudoKeepalive:
    """Detached helper that keeps the sudo timestamp fresh during long runs.

    The helper exits on its own once this process is gone.
    """

    def __init__(self, interval_s: float = 60.0):
        self.interval_s = interval_s
        self._proc: Optional[subprocess.Popen] = None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def start(self) -> None:
        if self._proc is not None or not needs_sudo():
            return
        self._proc = subprocess.Popen(
            [
                sys.executable,
                "-m",
                "tuneforge.lib.keepalive",
                str(os.getpid()),
                str(self.interval_s),
            ],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        logger.info("Started sudo keepalive (pid=%s)", self._proc.pid)

    def stop(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None or proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
        logger.info("Stopped sudo keepalive")
