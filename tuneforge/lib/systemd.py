from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from .chroot import is_live_root
from .command import CmdResult, run_cmd

logger = logging.getLogger(__name__)

ENABLED_STATES = {"enabled", "enabled-runtime", "static", "alias", "indirect", "generated"}


@dataclass(frozen=True)
class UnitState:
    unit: str
    active: str
    enabled: str

    @property
    def exists(self) -> bool:
        return self.enabled != "not-found"

    @property
    def is_active(self) -> bool:
        return self.active in {"active", "reloading", "activating"}

    @property
    def is_enabled(self) -> bool:
        return self.enabled in ENABLED_STATES

    @property
    def is_masked(self) -> bool:
        return self.enabled in {"masked", "masked-runtime"}


class Systemd:
    """Thin systemctl wrapper.

    On the running system every verb is available. For an offline root only
    unit-file operations work (``systemctl --root``); live verbs are skipped.
    """

    def __init__(self, root: str | Path = "/", *, dry_run: bool = False, available: Optional[bool] = None):
        self.root = Path(root)
        self.live = is_live_root(root)
        self.dry_run = dry_run
        if available is None:
            available = shutil.which("systemctl") is not None and (
                not self.live or Path("/run/systemd/system").exists()
            )
        self.available = available

    def _argv(self, *args: str) -> list[str]:
        if self.live:
            return ["systemctl", *args]
        return ["systemctl", f"--root={self.root}", *args]

    def is_enabled(self, unit: str) -> str:
        if not self.available:
            return "unknown"
        r = run_cmd(self._argv("is-enabled", unit), check=False, probe=True)
        state = (r.stdout or "").strip().splitlines()
        if state:
            return state[0].strip()
        # Older systemd prints nothing and complains on stderr for missing units.
        if "No such file" in r.stderr or "not found" in r.stderr.lower():
            return "not-found"
        return "unknown"

    def is_active(self, unit: str) -> str:
        if not self.available or not self.live:
            return "unknown"
        r = run_cmd(self._argv("is-active", unit), check=False, probe=True)
        return (r.stdout or "").strip() or "unknown"

    def unit_state(self, unit: str) -> UnitState:
        return UnitState(unit=unit, active=self.is_active(unit), enabled=self.is_enabled(unit))

    def _change(self, verb: str, units: Sequence[str], *, now: bool = False) -> CmdResult | None:
        if not units:
            return None
        args = [verb]
        if now and self.live:
            args.append("--now")
        return run_cmd(self._argv(*args, *units), check=False, dry_run=self.dry_run, as_root=True)

    def enable(self, units: Sequence[str], *, now: bool = True) -> CmdResult | None:
        return self._change("enable", units, now=now)

    def disable(self, units: Sequence[str], *, now: bool = True) -> CmdResult | None:
        return self._change("disable", units, now=now)

    def mask(self, units: Sequence[str], *, now: bool = True) -> CmdResult | None:
        return self._change("mask", units, now=now)

    def unmask(self, units: Sequence[str]) -> CmdResult | None:
        return self._change("unmask", units)

    def _live_only(self, *args: str) -> CmdResult | None:
        if not self.live:
            logger.info("Offline root %s: skipping systemctl %s", self.root, " ".join(args))
            return None
        return run_cmd(self._argv(*args), check=False, dry_run=self.dry_run, as_root=True)

    def daemon_reload(self) -> CmdResult | None:
        return self._live_only("daemon-reload")

    def restart(self, unit: str) -> CmdResult | None:
        return self._live_only("restart", unit)

    def try_restart(self, unit: str) -> CmdResult | None:
        return self._live_only("try-restart", unit)


def udev_reload(*, dry_run: bool = False) -> CmdResult:
    return run_cmd(["udevadm", "control", "--reload"], check=False, dry_run=dry_run, as_root=True)


def sysctl_apply(*, dry_run: bool = False) -> CmdResult:
    return run_cmd(["sysctl", "--system"], check=False, dry_run=dry_run, as_root=True)
