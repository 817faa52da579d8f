from __future__ import annotations

import logging
from typing import Sequence

from .command import CmdResult, run_cmd

logger = logging.getLogger(__name__)

DEFAULT_QUERY = ("pacman", "-Q")
DEFAULT_INSTALL = ("pacman", "-S", "--needed", "--noconfirm")


def package_installed(name: str, *, query: Sequence[str] = DEFAULT_QUERY) -> bool:
    """Return True if the package manager reports *name* as installed."""

    r = run_cmd([*query, name], check=False, probe=True)
    return r.returncode == 0


def install_packages(
    packages: Sequence[str],
    *,
    command: Sequence[str] = DEFAULT_INSTALL,
    dry_run: bool = False,
) -> CmdResult | None:
    if not packages:
        return None
    return run_cmd([*command, *packages], check=False, dry_run=dry_run, as_root=True)
