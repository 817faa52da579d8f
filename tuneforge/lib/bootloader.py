from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Mapping, Sequence

from .chroot import chroot_binds, rooted_argv
from .command import CmdResult, run_cmd

logger = logging.getLogger(__name__)

# Initramfs first: grub-mkconfig picks up the fresh images.
REBUILD_ORDER = ("initramfs", "grub")

DEFAULT_REBUILD_COMMANDS: Dict[str, List[List[str]]] = {
    "initramfs": [["mkinitcpio", "-P"]],
    "grub": [["grub-mkconfig", "-o", "/boot/grub/grub.cfg"]],
}


def rebuild(
    target: str,
    *,
    root: str | Path = "/",
    commands: Mapping[str, Sequence[Sequence[str]]] = DEFAULT_REBUILD_COMMANDS,
    dry_run: bool = False,
) -> List[CmdResult]:
    """Regenerate one boot target (initramfs images or the grub menu).

    Stops at the first failing command and returns the results so far; the
    caller decides whether a failure aborts the run.
    """

    argvs = commands.get(target)
    if not argvs:
        raise ValueError(f"No rebuild commands configured for {target!r}")

    results: List[CmdResult] = []
    with chroot_binds(root, dry_run=dry_run):
        for argv in argvs:
            r = run_cmd(rooted_argv(root, argv), check=False, dry_run=dry_run, as_root=True)
            results.append(r)
            if not r.ok:
                break
    if results and results[-1].ok:
        logger.info("Rebuilt %s", target)
    return results
