from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Sequence

from .command import run_cmd

logger = logging.getLogger(__name__)


def is_live_root(root: str | Path) -> bool:
    return Path(root).resolve() == Path("/")


def rooted_argv(root: str | Path, argv: Sequence[str]) -> list[str]:
    """Run *argv* inside *root* when it is not the running system."""

    if is_live_root(root):
        return list(argv)
    return ["chroot", str(root), *argv]


def mount_chroot_binds(target_root: str, *, dry_run: bool = False) -> None:
    # Minimal bind mounts for initramfs and boot loader tooling
    for src, dst in [
        ("/dev", f"{target_root}/dev"),
        ("/proc", f"{target_root}/proc"),
        ("/sys", f"{target_root}/sys"),
    ]:
        run_cmd(["mount", "--bind", src, dst], dry_run=dry_run, as_root=True)


def umount_chroot_binds(target_root: str, *, dry_run: bool = False) -> None:
    for p in [f"{target_root}/sys", f"{target_root}/proc", f"{target_root}/dev"]:
        run_cmd(["umount", "-lf", p], check=False, dry_run=dry_run, as_root=True)


@contextmanager
def chroot_binds(root: str | Path, *, dry_run: bool = False) -> Iterator[None]:
    """Bind /dev, /proc and /sys into *root* for the duration of the block.

    A no-op when *root* is the running system.
    """

    if is_live_root(root):
        yield
        return
    mount_chroot_binds(str(root), dry_run=dry_run)
    try:
        yield
    finally:
        umount_chroot_binds(str(root), dry_run=dry_run)
