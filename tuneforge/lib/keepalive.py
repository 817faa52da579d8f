"""Refresh the cached sudo credential until the parent process goes away.

Run as ``python -m tuneforge.lib.keepalive <parent-pid> <interval-seconds>``.
"""

from __future__ import annotations

import os
import subprocess
import sys
import time
from typing import Callable, Optional


def parent_alive(pid: int) -> bool:
    if os.getppid() != pid:
        # Re-parented: the run that started us is gone.
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def refresh() -> bool:
    return (
        subprocess.call(
            ["sudo", "-n", "-v"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        == 0
    )


def loop(
    parent: int,
    interval_s: float,
    *,
    alive: Callable[[int], bool] = parent_alive,
    refresh_fn: Callable[[], bool] = refresh,
    sleep: Callable[[float], None] = time.sleep,
    max_rounds: Optional[int] = None,
) -> int:
    rounds = 0
    # Poll the parent more often than we refresh so we exit promptly.
    tick = min(interval_s, 1.0)
    elapsed = interval_s
    while alive(parent):
        if max_rounds is not None and rounds >= max_rounds:
            return 0
        if elapsed >= interval_s:
            if not refresh_fn():
                return 1
            elapsed = 0.0
            rounds += 1
        sleep(tick)
        elapsed += tick
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 2:
        print("usage: python -m tuneforge.lib.keepalive PARENT_PID INTERVAL", file=sys.stderr)
        return 2
    return loop(int(args[0]), float(args[1]))


if __name__ == "__main__":
    raise SystemExit(main())
