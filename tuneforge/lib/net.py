from __future__ import annotations

import logging
import time
from typing import Callable

from .command import run_cmd

logger = logging.getLogger(__name__)


def networkmanager_running() -> bool:
    r = run_cmd(["nmcli", "-t", "-f", "RUNNING", "general"], check=False, probe=True)
    return r.returncode == 0 and r.stdout.strip() == "running"


def wait_for_networkmanager(
    *,
    retries: int = 10,
    interval_s: float = 1.0,
    check: Callable[[], bool] = networkmanager_running,
    sleep: Callable[[float], None] = time.sleep,
    dry_run: bool = False,
) -> bool:
    """Poll until NetworkManager answers again after a backend switch.

    Bounded by a fixed retry budget; returns False when it is exhausted.
    """

    if dry_run:
        logger.info("Would wait for NetworkManager")
        return True
    for attempt in range(1, retries + 1):
        if check():
            logger.info("NetworkManager is running (attempt %s/%s)", attempt, retries)
            return True
        if attempt < retries:
            sleep(interval_s)
    logger.warning("NetworkManager did not come back after %s attempts", retries)
    return False
