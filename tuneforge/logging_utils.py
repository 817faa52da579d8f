from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import List, Optional

from .lib.env import PATHS
from .lib.redact import redact

DEFAULT_LOG_DIR = PATHS.log_dir_default
DEFAULT_RETAIN = 30
LOG_PREFIX = "tuneforge-"


class RedactingFilter(logging.Filter):
    """Mask credential values before a record reaches any handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        clean = redact(msg)
        if clean != msg:
            record.msg = clean
            record.args = None
        return True


def fallback_log_dir() -> Path:
    state = os.environ.get("XDG_STATE_HOME") or str(Path.home() / ".local" / "state")
    return Path(state) / "tuneforge" / "logs"


def dated_log_path(log_dir: str | Path, mode: str, *, now: Optional[float] = None) -> Path:
    t = time.localtime(now)
    return (
        Path(log_dir)
        / time.strftime("%Y", t)
        / time.strftime("%m", t)
        / time.strftime("%d", t)
        / f"{LOG_PREFIX}{time.strftime('%H%M%S', t)}-{mode}.log"
    )


def prune_logs(log_dir: str | Path, retain: int) -> List[Path]:
    """Delete the oldest log files until at most *retain* remain.

    Empty dated directories left behind are removed too.
    """

    root = Path(log_dir)
    if retain < 0 or not root.is_dir():
        return []
    logs = sorted(
        (p for p in root.rglob(f"{LOG_PREFIX}*.log") if p.is_file()),
        key=lambda p: (p.stat().st_mtime, str(p)),
    )
    doomed = logs[: max(0, len(logs) - retain)]
    for p in doomed:
        try:
            p.unlink()
        except OSError:
            continue
        parent = p.parent
        while parent != root:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent
    return doomed


def _open_file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    return logging.FileHandler(path, encoding="utf-8")


def configure_logging(
    log_dir: str | Path = DEFAULT_LOG_DIR,
    *,
    mode: str = "run",
    level: int = logging.INFO,
    also_console: bool = True,
    quiet: bool = False,
    retain: int = DEFAULT_RETAIN,
) -> str:
    """Configure logging for one run.

    One file per run under ``<log_dir>/YYYY/MM/DD/``. When *log_dir* is not
    writable (non-root runs, read-only media) the per-user state directory is
    used instead. Every handler carries the redacting filter.

    Returns the actual file path being used.
    """

    logger = logging.getLogger()
    logger.setLevel(level)

    # Avoid duplicate handlers if configure_logging() is called multiple times.
    if getattr(logger, "_tuneforge_configured", False):
        return getattr(logger, "_tuneforge_log_path", "")

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    redacting = RedactingFilter()
    handlers: list[logging.Handler] = []

    chosen_dir = Path(log_dir)
    chosen_path = dated_log_path(chosen_dir, mode)
    try:
        file_handler = _open_file_handler(chosen_path)
    except OSError:
        chosen_dir = fallback_log_dir()
        chosen_path = dated_log_path(chosen_dir, mode)
        file_handler = _open_file_handler(chosen_path)
    file_handler.setFormatter(fmt)
    handlers.append(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        console.setLevel(logging.WARNING if quiet else level)
        handlers.append(console)

    for h in handlers:
        h.addFilter(redacting)
        logger.addHandler(h)

    setattr(logger, "_tuneforge_configured", True)
    setattr(logger, "_tuneforge_log_path", str(chosen_path))
    setattr(logger, "_tuneforge_handlers", handlers)

    pruned = prune_logs(chosen_dir, max(retain, 1))
    logging.getLogger(__name__).info(
        "Logging initialized (requested=%s, actual=%s, pruned=%d)", log_dir, chosen_path, len(pruned)
    )
    return str(chosen_path)


def reset_logging() -> None:
    """Detach handlers added by configure_logging()."""

    logger = logging.getLogger()
    for h in getattr(logger, "_tuneforge_handlers", []):
        logger.removeHandler(h)
        h.close()
    for attr in ("_tuneforge_configured", "_tuneforge_log_path", "_tuneforge_handlers"):
        if hasattr(logger, attr):
            delattr(logger, attr)
