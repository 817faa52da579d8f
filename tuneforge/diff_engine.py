from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .catalog import Catalog, Probe, target_path
from .config_store import ConfigurationState
from .lib.privilege import read_bytes

logger = logging.getLogger(__name__)


class DiffStatus(str, Enum):
    MATCH = "match"
    NOT_INSTALLED = "not-installed"
    DIFFERS = "differs"
    NOT_APPLICABLE = "not-applicable"


@dataclass(frozen=True)
class DiffEntry:
    destination: str
    status: DiffStatus
    diff: str = ""
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"destination": self.destination, "status": self.status.value}
        if self.diff:
            d["diff"] = self.diff
        if self.reason:
            d["reason"] = self.reason
        return d


@dataclass
class DiffReport:
    entries: List[DiffEntry] = field(default_factory=list)

    @property
    def all_match(self) -> bool:
        return all(e.status in (DiffStatus.MATCH, DiffStatus.NOT_APPLICABLE) for e in self.entries)

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in DiffStatus}
        for e in self.entries:
            out[e.status.value] += 1
        return out

    @property
    def exit_code(self) -> int:
        return 0 if self.all_match else 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "all_match": self.all_match,
            "counts": self.counts(),
            "entries": [e.to_dict() for e in self.entries],
        }


def read_installed(path: Path, *, elevate: bool = False) -> Optional[bytes]:
    """Installed bytes, or None when the file is absent or unreadable."""

    try:
        return read_bytes(path, elevate=elevate)
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("Cannot read %s: %s (treated as not installed)", path, e)
        return None


def unified(destination: str, installed: bytes, rendered: bytes) -> str:
    old = installed.decode("utf-8", errors="replace").splitlines(keepends=True)
    new = rendered.decode("utf-8", errors="replace").splitlines(keepends=True)
    return "".join(
        difflib.unified_diff(old, new, fromfile=f"{destination} (installed)", tofile=f"{destination} (rendered)")
    )


def diff_catalog(
    catalog: Catalog,
    state: ConfigurationState,
    *,
    probe: Probe,
    root: str | Path = "/",
    elevate: bool = False,
    destinations: Optional[Iterable[str]] = None,
) -> DiffReport:
    """Compare every selected destination with what is on disk. Read-only."""

    report = DiffReport()
    for artifact in catalog.select(destinations=destinations):
        dest = artifact.destination
        rendered = catalog.render_bytes(dest, state)
        installed = read_installed(target_path(root, dest), elevate=elevate)
        applicable, reason = artifact.applicability.evaluate(probe, state)

        if installed is None:
            status = DiffStatus.NOT_INSTALLED if applicable else DiffStatus.NOT_APPLICABLE
            report.entries.append(DiffEntry(dest, status, reason="" if applicable else reason))
        elif installed == rendered:
            report.entries.append(DiffEntry(dest, DiffStatus.MATCH))
        else:
            report.entries.append(DiffEntry(dest, DiffStatus.DIFFERS, diff=unified(dest, installed, rendered)))
        logger.debug("diff %s: %s", dest, report.entries[-1].status.value)
    return report
