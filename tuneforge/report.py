from __future__ import annotations

import json
import sys
from typing import Any, Dict, List, Optional, TextIO

from .diff_engine import DiffReport, DiffStatus
from .verification import Status, VerificationReport


class _C:
    BOLD = "\033[1m"
    DIM = "\033[2m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    RED = "\033[31m"
    CYAN = "\033[36m"
    RESET = "\033[0m"


_PLAIN = {k: "" for k in ("BOLD", "DIM", "GREEN", "YELLOW", "RED", "CYAN", "RESET")}


class Printer:
    """Human or JSON output for one run. Colour only on a terminal."""

    def __init__(self, *, stream: Optional[TextIO] = None, color: bool = True, as_json: bool = False):
        self.stream = stream or sys.stdout
        self.as_json = as_json
        use = color and not as_json and hasattr(self.stream, "isatty") and self.stream.isatty()
        self.c: Dict[str, str] = {k: getattr(_C, k) for k in _PLAIN} if use else dict(_PLAIN)

    def _p(self, text: str = "") -> None:
        print(text, file=self.stream)

    def _status(self, status: Status) -> str:
        colour = {
            Status.OK: self.c["GREEN"],
            Status.WARN: self.c["YELLOW"],
            Status.FAIL: self.c["RED"],
            Status.INFO: self.c["DIM"],
        }[status]
        return f"{colour}{status.value:<4}{self.c['RESET']}"

    def banner(self, title: str) -> None:
        if self.as_json:
            return
        self._p(f"\n{self.c['BOLD']}{self.c['CYAN']}{'─' * 60}")
        self._p(f"  {title}")
        self._p(f"{'─' * 60}{self.c['RESET']}")

    def json(self, payload: Dict[str, Any]) -> None:
        self._p(json.dumps(payload, indent=2, sort_keys=False))

    def verification(self, report: VerificationReport) -> None:
        if self.as_json:
            self.json(report.to_dict())
            return
        self.banner(f"{report.title} verification")
        for subsystem, results in report.by_subsystem().items():
            self._p(f"\n{self.c['BOLD']}[{subsystem}]{self.c['RESET']}")
            for r in results:
                line = f"  {self._status(r.status)}  {r.name}"
                if r.message:
                    line += f"  {self.c['DIM']}{r.message}{self.c['RESET']}"
                if r.diagnostic:
                    line += f"  {self.c['DIM']}(diagnostic){self.c['RESET']}"
                self._p(line)
                if r.expected is not None and r.status is not Status.OK:
                    self._p(f"        expected: {r.expected}")
                    if r.actual is not None:
                        self._p(f"        actual:   {r.actual}")
        s = report.summary()
        self._p()
        self._p(
            f"{self.c['BOLD']}Summary:{self.c['RESET']} "
            f"{s.ok} ok, {s.warn} warn, {s.fail} fail, {s.info} info -> {self._status(s.overall)}"
        )

    def diff(self, report: DiffReport) -> None:
        if self.as_json:
            self.json(report.to_dict())
            return
        self.banner("diff")
        marks = {
            DiffStatus.MATCH: f"{self.c['GREEN']}={self.c['RESET']}",
            DiffStatus.NOT_INSTALLED: f"{self.c['RED']}+{self.c['RESET']}",
            DiffStatus.DIFFERS: f"{self.c['YELLOW']}~{self.c['RESET']}",
            DiffStatus.NOT_APPLICABLE: f"{self.c['DIM']}-{self.c['RESET']}",
        }
        for e in report.entries:
            note = f"  {self.c['DIM']}{e.reason}{self.c['RESET']}" if e.reason else ""
            self._p(f"  {marks[e.status]} {e.destination}  {e.status.value}{note}")
            if e.diff:
                for line in e.diff.splitlines():
                    self._p(f"      {self._diff_line(line)}")
        counts = report.counts()
        self._p()
        self._p(", ".join(f"{n} {k}" for k, n in counts.items()))

    def _diff_line(self, line: str) -> str:
        if line.startswith("+") and not line.startswith("+++"):
            return f"{self.c['GREEN']}{line}{self.c['RESET']}"
        if line.startswith("-") and not line.startswith("---"):
            return f"{self.c['RED']}{line}{self.c['RESET']}"
        return line

    def run_summary(self, summary: Dict[str, Any]) -> None:
        if self.as_json:
            self.json(summary)
            return
        self.banner(f"{summary.get('mode', 'run')} summary")
        changed: List[str] = summary.get("changed") or []
        for dest in changed:
            self._p(f"  {self.c['GREEN']}✓{self.c['RESET']}  {dest}")
        if not changed:
            self._p(f"  {self.c['DIM']}nothing changed{self.c['RESET']}")
        for w in summary.get("warnings") or []:
            self._p(f"  {self.c['YELLOW']}⚠{self.c['RESET']}  {w}")
        for key, err in (summary.get("errors") or {}).items():
            self._p(f"  {self.c['RED']}✗{self.c['RESET']}  {key}: {err}")
        if summary.get("log"):
            self._p(f"\n  log: {summary['log']}")
