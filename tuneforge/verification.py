"""Result types shared by lint, static and runtime verification."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

_BOOL_WORDS = {
    "y": 1,
    "yes": 1,
    "true": 1,
    "on": 1,
    "n": 0,
    "no": 0,
    "false": 0,
    "off": 0,
}


class Status(str, Enum):
    OK = "OK"
    WARN = "WARN"
    FAIL = "FAIL"
    INFO = "INFO"


@dataclass(frozen=True)
class VerificationResult:
    subsystem: str
    name: str
    status: Status
    message: str = ""
    expected: Optional[str] = None
    actual: Optional[str] = None
    # Explains a checksum failure; shown but never counted.
    diagnostic: bool = False

    @property
    def counted(self) -> bool:
        return not self.diagnostic and self.status is not Status.INFO

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "subsystem": self.subsystem,
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
        }
        if self.expected is not None:
            d["expected"] = self.expected
        if self.actual is not None:
            d["actual"] = self.actual
        if self.diagnostic:
            d["diagnostic"] = True
        return d


@dataclass(frozen=True)
class VerificationSummary:
    ok: int = 0
    warn: int = 0
    fail: int = 0
    info: int = 0

    @property
    def overall(self) -> Status:
        if self.fail:
            return Status.FAIL
        if self.warn:
            return Status.WARN
        return Status.OK

    @property
    def exit_code(self) -> int:
        return 1 if self.fail else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "warn": self.warn,
            "fail": self.fail,
            "info": self.info,
            "overall": self.overall.value,
        }


@dataclass
class VerificationReport:
    title: str
    results: List[VerificationResult] = field(default_factory=list)

    def add(self, result: VerificationResult) -> VerificationResult:
        self.results.append(result)
        return result

    def extend(self, results: List[VerificationResult]) -> None:
        self.results.extend(results)

    def by_subsystem(self) -> Dict[str, List[VerificationResult]]:
        out: Dict[str, List[VerificationResult]] = {}
        for r in self.results:
            out.setdefault(r.subsystem, []).append(r)
        return out

    def summary(self) -> VerificationSummary:
        counts = {s: 0 for s in Status}
        for r in self.results:
            if r.status is Status.INFO:
                counts[Status.INFO] += 1
            elif r.counted:
                counts[r.status] += 1
        return VerificationSummary(
            ok=counts[Status.OK],
            warn=counts[Status.WARN],
            fail=counts[Status.FAIL],
            info=counts[Status.INFO],
        )

    @property
    def exit_code(self) -> int:
        return self.summary().exit_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "summary": self.summary().to_dict(),
            "results": [r.to_dict() for r in self.results],
        }


def normalize_numeric(value: Any) -> Optional[int]:
    """Integer value of *value* if it reads as a number, else None.

    Accepts hex (``0x``), octal (``0o``), binary and decimal forms plus the
    kernel's boolean spellings, so ``0xfffd7fff`` and ``4294803455`` compare
    equal and ``Y`` matches ``1``.
    """

    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    lowered = text.lower()
    if lowered in _BOOL_WORDS:
        return _BOOL_WORDS[lowered]
    try:
        return int(text, 0)
    except ValueError:
        pass
    # int(x, 0) rejects leading zeros such as "010"; sysfs prints them.
    try:
        return int(text, 10)
    except ValueError:
        return None


def values_equal(expected: Any, actual: Any) -> bool:
    """Compare numerically when both sides are numbers, else as stripped text."""

    a, b = normalize_numeric(expected), normalize_numeric(actual)
    if a is not None and b is not None:
        return a == b
    return str(expected).strip() == str(actual).strip()
