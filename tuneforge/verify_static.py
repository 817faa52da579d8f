"""Static verification: persisted configuration, no reboot required.

Checks are plain objects with a ``subsystem`` and a ``check(ctx)`` method
returning one VerificationResult. They are built from the catalog and the
configuration state, then evaluated in order against a shared context that
caches file reads, so each destination is read at most once per run.

The SHA-256 comparison of rendered and installed bytes is the authoritative
content check. ContainsLine results on catalog-managed files are marked
diagnostic: they explain a checksum failure but are not counted.
"""

from __future__ import annotations

import hashlib
import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .catalog import Catalog, OWN_UNITS, Probe, kernel_cmdline_line, target_path
from .config_store import ConfigurationState
from .diff_engine import read_installed
from .installer import FILE_MODE
from .lib.privilege import Principal, Privilege, default_owners
from .lib.systemd import ENABLED_STATES, Systemd
from .verification import Status, VerificationReport, VerificationResult, values_equal

logger = logging.getLogger(__name__)

SUBSYSTEM_ORDER = (
    "boot",
    "initramfs",
    "modules",
    "udev",
    "sysctl",
    "systemd",
    "network",
    "user",
    "system",
    "packages",
    "services",
    "permissions",
    "checksums",
)


@dataclass
class StaticContext:
    catalog: Catalog
    state: ConfigurationState
    probe: Probe
    root: Path
    elevate: bool
    systemd: Systemd
    owners: Mapping[Privilege, Principal]
    _reads: Dict[str, Optional[bytes]] = field(default_factory=dict)

    def target(self, destination: str) -> Path:
        return target_path(self.root, destination)

    def read(self, destination: str) -> Optional[bytes]:
        if destination not in self._reads:
            self._reads[destination] = read_installed(self.target(destination), elevate=self.elevate)
        return self._reads[destination]

    def applicable(self, destination: str) -> Tuple[bool, str]:
        if destination not in self.catalog:
            return True, "not catalog-managed"
        return self.catalog.is_applicable(destination, self.probe, self.state)


class Check(Protocol):
    subsystem: str

    def check(self, ctx: StaticContext) -> VerificationResult:
        ...


@dataclass(frozen=True)
class FileExists:
    subsystem: str
    path: str

    def check(self, ctx: StaticContext) -> VerificationResult:
        name = f"{self.path} exists"
        present = ctx.read(self.path) is not None or ctx.target(self.path).exists()
        applicable, reason = ctx.applicable(self.path)
        if not applicable:
            note = "present" if present else "absent"
            return VerificationResult(self.subsystem, name, Status.INFO, f"not applicable ({reason}); {note}")
        if present:
            return VerificationResult(self.subsystem, name, Status.OK)
        return VerificationResult(self.subsystem, name, Status.FAIL, "missing")


def _split_kv(line: str) -> Optional[Tuple[str, str]]:
    for sep in (" = ", "=", " "):
        key, found, value = line.partition(sep)
        if found and key.strip():
            return key.strip(), value.strip().strip('"')
    return None


def line_matches(expected: str, actual: str) -> bool:
    """Exact match, or same key with a numerically equal value."""

    if expected.strip() == actual.strip():
        return True
    e, a = _split_kv(expected.strip()), _split_kv(actual.strip())
    if e is None or a is None or e[0] != a[0]:
        return False
    return values_equal(e[1], a[1])


@dataclass(frozen=True)
class ContainsLine:
    subsystem: str
    path: str
    line: str
    diagnostic: bool = False

    def check(self, ctx: StaticContext) -> VerificationResult:
        name = f"{self.path} contains {self.line!r}"
        applicable, reason = ctx.applicable(self.path)
        content = ctx.read(self.path)
        if content is None:
            if not applicable:
                return VerificationResult(self.subsystem, name, Status.INFO, f"not applicable ({reason})")
            return VerificationResult(self.subsystem, name, Status.FAIL, "file missing", diagnostic=self.diagnostic)
        lines = content.decode("utf-8", errors="replace").splitlines()
        if any(line_matches(self.line, actual) for actual in lines):
            return VerificationResult(self.subsystem, name, Status.OK, diagnostic=self.diagnostic)
        return VerificationResult(
            self.subsystem, name, Status.FAIL, "line not found", expected=self.line, diagnostic=self.diagnostic
        )


@dataclass(frozen=True)
class Predicate:
    """Custom check. *fn* returns (status, message); any of the four statuses."""

    subsystem: str
    name: str
    fn: Callable[[StaticContext], Tuple[Status, str]]

    def check(self, ctx: StaticContext) -> VerificationResult:
        status, message = self.fn(ctx)
        return VerificationResult(self.subsystem, self.name, status, message)


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def _package_check(name: str, required: bool) -> Callable[[StaticContext], Tuple[Status, str]]:
    def fn(ctx: StaticContext) -> Tuple[Status, str]:
        if ctx.probe.package_installed(name):
            return Status.OK, "installed"
        if required:
            return Status.FAIL, "required package not installed"
        return Status.INFO, "optional package not installed"

    return fn


def _unit_check(unit: str, want: str) -> Callable[[StaticContext], Tuple[Status, str]]:
    def fn(ctx: StaticContext) -> Tuple[Status, str]:
        st = ctx.systemd.is_enabled(unit)
        if st == "unknown":
            return Status.INFO, "systemctl unavailable"
        if st == "not-found":
            if unit in OWN_UNITS and want == "enabled":
                return Status.FAIL, "unit file not installed"
            return Status.INFO, "unit not present on this system"
        if want == "enabled":
            if st in ("masked", "masked-runtime"):
                return Status.FAIL, "masked"
            return (Status.OK, st) if st in ENABLED_STATES else (Status.FAIL, st)
        if want == "disabled":
            return (Status.WARN, f"still {st}") if st in ENABLED_STATES else (Status.OK, st)
        return (Status.OK, st) if st in ("masked", "masked-runtime") else (Status.FAIL, st)

    return fn


def _parse_modprobe_options(content: bytes) -> Dict[Tuple[str, str], str]:
    out: Dict[Tuple[str, str], str] = {}
    for raw in content.decode("utf-8", errors="replace").splitlines():
        parts = raw.split()
        if len(parts) < 3 or parts[0] != "options":
            continue
        module = parts[1]
        for opt in parts[2:]:
            key, sep, value = opt.partition("=")
            if sep:
                out[(module, key)] = value
    return out


def _module_option_check(module: str, option: str, value: str, path: str) -> Callable[[StaticContext], Tuple[Status, str]]:
    def fn(ctx: StaticContext) -> Tuple[Status, str]:
        content = ctx.read(path)
        if content is None:
            return Status.FAIL, f"{path} missing"
        found = _parse_modprobe_options(content).get((module, option))
        if found is None:
            return Status.FAIL, "option not set"
        if values_equal(value, found):
            return Status.OK, found
        return Status.FAIL, f"expected {value}, found {found}"

    return fn


def _cmdline_single_line(path: str) -> Callable[[StaticContext], Tuple[Status, str]]:
    def fn(ctx: StaticContext) -> Tuple[Status, str]:
        content = ctx.read(path)
        if content is None:
            return Status.FAIL, "missing"
        lines = [ln for ln in content.decode("utf-8", errors="replace").splitlines() if ln.strip()]
        if len(lines) != 1:
            return Status.FAIL, f"expected one line, found {len(lines)}"
        return Status.OK, "single line"

    return fn


def _permissions_check(destination: str, privilege: Privilege) -> Callable[[StaticContext], Tuple[Status, str]]:
    def fn(ctx: StaticContext) -> Tuple[Status, str]:
        try:
            st = os.lstat(ctx.target(destination))
        except FileNotFoundError:
            return Status.INFO, "not installed"
        except OSError as e:
            return Status.WARN, f"cannot stat: {e}"
        if stat.S_ISLNK(st.st_mode):
            return Status.FAIL, "destination is a symlink"
        owner = ctx.owners[privilege]
        problems: List[str] = []
        mode = stat.S_IMODE(st.st_mode)
        if mode != FILE_MODE:
            problems.append(f"mode {mode:04o} != {FILE_MODE:04o}")
        if (st.st_uid, st.st_gid) != (owner.uid, owner.gid):
            problems.append(f"owner {st.st_uid}:{st.st_gid} != {owner.uid}:{owner.gid} ({owner.name})")
        if problems:
            return Status.FAIL, "; ".join(problems)
        return Status.OK, f"{mode:04o} {owner.name}"

    return fn


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class ChecksumMatches:
    path: str
    subsystem: str = "checksums"

    def check(self, ctx: StaticContext) -> VerificationResult:
        name = f"{self.path} sha256"
        installed = ctx.read(self.path)
        if installed is None:
            return VerificationResult(self.subsystem, name, Status.INFO, "not installed")
        expected = sha256(ctx.catalog.render_bytes(self.path, ctx.state))
        actual = sha256(installed)
        if expected == actual:
            return VerificationResult(self.subsystem, name, Status.OK, expected[:12])
        return VerificationResult(
            self.subsystem, name, Status.FAIL, "content differs from rendering", expected=expected, actual=actual
        )


# ---------------------------------------------------------------------------
# Building the check list
# ---------------------------------------------------------------------------


def build_static_checks(catalog: Catalog, state: ConfigurationState) -> List[Check]:
    checks: List[Check] = []

    for artifact in catalog:
        checks.append(FileExists(artifact.subsystem, artifact.destination))
        for line in catalog.render(artifact.destination, state):
            if not line.strip() or line.startswith("#"):
                continue
            checks.append(ContainsLine(artifact.subsystem, artifact.destination, line, diagnostic=True))

    cmdline = "/etc/kernel/cmdline"
    if cmdline in catalog:
        checks.append(Predicate("boot", f"{cmdline} is a single line", _cmdline_single_line(cmdline)))
        if not kernel_cmdline_line(state).strip():
            checks.append(Predicate("boot", "kernel parameters configured", lambda ctx: (Status.WARN, "empty")))

    modprobe = "/etc/modprobe.d/99-tuneforge.conf"
    if modprobe in catalog:
        for entry in state.module_options:
            module, option, value = str(entry["module"]), str(entry["option"]), str(entry["value"])
            checks.append(
                Predicate(
                    "modules",
                    f"{module}.{option}={value}",
                    _module_option_check(module, option, value, modprobe),
                )
            )

    for name in state.value("packages.required", ()):
        checks.append(Predicate("packages", f"package {name}", _package_check(str(name), True)))
    for name in state.value("packages.optional", ()):
        checks.append(Predicate("packages", f"package {name}", _package_check(str(name), False)))

    for unit in state.value("services.enable", ()):
        checks.append(Predicate("services", f"{unit} enabled", _unit_check(str(unit), "enabled")))
    for unit in state.value("services.disable", ()):
        checks.append(Predicate("services", f"{unit} disabled", _unit_check(str(unit), "disabled")))
    for unit in state.value("services.mask", ()):
        checks.append(Predicate("services", f"{unit} masked", _unit_check(str(unit), "masked")))

    for artifact in catalog:
        checks.append(
            Predicate(
                "permissions",
                f"{artifact.destination} owner/mode",
                _permissions_check(artifact.destination, artifact.privilege),
            )
        )
    for artifact in catalog:
        checks.append(ChecksumMatches(artifact.destination))
    return checks


def _order(checks: Sequence[Check]) -> List[Check]:
    rank = {name: i for i, name in enumerate(SUBSYSTEM_ORDER)}
    # Unlisted subsystems still run before the checksum pass.
    other = rank["checksums"] - 0.5
    return sorted(checks, key=lambda c: rank.get(c.subsystem, other))


class StaticVerifier:
    def __init__(
        self,
        catalog: Catalog,
        state: ConfigurationState,
        *,
        probe: Probe,
        root: str | Path = "/",
        elevate: bool = False,
        systemd: Optional[Systemd] = None,
        owners: Optional[Mapping[Privilege, Principal]] = None,
        checks: Optional[Sequence[Check]] = None,
    ):
        self.catalog = catalog
        self.state = state
        self.checks = list(checks) if checks is not None else build_static_checks(catalog, state)
        self.ctx = StaticContext(
            catalog=catalog,
            state=state,
            probe=probe,
            root=Path(root),
            elevate=elevate,
            systemd=systemd if systemd is not None else Systemd(root),
            owners=owners if owners is not None else default_owners(),
        )

    def run(self) -> VerificationReport:
        report = VerificationReport(title="static")
        for chk in _order(self.checks):
            result = chk.check(self.ctx)
            report.add(result)
            logger.debug("static %s: %s %s", result.name, result.status.value, result.message)
        s = report.summary()
        logger.info("Static verification: ok=%s warn=%s fail=%s info=%s", s.ok, s.warn, s.fail, s.info)
        return report
