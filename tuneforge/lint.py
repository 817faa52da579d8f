from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath
from typing import Any, Iterable

from .catalog import Catalog, kernel_cmdline_line
from .config_store import ConfigurationState
from .renderers import to_bytes
from .verification import Status, VerificationReport, VerificationResult, normalize_numeric

logger = logging.getLogger(__name__)

_PARAM_KEY_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]*$")
_MODULE_RE = re.compile(r"^[A-Za-z0-9_\-]+$")
_REGDOM_RE = re.compile(r"^(?:[A-Z]{2}|00)$")
_UNIT_SUFFIXES = (".service", ".socket", ".timer", ".target", ".path", ".mount")
_NUMERIC_HINT_RE = re.compile(r"^(?:0[xXoObB])?[0-9a-fA-F]+$")

_KV_GROUPS = ("sysctl", "journald", "coredump", "resolved", "logind", "environment")


def _r(subsystem: str, name: str, status: Status, message: str = "") -> VerificationResult:
    return VerificationResult(subsystem, name, status, message)


def _kernel_params(state: ConfigurationState) -> Iterable[VerificationResult]:
    for token in state.kernel_cmdline:
        name = f"kernel parameter {token!r}"
        if not token or any(c.isspace() for c in token) or '"' in token or "'" in token:
            yield _r("kernel", name, Status.FAIL, "whitespace or quotes in parameter")
            continue
        key, has_value, value = token.partition("=")
        if not _PARAM_KEY_RE.match(key):
            yield _r("kernel", name, Status.FAIL, "invalid parameter name")
        elif has_value and _NUMERIC_HINT_RE.match(value) and value[:1].isdigit() and normalize_numeric(value) is None:
            yield _r("kernel", name, Status.FAIL, "value looks numeric but does not parse")
        else:
            yield _r("kernel", name, Status.OK)
    if not state.kernel_cmdline:
        yield _r("kernel", "kernel parameters", Status.WARN, "no kernel parameters configured")


def _cmdline_file(state: ConfigurationState) -> Iterable[VerificationResult]:
    line = kernel_cmdline_line(state)
    if "\n" in line:
        yield _r("kernel", "/etc/kernel/cmdline", Status.FAIL, "must be a single line")
    if not any(t.startswith("root=") for t in line.split()):
        yield _r(
            "kernel",
            "/etc/kernel/cmdline root=",
            Status.WARN,
            "no root= parameter; relying on GPT partition auto-discovery",
        )


def _module_options(state: ConfigurationState) -> Iterable[VerificationResult]:
    seen = set()
    for entry in state.module_options:
        try:
            module, option, value = str(entry["module"]), str(entry["option"]), str(entry["value"])
        except (KeyError, TypeError):
            yield _r("modules", f"option {entry!r}", Status.FAIL, "needs module, option and value")
            continue
        name = f"{module}.{option}"
        if not _MODULE_RE.match(module) or not _PARAM_KEY_RE.match(option):
            yield _r("modules", name, Status.FAIL, "invalid module or option name")
        elif (module, option) in seen:
            yield _r("modules", name, Status.FAIL, "set more than once")
        elif not value or any(c.isspace() for c in value):
            yield _r("modules", name, Status.FAIL, "empty value or whitespace in value")
        else:
            yield _r("modules", name, Status.OK, value)
        seen.add((module, option))
    for module in list(state.value("modules.blacklist", ())) + list(state.value("modules.autoload", ())):
        if not _MODULE_RE.match(str(module)):
            yield _r("modules", f"module {module!r}", Status.FAIL, "invalid module name")


def _regdom(state: ConfigurationState) -> Iterable[VerificationResult]:
    regdom = str(state.value("wireless.regdom", "") or "")
    if _REGDOM_RE.match(regdom):
        yield _r("network", "regulatory domain", Status.OK, regdom)
    else:
        yield _r("network", "regulatory domain", Status.FAIL, f"{regdom!r} is not a two-letter country code or 00")
    backend = state.value("wireless.backend")
    if backend not in ("iwd", "wpa_supplicant"):
        yield _r("network", "wifi backend", Status.FAIL, f"unknown backend {backend!r}")


def _services(state: ConfigurationState) -> Iterable[VerificationResult]:
    lists = {k: [str(u) for u in state.value(f"services.{k}", ())] for k in ("enable", "disable", "mask")}
    for kind, units in lists.items():
        for unit in units:
            if not unit.endswith(_UNIT_SUFFIXES):
                yield _r("services", f"{kind} {unit}", Status.FAIL, "missing unit suffix")
    clash = set(lists["enable"]) & (set(lists["disable"]) | set(lists["mask"]))
    for unit in sorted(clash):
        yield _r("services", unit, Status.FAIL, "both enabled and disabled/masked")


def _duplicate_keys(state: ConfigurationState) -> Iterable[VerificationResult]:
    for group in _KV_GROUPS:
        entries: Any = state.value(group) or {}
        folded: dict = {}
        for key in entries:
            folded.setdefault(str(key).lower(), []).append(str(key))
        for variants in folded.values():
            if len(variants) > 1:
                yield _r(group, " / ".join(variants), Status.FAIL, "duplicate key (case-insensitive)")


def _catalog(catalog: Catalog, state: ConfigurationState) -> Iterable[VerificationResult]:
    seen = set()
    for artifact in catalog:
        dest = artifact.destination
        if not PurePosixPath(dest).is_absolute():
            yield _r("catalog", dest, Status.FAIL, "destination is not absolute")
        if dest in seen:
            yield _r("catalog", dest, Status.FAIL, "duplicate destination")
        seen.add(dest)
        try:
            first = catalog.render(dest, state)
            second = catalog.render(dest, state)
        except (KeyError, ValueError, TypeError) as e:
            yield _r("catalog", dest, Status.FAIL, f"render failed: {e}")
            continue
        if first != second:
            yield _r("catalog", dest, Status.FAIL, "rendering is not deterministic")
            continue
        data = to_bytes(first)
        if not data.endswith(b"\n") or data.endswith(b"\n\n"):
            yield _r("catalog", dest, Status.FAIL, "must end with exactly one newline")
            continue
        yield _r("catalog", dest, Status.OK, f"{len(data)} bytes")


def lint(catalog: Catalog, state: ConfigurationState) -> VerificationReport:
    """Validate configuration state and catalog without touching the system."""

    report = VerificationReport(title="lint")
    for results in (
        _kernel_params(state),
        _cmdline_file(state),
        _module_options(state),
        _regdom(state),
        _services(state),
        _duplicate_keys(state),
        _catalog(catalog, state),
    ):
        report.extend(list(results))
    s = report.summary()
    logger.info("Lint: ok=%s warn=%s fail=%s", s.ok, s.warn, s.fail)
    return report
