"""Runtime verification: is the deployed configuration in effect right now?

A FAIL here means "not applied yet" (usually a reboot or re-login away),
not a deployment defect, so these results are reported separately from the
static ones. Each check classifies three ways: absent hardware or feature
is INFO, present but wrong is FAIL, present and right but not persistent is
WARN.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .catalog import GPU_UNIT, OWN_UNITS, WIFI_UNIT, Catalog
from .config_store import ConfigurationState
from .lib.env import PATHS
from .lib.hwdetect import HostProbe, kernel_at_least
from .lib.systemd import Systemd, UnitState
from .renderers import format_value
from .verification import Status, VerificationReport, VerificationResult, values_equal

logger = logging.getLogger(__name__)

REBOOT = "reboot required"
RELOGIN = "log in again to pick it up"


def _read(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return None


def parse_cmdline(text: str) -> Dict[str, List[str]]:
    """Kernel command line -> {key: [values]}; bare flags map to [""]."""

    out: Dict[str, List[str]] = {}
    for token in text.split():
        key, _, value = token.partition("=")
        out.setdefault(key, []).append(value)
    return out


class RuntimeVerifier:
    def __init__(
        self,
        catalog: Catalog,
        state: ConfigurationState,
        *,
        probe: HostProbe,
        root: str | Path = "/",
        systemd: Optional[Systemd] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.catalog = catalog
        self.state = state
        self.probe = probe
        self.root = Path(root)
        self.systemd = systemd if systemd is not None else Systemd(root)
        self.environ = os.environ if environ is None else environ
        self._units: Dict[str, UnitState] = {}

    def _path(self, path: str) -> Path:
        return self.root / path.lstrip("/")

    def _unit(self, unit: str) -> UnitState:
        if unit not in self._units:
            self._units[unit] = self.systemd.unit_state(unit)
        return self._units[unit]

    def run(self) -> VerificationReport:
        report = VerificationReport(title="runtime")
        self._kernel_cmdline(report)
        self._module_parameters(report)
        self._modules(report)
        self._sysctl(report)
        self._services(report)
        self._environment(report)
        self._gpu_power(report)
        self._regdom(report)
        s = report.summary()
        logger.info("Runtime verification: ok=%s warn=%s fail=%s info=%s", s.ok, s.warn, s.fail, s.info)
        return report

    # -- kernel --------------------------------------------------------------

    def _kernel_cmdline(self, report: VerificationReport) -> None:
        live = _read(self._path(PATHS.proc_cmdline))
        if live is None:
            report.add(VerificationResult("cmdline", "/proc/cmdline", Status.INFO, "not readable"))
            return
        params = parse_cmdline(live)
        for token in self.state.kernel_cmdline:
            key, has_value, want = token.partition("=")
            name = f"cmdline {token}"
            seen = params.get(key)
            if seen is None:
                report.add(VerificationResult("cmdline", name, Status.FAIL, f"missing ({REBOOT})"))
            elif not has_value or any(values_equal(want, got) for got in seen):
                report.add(VerificationResult("cmdline", name, Status.OK))
            else:
                report.add(
                    VerificationResult(
                        "cmdline", name, Status.FAIL, REBOOT, expected=want, actual=" ".join(seen)
                    )
                )

    def _module_parameters(self, report: VerificationReport) -> None:
        for entry in self.state.module_options:
            module, option, want = str(entry["module"]), str(entry["option"]), str(entry["value"])
            name = f"{module}.{option}"
            if not self.probe.module_loaded(module):
                report.add(VerificationResult("modules", name, Status.INFO, f"module {module} not loaded"))
                continue
            got = _read(self._path(f"{PATHS.sys_module}/{module.replace('-', '_')}/parameters/{option}"))
            if got is None:
                report.add(VerificationResult("modules", name, Status.INFO, "parameter not exposed in sysfs"))
            elif values_equal(want, got):
                report.add(VerificationResult("modules", name, Status.OK, got))
            else:
                report.add(VerificationResult("modules", name, Status.FAIL, REBOOT, expected=want, actual=got))

    def _modules(self, report: VerificationReport) -> None:
        minimum = str(self.state.value("kernel.min_autoload_version", "0"))
        new_enough = kernel_at_least(self.probe.kernel_version(), minimum)
        for module in self.state.value("modules.autoload", ()):
            name = f"{module} loaded"
            if not new_enough:
                report.add(VerificationResult("modules", name, Status.INFO, f"kernel older than {minimum}"))
            elif self.probe.module_loaded(str(module)):
                report.add(VerificationResult("modules", name, Status.OK))
            else:
                report.add(VerificationResult("modules", name, Status.WARN, f"not loaded ({REBOOT})"))
        for module in self.state.value("modules.blacklist", ()):
            name = f"{module} blacklisted"
            if self.probe.module_loaded(str(module)):
                report.add(VerificationResult("modules", name, Status.FAIL, f"still loaded ({REBOOT})"))
            else:
                report.add(VerificationResult("modules", name, Status.OK))

    def _sysctl(self, report: VerificationReport) -> None:
        for key, value in self.state.group("sysctl").items():
            want = format_value(value)
            got = _read(self._path(f"{PATHS.proc_sys}/{key.replace('.', '/')}"))
            if got is None:
                report.add(VerificationResult("sysctl", key, Status.INFO, "not present on this kernel"))
                continue
            got = " ".join(got.split())
            if values_equal(want, got):
                report.add(VerificationResult("sysctl", key, Status.OK, got))
            else:
                report.add(
                    VerificationResult(
                        "sysctl", key, Status.FAIL, "run sysctl --system", expected=want, actual=got
                    )
                )

    # -- services ------------------------------------------------------------

    def _hardware_gate(self, unit: str) -> Optional[str]:
        if unit == GPU_UNIT and not self.probe.gpu_cards(str(self.state.value("gpu.driver", "")) or None):
            return "no matching GPU"
        if unit == WIFI_UNIT and not self.probe.wifi_interfaces():
            return "no wireless interface"
        return None

    def _services(self, report: VerificationReport) -> None:
        for unit in self.state.value("services.enable", ()):
            report.add(self._want_running(str(unit)))
        for unit in self.state.value("services.disable", ()):
            st = self._unit(str(unit))
            name = f"{unit} stopped"
            if st.active == "unknown" and st.enabled == "unknown":
                report.add(VerificationResult("services", name, Status.INFO, "systemd unavailable"))
            elif not st.exists:
                report.add(VerificationResult("services", name, Status.INFO, "not installed"))
            elif st.is_active:
                report.add(VerificationResult("services", name, Status.FAIL, "still running"))
            elif st.is_enabled:
                report.add(VerificationResult("services", name, Status.WARN, "stopped but still enabled"))
            else:
                report.add(VerificationResult("services", name, Status.OK))
        for unit in self.state.value("services.mask", ()):
            st = self._unit(str(unit))
            name = f"{unit} masked"
            if not st.exists:
                report.add(VerificationResult("services", name, Status.INFO, "not installed"))
            elif st.is_masked:
                report.add(VerificationResult("services", name, Status.OK))
            else:
                report.add(VerificationResult("services", name, Status.FAIL, st.enabled))

    def _want_running(self, unit: str) -> VerificationResult:
        name = f"{unit} running"
        gate = self._hardware_gate(unit)
        if gate:
            return VerificationResult("services", name, Status.INFO, gate)
        st = self._unit(unit)
        if st.active == "unknown" and st.enabled == "unknown":
            return VerificationResult("services", name, Status.INFO, "systemd unavailable")
        if not st.exists:
            if unit in OWN_UNITS:
                return VerificationResult("services", name, Status.FAIL, "unit file not installed")
            return VerificationResult("services", name, Status.INFO, "not installed")
        if st.is_masked:
            return VerificationResult("services", name, Status.FAIL, "masked")
        if not st.is_active:
            return VerificationResult("services", name, Status.FAIL, f"{st.active}")
        if not st.is_enabled:
            return VerificationResult("services", name, Status.WARN, "running now but not enabled at boot")
        return VerificationResult("services", name, Status.OK)

    # -- session -------------------------------------------------------------

    def _environment(self, report: VerificationReport) -> None:
        for key, value in self.state.group("environment").items():
            want = format_value(value)
            got = self.environ.get(key)
            if got is None:
                report.add(VerificationResult("environment", key, Status.WARN, f"not set ({RELOGIN})"))
            elif got == want:
                report.add(VerificationResult("environment", key, Status.OK, got))
            else:
                report.add(
                    VerificationResult(
                        "environment", key, Status.FAIL, "overridden", expected=want, actual=got
                    )
                )

    # -- advisory hardware ---------------------------------------------------

    def _gpu_power(self, report: VerificationReport) -> None:
        driver = str(self.state.value("gpu.driver", "")) or None
        want = str(self.state.value("gpu.power_level", "auto"))
        cards = self.probe.gpu_cards(driver)
        if not cards:
            what = f"no {driver} GPU" if driver else "no GPU"
            report.add(VerificationResult("hardware", "GPU power level", Status.INFO, what))
            return
        persistent = self._unit(GPU_UNIT).is_enabled
        for dev in cards:
            name = f"{dev.parent.name} power level"
            got = _read(dev / "power_dpm_force_performance_level")
            if got is None:
                report.add(VerificationResult("hardware", name, Status.INFO, "not exposed"))
            elif got != want:
                report.add(VerificationResult("hardware", name, Status.WARN, "mismatch", expected=want, actual=got))
            elif not persistent:
                report.add(
                    VerificationResult("hardware", name, Status.WARN, f"{got} now, but {GPU_UNIT} is not enabled")
                )
            else:
                report.add(VerificationResult("hardware", name, Status.OK, got))

    def _regdom(self, report: VerificationReport) -> None:
        want = self.state.value("wireless.regdom")
        if not want:
            return
        name = "wireless regulatory domain"
        if not self.probe.module_loaded("cfg80211"):
            report.add(VerificationResult("hardware", name, Status.INFO, "cfg80211 not loaded"))
            return
        got = _read(self._path(f"{PATHS.sys_module}/cfg80211/parameters/ieee80211_regdom"))
        if got is None:
            report.add(VerificationResult("hardware", name, Status.INFO, "not exposed"))
        elif got.upper() == str(want).upper():
            report.add(VerificationResult("hardware", name, Status.OK, got))
        else:
            report.add(VerificationResult("hardware", name, Status.WARN, "mismatch", expected=str(want), actual=got))
