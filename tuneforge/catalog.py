from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, Iterator, List, Optional, Protocol, Tuple

from .config_store import ConfigurationState
from .lib.bootloader import REBUILD_ORDER
from .lib.hwdetect import kernel_at_least
from .lib.privilege import Privilege
from .renderers import (
    IWD_BOOLS,
    GeneratedLines,
    KeyValueSections,
    Lines,
    Renderer,
    TemplateText,
    to_bytes,
)

logger = logging.getLogger(__name__)


class NotDefined(LookupError):
    """A destination outside the fixed catalog."""

    def __init__(self, path: str):
        super().__init__(f"No catalog entry for {path}")
        self.path = path


class Probe(Protocol):
    def package_installed(self, name: str) -> bool:
        ...

    def kernel_version(self) -> str:
        ...

    def path_exists(self, path: str) -> bool:
        ...


@dataclass(frozen=True)
class Applicability:
    """When an artifact should be deployed on this host.

    kind: always | package | min_kernel | path_exists. A ``min_kernel``
    without an explicit version reads ``kernel.min_autoload_version``.
    """

    kind: str = "always"
    arg: Optional[str] = None

    def evaluate(self, probe: Probe, state: ConfigurationState) -> Tuple[bool, str]:
        if self.kind == "always":
            return True, "always"
        if self.kind == "package":
            ok = probe.package_installed(str(self.arg))
            return ok, f"package {self.arg} {'installed' if ok else 'not installed'}"
        if self.kind == "min_kernel":
            minimum = self.arg or str(state.value("kernel.min_autoload_version", "0"))
            current = probe.kernel_version()
            ok = kernel_at_least(current, minimum)
            return ok, f"kernel {current} {'>=' if ok else '<'} {minimum}"
        if self.kind == "path_exists":
            ok = probe.path_exists(str(self.arg))
            return ok, f"{self.arg} {'exists' if ok else 'missing'}"
        raise ValueError(f"Unknown applicability kind: {self.kind}")


ALWAYS = Applicability()


def requires_package(name: str) -> Applicability:
    return Applicability(kind="package", arg=name)


def requires_kernel(version: Optional[str] = None) -> Applicability:
    return Applicability(kind="min_kernel", arg=version)


def requires_path(path: str) -> Applicability:
    return Applicability(kind="path_exists", arg=path)


@dataclass(frozen=True)
class ConfigArtifact:
    destination: str
    renderer: Renderer
    privilege: Privilege = Privilege.SYSTEM
    applicability: Applicability = field(default=ALWAYS)
    subsystem: str = "system"
    # Boot target regenerated from this file: "initramfs", "grub" or None.
    rebuild: Optional[str] = None
    # Activation after a change: systemd, udev, sysctl, journald, resolved, network.
    reload: Optional[str] = None

    def __post_init__(self) -> None:
        if not PurePosixPath(self.destination).is_absolute():
            raise ValueError(f"Catalog destination must be absolute: {self.destination}")


def target_path(root: str | Path, destination: str) -> Path:
    """Where *destination* lives under *root* (``/`` for the running system)."""

    return Path(root) / destination.lstrip("/")


class Catalog:
    """Fixed, ordered mapping of destination path -> artifact."""

    def __init__(self, artifacts: Iterable[ConfigArtifact]):
        self._artifacts: Tuple[ConfigArtifact, ...] = tuple(artifacts)
        self._by_path: Dict[str, ConfigArtifact] = {}
        for a in self._artifacts:
            if a.destination in self._by_path:
                raise ValueError(f"Duplicate catalog destination: {a.destination}")
            self._by_path[a.destination] = a

    def __iter__(self) -> Iterator[ConfigArtifact]:
        return iter(self._artifacts)

    def __len__(self) -> int:
        return len(self._artifacts)

    def __contains__(self, path: object) -> bool:
        return path in self._by_path

    def get(self, path: str) -> ConfigArtifact:
        try:
            return self._by_path[path]
        except KeyError:
            raise NotDefined(path) from None

    def destinations(self) -> Tuple[str, ...]:
        return tuple(a.destination for a in self._artifacts)

    def select(
        self,
        *,
        privilege: Optional[Privilege] = None,
        destinations: Optional[Iterable[str]] = None,
    ) -> List[ConfigArtifact]:
        """Artifacts in install order, filtered by privilege and/or path."""

        wanted = None if destinations is None else set(destinations)
        if wanted is not None:
            for path in wanted:
                self.get(path)
        return [
            a
            for a in self._artifacts
            if (privilege is None or a.privilege == privilege) and (wanted is None or a.destination in wanted)
        ]

    def render(self, path: str, state: ConfigurationState) -> Lines:
        return self.get(path).renderer(state)

    def render_bytes(self, path: str, state: ConfigurationState) -> bytes:
        return to_bytes(self.render(path, state))

    def is_applicable(self, path: str, probe: Probe, state: ConfigurationState) -> Tuple[bool, str]:
        return self.get(path).applicability.evaluate(probe, state)

    def directories(self, root: str | Path = "/") -> Tuple[Path, ...]:
        seen: Dict[Path, None] = {}
        for a in self._artifacts:
            seen.setdefault(target_path(root, a.destination).parent, None)
        return tuple(seen)


# ---------------------------------------------------------------------------
# Default catalog
# ---------------------------------------------------------------------------

GPU_UNIT = "tuneforge-gpu-power.service"
WIFI_UNIT = "tuneforge-wifi-powersave.service"
OWN_UNITS = (GPU_UNIT, WIFI_UNIT)


def kernel_cmdline_line(state: ConfigurationState) -> str:
    base = str(state.value("kernel.cmdline_base", "") or "").strip()
    return " ".join(([base] if base else []) + list(state.kernel_cmdline))


def modprobe_lines(state: ConfigurationState) -> List[str]:
    by_module: Dict[str, List[str]] = {}
    for entry in state.module_options:
        by_module.setdefault(str(entry["module"]), []).append(f"{entry['option']}={entry['value']}")
    lines = [f"options {module} {' '.join(opts)}" for module, opts in by_module.items()]
    regdom = state.value("wireless.regdom")
    if regdom:
        lines.append(f"options cfg80211 ieee80211_regdom={regdom}")
    lines.extend(f"blacklist {m}" for m in state.value("modules.blacklist", ()))
    return lines


def _sections(*pairs: Tuple[Optional[str], str]):
    def source(state: ConfigurationState):
        return [(name, state.group(group)) for name, group in pairs]

    return source


_GPU_UNIT_TEMPLATE = """\
[Unit]
Description=Apply GPU power level (tuneforge)
After=systemd-udev-settle.service

[Service]
Type=oneshot
RemainAfterExit=yes
ExecStart=/bin/sh -c 'for f in /sys/class/drm/card*/device/power_dpm_force_performance_level; do [ -w "$$$$f" ] && echo ${power_level} > "$$$$f"; done; exit 0'

[Install]
WantedBy=multi-user.target
"""

_WIFI_UNIT_TEMPLATE = """\
[Unit]
Description=Set WiFi power saving on ${interface} (tuneforge)
After=sys-subsystem-net-devices-${interface}.device
BindsTo=sys-subsystem-net-devices-${interface}.device

[Service]
Type=oneshot
RemainAfterExit=yes
ExecStart=/usr/bin/iw dev ${interface} set power_save ${power_save}

[Install]
WantedBy=multi-user.target
"""

_PIPEWIRE_TEMPLATE = """\
context.properties = {
    default.clock.rate = ${rate}
    default.clock.allowed-rates = [ ${allowed} ]
    default.clock.quantum = ${quantum}
}
"""


def build_catalog(home: str) -> Catalog:
    """The 19 artifacts in install order; *home* anchors the user-scope files."""

    home = home.rstrip("/") or "/"
    return Catalog(
        [
            ConfigArtifact(
                "/etc/kernel/cmdline",
                GeneratedLines(lambda s: [kernel_cmdline_line(s)], header=None),
                subsystem="boot",
                rebuild="initramfs",
            ),
            ConfigArtifact(
                "/etc/default/grub.d/99-tuneforge.cfg",
                TemplateText(
                    'GRUB_CMDLINE_LINUX_DEFAULT="${params}"\nGRUB_TIMEOUT=${timeout}\n',
                    (
                        ("params", lambda s: " ".join(s.kernel_cmdline)),
                        ("timeout", lambda s: s.value("boot.timeout", 3)),
                    ),
                ),
                applicability=requires_package("grub"),
                subsystem="boot",
                rebuild="grub",
            ),
            ConfigArtifact(
                "/boot/loader/loader.conf",
                TemplateText(
                    "default ${default}\ntimeout ${timeout}\nconsole-mode ${console_mode}\neditor ${editor}\n",
                    (
                        ("default", lambda s: s.value("boot.default")),
                        ("timeout", lambda s: s.value("boot.timeout")),
                        ("console_mode", lambda s: s.value("boot.console_mode")),
                        ("editor", lambda s: bool(s.value("boot.editor"))),
                    ),
                ),
                applicability=requires_path("/boot/loader"),
                subsystem="boot",
            ),
            ConfigArtifact(
                "/etc/mkinitcpio.conf.d/99-tuneforge.conf",
                TemplateText(
                    'MODULES=(${modules})\nCOMPRESSION="${compression}"\n',
                    (
                        ("modules", lambda s: s.value("initramfs.modules", ())),
                        ("compression", lambda s: s.value("initramfs.compression")),
                    ),
                ),
                applicability=requires_package("mkinitcpio"),
                subsystem="initramfs",
                rebuild="initramfs",
            ),
            ConfigArtifact(
                "/etc/modprobe.d/99-tuneforge.conf",
                GeneratedLines(modprobe_lines),
                subsystem="modules",
                rebuild="initramfs",
            ),
            ConfigArtifact(
                "/etc/modules-load.d/tuneforge.conf",
                GeneratedLines(lambda s: s.value("modules.autoload", ())),
                applicability=requires_kernel(),
                subsystem="modules",
                reload="systemd",
            ),
            ConfigArtifact(
                "/etc/udev/rules.d/99-tuneforge-gpu.rules",
                TemplateText(
                    'ACTION=="add", SUBSYSTEM=="drm", DRIVERS=="${driver}", '
                    'ATTR{device/power_dpm_force_performance_level}="${power_level}"\n',
                    (
                        ("driver", lambda s: s.value("gpu.driver")),
                        ("power_level", lambda s: s.value("gpu.power_level")),
                    ),
                ),
                subsystem="udev",
                reload="udev",
            ),
            ConfigArtifact(
                "/etc/sysctl.d/99-tuneforge.conf",
                KeyValueSections(_sections((None, "sysctl")), separator=" = "),
                subsystem="sysctl",
                reload="sysctl",
            ),
            ConfigArtifact(
                "/etc/systemd/journald.conf.d/99-tuneforge.conf",
                KeyValueSections(_sections(("Journal", "journald"))),
                subsystem="systemd",
                reload="journald",
            ),
            ConfigArtifact(
                "/etc/systemd/coredump.conf.d/99-tuneforge.conf",
                KeyValueSections(_sections(("Coredump", "coredump"))),
                subsystem="systemd",
                reload="systemd",
            ),
            ConfigArtifact(
                "/etc/systemd/resolved.conf.d/99-tuneforge.conf",
                KeyValueSections(_sections(("Resolve", "resolved"))),
                subsystem="systemd",
                reload="resolved",
            ),
            ConfigArtifact(
                "/etc/systemd/logind.conf.d/99-tuneforge.conf",
                KeyValueSections(_sections(("Login", "logind"))),
                subsystem="systemd",
                reload="systemd",
            ),
            ConfigArtifact(
                "/etc/iwd/main.conf",
                KeyValueSections(
                    lambda s: list(s.value("wireless.iwd", {}).items()),
                    bool_words=IWD_BOOLS,
                ),
                applicability=requires_package("iwd"),
                subsystem="network",
                reload="network",
            ),
            ConfigArtifact(
                "/etc/NetworkManager/conf.d/99-tuneforge-wifi-backend.conf",
                KeyValueSections(lambda s: [("device", {"wifi.backend": s.value("wireless.backend")})]),
                applicability=requires_package("networkmanager"),
                subsystem="network",
                reload="network",
            ),
            ConfigArtifact(
                "/etc/conf.d/wireless-regdom",
                TemplateText('WIRELESS_REGDOM="${regdom}"\n', (("regdom", lambda s: s.value("wireless.regdom")),)),
                subsystem="network",
            ),
            ConfigArtifact(
                f"/etc/systemd/system/{GPU_UNIT}",
                TemplateText(_GPU_UNIT_TEMPLATE, (("power_level", lambda s: s.value("gpu.power_level")),)),
                subsystem="services",
                reload="systemd",
            ),
            ConfigArtifact(
                f"/etc/systemd/system/{WIFI_UNIT}",
                TemplateText(
                    _WIFI_UNIT_TEMPLATE,
                    (
                        ("interface", lambda s: s.value("wireless.interface")),
                        ("power_save", lambda s: "on" if s.value("wireless.power_save") else "off"),
                    ),
                ),
                subsystem="services",
                reload="systemd",
            ),
            ConfigArtifact(
                f"{home}/.config/environment.d/50-tuneforge.conf",
                KeyValueSections(_sections((None, "environment"))),
                privilege=Privilege.USER,
                subsystem="user",
            ),
            ConfigArtifact(
                f"{home}/.config/pipewire/pipewire.conf.d/50-tuneforge.conf",
                TemplateText(
                    _PIPEWIRE_TEMPLATE,
                    (
                        ("rate", lambda s: s.value("audio.clock_rate")),
                        ("allowed", lambda s: s.value("audio.allowed_rates", ())),
                        ("quantum", lambda s: s.value("audio.quantum")),
                    ),
                ),
                privilege=Privilege.USER,
                applicability=requires_package("pipewire"),
                subsystem="user",
            ),
        ]
    )


def rebuild_targets(artifacts: Iterable[ConfigArtifact]) -> List[str]:
    wanted = {a.rebuild for a in artifacts if a.rebuild}
    return [t for t in REBUILD_ORDER if t in wanted]


def reload_actions(artifacts: Iterable[ConfigArtifact]) -> List[str]:
    seen: Dict[str, None] = {}
    for a in artifacts:
        if a.reload:
            seen.setdefault(a.reload, None)
    return list(seen)

