from __future__ import annotations

import logging
import platform
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .env import PATHS
from .pkg import DEFAULT_QUERY, package_installed

logger = logging.getLogger(__name__)

_GPU_VENDOR_MAP = {
    "0x8086": "intel",
    "0x1002": "amd",
    "0x10de": "nvidia",
}

_VERSION_RE = re.compile(r"^(\d+)(?:\.(\d+))?(?:\.(\d+))?")


def parse_kernel_version(text: str) -> Tuple[int, int, int]:
    """'6.15.2-arch1-1' -> (6, 15, 2). Unparseable input gives (0, 0, 0)."""

    m = _VERSION_RE.match(text.strip())
    if not m:
        return (0, 0, 0)
    return tuple(int(g or 0) for g in m.groups())  # type: ignore[return-value]


def kernel_at_least(current: str, minimum: str) -> bool:
    return parse_kernel_version(current) >= parse_kernel_version(minimum)


def _read_text(path: Path) -> Optional[str]:
    try:
        txt = path.read_text(encoding="utf-8", errors="ignore").strip()
        return txt or None
    except OSError:
        return None


def _uevent(path: Path) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for line in (_read_text(path) or "").splitlines():
        key, sep, value = line.partition("=")
        if sep:
            out[key.strip()] = value.strip()
    return out


class HostProbe:
    """Facts about the host that decide applicability and advisory checks.

    All sysfs/procfs reads are resolved under ``root`` so tests and offline
    roots can supply their own tree. Package lookups are cached per probe.
    """

    def __init__(self, root: str | Path = "/", *, package_query: Sequence[str] = DEFAULT_QUERY):
        self.root = Path(root)
        self.package_query = tuple(package_query)
        self._packages: Dict[str, bool] = {}

    def _under_root(self, path: str) -> Path:
        return self.root / path.lstrip("/")

    def package_installed(self, name: str) -> bool:
        if name not in self._packages:
            self._packages[name] = package_installed(name, query=self.package_query)
        return self._packages[name]

    def forget_packages(self) -> None:
        self._packages.clear()

    def kernel_version(self) -> str:
        return _read_text(self._under_root(PATHS.kernel_osrelease)) or platform.release()

    def path_exists(self, path: str) -> bool:
        return self._under_root(path).exists()

    def gpu_cards(self, driver: Optional[str] = None) -> List[Path]:
        """Return ``/sys/class/drm/cardN/device`` directories, optionally by driver."""

        drm = self._under_root(PATHS.sys_drm)
        if not drm.is_dir():
            return []
        out: List[Path] = []
        for card in sorted(drm.glob("card[0-9]*")):
            # card0-eDP-1 and friends are connectors, not devices.
            if "-" in card.name or not (card / "device").is_dir():
                continue
            dev = card / "device"
            if driver is not None and self.gpu_driver(dev) != driver:
                continue
            out.append(dev)
        return out

    def gpu_driver(self, device: Path) -> Optional[str]:
        name = _uevent(device / "uevent").get("DRIVER")
        if name:
            return name
        link = device / "driver"
        try:
            if link.exists():
                return link.resolve().name
        except OSError:
            pass
        return None

    def wifi_interfaces(self) -> List[str]:
        net = self._under_root(PATHS.sys_net)
        if not net.is_dir():
            return []
        return sorted(p.name for p in net.iterdir() if (p / "wireless").exists())

    def module_loaded(self, module: str) -> bool:
        return self._under_root(f"{PATHS.sys_module}/{module.replace('-', '_')}").is_dir()

    def summary(self) -> Dict[str, Any]:
        gpus = []
        for dev in self.gpu_cards():
            vendor_id = _read_text(dev / "vendor")
            gpus.append(
                {
                    "device": str(dev),
                    "driver": self.gpu_driver(dev),
                    "vendor": _GPU_VENDOR_MAP.get((vendor_id or "").lower(), "unknown"),
                }
            )
        info: Dict[str, Any] = {
            "kernel": self.kernel_version(),
            "arch": platform.machine(),
            "gpus": gpus,
            "wifi": self.wifi_interfaces(),
        }
        logger.info(
            "Host: kernel=%s arch=%s gpus=%s wifi=%s",
            info["kernel"],
            info["arch"],
            [g["driver"] for g in gpus],
            info["wifi"],
        )
        return info
