from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from .lib.env import CONFIG_ENV, PATHS

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    pass


_DEFAULTS: Dict[str, Any] = {
    "kernel": {
        # Prepended to /etc/kernel/cmdline only (e.g. "root=UUID=... rw").
        "cmdline_base": "",
        "cmdline": [
            "amd_pstate=active",
            "amdgpu.ppfeaturemask=0xfffd7fff",
            "amdgpu.dcdebugmask=0x10",
            "iommu=pt",
            "nowatchdog",
            "quiet",
            "loglevel=3",
        ],
        "min_autoload_version": "6.14",
    },
    "boot": {
        "default": "@saved",
        "timeout": 3,
        "console_mode": "max",
        "editor": False,
    },
    "initramfs": {
        "modules": ["amdgpu"],
        "compression": "zstd",
    },
    "modules": {
        "options": [
            {"module": "amdgpu", "option": "ppfeaturemask", "value": "0xfffd7fff"},
            {"module": "amdgpu", "option": "dcdebugmask", "value": "0x10"},
            {"module": "mt7925e", "option": "disable_aspm", "value": "1"},
        ],
        "blacklist": ["sp5100_tco", "pcspkr"],
        "autoload": ["ntsync"],
    },
    "sysctl": {
        "vm.swappiness": 10,
        "vm.max_map_count": 2147483642,
        "kernel.split_lock_mitigate": 0,
        "kernel.nmi_watchdog": 0,
    },
    "journald": {
        "SystemMaxUse": "500M",
        "MaxRetentionSec": "2week",
        "Compress": True,
    },
    "coredump": {
        "Storage": "none",
        "ProcessSizeMax": 0,
    },
    "resolved": {
        "DNSSEC": "allow-downgrade",
        "DNSOverTLS": "opportunistic",
        "MulticastDNS": False,
        "LLMNR": False,
    },
    "logind": {
        "HandleLidSwitch": "suspend",
        "HandleLidSwitchExternalPower": "suspend",
        "HandlePowerKey": "suspend",
        "IdleAction": "ignore",
    },
    "wireless": {
        "backend": "iwd",
        "regdom": "US",
        "interface": "wlan0",
        "power_save": False,
        "iwd": {
            "General": {"EnableNetworkConfiguration": False, "AddressRandomization": "network"},
            "Network": {"NameResolvingService": "systemd"},
            "DriverQuirks": {"PowerSaveDisable": "*"},
        },
    },
    "gpu": {
        "driver": "amdgpu",
        "power_level": "auto",
    },
    "environment": {
        "AMD_VULKAN_ICD": "RADV",
        "MESA_SHADER_CACHE_MAX_SIZE": "12G",
    },
    "audio": {
        "clock_rate": 48000,
        "allowed_rates": [44100, 48000],
        "quantum": 1024,
    },
    "services": {
        "enable": [
            "tuneforge-gpu-power.service",
            "tuneforge-wifi-powersave.service",
            "systemd-resolved.service",
            "NetworkManager.service",
        ],
        "disable": ["wpa_supplicant.service"],
        "mask": [],
    },
    "packages": {
        "required": ["iwd", "networkmanager"],
        "optional": ["grub", "mkinitcpio", "pipewire"],
    },
    "settings": {
        "log_dir": PATHS.log_dir_default,
        "log_retain": 30,
        "lock_dir": PATHS.lock_dir_default,
        "package_query": ["pacman", "-Q"],
        "package_install": ["pacman", "-S", "--needed", "--noconfirm"],
        "rebuild_commands": {
            "initramfs": [["mkinitcpio", "-P"]],
            "grub": [["grub-mkconfig", "-o", "/boot/grub/grub.cfg"]],
        },
        "nm_wait_retries": 10,
        "nm_wait_interval": 1.0,
        "keepalive_interval": 60,
    },
}


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"json", "yaml", "yml"}:
        return ext
    # Default to YAML for unknown extensions.
    return "yaml"


def resolve_config_path(explicit: Optional[str] = None) -> Optional[str]:
    """--config, then $TUNEFORGE_CONFIG, then the system default if present."""

    if explicit:
        return explicit
    env = os.environ.get(CONFIG_ENV)
    if env:
        return env
    if Path(PATHS.config_default).exists():
        return PATHS.config_default
    return None


def load_config(path: Optional[str]) -> Dict[str, Any]:
    """Load the raw configuration mapping; a missing *path* means defaults only."""

    if not path:
        return {}
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        text = p.read_text(encoding="utf-8")
        if _detect_format(p) == "json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text) or {}
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file must be a mapping/object, got {type(data).__name__}")

    for group, value in data.items():
        default = _DEFAULTS.get(group)
        if isinstance(default, dict) and value is not None and not isinstance(value, dict):
            raise ConfigError(f"Config group {group!r} must be a mapping")

    logger.info("Loaded config %s", path)
    return data


def _fill(dst: Dict[str, Any], defaults: Mapping[str, Any]) -> None:
    for key, value in defaults.items():
        if key not in dst or dst[key] is None:
            dst[key] = copy.deepcopy(value)
        elif isinstance(value, dict) and isinstance(dst[key], dict) and key != "iwd":
            _fill(dst[key], value)


def ensure_defaults(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Fill required keys with defaults (without overriding user values).

    Lists and the iwd section table are replaced wholesale by user values,
    never merged item by item.
    """

    _fill(cfg, _DEFAULTS)
    return cfg


def freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({str(k): freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


@dataclass(frozen=True)
class ConfigurationState:
    """Read-only configuration: group name -> ordered entries."""

    groups: Mapping[str, Any]

    def group(self, name: str) -> Any:
        try:
            return self.groups[name]
        except KeyError as e:
            raise ConfigError(f"Unknown config group: {name}") from e

    def value(self, dotted: str, default: Any = None) -> Any:
        node: Any = self.groups
        for part in dotted.split("."):
            if not isinstance(node, Mapping) or part not in node:
                return default
            node = node[part]
        return node

    @property
    def kernel_cmdline(self) -> Tuple[str, ...]:
        return tuple(str(p) for p in self.value("kernel.cmdline", ()))

    @property
    def module_options(self) -> Tuple[Mapping[str, Any], ...]:
        return tuple(self.value("modules.options", ()))

    @property
    def settings(self) -> Mapping[str, Any]:
        return self.group("settings")


def state_from_mapping(raw: Mapping[str, Any]) -> ConfigurationState:
    cfg = ensure_defaults(copy.deepcopy(dict(raw)))
    return ConfigurationState(groups=freeze(cfg))


def load_state(path: Optional[str] = None) -> ConfigurationState:
    return state_from_mapping(load_config(resolve_config_path(path)))
