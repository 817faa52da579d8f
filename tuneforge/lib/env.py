from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Paths:
    root: str = "/"
    config_default: str = "/etc/tuneforge/config.yaml"
    log_dir_default: str = "/var/log/tuneforge"
    lock_dir_default: str = "/run/lock/tuneforge.lock"
    proc_cmdline: str = "/proc/cmdline"
    proc_sys: str = "/proc/sys"
    kernel_osrelease: str = "/proc/sys/kernel/osrelease"
    sys_module: str = "/sys/module"
    sys_drm: str = "/sys/class/drm"
    sys_net: str = "/sys/class/net"


PATHS = Paths()

# Every rendered file except the kernel command line starts with this line.
MANAGED_HEADER = "# Managed by tuneforge - do not edit"

# Temp files are named ".<name>.<TEMP_MARKER>.<token>" next to their destination.
TEMP_MARKER = "tuneforge-tmp"

CONFIG_ENV = "TUNEFORGE_CONFIG"
