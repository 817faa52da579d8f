"""Shared fixtures: a fake host under tmp_path, never the real system."""

import os
from typing import Dict, Iterable, List, Optional, Tuple

import pytest

from tuneforge.catalog import Catalog, ConfigArtifact, build_catalog
from tuneforge.config_store import state_from_mapping
from tuneforge.lib import command as command_mod
from tuneforge.lib import privilege as privilege_mod
from tuneforge.lib.hwdetect import HostProbe
from tuneforge.lib.privilege import Principal, Privilege
from tuneforge.lib.systemd import UnitState
from tuneforge.renderers import StaticText

HOME = "/home/tester"
ALL_PACKAGES = ("iwd", "networkmanager", "pipewire", "grub", "mkinitcpio")


class FakeProbe(HostProbe):
    """HostProbe over a tmp_path tree with a fixed package set and kernel."""

    def __init__(self, root, *, packages: Iterable[str] = ALL_PACKAGES, kernel: str = "6.15.2-arch1-1"):
        super().__init__(root)
        self.packages = set(packages)
        self.kernel = kernel

    def package_installed(self, name: str) -> bool:
        return name in self.packages

    def kernel_version(self) -> str:
        return self.kernel


class FakeSystemd:
    """Records changes; answers queries from a unit -> (active, enabled) table."""

    live = True

    def __init__(self, units: Optional[Dict[str, Tuple[str, str]]] = None, *, available: bool = True):
        self.units = dict(units or {})
        self.available = available
        self.calls: List[Tuple[str, ...]] = []

    def is_enabled(self, unit: str) -> str:
        return self.units.get(unit, ("inactive", "not-found"))[1]

    def is_active(self, unit: str) -> str:
        return self.units.get(unit, ("inactive", "not-found"))[0]

    def unit_state(self, unit: str) -> UnitState:
        active, enabled = self.units.get(unit, ("inactive", "not-found"))
        return UnitState(unit=unit, active=active, enabled=enabled)

    def _record(self, verb: str, *units: str):
        self.calls.append((verb, *units))
        return None

    def enable(self, units, *, now=True):
        return self._record("enable", *units) if units else None

    def disable(self, units, *, now=True):
        return self._record("disable", *units) if units else None

    def mask(self, units, *, now=True):
        return self._record("mask", *units) if units else None

    def unmask(self, units):
        return self._record("unmask", *units) if units else None

    def daemon_reload(self):
        return self._record("daemon-reload")

    def restart(self, unit):
        return self._record("restart", unit)

    def try_restart(self, unit):
        return self._record("try-restart", unit)


@pytest.fixture
def me() -> Principal:
    return Principal(name="tester", uid=os.getuid(), gid=os.getgid(), home=HOME)


@pytest.fixture
def owners(me):
    return {Privilege.SYSTEM: me, Privilege.USER: me}


@pytest.fixture
def state():
    return state_from_mapping({})


@pytest.fixture
def catalog() -> Catalog:
    return build_catalog(HOME)


@pytest.fixture
def probe(tmp_path) -> FakeProbe:
    return FakeProbe(tmp_path)


@pytest.fixture
def example_catalog() -> Catalog:
    return Catalog([ConfigArtifact("/etc/example.conf", StaticText("KEY=1", header=None))])


@pytest.fixture
def healthy_systemd(state) -> FakeSystemd:
    units = {str(u): ("active", "enabled") for u in state.value("services.enable")}
    units.update({str(u): ("inactive", "disabled") for u in state.value("services.disable")})
    return FakeSystemd(units)


@pytest.fixture
def denied_reads(monkeypatch):
    """Plain opens of *.conf fail with EACCES; the sudo fallback runs cat directly."""

    real_open = open

    def fake_open(path, *args, **kwargs):
        if str(path).endswith(".conf"):
            raise PermissionError(13, "Permission denied", str(path))
        return real_open(path, *args, **kwargs)

    monkeypatch.setattr(privilege_mod, "open", fake_open, raising=False)
    monkeypatch.setattr(privilege_mod, "needs_sudo", lambda: True)
    monkeypatch.setattr(command_mod, "elevated", lambda argv: list(argv))
