from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from ..catalog import GPU_UNIT, WIFI_UNIT, reload_actions
from ..lib.chroot import is_live_root
from ..lib.command import CmdResult
from ..lib.net import wait_for_networkmanager
from ..lib.privilege import Privilege
from ..lib.systemd import sysctl_apply, udev_reload
from ..pipeline import RunContext

logger = logging.getLogger(__name__)


class ActivateStep:
    """Make the new files take effect: reloads, restarts, unit enablement.

    Command failures here are warnings; the runtime verifier reports what did
    not take effect.
    """

    step_id = "40_activate"

    def enabled(self, ctx: RunContext) -> bool:
        return ctx.includes(Privilege.SYSTEM)

    def _check(self, ctx: RunContext, what: str, r: Optional[CmdResult]) -> None:
        if r is not None and not r.ok:
            ctx.warn(f"{what} failed (exit {r.returncode})")

    def _reload(self, ctx: RunContext, actions: List[str]) -> None:
        live = is_live_root(ctx.root)
        sd = ctx.systemd
        handlers: Dict[str, Callable[[], Optional[CmdResult]]] = {
            "systemd": sd.daemon_reload,
            "udev": lambda: udev_reload(dry_run=ctx.dry_run) if live else None,
            "sysctl": lambda: sysctl_apply(dry_run=ctx.dry_run) if live else None,
            "journald": lambda: sd.restart("systemd-journald.service"),
            "resolved": lambda: sd.try_restart("systemd-resolved.service"),
            "network": lambda: sd.try_restart("NetworkManager.service"),
        }
        for action in actions:
            self._check(ctx, f"reload {action}", handlers[action]())

        if "network" in actions and live and ctx.probe.package_installed("networkmanager"):
            ok = wait_for_networkmanager(
                retries=int(ctx.state.value("settings.nm_wait_retries", 10)),
                interval_s=float(ctx.state.value("settings.nm_wait_interval", 1.0)),
                dry_run=ctx.dry_run,
            )
            if not ok:
                ctx.warn("NetworkManager did not come back after the backend change")

    def _units(self, ctx: RunContext) -> None:
        enable = []
        for unit in ctx.state.value("services.enable", ()):
            unit = str(unit)
            if unit == GPU_UNIT and not ctx.probe.gpu_cards(str(ctx.state.value("gpu.driver", "")) or None):
                logger.info("No matching GPU; not enabling %s", unit)
                continue
            if unit == WIFI_UNIT and not ctx.probe.wifi_interfaces():
                logger.info("No wireless interface; not enabling %s", unit)
                continue
            enable.append(unit)

        sd = ctx.systemd
        mask = [str(u) for u in ctx.state.value("services.mask", ())]
        disable = [str(u) for u in ctx.state.value("services.disable", ())]
        self._check(ctx, "unmask", sd.unmask(enable))
        self._check(ctx, "enable", sd.enable(enable))
        self._check(ctx, "disable", sd.disable(disable))
        self._check(ctx, "mask", sd.mask(mask))
        ctx.decisions["services"] = {"enable": enable, "disable": disable, "mask": mask}

    def run(self, ctx: RunContext) -> RunContext:
        changed = [ctx.catalog.get(d) for d in ctx.changed if d in ctx.catalog]
        actions = reload_actions(changed)
        # Units must be known to systemd before they can be enabled.
        if ctx.force and "systemd" not in actions:
            actions.insert(0, "systemd")
        ctx.decisions["reload"] = actions
        if not ctx.systemd.available:
            ctx.warn("systemctl unavailable; skipping activation")
            return ctx
        self._reload(ctx, actions)
        self._units(ctx)
        return ctx
