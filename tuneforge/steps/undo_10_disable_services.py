from __future__ import annotations

import logging

from ..catalog import OWN_UNITS
from ..lib.privilege import Privilege
from ..pipeline import RunContext

logger = logging.getLogger(__name__)


class DisableServicesStep:
    """Stop and disable the units this tool ships, before their files go.

    Units we only enabled (NetworkManager, resolved) are left alone.
    """

    step_id = "10_disable_services"

    def enabled(self, ctx: RunContext) -> bool:
        return ctx.includes(Privilege.SYSTEM)

    def run(self, ctx: RunContext) -> RunContext:
        if not ctx.systemd.available:
            ctx.warn("systemctl unavailable; not disabling units")
            return ctx
        present = [u for u in OWN_UNITS if ctx.systemd.is_enabled(u) not in ("not-found", "unknown")]
        ctx.decisions["disabled_units"] = present
        r = ctx.systemd.disable(present)
        if r is not None and not r.ok:
            ctx.warn(f"disable failed (exit {r.returncode})")
        return ctx
