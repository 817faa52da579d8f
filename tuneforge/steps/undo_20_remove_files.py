from __future__ import annotations

import logging

from ..catalog import reload_actions
from ..lib.privilege import Privilege
from ..pipeline import RunContext

logger = logging.getLogger(__name__)


class RemoveFilesStep:
    step_id = "20_remove_files"

    def enabled(self, ctx: RunContext) -> bool:
        return True

    def run(self, ctx: RunContext) -> RunContext:
        privilege = None if ctx.scope == "all" else Privilege(ctx.scope)
        batch = ctx.installer.remove_all(privilege=privilege)
        ctx.absorb(batch)
        ctx.decisions["removed"] = list(batch.removed)
        logger.info("Removed %d file(s)", len(batch.removed))

        removed = [ctx.catalog.get(d) for d in batch.removed]
        if "systemd" in reload_actions(removed) and ctx.systemd.available:
            ctx.systemd.daemon_reload()
        return ctx
