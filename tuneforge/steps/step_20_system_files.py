from __future__ import annotations

import logging

from ..lib.privilege import Privilege
from ..pipeline import RunContext

logger = logging.getLogger(__name__)


class SystemFilesStep:
    step_id = "20_system_files"

    def enabled(self, ctx: RunContext) -> bool:
        return ctx.includes(Privilege.SYSTEM)

    def run(self, ctx: RunContext) -> RunContext:
        batch = ctx.installer.install_all(privilege=Privilege.SYSTEM)
        ctx.absorb(batch)
        ctx.decisions["system_files"] = batch.to_dict()
        logger.info(
            "System files: %d changed, %d failed",
            len(batch.changed),
            len(batch.errors),
        )
        return ctx
