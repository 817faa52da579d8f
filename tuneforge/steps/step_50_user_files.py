from __future__ import annotations

import logging

from ..lib.privilege import Privilege
from ..pipeline import RunContext

logger = logging.getLogger(__name__)


class UserFilesStep:
    step_id = "50_user_files"

    def enabled(self, ctx: RunContext) -> bool:
        return ctx.includes(Privilege.USER)

    def run(self, ctx: RunContext) -> RunContext:
        batch = ctx.installer.install_all(privilege=Privilege.USER)
        ctx.absorb(batch)
        ctx.decisions["user_files"] = batch.to_dict()
        if batch.changed:
            logger.info("User files changed; log out and back in for them to apply")
        return ctx
