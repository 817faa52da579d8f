from __future__ import annotations

import logging
from typing import List

from ..catalog import rebuild_targets
from ..installer import BootRebuildError
from ..lib.bootloader import rebuild
from ..lib.privilege import Privilege
from ..pipeline import RunContext

logger = logging.getLogger(__name__)


class BootRebuildStep:
    """Regenerate initramfs images and the grub menu after boot files changed.

    A broken boot configuration must not be built upon: in unattended mode a
    failure here stops the run with BootRebuildError. Interactive runs record
    the failure and carry on so the operator sees the full report.
    """

    step_id = "30_boot_rebuild"

    def enabled(self, ctx: RunContext) -> bool:
        return ctx.includes(Privilege.SYSTEM)

    def _targets(self, ctx: RunContext) -> List[str]:
        if ctx.force and ctx.mode == "deploy":
            artifacts = [
                a for a in ctx.catalog.select(privilege=Privilege.SYSTEM)
                if a.applicability.evaluate(ctx.probe, ctx.state)[0]
            ]
        else:
            artifacts = [ctx.catalog.get(d) for d in ctx.changed if d in ctx.catalog]
        return rebuild_targets(artifacts)

    def run(self, ctx: RunContext) -> RunContext:
        broken = [d for d in ctx.errors if d in ctx.catalog and ctx.catalog.get(d).rebuild]
        if broken:
            message = f"boot configuration not written: {', '.join(broken)}"
            if ctx.unattended:
                raise BootRebuildError(message)
            ctx.fail("boot", message)
            return ctx

        targets = self._targets(ctx)
        ctx.decisions["boot_rebuild"] = targets
        if not targets:
            logger.info("No boot files changed; skipping rebuild")
            return ctx

        commands = ctx.state.value("settings.rebuild_commands", {})
        for target in targets:
            try:
                results = rebuild(target, root=ctx.root, commands=commands, dry_run=ctx.dry_run)
            except ValueError as e:
                ctx.warn(str(e))
                continue
            if results and results[-1].returncode == 127:
                ctx.warn(f"{target} tooling not installed; skipping rebuild")
                continue
            if results and not results[-1].ok:
                message = f"{target} rebuild failed (exit {results[-1].returncode})"
                if ctx.unattended:
                    raise BootRebuildError(message)
                ctx.fail(f"rebuild:{target}", message)
                # Grub reads the images the failed step produced.
                break
        return ctx
