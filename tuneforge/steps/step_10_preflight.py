from __future__ import annotations

import logging

from ..installer import sweep_temp_files
from ..lib.hwdetect import kernel_at_least
from ..lib.pkg import install_packages
from ..lib.privilege import Privilege
from ..pipeline import RunContext

logger = logging.getLogger(__name__)


class PreflightStep:
    step_id = "10_preflight"

    def enabled(self, ctx: RunContext) -> bool:
        return True

    def run(self, ctx: RunContext) -> RunContext:
        host = ctx.probe.summary()
        ctx.decisions["host"] = host

        minimum = str(ctx.state.value("kernel.min_autoload_version", "0"))
        ctx.decisions["module_autoload"] = kernel_at_least(host["kernel"], minimum)
        if not ctx.decisions["module_autoload"]:
            logger.info("Kernel %s < %s: module autoload file will be skipped", host["kernel"], minimum)

        if not ctx.dry_run:
            swept = sweep_temp_files(ctx.catalog, ctx.root)
            if swept:
                ctx.decisions["swept_temp_files"] = [str(p) for p in swept]

        if not ctx.includes(Privilege.SYSTEM):
            return ctx

        required = [str(p) for p in ctx.state.value("packages.required", ())]
        missing = [p for p in required if not ctx.probe.package_installed(p)]
        ctx.decisions["missing_packages"] = missing
        if not missing:
            return ctx

        command = ctx.state.value("settings.package_install")
        if not command:
            ctx.warn(f"Required packages missing: {', '.join(missing)}")
            return ctx

        r = install_packages(missing, command=list(command), dry_run=ctx.dry_run)
        if r is not None and not r.ok:
            ctx.fail("packages", f"installing {', '.join(missing)} failed (exit {r.returncode})")
        else:
            # Package presence decides applicability; ask again.
            ctx.probe.forget_packages()
        return ctx
