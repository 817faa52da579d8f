from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .catalog import Catalog
from .config_store import ConfigurationState
from .installer import BatchResult, Installer
from .lib.hwdetect import HostProbe
from .lib.privilege import Privilege
from .lib.systemd import Systemd

logger = logging.getLogger(__name__)

SCOPES = ("all", "system", "user")


@dataclass
class RunContext:
    """Everything a step needs, plus what the steps have done so far."""

    catalog: Catalog
    state: ConfigurationState
    probe: HostProbe
    installer: Installer
    systemd: Systemd
    root: Path = Path("/")
    mode: str = "deploy"
    scope: str = "all"
    dry_run: bool = False
    unattended: bool = False
    force: bool = False
    changed: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    decisions: Dict[str, Any] = field(default_factory=dict)
    failed: bool = False

    def includes(self, privilege: Privilege) -> bool:
        return self.scope == "all" or self.scope == privilege.value

    def absorb(self, batch: BatchResult) -> None:
        self.changed.extend(batch.changed)
        self.changed.extend(batch.removed)
        self.errors.update({k: str(v) for k, v in batch.errors.items()})
        self.warnings.extend(batch.warnings)
        if batch.failed:
            self.failed = True

    def fail(self, key: str, message: str) -> None:
        logger.error("%s: %s", key, message)
        self.errors[key] = message
        self.failed = True

    def warn(self, message: str) -> None:
        logger.warning("%s", message)
        self.warnings.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "scope": self.scope,
            "dry_run": self.dry_run,
            "changed": list(self.changed),
            "errors": dict(self.errors),
            "warnings": list(self.warnings),
            "decisions": dict(self.decisions),
            "failed": self.failed,
        }


class Step(Protocol):
    """A single idempotent step."""

    step_id: str

    def enabled(self, ctx: RunContext) -> bool:
        ...

    def run(self, ctx: RunContext) -> RunContext:
        ...


@dataclass(frozen=True)
class PipelineResult:
    ctx: RunContext
    ran_steps: List[str]
    skipped_steps: List[str]


def run_pipeline(
    ctx: RunContext,
    steps: Sequence[Step],
    *,
    start_at: Optional[str] = None,
    stop_after: Optional[str] = None,
) -> PipelineResult:
    """Run steps in order. Exceptions propagate; a failed step only sets ctx.failed."""

    ids = [s.step_id for s in steps]
    for wanted in (start_at, stop_after):
        if wanted is not None and wanted not in ids:
            raise ValueError(f"Unknown step {wanted!r} (known: {', '.join(ids)})")

    ran: List[str] = []
    skipped: List[str] = []

    started = start_at is None

    for step in steps:
        if not started:
            if step.step_id == start_at:
                started = True
            else:
                continue

        if not step.enabled(ctx):
            logger.info("Skipping step %s (not in scope %s)", step.step_id, ctx.scope)
            skipped.append(step.step_id)
        else:
            logger.info("Running step %s", step.step_id)
            ctx = step.run(ctx)
            ran.append(step.step_id)

        if stop_after is not None and step.step_id == stop_after:
            logger.info("Stopping after %s", stop_after)
            break

    return PipelineResult(ctx=ctx, ran_steps=ran, skipped_steps=skipped)
