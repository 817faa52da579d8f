from __future__ import annotations

import argparse
import atexit
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

from .catalog import Catalog, build_catalog
from .cleanup import TEARDOWN, deferred_signals
from .config_store import ConfigError, ConfigurationState, load_state, resolve_config_path
from .diff_engine import diff_catalog
from .installer import BootRebuildError, Installer, sweep_temp_files
from .lib.command import elevated, needs_sudo
from .lib.hwdetect import HostProbe
from .lib.privilege import Principal, SudoKeepalive, default_owners, ensure_sudo, invoking_user
from .lib.systemd import Systemd
from .lint import lint
from .lock import LockBusy, LockManager, default_lock_path
from .logging_utils import configure_logging
from .pipeline import SCOPES, RunContext, run_pipeline
from .report import Printer
from .steps import (
    ActivateStep,
    BootRebuildStep,
    DisableServicesStep,
    PreflightStep,
    RemoveFilesStep,
    SystemFilesStep,
    UserFilesStep,
)
from .verify_runtime import RuntimeVerifier
from .verify_static import StaticVerifier

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAIL = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

MODES = ("deploy", "diff", "verify-static", "verify-runtime", "lint", "uninstall")


def deploy_steps():
    return [
        PreflightStep(),
        SystemFilesStep(),
        BootRebuildStep(),
        ActivateStep(),
        UserFilesStep(),
    ]


def uninstall_steps():
    return [
        DisableServicesStep(),
        RemoveFilesStep(),
        BootRebuildStep(),
    ]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tuneforge", description="Deploy and verify host tuning files")
    p.add_argument("--config", default=None, help="Configuration file (yaml|json)")
    p.add_argument("--root", default="/", help="Target root (default: the running system)")
    p.add_argument("--unattended", action="store_true", help="Never prompt; boot rebuild failures abort")
    p.add_argument("--force", action="store_true", help="Rebuild boot files and reload even if nothing changed")
    p.add_argument("--dry-run", action="store_true", help="Log what would change without changing it")
    p.add_argument("--quiet", action="store_true", help="Only warnings and errors on the console")
    p.add_argument("--no-color", action="store_true", help="Plain output")
    p.add_argument("--json", action="store_true", help="Machine-readable output on stdout")
    p.add_argument("--scope", choices=SCOPES, default="all", help="Restrict to system or user files")
    p.add_argument("--start-at", default=None, help="Start at step_id (e.g. 30_boot_rebuild)")
    p.add_argument("--stop-after", default=None, help="Stop after step_id")
    # Internal: the root child of a non-root run; the parent holds the lock.
    p.add_argument("--no-lock", action="store_true", help=argparse.SUPPRESS)
    p.add_argument("mode", choices=MODES)
    return p


class Session:
    """Objects shared by every mode, built once from the parsed arguments."""

    def __init__(self, args: argparse.Namespace, state: ConfigurationState, user: Principal):
        settings = state.settings
        self.args = args
        self.state = state
        self.user = user
        self.root = Path(args.root)
        self.catalog: Catalog = build_catalog(user.home)
        self.probe = HostProbe(self.root, package_query=settings.get("package_query") or ("pacman", "-Q"))
        self.systemd = Systemd(self.root, dry_run=args.dry_run)
        self.owners = default_owners(user)
        self.elevate = needs_sudo()
        self.printer = Printer(color=not args.no_color, as_json=args.json)


def _child_argv(args: argparse.Namespace) -> List[str]:
    argv = [sys.executable, "-m", "tuneforge", "--scope", "system", "--no-lock", "--root", args.root]
    config = resolve_config_path(args.config)
    if config:
        argv += ["--config", os.path.abspath(config)]
    for flag in ("unattended", "force", "quiet", "no_color"):
        if getattr(args, flag):
            argv.append("--" + flag.replace("_", "-"))
    if args.json:
        argv.append("--quiet")
    argv.append(args.mode)
    return elevated(argv)


def _run_system_child(s: Session) -> int:
    """Run the system phase as root through sudo; this process keeps the user phase."""

    args = s.args
    if not ensure_sudo(non_interactive=args.unattended):
        print("tuneforge: sudo credentials are required for system files", file=sys.stderr)
        return EXIT_USAGE

    keepalive = SudoKeepalive(float(s.state.value("settings.keepalive_interval", 60)))
    keepalive.start()
    TEARDOWN.register("stop sudo keepalive", keepalive.stop)

    argv = _child_argv(args)
    logger.info("Delegating system phase: %s", " ".join(argv))
    with deferred_signals():
        rc = subprocess.call(argv, stdout=sys.stderr if args.json else None)
    logger.info("System phase exited %s", rc)
    return rc


def _mutate(s: Session) -> int:
    args = s.args
    steps = deploy_steps() if args.mode == "deploy" else uninstall_steps()
    known = [step.step_id for step in steps]
    for wanted in (args.start_at, args.stop_after):
        if wanted is not None and wanted not in known:
            print(f"tuneforge: unknown step {wanted!r} (known: {', '.join(known)})", file=sys.stderr)
            return EXIT_USAGE

    TEARDOWN.install_signal_handlers()
    atexit.register(TEARDOWN.run)

    if not (args.no_lock or args.dry_run):
        lock = LockManager(default_lock_path(str(s.state.value("settings.lock_dir"))))
        try:
            lock.acquire()
        except LockBusy as e:
            print(f"tuneforge: {e}", file=sys.stderr)
            return EXIT_USAGE
        TEARDOWN.register("release lock", lock.release)
    if not args.dry_run:
        # Registered after the lock so it runs while the lock is still held.
        TEARDOWN.register("sweep temp files", lambda: sweep_temp_files(s.catalog, s.root))

    scope = args.scope
    child_rc = EXIT_OK
    if scope in ("all", "system") and needs_sudo() and not args.dry_run:
        child_rc = _run_system_child(s)
        if child_rc in (EXIT_USAGE, EXIT_INTERRUPTED):
            return child_rc
        if scope == "system":
            return child_rc
        scope = "user"

    installer = Installer(
        s.catalog,
        s.state,
        probe=s.probe,
        root=s.root,
        owners=s.owners,
        dry_run=args.dry_run,
        teardown=TEARDOWN,
    )
    ctx = RunContext(
        catalog=s.catalog,
        state=s.state,
        probe=s.probe,
        installer=installer,
        systemd=s.systemd,
        root=s.root,
        mode=args.mode,
        scope=scope,
        dry_run=args.dry_run,
        unattended=args.unattended,
        force=args.force,
    )
    try:
        result = run_pipeline(ctx, steps, start_at=args.start_at, stop_after=args.stop_after)
        ctx = result.ctx
    except BootRebuildError as e:
        logger.error("Aborting: %s", e)
        ctx.fail("boot", str(e))

    summary = ctx.to_dict()
    summary["log"] = getattr(logging.getLogger(), "_tuneforge_log_path", None)
    if child_rc != EXIT_OK:
        summary["system_phase_exit"] = child_rc
    s.printer.run_summary(summary)
    return EXIT_FAIL if ctx.failed or child_rc != EXIT_OK else EXIT_OK


def _dispatch(s: Session) -> int:
    mode = s.args.mode
    if mode == "lint":
        report = lint(s.catalog, s.state)
        s.printer.verification(report)
        return report.exit_code
    if mode == "diff":
        diff = diff_catalog(s.catalog, s.state, probe=s.probe, root=s.root, elevate=s.elevate)
        s.printer.diff(diff)
        return diff.exit_code
    if mode == "verify-static":
        report = StaticVerifier(
            s.catalog,
            s.state,
            probe=s.probe,
            root=s.root,
            elevate=s.elevate,
            systemd=s.systemd,
            owners=s.owners,
        ).run()
        s.printer.verification(report)
        return report.exit_code
    if mode == "verify-runtime":
        report = RuntimeVerifier(s.catalog, s.state, probe=s.probe, root=s.root, systemd=s.systemd).run()
        s.printer.verification(report)
        return report.exit_code
    try:
        return _mutate(s)
    finally:
        TEARDOWN.run()
        TEARDOWN.restore_signal_handlers()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        state = load_state(args.config)
    except ConfigError as e:
        print(f"tuneforge: {e}", file=sys.stderr)
        return EXIT_USAGE

    configure_logging(
        state.value("settings.log_dir"),
        mode=args.mode,
        quiet=args.quiet or args.json,
        retain=int(state.value("settings.log_retain", 30)),
    )
    logger.info("tuneforge %s (root=%s scope=%s dry_run=%s)", args.mode, args.root, args.scope, args.dry_run)

    try:
        return _dispatch(Session(args, state, invoking_user()))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED
