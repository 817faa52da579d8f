import pytest

from tuneforge.catalog import GPU_UNIT
from tuneforge.installer import BootRebuildError, Installer
from tuneforge.lib.command import CmdResult
from tuneforge.main import deploy_steps, uninstall_steps
from tuneforge.pipeline import RunContext, run_pipeline
from tuneforge.steps import BootRebuildStep

from .conftest import FakeSystemd


class Recorder:
    def __init__(self, step_id, *, enabled=True):
        self.step_id = step_id
        self._enabled = enabled

    def enabled(self, ctx):
        return self._enabled

    def run(self, ctx):
        ctx.decisions.setdefault("order", []).append(self.step_id)
        return ctx


@pytest.fixture
def rebuilds(monkeypatch):
    """Replace the boot rebuild commands; set .returncodes per target to fail one."""

    calls = []
    returncodes = {}

    def fake(target, *, root, commands, dry_run):
        calls.append(target)
        return [CmdResult(argv=[target], returncode=returncodes.get(target, 0), stdout="", stderr="")]

    monkeypatch.setattr("tuneforge.steps.step_30_boot_rebuild.rebuild", fake)
    fake.calls = calls
    fake.returncodes = returncodes
    return fake


def _ctx(catalog, state, probe, tmp_path, owners, systemd=None, **kw):
    installer = Installer(catalog, state, probe=probe, root=tmp_path, owners=owners, dry_run=kw.get("dry_run", False))
    return RunContext(
        catalog=catalog,
        state=state,
        probe=probe,
        installer=installer,
        systemd=systemd or FakeSystemd(),
        root=tmp_path,
        **kw,
    )


def test_start_at_and_stop_after(catalog, state, probe, tmp_path, owners):
    steps = [Recorder("a"), Recorder("b", enabled=False), Recorder("c"), Recorder("d")]
    result = run_pipeline(_ctx(catalog, state, probe, tmp_path, owners), steps, start_at="b", stop_after="c")
    assert result.ran_steps == ["c"]
    assert result.skipped_steps == ["b"]
    assert result.ctx.decisions["order"] == ["c"]


def test_unknown_step_is_rejected(catalog, state, probe, tmp_path, owners):
    with pytest.raises(ValueError, match="nope"):
        run_pipeline(_ctx(catalog, state, probe, tmp_path, owners), [Recorder("a")], start_at="nope")


def test_deploy_then_redeploy_changes_nothing(catalog, state, probe, tmp_path, owners, rebuilds):
    systemd = FakeSystemd()
    result = run_pipeline(_ctx(catalog, state, probe, tmp_path, owners, systemd), deploy_steps())
    ctx = result.ctx
    assert not ctx.failed, ctx.errors
    assert result.ran_steps == ["10_preflight", "20_system_files", "30_boot_rebuild", "40_activate", "50_user_files"]
    assert "/etc/sysctl.d/99-tuneforge.conf" in ctx.changed
    assert (tmp_path / "etc/sysctl.d/99-tuneforge.conf").is_file()
    assert rebuilds.calls == ["initramfs", "grub"]
    assert ("daemon-reload",) in systemd.calls
    # No GPU or wireless device under tmp_path: the hardware units stay off.
    assert ("enable", "systemd-resolved.service", "NetworkManager.service") in systemd.calls
    assert ("disable", "wpa_supplicant.service") in systemd.calls

    systemd2 = FakeSystemd()
    again = run_pipeline(_ctx(catalog, state, probe, tmp_path, owners, systemd2), deploy_steps()).ctx
    assert again.changed == []
    assert rebuilds.calls == ["initramfs", "grub"]
    assert again.decisions["reload"] == []
    assert ("daemon-reload",) not in systemd2.calls


def test_force_rebuilds_and_reloads_without_changes(catalog, state, probe, tmp_path, owners, rebuilds):
    run_pipeline(_ctx(catalog, state, probe, tmp_path, owners), deploy_steps())
    rebuilds.calls.clear()
    systemd = FakeSystemd()
    ctx = run_pipeline(_ctx(catalog, state, probe, tmp_path, owners, systemd, force=True), deploy_steps()).ctx
    assert ctx.changed == []
    assert rebuilds.calls == ["initramfs", "grub"]
    assert systemd.calls[0] == ("daemon-reload",)


def test_dry_run_writes_nothing(catalog, state, probe, tmp_path, owners, rebuilds):
    ctx = run_pipeline(_ctx(catalog, state, probe, tmp_path, owners, dry_run=True), deploy_steps()).ctx
    assert not ctx.failed
    assert not (tmp_path / "etc").exists()


def test_user_scope_skips_system_steps(catalog, state, probe, tmp_path, owners, rebuilds):
    result = run_pipeline(_ctx(catalog, state, probe, tmp_path, owners, scope="user"), deploy_steps())
    assert result.ran_steps == ["10_preflight", "50_user_files"]
    assert not (tmp_path / "etc").exists()
    assert rebuilds.calls == []
    assert result.ctx.changed
    assert all(d.startswith("/home/tester/") for d in result.ctx.changed)


def test_rebuild_failure_interactive_records_and_stops(catalog, state, probe, tmp_path, owners, rebuilds):
    rebuilds.returncodes["initramfs"] = 1
    ctx = run_pipeline(_ctx(catalog, state, probe, tmp_path, owners), deploy_steps()).ctx
    assert ctx.failed
    assert "rebuild:initramfs" in ctx.errors
    # grub reads the images that failed to build
    assert rebuilds.calls == ["initramfs"]


def test_rebuild_failure_unattended_aborts(catalog, state, probe, tmp_path, owners, rebuilds):
    rebuilds.returncodes["initramfs"] = 1
    with pytest.raises(BootRebuildError):
        run_pipeline(_ctx(catalog, state, probe, tmp_path, owners, unattended=True), deploy_steps())


def test_missing_rebuild_tool_is_a_warning(catalog, state, probe, tmp_path, owners, rebuilds):
    rebuilds.returncodes["initramfs"] = 127
    ctx = run_pipeline(_ctx(catalog, state, probe, tmp_path, owners), deploy_steps()).ctx
    assert not ctx.failed
    assert rebuilds.calls == ["initramfs", "grub"]
    assert any("initramfs" in w for w in ctx.warnings)


def test_unwritten_boot_file_blocks_rebuild(catalog, state, probe, tmp_path, owners, rebuilds):
    boot = next(a.destination for a in catalog if a.rebuild)
    ctx = _ctx(catalog, state, probe, tmp_path, owners, unattended=True)
    ctx.errors[boot] = "write failed"
    with pytest.raises(BootRebuildError):
        BootRebuildStep().run(ctx)

    ctx = _ctx(catalog, state, probe, tmp_path, owners)
    ctx.errors[boot] = "write failed"
    ctx = BootRebuildStep().run(ctx)
    assert ctx.failed and "boot" in ctx.errors
    assert rebuilds.calls == []


def test_uninstall_disables_own_units_and_removes_files(catalog, state, probe, tmp_path, owners, rebuilds):
    run_pipeline(_ctx(catalog, state, probe, tmp_path, owners), deploy_steps())
    rebuilds.calls.clear()

    systemd = FakeSystemd({GPU_UNIT: ("active", "enabled"), "NetworkManager.service": ("active", "enabled")})
    result = run_pipeline(
        _ctx(catalog, state, probe, tmp_path, owners, systemd, mode="uninstall"), uninstall_steps()
    )
    ctx = result.ctx
    assert not ctx.failed, ctx.errors
    assert systemd.calls[0] == ("disable", GPU_UNIT)
    assert ("daemon-reload",) in systemd.calls
    assert not (tmp_path / "etc/sysctl.d/99-tuneforge.conf").exists()
    assert "/etc/sysctl.d/99-tuneforge.conf" in ctx.decisions["removed"]
    assert rebuilds.calls == ["initramfs", "grub"]
