import pytest

from tuneforge.catalog import Catalog, ConfigArtifact, requires_package
from tuneforge.diff_engine import DiffStatus, diff_catalog
from tuneforge.installer import Installer
from tuneforge.renderers import StaticText
from tuneforge.verification import Status
from tuneforge.verify_static import ChecksumMatches, ContainsLine, FileExists, StaticVerifier, line_matches

from .conftest import FakeSystemd


def _static(catalog, state, probe, root, owners, checks=None, systemd=None):
    return StaticVerifier(
        catalog,
        state,
        probe=probe,
        root=root,
        systemd=systemd or FakeSystemd(),
        owners=owners,
        checks=checks,
    ).run()


def test_example_conf_scenario(example_catalog, state, probe, tmp_path, owners):
    dest = "/etc/example.conf"
    checks = [FileExists("system", dest), ContainsLine("system", dest, "KEY=1"), ChecksumMatches(dest)]

    before = diff_catalog(example_catalog, state, probe=probe, root=tmp_path)
    assert before.entries[0].status is DiffStatus.NOT_INSTALLED
    assert not before.all_match

    Installer(example_catalog, state, probe=probe, root=tmp_path, owners=owners).install(dest)

    after = diff_catalog(example_catalog, state, probe=probe, root=tmp_path)
    assert after.entries[0].status is DiffStatus.MATCH
    assert after.all_match

    report = _static(example_catalog, state, probe, tmp_path, owners, checks)
    assert [r.status for r in report.results] == [Status.OK, Status.OK, Status.OK]

    (tmp_path / "etc" / "example.conf").write_text("KEY=2\n")
    report = _static(example_catalog, state, probe, tmp_path, owners, checks)
    by_name = {r.name: r for r in report.results}
    assert by_name[f"{dest} sha256"].status is Status.FAIL
    assert report.summary().overall is Status.FAIL
    assert report.exit_code == 1


def test_checksum_catches_appended_content_line_check_misses(example_catalog, state, probe, tmp_path, owners):
    dest = "/etc/example.conf"
    (tmp_path / "etc").mkdir()
    (tmp_path / "etc" / "example.conf").write_text("KEY=1\nEXTRA=1\n")
    checks = [ContainsLine("system", dest, "KEY=1"), ChecksumMatches(dest)]

    statuses = [r.status for r in _static(example_catalog, state, probe, tmp_path, owners, checks).results]
    assert statuses == [Status.OK, Status.FAIL]


@pytest.mark.parametrize("subsystem", ["system", "vendor-extra"])
def test_checksums_run_after_every_other_subsystem(example_catalog, state, probe, tmp_path, owners, subsystem):
    dest = "/etc/example.conf"
    (tmp_path / "etc").mkdir()
    (tmp_path / "etc" / "example.conf").write_text("KEY=1\nEXTRA=1\n")
    checks = [ChecksumMatches(dest), ContainsLine(subsystem, dest, "KEY=1")]

    results = _static(example_catalog, state, probe, tmp_path, owners, checks).results
    assert [r.status for r in results] == [Status.OK, Status.FAIL]
    assert results[-1].name == f"{dest} sha256"


def test_diff_shows_unified_diff(example_catalog, state, probe, tmp_path):
    (tmp_path / "etc").mkdir()
    (tmp_path / "etc" / "example.conf").write_text("KEY=2\n")
    entry = diff_catalog(example_catalog, state, probe=probe, root=tmp_path).entries[0]
    assert entry.status is DiffStatus.DIFFERS
    assert "-KEY=2" in entry.diff
    assert "+KEY=1" in entry.diff


def test_elevated_diff_sees_carriage_returns(example_catalog, state, probe, tmp_path, denied_reads):
    (tmp_path / "etc").mkdir()
    (tmp_path / "etc" / "example.conf").write_bytes(b"KEY=1\r\n")
    entry = diff_catalog(example_catalog, state, probe=probe, root=tmp_path, elevate=True).entries[0]
    assert entry.status is DiffStatus.DIFFERS

    (tmp_path / "etc" / "example.conf").write_bytes(b"KEY=1\n")
    entry = diff_catalog(example_catalog, state, probe=probe, root=tmp_path, elevate=True).entries[0]
    assert entry.status is DiffStatus.MATCH


def test_diff_not_applicable_when_inapplicable_and_absent(state, probe, tmp_path):
    cat = Catalog([ConfigArtifact("/etc/opt.conf", StaticText("x"), applicability=requires_package("nope"))])
    report = diff_catalog(cat, state, probe=probe, root=tmp_path)
    assert report.entries[0].status is DiffStatus.NOT_APPLICABLE
    assert report.all_match


def test_unreadable_file_counts_as_not_installed(example_catalog, state, probe, tmp_path):
    (tmp_path / "etc" / "example.conf").mkdir(parents=True)
    report = diff_catalog(example_catalog, state, probe=probe, root=tmp_path)
    assert report.entries[0].status is DiffStatus.NOT_INSTALLED


@pytest.mark.parametrize(
    "expected,actual,match",
    [
        ("KEY=1", "KEY=1", True),
        ("options amdgpu ppfeaturemask=0xfffd7fff", "options amdgpu ppfeaturemask=4294803455", True),
        ("vm.swappiness = 10", "vm.swappiness = 0xa", True),
        ("KEY=1", "KEY=2", False),
        ("KEY=1", "OTHER=1", False),
    ],
)
def test_line_matches_normalizes_numbers(expected, actual, match):
    assert line_matches(expected, actual) is match


def test_full_catalog_clean_deploy_has_no_failures(catalog, state, probe, tmp_path, owners, healthy_systemd):
    Installer(catalog, state, probe=probe, root=tmp_path, owners=owners).install_all()
    report = _static(catalog, state, probe, tmp_path, owners, systemd=healthy_systemd)
    fails = [r for r in report.results if r.status is Status.FAIL and r.counted]
    assert fails == []
    assert report.summary().fail == 0
    # loader.conf is not applicable without /boot/loader
    loader = [r for r in report.results if r.name == "/boot/loader/loader.conf exists"]
    assert loader[0].status is Status.INFO


def test_reordered_file_fails_checksum_only(catalog, state, probe, tmp_path, owners, healthy_systemd):
    Installer(catalog, state, probe=probe, root=tmp_path, owners=owners).install_all()
    sysctl = tmp_path / "etc" / "sysctl.d" / "99-tuneforge.conf"
    lines = sysctl.read_text().splitlines()
    sysctl.write_text("\n".join([lines[0]] + list(reversed(lines[1:]))) + "\n")

    report = _static(catalog, state, probe, tmp_path, owners, systemd=healthy_systemd)
    counted_fails = [r for r in report.results if r.status is Status.FAIL and r.counted]
    assert [r.name for r in counted_fails] == ["/etc/sysctl.d/99-tuneforge.conf sha256"]
    line_checks = [r for r in report.results if r.name.startswith("/etc/sysctl.d/99-tuneforge.conf contains")]
    assert line_checks and all(r.status is Status.OK and r.diagnostic for r in line_checks)


def test_missing_files_fail_and_line_checks_are_not_counted(catalog, state, probe, tmp_path, owners, healthy_systemd):
    report = _static(catalog, state, probe, tmp_path, owners, systemd=healthy_systemd)
    summary = report.summary()
    exists_fails = [r for r in report.results if r.name.endswith(" exists") and r.status is Status.FAIL]
    line_fails = [r for r in report.results if " contains " in r.name and r.status is Status.FAIL]
    assert exists_fails and line_fails
    assert all(r.diagnostic for r in line_fails)
    assert summary.fail == sum(1 for r in report.results if r.status is Status.FAIL and r.counted)


def test_own_unit_not_found_fails_other_units_are_info(catalog, state, probe, tmp_path, owners):
    report = _static(catalog, state, probe, tmp_path, owners, systemd=FakeSystemd())
    services = {r.name: r.status for r in report.results if r.subsystem == "services"}
    assert services["tuneforge-gpu-power.service enabled"] is Status.FAIL
    assert services["NetworkManager.service enabled"] is Status.INFO
