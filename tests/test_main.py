import json

import pytest

from tuneforge.cleanup import TEARDOWN
from tuneforge.logging_utils import reset_logging
from tuneforge.main import build_parser, main


@pytest.fixture(autouse=True)
def _isolated(monkeypatch):
    monkeypatch.delenv("TUNEFORGE_CONFIG", raising=False)
    reset_logging()
    TEARDOWN.reset()
    yield
    reset_logging()
    TEARDOWN.reset()


@pytest.fixture
def config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "settings:\n"
        f"  log_dir: {tmp_path / 'logs'}\n"
        f"  lock_dir: {tmp_path / 'tuneforge.lock'}\n"
        "  package_query: ['false']\n"
    )
    return str(path)


def test_parser_rejects_unknown_mode():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["explode"])


def test_missing_config_is_usage_error(tmp_path, capsys):
    assert main(["--config", str(tmp_path / "nope.yaml"), "lint"]) == 2
    assert "not found" in capsys.readouterr().err


def test_lint_defaults_exit_zero(config, capsys):
    assert main(["--config", config, "--no-color", "lint"]) == 0
    out = capsys.readouterr().out
    assert "lint verification" in out
    assert "Summary:" in out


def test_diff_on_empty_root_reports_not_installed(config, tmp_path, capsys):
    root = tmp_path / "root"
    root.mkdir()
    assert main(["--config", config, "--root", str(root), "--json", "diff"]) == 1
    payload = json.loads(capsys.readouterr().out)
    assert payload["all_match"] is False
    statuses = {e["destination"]: e["status"] for e in payload["entries"]}
    assert statuses["/etc/sysctl.d/99-tuneforge.conf"] == "not-installed"
    # package_query is `false`: package-gated files are not applicable
    assert statuses["/etc/iwd/main.conf"] == "not-applicable"


def test_unknown_step_is_usage_error(config, capsys):
    assert main(["--config", config, "--dry-run", "--start-at", "99_nope", "deploy"]) == 2
    assert "unknown step" in capsys.readouterr().err


def test_dry_run_leaves_temp_files_alone(config, tmp_path):
    root = tmp_path / "root"
    leftover = root / "etc" / "sysctl.d" / ".99-tuneforge.conf.tuneforge-tmp.abc123"
    leftover.parent.mkdir(parents=True)
    leftover.write_text("half written")

    rc = main(["--config", config, "--root", str(root), "--dry-run", "--no-color", "deploy"])
    assert rc in (0, 1)
    assert leftover.exists()
    assert not (tmp_path / "tuneforge.lock").exists()
