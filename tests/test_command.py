import logging

import pytest

from tuneforge.lib import privilege as privilege_mod
from tuneforge.lib.command import CommandError, run_cmd
from tuneforge.lib.redact import MASK, redact


def test_redacts_key_value_pairs():
    assert redact("psk=hunter22 ssid=home") == f"psk={MASK} ssid=home"
    assert redact('password: "two words"') == f"password: {MASK}"
    assert redact(None) is None


def test_success_and_failure():
    assert run_cmd(["true"]).ok
    result = run_cmd(["false"], check=False)
    assert result.returncode == 1
    with pytest.raises(CommandError) as exc:
        run_cmd(["false"])
    assert exc.value.result.returncode == 1


def test_missing_binary_is_127():
    result = run_cmd(["tuneforge-no-such-binary"], check=False)
    assert result.returncode == 127


def test_dry_run_does_not_execute(tmp_path):
    marker = tmp_path / "touched"
    result = run_cmd(["touch", str(marker)], dry_run=True)
    assert result.ok
    assert not marker.exists()


def test_logged_command_is_masked(caplog):
    caplog.set_level(logging.INFO, logger="tuneforge.lib.command")
    run_cmd(["echo", "token=abcdef"], dry_run=True)
    assert "abcdef" not in caplog.text
    assert MASK in caplog.text


def test_probe_failures_log_at_debug(caplog):
    caplog.set_level(logging.DEBUG, logger="tuneforge.lib.command")
    run_cmd(["false"], check=False, probe=True)
    assert not [r for r in caplog.records if r.levelno >= logging.WARNING]


def test_binary_output_is_exact_bytes(tmp_path):
    src = tmp_path / "crlf.conf"
    src.write_bytes(b"KEY=1\r\nRAW=\xff\n")
    result = run_cmd(["cat", "--", str(src)], binary=True)
    assert result.stdout == b"KEY=1\r\nRAW=\xff\n"
    assert result.stderr == ""


@pytest.mark.parametrize("data", [b"KEY=1\r\n", b"KEY=\xff\n", b"no trailing newline"])
def test_privileged_read_is_byte_exact(tmp_path, denied_reads, data):
    path = tmp_path / "root-only.conf"
    path.write_bytes(data)
    assert privilege_mod.read_bytes(path, elevate=True) == data


def test_denied_read_without_elevation_raises(tmp_path, denied_reads):
    path = tmp_path / "root-only.conf"
    path.write_bytes(b"KEY=1\n")
    with pytest.raises(PermissionError):
        privilege_mod.read_bytes(path)
