import json

import pytest

from tuneforge.config_store import (
    ConfigError,
    load_config,
    load_state,
    resolve_config_path,
    state_from_mapping,
)


def test_defaults_fill_every_group(state):
    assert state.value("sysctl.vm.swappiness") is None  # dotted keys are not nested
    assert state.group("sysctl")["vm.swappiness"] == 10
    assert state.kernel_cmdline[0] == "amd_pstate=active"
    assert state.value("settings.log_retain") == 30


def test_user_values_override_without_merging_lists():
    state = state_from_mapping({"kernel": {"cmdline": ["quiet"]}, "sysctl": {"vm.swappiness": 60}})
    assert state.kernel_cmdline == ("quiet",)
    assert state.group("sysctl")["vm.swappiness"] == 60
    assert state.group("sysctl")["vm.max_map_count"] == 2147483642


def test_iwd_table_is_replaced_wholesale():
    state = state_from_mapping({"wireless": {"iwd": {"General": {"EnableNetworkConfiguration": True}}}})
    assert list(state.value("wireless.iwd")) == ["General"]
    assert state.value("wireless.regdom") == "US"


def test_state_is_read_only(state):
    with pytest.raises(TypeError):
        state.group("sysctl")["vm.swappiness"] = 1  # type: ignore[index]
    assert isinstance(state.kernel_cmdline, tuple)


def test_unknown_group_raises(state):
    with pytest.raises(ConfigError):
        state.group("nope")


def test_load_yaml_and_json(tmp_path):
    y = tmp_path / "c.yaml"
    y.write_text("sysctl:\n  vm.swappiness: 1\n")
    assert load_config(str(y)) == {"sysctl": {"vm.swappiness": 1}}

    j = tmp_path / "c.json"
    j.write_text(json.dumps({"gpu": {"power_level": "high"}}))
    assert load_state(str(j)).value("gpu.power_level") == "high"


def test_load_errors(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(str(tmp_path / "missing.yaml"))

    bad = tmp_path / "bad.yaml"
    bad.write_text("- a\n- b\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(str(bad))

    wrong = tmp_path / "wrong.yaml"
    wrong.write_text("sysctl: 3\n")
    with pytest.raises(ConfigError, match="sysctl"):
        load_config(str(wrong))

    broken = tmp_path / "broken.json"
    broken.write_text("{")
    with pytest.raises(ConfigError):
        load_config(str(broken))


def test_resolve_config_path(monkeypatch, tmp_path):
    monkeypatch.setenv("TUNEFORGE_CONFIG", "/from/env.yaml")
    assert resolve_config_path("/explicit.yaml") == "/explicit.yaml"
    assert resolve_config_path(None) == "/from/env.yaml"
