from tuneforge.lib.chroot import rooted_argv
from tuneforge.lib.hwdetect import kernel_at_least, parse_kernel_version
from tuneforge.lib.net import wait_for_networkmanager

from .conftest import FakeProbe


def test_parse_kernel_version():
    assert parse_kernel_version("6.15.2-arch1-1") == (6, 15, 2)
    assert parse_kernel_version("6.14") == (6, 14, 0)
    assert parse_kernel_version("garbage") == (0, 0, 0)
    assert kernel_at_least("6.15.2-arch1-1", "6.14")
    assert not kernel_at_least("6.13.9", "6.14")


def test_gpu_cards_skip_connectors_and_filter_by_driver(tmp_path):
    for card, driver in (("card0", "i915"), ("card1", "amdgpu")):
        dev = tmp_path / "sys/class/drm" / card / "device"
        dev.mkdir(parents=True)
        (dev / "uevent").write_text(f"DRIVER={driver}\n")
    (tmp_path / "sys/class/drm/card1-DP-1").mkdir()

    probe = FakeProbe(tmp_path)
    assert [d.parent.name for d in probe.gpu_cards()] == ["card0", "card1"]
    assert [d.parent.name for d in probe.gpu_cards("amdgpu")] == ["card1"]


def test_wifi_interfaces_and_modules(tmp_path):
    (tmp_path / "sys/class/net/wlan0/wireless").mkdir(parents=True)
    (tmp_path / "sys/class/net/eth0").mkdir(parents=True)
    (tmp_path / "sys/module/snd_hda_intel").mkdir(parents=True)
    probe = FakeProbe(tmp_path)
    assert probe.wifi_interfaces() == ["wlan0"]
    assert probe.module_loaded("snd-hda-intel")
    assert not probe.module_loaded("amdgpu")


def test_rooted_argv(tmp_path):
    assert rooted_argv("/", ["mkinitcpio", "-P"]) == ["mkinitcpio", "-P"]
    assert rooted_argv(tmp_path, ["mkinitcpio", "-P"]) == ["chroot", str(tmp_path), "mkinitcpio", "-P"]


def test_wait_for_networkmanager_is_bounded():
    answers = iter([False, False, True])
    slept = []
    assert wait_for_networkmanager(retries=5, interval_s=0.5, check=lambda: next(answers), sleep=slept.append)
    assert slept == [0.5, 0.5]

    slept.clear()
    assert not wait_for_networkmanager(retries=3, interval_s=1.0, check=lambda: False, sleep=slept.append)
    assert slept == [1.0, 1.0]
