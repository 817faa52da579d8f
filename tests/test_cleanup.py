import signal

import pytest

from tuneforge.cleanup import Interrupted, Teardown


def test_runs_newest_first_and_only_once():
    seen = []
    t = Teardown()
    t.register("first", lambda: seen.append("first"))
    t.register("second", lambda: seen.append("second"))
    t.run()
    t.run()
    assert seen == ["second", "first"]
    assert t.ran


def test_failing_action_does_not_stop_the_rest(caplog):
    seen = []
    t = Teardown()
    t.register("ok", lambda: seen.append("ok"))
    t.register("boom", lambda: 1 / 0)
    t.run()
    assert seen == ["ok"]
    assert "boom" in caplog.text


def test_unregister():
    seen = []
    t = Teardown()
    token = t.register("temp", lambda: seen.append("temp"))
    t.register("lock", lambda: seen.append("lock"))
    t.unregister(token)
    assert t.pending() == ["lock"]
    t.run()
    assert seen == ["lock"]


def test_signal_runs_teardown_and_raises():
    seen = []
    t = Teardown()
    t.register("lock", lambda: seen.append("lock"))
    with pytest.raises(Interrupted) as exc:
        t._handle(signal.SIGTERM, None)
    assert exc.value.signum == signal.SIGTERM
    assert seen == ["lock"]
    assert isinstance(exc.value, KeyboardInterrupt)


def test_signal_during_command_is_deferred():
    seen = []
    t = Teardown()
    t.register("lock", lambda: seen.append("lock"))
    with pytest.raises(Interrupted):
        with t.deferred_signals():
            t._handle(signal.SIGINT, None)
            seen.append("command finished")
    assert seen == ["command finished", "lock"]


def test_install_and_restore_signal_handlers():
    before = signal.getsignal(signal.SIGTERM)
    t = Teardown()
    t.install_signal_handlers([signal.SIGTERM])
    try:
        assert signal.getsignal(signal.SIGTERM) == t._handle
    finally:
        t.restore_signal_handlers()
    assert signal.getsignal(signal.SIGTERM) == before


def test_reset_allows_another_run():
    seen = []
    t = Teardown()
    t.run()
    t.reset()
    t.register("again", lambda: seen.append("again"))
    t.run()
    assert seen == ["again"]
