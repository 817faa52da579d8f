from __future__ import annotations

import logging
import signal
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


class Interrupted(KeyboardInterrupt):
    """Raised in the main thread after a handled signal ran teardown."""

    def __init__(self, signum: int):
        super().__init__(signum)
        self.signum = signum


@dataclass(frozen=True)
class _Action:
    token: int
    name: str
    fn: Callable[[], object]


class Teardown:
    """Registry of scoped resources released by one idempotent routine.

    Temp files, the run lock and the credential keepalive register a release
    action here. ``run()`` executes the actions newest first, at most once,
    whether it is reached from normal exit or from a signal handler.
    """

    def __init__(self) -> None:
        self._actions: List[_Action] = []
        self._next_token = 0
        self._ran = False
        self._deferring = 0
        self._pending: Optional[int] = None
        self._previous: Dict[int, object] = {}

    @property
    def ran(self) -> bool:
        return self._ran

    def register(self, name: str, fn: Callable[[], object]) -> int:
        self._next_token += 1
        self._actions.append(_Action(token=self._next_token, name=name, fn=fn))
        return self._next_token

    def unregister(self, token: int) -> None:
        self._actions = [a for a in self._actions if a.token != token]

    def pending(self) -> List[str]:
        return [a.name for a in self._actions]

    def run(self) -> None:
        if self._ran:
            return
        self._ran = True
        actions, self._actions = self._actions, []
        for action in reversed(actions):
            try:
                action.fn()
            except Exception:
                logger.exception("Teardown action failed: %s", action.name)
            else:
                logger.debug("Teardown: %s", action.name)

    def reset(self) -> None:
        """Forget all actions and allow another run (tests, child phases)."""
        self._actions = []
        self._ran = False
        self._pending = None
        self._deferring = 0

    def install_signal_handlers(self, signals: Sequence[int] = HANDLED_SIGNALS) -> None:
        for signum in signals:
            if signum in self._previous:
                continue
            self._previous[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle)

    def restore_signal_handlers(self) -> None:
        for signum, previous in self._previous.items():
            signal.signal(signum, previous)  # type: ignore[arg-type]
        self._previous = {}

    def _handle(self, signum: int, frame: object) -> None:
        if self._deferring:
            # An external command is running; act once it returns.
            self._pending = signum
            return
        self._interrupt(signum)

    def _interrupt(self, signum: int) -> None:
        logger.warning("Received %s, cleaning up", signal.Signals(signum).name)
        self.run()
        raise Interrupted(signum)

    @contextmanager
    def deferred_signals(self) -> Iterator[None]:
        self._deferring += 1
        try:
            yield
        finally:
            self._deferring -= 1
            if not self._deferring and self._pending is not None:
                signum, self._pending = self._pending, None
                self._interrupt(signum)


TEARDOWN = Teardown()


def deferred_signals():
    return TEARDOWN.deferred_signals()
