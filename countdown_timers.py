from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

PROMPT_TIMER = "prompt"
VOTING_TIMER = "voting"


@dataclass
class _Countdown:
    kind: str
    deadline: float
    seconds: float
    on_expire: Callable[[], None]


class CountdownTimers:
    """Cooperative countdowns, one per kind.

    Nothing fires on its own: the session driver calls :meth:`fire_due`
    regularly. Starting a countdown replaces any running one of the same kind.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._timers: dict[str, _Countdown] = {}

    def start(self, kind: str, seconds: float, on_expire: Callable[[], None]) -> None:
        self.cancel(kind)
        self._timers[kind] = _Countdown(
            kind=kind,
            deadline=self._clock() + float(seconds),
            seconds=float(seconds),
            on_expire=on_expire,
        )

    def cancel(self, kind: str) -> bool:
        return self._timers.pop(kind, None) is not None

    def cancel_all(self) -> None:
        self._timers.clear()

    def is_running(self, kind: str) -> bool:
        return kind in self._timers

    def remaining(self, kind: str) -> float | None:
        countdown = self._timers.get(kind)
        if countdown is None:
            return None
        return max(0.0, countdown.deadline - self._clock())

    def fire_due(self) -> list[str]:
        now = self._clock()
        due = sorted(
            (c for c in self._timers.values() if c.deadline <= now),
            key=lambda c: c.deadline,
        )
        fired: list[str] = []
        for countdown in due:
            # A callback may cancel or restart another countdown.
            if self._timers.get(countdown.kind) is not countdown:
                continue
            del self._timers[countdown.kind]
            fired.append(countdown.kind)
            logger.info("Countdown expired: %s", countdown.kind)
            countdown.on_expire()
        return fired
