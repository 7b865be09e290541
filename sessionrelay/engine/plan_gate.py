"""Plan-approval gate: RUNNING ⇄ PLAN_WAITING for one job.

Two independent signals mean "the child is waiting for a yes/no":

- no stdout for ``idle_seconds`` after some response text has streamed
- a plain-text line matching one of the approval-prompt patterns

Whichever fires first latches PLAN_WAITING. Later signals of either kind
are ignored until the gate is resumed (after an approval), which starts
a new response cycle.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class PlanGate:
    def __init__(
        self,
        idle_seconds: float,
        has_response: Callable[[], bool],
        on_waiting: Callable[[str], None],
    ) -> None:
        self._idle_seconds = idle_seconds
        self._has_response = has_response
        self._on_waiting = on_waiting
        self._timer: asyncio.TimerHandle | None = None
        self._latched = False
        self._closed = False

    def touch(self) -> None:
        """New output arrived: restart the idle window."""
        if self._closed:
            return
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._idle_seconds, self._idle_elapsed)

    def prompt_detected(self) -> bool:
        return self._trigger("prompt")

    def resume(self) -> None:
        """Leave PLAN_WAITING and allow the next cycle to trigger again."""
        self._latched = False

    def close(self) -> None:
        self._closed = True
        self._cancel_timer()

    def _idle_elapsed(self) -> None:
        self._timer = None
        if self._has_response():
            self._trigger("idle")

    def _trigger(self, source: str) -> bool:
        if self._closed or self._latched:
            return False
        self._latched = True
        logger.debug("Plan gate latched by %s signal", source)
        self._on_waiting(source)
        return True

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
