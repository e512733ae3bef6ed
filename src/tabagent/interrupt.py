"""
Cooperative cancellation.

Ctrl+C never aborts an in-flight model call or tool action. It only sets a
flag that the orchestrator checks before each tool call and before sending
results back. A second Ctrl+C within the exit window is an unconditional
request to quit, whatever the orchestrator is doing.
"""

import logging
import time
from collections.abc import Callable
from enum import Enum

logger = logging.getLogger(__name__)

DEFAULT_EXIT_WINDOW = 2.0


class InterruptAction(Enum):
    """What a Ctrl+C press should do."""
    EXIT = "exit"
    INTERRUPT = "interrupt"
    HINT = "hint"


class InterruptController:
    """Tracks turn activity and decides what each interrupt signal means."""

    def __init__(
        self,
        exit_window: float = DEFAULT_EXIT_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.exit_window = exit_window
        self._clock = clock
        self._last_signal: float | None = None
        self._processing = False
        self._interrupted = False

    @property
    def interrupted(self) -> bool:
        return self._interrupted

    @property
    def processing(self) -> bool:
        return self._processing

    def begin_turn(self) -> None:
        self._processing = True
        self._interrupted = False

    def end_turn(self) -> None:
        self._processing = False
        self._interrupted = False

    def request_interrupt(self) -> None:
        self._interrupted = True

    def signal(self) -> InterruptAction:
        """
        Register one interrupt signal.

        - Within exit_window of the previous one: EXIT.
        - During a turn that is not yet interrupted: INTERRUPT (flag set).
        - Otherwise: HINT (tell the user how to exit).
        """
        now = self._clock()
        is_double = self._last_signal is not None and now - self._last_signal < self.exit_window
        self._last_signal = now

        if is_double:
            logger.info("Second interrupt within exit window, exiting")
            return InterruptAction.EXIT
        if self._processing and not self._interrupted:
            self._interrupted = True
            logger.info("Turn interrupted by user")
            return InterruptAction.INTERRUPT
        return InterruptAction.HINT
