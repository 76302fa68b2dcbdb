"""
Bounded polling until an asynchronous operation settles.
"""

import logging
import threading
import time
from typing import Callable, Collection, Optional, TypeVar

from ..errors import WaitCancelled, WaitTimeout

logger = logging.getLogger(__name__)

State = TypeVar("State")


class CancellationToken:
    """Cooperative cancellation flag shared by a run and its waits."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds``, returning early if cancelled."""
        self._event.wait(seconds)


class ReadinessWaiter:
    """Poll a probe until it reports a terminal state or a timeout elapses.

    The clock and sleep functions are injectable so tests can drive the
    waiter with a fake clock instead of real delays.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize waiter.

        Args:
            clock: Monotonic time source in seconds
            sleep: Sleep function; defaults to the cancellation token's
                interruptible sleep, or ``time.sleep`` without a token
        """
        self.clock = clock
        self._sleep = sleep

    def wait(
        self,
        probe: Callable[[], State],
        terminal_states: Collection[State],
        timeout: float,
        poll_interval: float,
        cancel_token: Optional[CancellationToken] = None,
        description: str = "operation",
    ) -> State:
        """
        Block until ``probe`` returns a state in ``terminal_states``.

        Args:
            probe: Callable returning the current state
            terminal_states: States that end the wait
            timeout: Maximum seconds to wait; 0 probes exactly once
            poll_interval: Seconds slept between probes
            cancel_token: Checked at every poll boundary
            description: Used in log and error messages

        Returns:
            The terminal state reported by the probe.

        Raises:
            WaitTimeout: if no terminal state was seen within ``timeout``
            WaitCancelled: if the token was cancelled at a poll boundary
        """
        if timeout < 0:
            raise ValueError("timeout must not be negative")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        deadline = self.clock() + timeout
        attempts = 0
        state = None

        while True:
            if cancel_token is not None and cancel_token.cancelled:
                raise WaitCancelled(f"Wait for {description} cancelled")

            state = probe()
            attempts += 1
            if state in terminal_states:
                logger.debug(f"{description} reached {state} after {attempts} poll(s)")
                return state

            if self.clock() >= deadline:
                raise WaitTimeout(
                    f"Timed out after {timeout}s waiting for {description} "
                    f"(last state: {state})",
                    last_state=state,
                )

            logger.debug(f"{description} is {state}; polling again in {poll_interval}s")
            # Never sleep past the deadline
            self._pause(min(poll_interval, deadline - self.clock()), cancel_token)

    def _pause(self, seconds: float, cancel_token: Optional[CancellationToken]) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        elif cancel_token is not None:
            cancel_token.sleep(seconds)
        else:
            time.sleep(seconds)
