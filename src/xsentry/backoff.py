"""Retry pacing for the two independent failure domains.

:class:`ServerErrorBackoff` tracks consecutive HTTP 5xx responses from the
REST endpoint and enforces a tiered cool-down; :class:`ReconnectStrategy`
paces MQTT reconnect attempts with exponential backoff and jitter.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable

from xsentry.errors import ServerUnavailable

_LOGGER = logging.getLogger(__name__)

BACKOFF_TIERS_MINUTES = (1, 2, 5, 10, 15)
NOTIFY_THRESHOLD = 3


class ServerErrorBackoff:
    """Consecutive-5xx counter with a step-function cool-down.

    The *clock* callable returns monotonic seconds and is injectable for
    tests.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.error_count = 0
        self._until = 0.0

    @property
    def backoff_minutes(self) -> int:
        """Cool-down tier for the current error count (0 when healthy)."""
        if self.error_count == 0:
            return 0
        return BACKOFF_TIERS_MINUTES[min(self.error_count - 1, len(BACKOFF_TIERS_MINUTES) - 1)]

    @property
    def remaining(self) -> float:
        """Seconds left in the active cool-down window."""
        return max(0.0, self._until - self._clock())

    @property
    def should_notify(self) -> bool:
        """Whether the error streak is long enough to surface to the user."""
        return self.error_count >= NOTIFY_THRESHOLD

    def check(self) -> None:
        """Fail fast while a cool-down window is active.

        Raises:
            ServerUnavailable: With ``retry_after`` set to the remaining wait.
        """
        remaining = self.remaining
        if remaining > 0:
            minutes = max(1, round(remaining / 60))
            raise ServerUnavailable(
                f"X-Sense server unavailable, retry in about {minutes} minute(s)",
                retry_after=remaining,
            )

    def record_failure(self, status: int | None = None) -> int:
        """Count a server error and open the next cool-down window.

        Returns the window length in minutes.
        """
        self.error_count += 1
        minutes = self.backoff_minutes
        self._until = self._clock() + minutes * 60
        _LOGGER.error(
            "Server error %s (%d consecutive), backing off for %d minute(s)",
            status,
            self.error_count,
            minutes,
        )
        return minutes

    def record_success(self) -> None:
        """Reset the error streak after a successful call."""
        if self.error_count:
            _LOGGER.info("Server recovered after %d error(s)", self.error_count)
        self.error_count = 0
        self._until = 0.0


class ReconnectStrategy:
    """Exponential reconnect backoff with symmetric jitter.

    ``delay = min(min_delay * multiplier ** (attempt - 1), max_delay)``,
    perturbed by up to ``jitter`` of itself in either direction clamped to
    [*min_delay*, *max_delay*].  All values are in seconds.
    """

    def __init__(
        self,
        *,
        min_delay: float = 1.0,
        max_delay: float = 60.0,
        multiplier: float = 2.0,
        jitter: float = 0.1,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter = jitter
        self._rng = rng
        self.attempt = 0
        self.current_delay = min_delay

    def next_delay(self) -> float:
        """Advance the attempt counter and return the delay before the next try."""
        self.attempt += 1
        delay = min(self.min_delay * self.multiplier ** (self.attempt - 1), self.max_delay)
        if self.jitter > 0:
            delay += (self._rng() * 2 - 1) * delay * self.jitter
        self.current_delay = min(self.max_delay, max(self.min_delay, delay))
        return self.current_delay

    def reset(self) -> None:
        """Return to *min_delay* after a successful connect."""
        self.attempt = 0
        self.current_delay = self.min_delay
