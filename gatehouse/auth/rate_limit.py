from __future__ import annotations

import time
from collections import deque
from typing import Callable, Deque, Dict, Optional


class RateLimiter:
    """
    In-memory limiter for failed local logins, keyed by username.

    Only rejected attempts are recorded: callers ask is_limited() before trying,
    call record_failure() when the attempt is rejected and reset() when it succeeds.
    Attempts that never reach a verdict (store outage) leave the count alone.

    Identifiers whose failures have all aged out of the window are forgotten, and a
    sweep over every identifier runs at most once per window, so the table only
    holds usernames that failed recently.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._failures: Dict[str, Deque[float]] = {}
        self._max_attempts = max_attempts
        self._window = window_seconds
        self._clock = clock
        self._last_sweep = clock()

    def _live_failures(self, identifier: str, now: float) -> Optional[Deque[float]]:
        failures = self._failures.get(identifier)
        if failures is None:
            return None
        while failures and now - failures[0] >= self._window:
            failures.popleft()
        if not failures:
            del self._failures[identifier]
            return None
        return failures

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self._window:
            return
        self._last_sweep = now
        for identifier in list(self._failures):
            self._live_failures(identifier, now)

    def is_limited(self, identifier: str) -> bool:
        now = self._clock()
        self._sweep(now)
        failures = self._live_failures(identifier, now)
        return failures is not None and len(failures) >= self._max_attempts

    def record_failure(self, identifier: str) -> int:
        """Count a rejected attempt. Returns how many attempts are left before the limit."""
        now = self._clock()
        self._sweep(now)
        failures = self._live_failures(identifier, now)
        if failures is None:
            failures = self._failures[identifier] = deque()
        failures.append(now)
        return max(self._max_attempts - len(failures), 0)

    def reset(self, identifier: str) -> None:
        """Forget an identifier's failures (after a successful login)."""
        self._failures.pop(identifier, None)

    def __len__(self) -> int:
        return len(self._failures)
