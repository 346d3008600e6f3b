from __future__ import annotations

import time
from typing import Callable


class SubmissionRateLimiter:
    """Sliding one-minute window of accepted submissions per form.

    A limit of 0 or less disables limiting.
    """

    def __init__(
        self,
        per_minute: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.per_minute = per_minute
        self.window_seconds = window_seconds
        self._clock = clock
        self._history: dict[str, list[float]] = {}

    def allow(self, key: str) -> bool:
        if self.per_minute <= 0:
            return True
        now = self._clock()
        cutoff = now - self.window_seconds
        history = [stamp for stamp in self._history.get(key, []) if stamp > cutoff]
        if len(history) >= self.per_minute:
            self._history[key] = history
            return False
        history.append(now)
        self._history[key] = history
        return True
