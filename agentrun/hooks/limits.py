from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable

from agentrun.errors import RunCancelled
from agentrun.hooks.bus import Hook

logger = logging.getLogger(__name__)


class RequestLimitHook(Hook):
    """
    Sliding-window limit on provider calls and tokens.

    Cancels the run from ``before_provider_call`` once the window already
    holds *max_requests* calls or *max_tokens* tokens.  Either limit may be
    ``None`` to disable it.  Token usage is taken from provider responses.
    """

    def __init__(
        self,
        max_requests: int | None = None,
        max_tokens: int | None = None,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.max_tokens = max_tokens
        self.window_seconds = window_seconds
        self._clock = clock
        # [timestamp, tokens] per provider call, oldest first
        self._calls: deque[list] = deque()

    def _prune(self) -> None:
        cutoff = self._clock() - self.window_seconds
        while self._calls and self._calls[0][0] <= cutoff:
            self._calls.popleft()

    @property
    def requests_in_window(self) -> int:
        self._prune()
        return len(self._calls)

    @property
    def tokens_in_window(self) -> int:
        self._prune()
        return sum(c[1] for c in self._calls)

    def before_provider_call(self, ctx, messages):
        self._prune()
        if self.max_requests is not None and len(self._calls) >= self.max_requests:
            logger.warning("Request limit reached: %d in %.0fs", len(self._calls), self.window_seconds)
            raise RunCancelled(
                f"Request limit exceeded: {self.max_requests} per {self.window_seconds}s"
            )
        used = sum(c[1] for c in self._calls)
        if self.max_tokens is not None and used >= self.max_tokens:
            logger.warning("Token limit reached: %d in %.0fs", used, self.window_seconds)
            raise RunCancelled(
                f"Token limit exceeded: {self.max_tokens} per {self.window_seconds}s"
            )
        self._calls.append([self._clock(), 0])

    def after_provider_call(self, ctx, response):
        if response.usage is not None and self._calls:
            self._calls[-1][1] += response.usage.total_tokens

    def reset(self) -> None:
        self._calls.clear()
