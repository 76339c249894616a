"""
Rate Limiter - in-process per-subject request rate limiting.

This module provides sliding window rate limiting for the worker pool:
- Per-subject (user) job admission limits
- Backpressure: a noisy subject is deferred, others keep flowing

Design:
- Sliding window algorithm (fair and accurate)
- One timestamp deque per subject, pruned on every check
- Check and increment happen under a single lock, so concurrent
  scheduler ticks cannot push a subject over its quota

Usage:
    limiter = SubjectRateLimiter(limit=60, window_seconds=60)

    allowed, info = limiter.check_rate_limit("user-123")
    if not allowed:
        # defer the job by info["retry_after"] seconds
"""

import threading
import time
from collections import deque
from collections.abc import Callable

from inbox_triage.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class SubjectRateLimiter:
    """
    Sliding window rate limiter keyed by subject id.

    The sliding window algorithm tracks exact admission timestamps,
    providing fair limiting without fixed-window burst issues.

    Example:
        If limit is 60 jobs/min and a subject was admitted 60 times at 10:00:00,
        its next job is admitted at 10:01:00 once the oldest entry expires.

    Thread Safety:
        All reads and writes of the per-subject windows go through one lock.
    """

    def __init__(
        self,
        limit: int = 60,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize rate limiter.

        Args:
            limit: Admissions allowed per window, per subject
            window_seconds: Time window in seconds
            clock: Monotonic clock returning seconds (injectable for tests)
        """
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def _prune(self, window: deque[float], now: float) -> None:
        window_start = now - self.window_seconds
        while window and window[0] <= window_start:
            window.popleft()

    def _sweep(self, now: float) -> None:
        """Drop subjects with no admissions left in the window. Caller holds the lock."""
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for subject_id in list(self._windows):
            window = self._windows[subject_id]
            self._prune(window, now)
            if not window:
                del self._windows[subject_id]

    def check_rate_limit(self, subject_id: str | None, limit: int | None = None) -> tuple[bool, dict]:
        """
        Atomically check and consume one admission for ``subject_id``.

        Jobs without a subject are never limited.

        Args:
            subject_id: Owning user id
            limit: Override for this call (None = use default)

        Returns:
            Tuple of (allowed: bool, info: dict)
        """
        limit = limit or self.limit
        if not subject_id:
            return True, self._create_info_dict(allowed=True, limit=limit, remaining=limit)

        with self._lock:
            now = self._clock()
            self._sweep(now)
            window = self._windows.setdefault(subject_id, deque())
            self._prune(window, now)

            if len(window) >= limit:
                retry_after = max(0.0, (window[0] + self.window_seconds) - now)
                return False, self._create_info_dict(
                    allowed=False, limit=limit, remaining=0, retry_after=retry_after
                )

            window.append(now)
            return True, self._create_info_dict(
                allowed=True, limit=limit, remaining=max(0, limit - len(window))
            )

    def release(self, subject_id: str | None) -> None:
        """Give back the most recent admission (the job was never dispatched)."""
        if not subject_id:
            return
        with self._lock:
            window = self._windows.get(subject_id)
            if window:
                window.pop()
            if not window:
                self._windows.pop(subject_id, None)

    def try_acquire(self, subject_id: str | None) -> bool:
        """Shorthand for check_rate_limit when only the decision matters."""
        allowed, _ = self.check_rate_limit(subject_id)
        return allowed

    def remaining(self, subject_id: str) -> int:
        """Admissions left in the current window without consuming one."""
        with self._lock:
            window = self._windows.get(subject_id)
            if not window:
                return self.limit
            self._prune(window, self._clock())
            if not window:
                del self._windows[subject_id]
                return self.limit
            return max(0, self.limit - len(window))

    def tracked_subjects(self) -> int:
        return len(self._windows)

    def reset(self, subject_id: str | None = None) -> None:
        """Forget admissions for one subject, or for everyone."""
        with self._lock:
            if subject_id is None:
                self._windows.clear()
            else:
                self._windows.pop(subject_id, None)

    def _create_info_dict(
        self,
        allowed: bool,
        limit: int,
        remaining: int,
        retry_after: float | None = None,
    ) -> dict:
        """Create standardized rate limit info dict."""
        return {
            "allowed": allowed,
            "limit": limit,
            "remaining": remaining,
            "retry_after": retry_after,
            "window_seconds": self.window_seconds,
        }
