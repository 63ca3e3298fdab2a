"""Rate limiting for bulk action submissions.

Per-actor limits on how often bulk actions may be started, how many may
be active at once, how many records a single action may touch, and a
cooldown after very large actions.

Production note: counters live in process memory. Multi-instance
deployments should back them with Redis.
"""

import threading
import time
from typing import Callable, Optional, Tuple

from app.config import Settings, get_settings
from core.exceptions import RateLimitExceeded

BULK_ACTION_GROUP = "bulk_action"


class SlidingWindowCounter:
    """Thread-safe sliding window rate counter.

    Uses a two-bucket sliding window algorithm for accuracy
    without per-request storage overhead.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, max_keys: int = 50_000):
        self._lock = threading.Lock()
        self._clock = clock
        # Key: (identifier, group) -> (current_count, prev_count, current_window_start)
        self._windows: dict[Tuple[str, str], Tuple[int, int, float]] = {}
        self._max_keys = max_keys

    def check_and_increment(
        self, key: str, group: str, max_requests: int, window_seconds: int
    ) -> Tuple[bool, int, int, float]:
        """Check if an attempt is allowed and count it.

        Returns:
            (allowed, current_count, limit, retry_after_seconds)
        """
        now = self._clock()
        bucket_key = (key, group)

        with self._lock:
            entry = self._windows.get(bucket_key)

            if entry is None:
                self._windows[bucket_key] = (1, 0, now)
                self._maybe_cleanup()
                return (True, 1, max_requests, 0)

            current_count, prev_count, window_start = entry
            elapsed = now - window_start

            if elapsed >= window_seconds:
                if elapsed >= window_seconds * 2:
                    self._windows[bucket_key] = (1, 0, now)
                else:
                    # Roll over: current becomes prev
                    self._windows[bucket_key] = (1, current_count, now)
                return (True, 1, max_requests, 0)

            estimated = self._estimate(current_count, prev_count, elapsed, window_seconds)

            if estimated >= max_requests:
                retry_after = window_seconds - elapsed
                return (False, int(estimated), max_requests, retry_after)

            self._windows[bucket_key] = (current_count + 1, prev_count, window_start)
            return (True, int(estimated) + 1, max_requests, 0)

    def current(self, key: str, group: str, window_seconds: int) -> float:
        """Weighted number of attempts in the window, without counting a new one."""
        now = self._clock()
        with self._lock:
            entry = self._windows.get((key, group))
            if entry is None:
                return 0.0
            current_count, prev_count, window_start = entry
            elapsed = now - window_start
            if elapsed >= window_seconds * 2:
                return 0.0
            if elapsed >= window_seconds:
                # Whole current bucket has become the previous one
                return self._estimate(0, current_count, elapsed - window_seconds, window_seconds)
            return self._estimate(current_count, prev_count, elapsed, window_seconds)

    def reset(self, key: str, group: str) -> None:
        with self._lock:
            self._windows.pop((key, group), None)

    @staticmethod
    def _estimate(current_count: int, prev_count: int, elapsed: float, window_seconds: int) -> float:
        # Weighted count: prev * remaining_fraction + current
        weight = 1 - (elapsed / window_seconds)
        return prev_count * weight + current_count

    def _maybe_cleanup(self):
        """Evict oldest entries if memory bound exceeded."""
        if len(self._windows) > self._max_keys:
            to_remove = int(self._max_keys * 0.2)
            sorted_keys = sorted(
                self._windows.keys(),
                key=lambda k: self._windows[k][2],
            )
            for k in sorted_keys[:to_remove]:
                del self._windows[k]


class BulkRateLimiter:
    """Per-actor limits applied before a bulk action is materialized.

    Active-execution counts come from storage, so callers pass them in;
    everything else is tracked here.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        counter: Optional[SlidingWindowCounter] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self._clock = clock
        self._counter = counter or SlidingWindowCounter(clock=clock)
        self._cooldowns: dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.settings.RATE_LIMITING_ENABLED

    def attempt(self, actor_id: str) -> bool:
        """Count one submission for the actor; False when the window is full."""
        allowed, _, _, _ = self._counter.check_and_increment(
            actor_id,
            BULK_ACTION_GROUP,
            self.settings.MAX_ATTEMPTS_PER_WINDOW,
            self.settings.RATE_LIMIT_WINDOW_SECONDS,
        )
        return allowed

    def remaining_slots(self, actor_id: str) -> int:
        """Submissions the actor may still make in the current window."""
        used = self._counter.current(
            actor_id, BULK_ACTION_GROUP, self.settings.RATE_LIMIT_WINDOW_SECONDS
        )
        return max(0, self.settings.MAX_ATTEMPTS_PER_WINDOW - int(used))

    def cooldown_remaining(self, actor_id: str) -> float:
        """Seconds until the actor's cooldown ends, 0 when none is active."""
        with self._lock:
            until = self._cooldowns.get(actor_id)
            if until is None:
                return 0.0
            remaining = until - self._clock()
            if remaining <= 0:
                del self._cooldowns[actor_id]
                return 0.0
            return remaining

    def start_cooldown(self, actor_id: str, seconds: Optional[float] = None) -> None:
        seconds = self.settings.COOLDOWN_SECONDS if seconds is None else seconds
        with self._lock:
            self._cooldowns[actor_id] = self._clock() + seconds

    def register_volume(self, actor_id: Optional[str], record_count: int) -> bool:
        """Impose the cooldown once an actor starts a large action.

        Returns:
            True if a cooldown was started
        """
        if not self.enabled or not actor_id:
            return False
        if record_count < self.settings.LARGE_ACTION_THRESHOLD:
            return False
        self.start_cooldown(actor_id)
        return True

    def check(self, actor_id: Optional[str], active_count: int = 0) -> None:
        """Raise RateLimitExceeded when the actor may not start another action.

        Order: cooldown, concurrency, then the sliding window (which
        consumes one attempt).
        """
        if not self.enabled or not actor_id:
            return

        remaining = self.cooldown_remaining(actor_id)
        if remaining > 0:
            raise RateLimitExceeded.in_cooldown(remaining)

        if active_count >= self.settings.MAX_CONCURRENT_ACTIONS:
            raise RateLimitExceeded.too_many_concurrent(
                active_count, self.settings.MAX_CONCURRENT_ACTIONS
            )

        allowed, _, limit, retry_after = self._counter.check_and_increment(
            actor_id,
            BULK_ACTION_GROUP,
            self.settings.MAX_ATTEMPTS_PER_WINDOW,
            self.settings.RATE_LIMIT_WINDOW_SECONDS,
        )
        if not allowed:
            raise RateLimitExceeded(
                f"Too many bulk actions. Limit is {limit} per "
                f"{self.settings.RATE_LIMIT_WINDOW_SECONDS} seconds.",
                retry_after=retry_after,
            )

    def check_volume(self, record_count: int) -> None:
        """Hard cap on the number of records one action may target."""
        if not self.enabled:
            return
        if record_count > self.settings.MAX_RECORDS_PER_ACTION:
            raise RateLimitExceeded.too_many_records(
                record_count, self.settings.MAX_RECORDS_PER_ACTION
            )

    def reset(self, actor_id: str) -> None:
        self._counter.reset(actor_id, BULK_ACTION_GROUP)
        with self._lock:
            self._cooldowns.pop(actor_id, None)
