"""Rate limiting for connector endpoint calls.

Implements sliding window log rate limiting keyed by
(instance_id, endpoint_id). Each key keeps the timestamps of admitted calls
and is guarded by its own asyncio lock, so limiter checks for different
instances never contend.

Windows checked per call:
- burst: `burst_limit` calls within any one second
- minute: `requests_per_minute` within `window_size` seconds (the endpoint's
  `rate_limit` overrides the per-minute figure)
- hour / day: `requests_per_hour` / `requests_per_day`

Keys whose log has emptied are dropped, together with their locks, by a
periodic sweep so the limiter does not grow with every instance ever seen.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from itertools import count
from typing import Callable, Optional

from .definitions import RateLimitPolicy
from .stores import KeyedLocks


logger = logging.getLogger(__name__)

RateLimitKey = tuple[str, str]

HOUR_SECONDS = 3600
DAY_SECONDS = 86400
BURST_SECONDS = 1
SWEEP_INTERVAL_SECONDS = 60


@dataclass(frozen=True)
class RateLimitDecision:
    """
    Outcome of one acquire.

    Attributes:
        allowed: Whether the call may proceed
        limit: Name of the violated window ('burst', 'minute', 'hour', 'day')
        retry_after: Seconds until the violated window frees a slot
        token: Slot handle to pass to `release` if the call is abandoned
    """
    allowed: bool
    limit: Optional[str] = None
    retry_after: float = 0.0
    token: Optional[int] = None


class RateLimiter:
    """Sliding window log rate limiter held in memory."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._logs: dict[RateLimitKey, deque[tuple[float, int]]] = {}
        self._horizons: dict[RateLimitKey, float] = {}
        self._locks = KeyedLocks()
        self._tokens = count(1)
        self._last_sweep = clock()

    async def acquire(
        self,
        key: RateLimitKey,
        policy: RateLimitPolicy,
        endpoint_rate_limit: Optional[int] = None,
    ) -> RateLimitDecision:
        """Admit a call if every configured window has room.

        Args:
            key: (instance_id, endpoint_id)
            policy: Connector rate limiting policy
            endpoint_rate_limit: Endpoint requests-per-minute override

        Returns:
            RateLimitDecision; a rejected call consumes no slot
        """
        if not policy.enabled:
            return RateLimitDecision(allowed=True)

        per_minute = endpoint_rate_limit if endpoint_rate_limit else policy.requests_per_minute
        windows = [
            ("burst", policy.burst_limit, BURST_SECONDS),
            ("minute", per_minute, policy.window_size),
            ("hour", policy.requests_per_hour, HOUR_SECONDS),
            ("day", policy.requests_per_day, DAY_SECONDS),
        ]
        windows = [(name, limit, seconds) for name, limit, seconds in windows if limit > 0 and seconds > 0]
        if not windows:
            return RateLimitDecision(allowed=True)

        horizon = max(seconds for _, _, seconds in windows)
        self._sweep()

        async with self._locks(self._lock_name(key)):
            now = self._clock()
            log = self._logs.setdefault(key, deque())
            self._horizons[key] = horizon

            # Drop entries older than the widest window
            while log and log[0][0] <= now - horizon:
                log.popleft()

            for name, limit, seconds in windows:
                in_window = [stamp for stamp, _ in log if stamp > now - seconds]
                if len(in_window) >= limit:
                    # The oldest call that keeps the window full
                    blocking = in_window[len(in_window) - limit]
                    retry_after = max(0.0, blocking + seconds - now)
                    logger.info(
                        f"Rate limit '{name}' reached for {key[0]}/{key[1]} ({limit} per {seconds}s)",
                        extra={"instance_id": key[0], "endpoint_id": key[1]},
                    )
                    return RateLimitDecision(allowed=False, limit=name, retry_after=retry_after)

            token = next(self._tokens)
            log.append((now, token))
            return RateLimitDecision(allowed=True, token=token)

    async def release(self, key: RateLimitKey, token: Optional[int]) -> bool:
        """Return a slot taken by an abandoned (cancelled) call."""
        if token is None:
            return False
        released = False
        async with self._locks(self._lock_name(key)):
            log = self._logs.get(key, ())
            for entry in log:
                if entry[1] == token:
                    log.remove(entry)
                    released = True
                    break
        if released and not self._logs.get(key):
            self._drop(key)
        return released

    def forget(self, instance_id: str) -> int:
        """Drop every log kept for an instance; returns how many keys went."""
        keys = [key for key in self._logs if key[0] == instance_id]
        for key in keys:
            self._drop(key)
        return len(keys)

    def __len__(self) -> int:
        return len(self._logs)

    def usage(self, key: RateLimitKey, seconds: float) -> int:
        """Calls admitted for key within the last `seconds`."""
        now = self._clock()
        return sum(1 for stamp, _ in self._logs.get(key, ()) if stamp > now - seconds)

    def _sweep(self) -> None:
        now = self._clock()
        if now - self._last_sweep < SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now
        for key, log in list(self._logs.items()):
            horizon = self._horizons.get(key, DAY_SECONDS)
            if not log or log[-1][0] <= now - horizon:
                self._drop(key)

    def _drop(self, key: RateLimitKey) -> None:
        lock_name = self._lock_name(key)
        if self._locks.held(lock_name):
            return
        self._logs.pop(key, None)
        self._horizons.pop(key, None)
        self._locks.discard(lock_name)

    @staticmethod
    def _lock_name(key: RateLimitKey) -> str:
        return f"{key[0]}:{key[1]}"
