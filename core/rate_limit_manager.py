"""
Per-identity request rate limiting.

Each identity class (anonymous, authenticated, suspicious) has a fixed request
window plus an optional independent daily cap that resets at local midnight.
Counters live behind a small CounterStore interface so a shared backend can
replace the in-process default.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)

ENTRY_IDLE_EXPIRY_SECONDS = 24 * 60 * 60


class IdentityClass(Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    SUSPICIOUS = "suspicious"


@dataclass
class RateLimitPolicy:
    """Window size and caps for one identity class."""
    max_requests: int
    window_seconds: float
    daily_max: Optional[int] = None


DEFAULT_POLICIES: Dict[IdentityClass, RateLimitPolicy] = {
    IdentityClass.ANONYMOUS: RateLimitPolicy(max_requests=1, window_seconds=3600, daily_max=3),
    IdentityClass.AUTHENTICATED: RateLimitPolicy(max_requests=5, window_seconds=3600, daily_max=20),
    IdentityClass.SUSPICIOUS: RateLimitPolicy(max_requests=1, window_seconds=24 * 3600),
}


@dataclass
class RateLimitEntry:
    count: int
    first_request: float
    last_request: float
    fingerprint: Optional[str] = None
    day_start: Optional[float] = None
    day_count: int = 0


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: float = 0.0
    daily_remaining: Optional[int] = None
    daily_reset_at: Optional[float] = None


class CounterStore(ABC):
    """Storage for rate-limit entries."""

    @abstractmethod
    def get(self, key: str) -> Optional[RateLimitEntry]:
        pass

    @abstractmethod
    def put(self, key: str, entry: RateLimitEntry) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def items(self) -> Iterator[Tuple[str, RateLimitEntry]]:
        pass


class InMemoryCounterStore(CounterStore):
    """Process-local counters. Reset on restart."""

    def __init__(self):
        self._entries: Dict[str, RateLimitEntry] = {}

    def get(self, key: str) -> Optional[RateLimitEntry]:
        return self._entries.get(key)

    def put(self, key: str, entry: RateLimitEntry) -> None:
        self._entries[key] = entry

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def items(self) -> Iterator[Tuple[str, RateLimitEntry]]:
        return iter(list(self._entries.items()))


def day_start(timestamp: float) -> float:
    """Local midnight of the day containing timestamp."""
    dt = datetime.fromtimestamp(timestamp)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0).timestamp()


def next_day_start(day_start_ts: float) -> float:
    return (datetime.fromtimestamp(day_start_ts) + timedelta(days=1)).timestamp()


class RateLimiter:
    """
    Sliding-window plus daily-cap request limiter.

    Denied requests are not counted. Counters reset when the window has expired
    and the daily counter resets at the first request after midnight.
    """

    def __init__(
        self,
        store: Optional[CounterStore] = None,
        policies: Optional[Dict[IdentityClass, RateLimitPolicy]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store or InMemoryCounterStore()
        self.policies = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)
        self._clock = clock
        self._lock = threading.Lock()

    def check(
        self,
        key: str,
        identity_class: IdentityClass,
        fingerprint: Optional[str] = None,
    ) -> RateLimitResult:
        """
        Check and count a request for an identity.

        Args:
            key: Identity key
            identity_class: Which policy applies
            fingerprint: Client fingerprint, used to log evasion attempts

        Returns:
            RateLimitResult with remaining budget and retry_after when denied
        """
        policy = self.policies[identity_class]
        now = self._clock()
        # Class-scoped so a reclassified identity does not share counters
        store_key = f"{identity_class.value}:{key}"

        with self._lock:
            entry = self.store.get(store_key)
            today = day_start(now)

            if entry is None or now - entry.first_request > policy.window_seconds:
                previous = entry
                entry = RateLimitEntry(
                    count=0,
                    first_request=now,
                    last_request=now,
                    fingerprint=fingerprint or (previous.fingerprint if previous else None),
                    day_start=previous.day_start if previous else today,
                    day_count=previous.day_count if previous else 0,
                )
            elif fingerprint and entry.fingerprint and fingerprint != entry.fingerprint:
                logger.warning(f"Fingerprint mismatch for {key}: {entry.fingerprint} -> {fingerprint}")

            if entry.day_start != today:
                entry.day_start = today
                entry.day_count = 0

            window_reset = entry.first_request + policy.window_seconds
            daily_reset = next_day_start(entry.day_start)

            if policy.daily_max is not None and entry.day_count >= policy.daily_max:
                self.store.put(store_key, entry)
                logger.info(f"Daily cap reached for {key} ({identity_class.value})")
                return RateLimitResult(
                    allowed=False,
                    remaining=max(0, policy.max_requests - entry.count),
                    reset_at=daily_reset,
                    retry_after=max(0.0, daily_reset - now),
                    daily_remaining=0,
                    daily_reset_at=daily_reset,
                )

            if entry.count >= policy.max_requests:
                self.store.put(store_key, entry)
                logger.info(f"Rate window exhausted for {key} ({identity_class.value})")
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=window_reset,
                    retry_after=max(0.0, window_reset - now),
                    daily_remaining=self._daily_remaining(policy, entry),
                    daily_reset_at=daily_reset if policy.daily_max is not None else None,
                )

            entry.count += 1
            entry.day_count += 1
            entry.last_request = now
            self.store.put(store_key, entry)

            return RateLimitResult(
                allowed=True,
                remaining=max(0, policy.max_requests - entry.count),
                reset_at=window_reset,
                daily_remaining=self._daily_remaining(policy, entry),
                daily_reset_at=daily_reset if policy.daily_max is not None else None,
            )

    @staticmethod
    def _daily_remaining(policy: RateLimitPolicy, entry: RateLimitEntry) -> Optional[int]:
        if policy.daily_max is None:
            return None
        return max(0, policy.daily_max - entry.day_count)

    def reset(self, key: str) -> None:
        """Forget all counters for an identity."""
        with self._lock:
            for identity_class in IdentityClass:
                self.store.delete(f"{identity_class.value}:{key}")

    def cleanup(self) -> int:
        """Remove entries idle for more than 24 hours."""
        now = self._clock()
        removed = 0
        with self._lock:
            for key, entry in self.store.items():
                if now - entry.last_request > ENTRY_IDLE_EXPIRY_SECONDS:
                    self.store.delete(key)
                    removed += 1
        return removed
