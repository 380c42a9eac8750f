"""
Client fingerprinting and abuse detection.

The detector keeps a per-identity behavior record over a rolling 24 hour window and
adds weighted points to a suspicion score whenever a request matches one of the
abuse signals. Identities whose score reaches the block threshold stay blocked
until an administrator resets them.
"""

import hashlib
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

BEHAVIOR_WINDOW_SECONDS = 24 * 60 * 60
BOT_AGENT_MARKERS = ('bot', 'crawl', 'spider', 'scraper', 'curl', 'wget')


@dataclass
class ClientSignals:
    """Coarse client attributes used for fingerprinting."""
    user_agent: str = ""
    accept_language: Optional[str] = None
    accept_encoding: Optional[str] = None
    screen_resolution: Optional[str] = None
    timezone: Optional[str] = None


def generate_fingerprint(signals: ClientSignals) -> str:
    """
    Derive a stable 16 hex character fingerprint from client signals.

    The fingerprint correlates requests; it is never an identity on its own.

    Args:
        signals: Client attributes taken from request headers

    Returns:
        Truncated sha256 digest of the canonical JSON of the signals
    """
    payload = json.dumps(
        {
            "userAgent": signals.user_agent,
            "acceptLanguage": signals.accept_language,
            "acceptEncoding": signals.accept_encoding,
            "screenResolution": signals.screen_resolution,
            "timezone": signals.timezone,
        },
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


@dataclass
class AbuseWeights:
    """Scoring policy. Weights and thresholds are configuration, not invariants."""
    rapid_requests: int = 10
    same_target: int = 5
    proxy_detected: int = 15
    bot_agent: int = 8
    rapid_threshold: int = 10
    rapid_window_seconds: float = 60.0
    same_target_min_requests: int = 5
    max_ips: int = 5
    max_user_agents: int = 3
    block_threshold: int = 30


@dataclass
class AbuseSignal:
    type: str
    severity: str
    description: str


@dataclass
class BehaviorRecord:
    """Rolling behavior of a single identity."""
    first_seen: float
    last_seen: float
    request_count: int = 0
    timestamps: Deque[float] = field(default_factory=deque)
    targets: Set[str] = field(default_factory=set)
    ips: Set[str] = field(default_factory=set)
    user_agents: Set[str] = field(default_factory=set)
    suspicion_score: int = 0
    blocked: bool = False


@dataclass
class AbuseAssessment:
    """Outcome of recording one request."""
    score: int
    blocked: bool
    signals: List[AbuseSignal]


class AbuseStateStore(ABC):
    """Storage for behavior records, swappable for a shared backend."""

    @abstractmethod
    def get(self, key: str) -> Optional[BehaviorRecord]:
        pass

    @abstractmethod
    def put(self, key: str, record: BehaviorRecord) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def items(self) -> Iterator[Tuple[str, BehaviorRecord]]:
        pass


class InMemoryAbuseStateStore(AbuseStateStore):
    """Process-local store. State resets on restart."""

    def __init__(self):
        self._records: Dict[str, BehaviorRecord] = {}

    def get(self, key: str) -> Optional[BehaviorRecord]:
        return self._records.get(key)

    def put(self, key: str, record: BehaviorRecord) -> None:
        self._records[key] = record

    def delete(self, key: str) -> None:
        self._records.pop(key, None)

    def items(self) -> Iterator[Tuple[str, BehaviorRecord]]:
        return iter(list(self._records.items()))


class AbuseDetector:
    """
    Accumulates suspicion scores from weighted request signals.

    Signals checked on every request:
    - request burst (more than N requests in the last minute)
    - single-target repetition
    - distinct IP / user-agent cardinality (proxy indicator)
    - bot-like user agent substrings
    """

    def __init__(
        self,
        store: Optional[AbuseStateStore] = None,
        weights: Optional[AbuseWeights] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store or InMemoryAbuseStateStore()
        self.weights = weights or AbuseWeights()
        self._clock = clock
        self._lock = threading.Lock()

    def is_blocked(self, key: str) -> bool:
        record = self.store.get(key)
        return bool(record and record.blocked)

    def get_suspicion_score(self, key: str) -> int:
        record = self.store.get(key)
        return record.suspicion_score if record else 0

    def record_request(
        self,
        key: str,
        ip: str = "",
        user_agent: str = "",
        target: Optional[str] = None,
    ) -> AbuseAssessment:
        """
        Record a request and update the identity's suspicion score.

        Args:
            key: Identity key (account id or fingerprint)
            ip: Client IP address
            user_agent: Client user agent
            target: Media reference being requested

        Returns:
            AbuseAssessment with the new score, block state and matched signals
        """
        now = self._clock()
        w = self.weights
        signals: List[AbuseSignal] = []

        with self._lock:
            record = self.store.get(key)
            if record is None or (not record.blocked and now - record.first_seen >= BEHAVIOR_WINDOW_SECONDS):
                record = BehaviorRecord(first_seen=now, last_seen=now)

            record.request_count += 1
            record.last_seen = now
            record.timestamps.append(now)
            if user_agent:
                record.user_agents.add(user_agent)
            if ip:
                record.ips.add(ip)
            if target:
                record.targets.add(target)

            while record.timestamps and now - record.timestamps[0] >= BEHAVIOR_WINDOW_SECONDS:
                record.timestamps.popleft()

            recent = sum(1 for ts in record.timestamps if now - ts < w.rapid_window_seconds)
            if recent > w.rapid_threshold:
                signals.append(AbuseSignal("rapid_requests", "high", f"{recent} requests in 1 minute"))
                record.suspicion_score += w.rapid_requests

            if len(record.targets) == 1 and record.request_count > w.same_target_min_requests:
                signals.append(AbuseSignal("pattern_match", "medium", "Repeated requests for same target"))
                record.suspicion_score += w.same_target

            if len(record.ips) > w.max_ips or len(record.user_agents) > w.max_user_agents:
                signals.append(AbuseSignal(
                    "proxy_detected", "high",
                    f"Multiple IPs ({len(record.ips)}) or UAs ({len(record.user_agents)})"
                ))
                record.suspicion_score += w.proxy_detected

            ua_lower = user_agent.lower()
            if any(marker in ua_lower for marker in BOT_AGENT_MARKERS):
                signals.append(AbuseSignal("suspicious_ua", "medium", "Bot-like user agent detected"))
                record.suspicion_score += w.bot_agent

            if record.suspicion_score >= w.block_threshold and not record.blocked:
                record.blocked = True
                logger.warning(f"Blocking identity {key} with suspicion score {record.suspicion_score}")

            self.store.put(key, record)

        if signals:
            logger.info(f"Abuse signals for {key}: {', '.join(s.type for s in signals)}")

        return AbuseAssessment(score=record.suspicion_score, blocked=record.blocked, signals=signals)

    def reset(self, key: str) -> None:
        """Clear behavior and block state for an identity (administrator action)."""
        with self._lock:
            self.store.delete(key)
        logger.info(f"Abuse state reset for {key}")

    def cleanup(self) -> int:
        """
        Drop idle, unblocked records older than the behavior window.

        Returns:
            Number of records removed
        """
        now = self._clock()
        removed = 0
        with self._lock:
            for key, record in self.store.items():
                if not record.blocked and now - record.last_seen >= BEHAVIOR_WINDOW_SECONDS:
                    self.store.delete(key)
                    removed += 1
        if removed:
            logger.debug(f"Pruned {removed} idle behavior records")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        records = list(self.store.items())
        return {
            "total_identities": len(records),
            "blocked_identities": sum(1 for _, r in records if r.blocked),
            "suspicious_identities": [
                {"key": key, "score": r.suspicion_score, "request_count": r.request_count}
                for key, r in records
                if r.suspicion_score > 10
            ],
        }
