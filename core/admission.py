"""
Admission control: the combined abuse / rate-limit / quota gate applied before a
job is queued.

Checks run in a fixed order and stop at the first failure:
blocked check, bot verification, rate limit, quota, abuse-signal update.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

from .abuse_detector import AbuseDetector, ClientSignals, generate_fingerprint
from .models import AccuracyMode, Tier
from .quota_tracker import QuotaTracker
from .rate_limit_manager import IdentityClass, RateLimiter

logger = logging.getLogger(__name__)

SUSPICIOUS_SCORE = 10

# Called with (identity key, challenge token); returns True when verified
BotVerifier = Callable[[str, Optional[str]], Awaitable[bool]]


@dataclass
class Identity:
    """Caller identity as supplied by session resolution."""
    key: Optional[str]
    tier: Tier = Tier.FREE

    @property
    def is_authenticated(self) -> bool:
        return bool(self.key)


@dataclass
class AdmissionContext:
    """Per-request signals consumed by admission control."""
    ip: str = ""
    signals: ClientSignals = field(default_factory=ClientSignals)
    target: Optional[str] = None
    requested_minutes: float = 1.0
    accuracy: AccuracyMode = AccuracyMode.STANDARD
    is_preview: bool = False
    challenge_token: Optional[str] = None


@dataclass
class AdmissionDecision:
    allowed: bool
    identity_key: str
    reason: Optional[str] = None
    retry_after: Optional[float] = None
    remaining: Dict[str, Optional[float]] = field(default_factory=dict)
    fingerprint: Optional[str] = None


class AdmissionController:
    """Runs every admission check for a request and returns a single decision."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        quota_tracker: QuotaTracker,
        abuse_detector: AbuseDetector,
        bot_verifier: Optional[BotVerifier] = None,
        require_bot_verification: bool = False,
    ):
        self.rate_limiter = rate_limiter
        self.quota_tracker = quota_tracker
        self.abuse_detector = abuse_detector
        self.bot_verifier = bot_verifier
        self.require_bot_verification = require_bot_verification

    @staticmethod
    def resolve_key(identity: Identity, ip: str, fingerprint: str) -> str:
        """Account id when known, otherwise IP plus fingerprint."""
        return identity.key or f"{ip}_{fingerprint}"

    def classify(self, identity: Identity, key: str) -> IdentityClass:
        if self.abuse_detector.get_suspicion_score(key) > SUSPICIOUS_SCORE:
            return IdentityClass.SUSPICIOUS
        if identity.is_authenticated:
            return IdentityClass.AUTHENTICATED
        return IdentityClass.ANONYMOUS

    async def admit(self, identity: Identity, context: AdmissionContext) -> AdmissionDecision:
        """
        Decide whether a request may be queued.

        Admitted requests have their minutes recorded against the quota.

        Args:
            identity: Caller identity and tier
            context: Request signals and requested usage

        Returns:
            AdmissionDecision; denial reasons are 'blocked', 'bot_verification_failed',
            'rate_limited', 'file_too_long' or a quota reason
        """
        fingerprint = generate_fingerprint(context.signals)
        key = self.resolve_key(identity, context.ip, fingerprint)

        if self.abuse_detector.is_blocked(key):
            logger.info(f"Rejected blocked identity {key}")
            return AdmissionDecision(False, key, reason="blocked", fingerprint=fingerprint)

        if not identity.is_authenticated and self.require_bot_verification:
            verified = False
            if self.bot_verifier is not None:
                verified = await self.bot_verifier(key, context.challenge_token)
            if not verified:
                return AdmissionDecision(False, key, reason="bot_verification_failed", fingerprint=fingerprint)

        # Paid tiers running full jobs are governed by quota alone
        if context.is_preview or not identity.is_authenticated or identity.tier == Tier.FREE:
            identity_class = self.classify(identity, key)
            rate = self.rate_limiter.check(key, identity_class, fingerprint)
            if not rate.allowed:
                return AdmissionDecision(
                    False, key,
                    reason="rate_limited",
                    retry_after=math.ceil(rate.retry_after),
                    fingerprint=fingerprint,
                )

        quota_max = self.quota_tracker.quota_for(identity.tier).max_file_minutes
        if context.requested_minutes > quota_max:
            check = await self.quota_tracker.check(key, identity.tier, 0, context.accuracy.value)
            return AdmissionDecision(
                False, key, reason="file_too_long", remaining=check.remaining, fingerprint=fingerprint
            )

        quota = await self.quota_tracker.check_and_record(
            key, identity.tier, context.requested_minutes, context.accuracy.value
        )
        if not quota.allowed:
            logger.info(f"Quota denied for {key}: {quota.reason}")
            return AdmissionDecision(
                False, key, reason=quota.reason, remaining=quota.remaining, fingerprint=fingerprint
            )

        assessment = self.abuse_detector.record_request(
            key, ip=context.ip, user_agent=context.signals.user_agent, target=context.target
        )
        if any(s.severity == "high" for s in assessment.signals):
            logger.warning(f"High severity abuse signals for {key}: {[s.type for s in assessment.signals]}")

        return AdmissionDecision(True, key, remaining=quota.remaining, fingerprint=fingerprint)
