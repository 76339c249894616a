"""
Deterministic rule-based email scoring.

Pure function of the email fields, the sender's VIP boost and "now"; no I/O,
so it can run for a whole batch before any AI call is considered.
"""

from datetime import UTC, datetime

from inbox_triage.triage.domain import EmailRecord, RuleScore, Tier

BASE_SCORE = 30

MARKETING_PATTERNS = (
    "unsubscribe",
    "percent off",
    "sale",
    "deal",
    "limited time",
    "coupon",
    "newsletter",
    "digest",
    "promo",
    "promotion",
    "offer",
    "clearance",
    "flash sale",
)
MARKETING_PENALTY = -30

URGENT_PATTERNS = ("urgent", "asap", "immediately", "deadline", "overdue", "critical")
URGENT_BOOST = 25

IMPORTANT_BOOST = 20
STARRED_BOOST = 15
UNREAD_BOOST = 10

RECENT_HOURS = 2
RECENT_BOOST = 15
STALE_HOURS = 24
STALE_PENALTY = -10

DEFAULT_TIER_HIGH = 80
DEFAULT_TIER_MEDIUM = 40


def tier_for(score: float, tier_high: int = DEFAULT_TIER_HIGH, tier_medium: int = DEFAULT_TIER_MEDIUM) -> Tier:
    if score >= tier_high:
        return Tier.HIGH
    if score >= tier_medium:
        return Tier.MEDIUM
    return Tier.LOW


def is_marketing(email: EmailRecord) -> bool:
    haystack = f"{email.subject} {email.snippet}".lower()
    return any(p in haystack for p in MARKETING_PATTERNS)


def is_urgent(email: EmailRecord) -> bool:
    subject = email.subject.lower()
    return any(p in subject for p in URGENT_PATTERNS)


def _time_factor(received_at: datetime | None, now: datetime) -> int:
    if received_at is None:
        return 0
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=UTC)
    age_hours = (now - received_at).total_seconds() / 3600
    if age_hours < RECENT_HOURS:
        return RECENT_BOOST
    if age_hours > STALE_HOURS:
        return STALE_PENALTY
    return 0


def calculate_rule_score(
    email: EmailRecord,
    vip_boost: int = 0,
    now: datetime | None = None,
    tier_high: int = DEFAULT_TIER_HIGH,
    tier_medium: int = DEFAULT_TIER_MEDIUM,
) -> RuleScore:
    """
    Score an email 0-100 from cheap signals.

    Args:
        email: Email to score
        vip_boost: Boost configured for the sender (0 when unknown)
        now: Reference time for recency (defaults to current UTC time)
        tier_high: Minimum score for the high tier
        tier_medium: Minimum score for the medium tier

    Returns:
        RuleScore with the clamped score, its tier and the factor breakdown
    """
    now = now or datetime.now(UTC)

    gmail_signals = 0
    if email.is_important:
        gmail_signals += IMPORTANT_BOOST
    if email.is_starred:
        gmail_signals += STARRED_BOOST
    if email.is_unread:
        gmail_signals += UNREAD_BOOST

    factors = {
        "base": BASE_SCORE,
        "pattern_penalties": MARKETING_PENALTY if is_marketing(email) else 0,
        "urgent_boost": URGENT_BOOST if is_urgent(email) else 0,
        "vip_boost": int(vip_boost or 0),
        "gmail_signals": gmail_signals,
        "time_factor": _time_factor(email.received_at, now),
    }

    raw = max(0, min(100, sum(factors.values())))

    return RuleScore(
        raw_score=raw,
        final_score=raw,
        tier=tier_for(raw, tier_high, tier_medium),
        factors=factors,
    )
