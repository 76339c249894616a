"""
Triage processing configuration.

``ProcessingConfig`` holds the knobs of the batch pipeline; ``validated()``
clamps every value into its safe range so a bad override can never disable
the budget or invert the tier thresholds. ``ProcessingConfigService`` layers
per-subject overrides (stored in the triage store) over the process defaults.
"""

import time
from dataclasses import asdict, dataclass, fields, replace
from typing import Any

from inbox_triage.config import settings
from inbox_triage.errors import JobValidationError
from inbox_triage.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def _clamp(value, low, high):
    return max(low, min(high, value))


@dataclass(frozen=True)
class ProcessingConfig:
    # Batching
    max_batch_size: int = 10
    max_wait_time_ms: int = 30000

    # AI gating
    ai_threshold: int = 60
    cost_budget_cents: int = 100
    max_cost_per_email: int = 10
    estimated_cost_per_call: int = 5

    # Tiers
    tier_high: int = 80
    tier_medium: int = 40

    # Blend: final = rule * rule_weight + ai * ai_scale * ai_weight
    rule_weight: float = 0.6
    ai_weight: float = 0.4
    ai_scale: float = 10.0

    max_retries: int = 3
    retry_delay_ms: int = 1000
    cache_ttl_ms: int = 300000

    process_vip_immediately: bool = True
    process_urgent_immediately: bool = True
    skip_marketing_emails: bool = False

    def validated(self) -> "ProcessingConfig":
        """Return a copy with every value clamped into its allowed range."""
        tier_high = _clamp(self.tier_high, 0, 100)
        tier_medium = _clamp(self.tier_medium, 0, 100)
        if tier_medium >= tier_high:
            tier_medium = max(0, tier_high - 10)

        return replace(
            self,
            max_batch_size=_clamp(self.max_batch_size, 1, 50),
            max_wait_time_ms=_clamp(self.max_wait_time_ms, 1000, 300000),
            ai_threshold=_clamp(self.ai_threshold, 0, 100),
            cost_budget_cents=_clamp(self.cost_budget_cents, 0, 10000),
            max_cost_per_email=_clamp(self.max_cost_per_email, 1, 100),
            estimated_cost_per_call=max(1, self.estimated_cost_per_call),
            tier_high=tier_high,
            tier_medium=tier_medium,
            rule_weight=_clamp(self.rule_weight, 0.0, 1.0),
            ai_weight=_clamp(self.ai_weight, 0.0, 1.0),
            ai_scale=max(0.0, self.ai_scale),
            max_retries=_clamp(self.max_retries, 0, 10),
            retry_delay_ms=_clamp(self.retry_delay_ms, 100, 60000),
            cache_ttl_ms=_clamp(self.cache_ttl_ms, 60000, 3600000),
        )

    def with_overrides(self, overrides: dict[str, Any]) -> "ProcessingConfig":
        """Apply known keys from ``overrides``; unknown keys are ignored."""
        known = {f.name for f in fields(self)}
        return replace(self, **{k: v for k, v in overrides.items() if k in known}).validated()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_settings(cls) -> "ProcessingConfig":
        return cls(
            max_batch_size=settings.TRIAGE_MAX_BATCH_SIZE,
            max_wait_time_ms=settings.TRIAGE_MAX_WAIT_TIME_MS,
            ai_threshold=settings.TRIAGE_AI_THRESHOLD,
            cost_budget_cents=settings.TRIAGE_COST_BUDGET_CENTS,
            max_cost_per_email=settings.TRIAGE_MAX_COST_PER_EMAIL,
            estimated_cost_per_call=settings.TRIAGE_ESTIMATED_COST_PER_CALL,
            max_retries=settings.QUEUE_MAX_RETRIES,
            retry_delay_ms=settings.QUEUE_RETRY_DELAY_MS,
        ).validated()


PRESETS: dict[str, dict[str, Any]] = {
    "economical": {
        "ai_threshold": 80,
        "cost_budget_cents": 50,
        "max_cost_per_email": 5,
        "max_batch_size": 20,
        "process_vip_immediately": False,
    },
    "balanced": {},
    "performance": {
        "ai_threshold": 40,
        "cost_budget_cents": 500,
        "max_cost_per_email": 25,
        "max_batch_size": 5,
    },
    "enterprise": {
        "ai_threshold": 50,
        "cost_budget_cents": 2000,
        "max_cost_per_email": 15,
        "max_batch_size": 25,
        "max_wait_time_ms": 60000,
    },
}


class ProcessingConfigService:
    """Resolves per-subject configuration with a short TTL cache."""

    def __init__(self, store, defaults: ProcessingConfig | None = None, cache_ttl_seconds: float = 300.0):
        self.store = store
        self.defaults = (defaults or ProcessingConfig()).validated()
        self.cache_ttl_seconds = cache_ttl_seconds
        self._cache: dict[str, tuple[float, ProcessingConfig]] = {}

    async def get_config(self, subject_id: str) -> ProcessingConfig:
        cached = self._cache.get(subject_id)
        if cached and time.monotonic() - cached[0] < self.cache_ttl_seconds:
            return cached[1]

        try:
            overrides = await self.store.get_subject_config(subject_id)
        except Exception as e:
            logger.warning(
                "Failed to load subject config, using defaults", subject_id=subject_id, error=str(e)
            )
            return self.defaults

        config = self.defaults.with_overrides(overrides) if overrides else self.defaults
        self._cache[subject_id] = (time.monotonic(), config)
        return config

    async def update_config(self, subject_id: str, updates: dict[str, Any]) -> ProcessingConfig:
        """Merge ``updates`` into the subject's overrides and return the effective config."""
        known = {f.name for f in fields(ProcessingConfig)}
        unknown = set(updates) - known
        if unknown:
            raise JobValidationError(f"Unknown config fields: {sorted(unknown)}", field="config")

        current = await self.store.get_subject_config(subject_id) or {}
        merged = {**current, **updates}
        config = self.defaults.with_overrides(merged)

        # Persist the clamped values so reads match what the pipeline uses
        effective = {k: getattr(config, k) for k in merged}
        await self.store.save_subject_config(subject_id, effective)
        self.invalidate(subject_id)

        logger.info("Processing config updated", subject_id=subject_id, fields=sorted(updates))
        return config

    async def reset_config(self, subject_id: str) -> ProcessingConfig:
        await self.store.delete_subject_config(subject_id)
        self.invalidate(subject_id)
        logger.info("Processing config reset", subject_id=subject_id)
        return self.defaults

    async def apply_preset(self, subject_id: str, preset: str) -> ProcessingConfig:
        if preset not in PRESETS:
            raise JobValidationError(
                f"Unknown preset '{preset}'. Allowed: {', '.join(PRESETS)}", field="preset"
            )
        await self.store.delete_subject_config(subject_id)
        if PRESETS[preset]:
            return await self.update_config(subject_id, PRESETS[preset])
        self.invalidate(subject_id)
        return self.defaults

    def invalidate(self, subject_id: str | None = None) -> None:
        if subject_id is None:
            self._cache.clear()
        else:
            self._cache.pop(subject_id, None)
