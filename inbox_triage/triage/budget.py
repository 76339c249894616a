"""
Daily AI cost budget.

Per-subject spend is tracked in cents against a daily limit that resets at
UTC midnight. Spend is charged when a call is reserved, before it is made,
and never refunded: a failed AI call still costs money, and charging upfront
means concurrent batches cannot both spend the last few cents.
"""

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime

from inbox_triage.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class _DailySpend:
    day: date
    spent_cents: int = 0
    calls: int = 0


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DailyCostBudget:
    """Per-subject daily spend ledger with atomic reservations."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self._spend: dict[str, _DailySpend] = {}
        self._lock = threading.Lock()

    def _current(self, subject_id: str) -> _DailySpend:
        today = self._clock().astimezone(UTC).date()
        entry = self._spend.get(subject_id)
        if entry is None or entry.day != today:
            if entry is not None:
                logger.debug(
                    "Daily AI budget reset",
                    subject_id=subject_id,
                    previous_spend_cents=entry.spent_cents,
                )
            entry = _DailySpend(day=today)
            self._spend[subject_id] = entry
        return entry

    def spent(self, subject_id: str) -> int:
        with self._lock:
            return self._current(subject_id).spent_cents

    def remaining(self, subject_id: str, budget_cents: int) -> int:
        with self._lock:
            return max(0, budget_cents - self._current(subject_id).spent_cents)

    def reserve(
        self,
        subject_id: str,
        requested_calls: int,
        cost_per_call: int,
        budget_cents: int,
        max_cost_per_call: int | None = None,
    ) -> int:
        """
        Reserve up to ``requested_calls`` AI calls and charge them now.

        Granted calls are ``min(requested, floor(remaining / cost_per_call))``;
        nothing is granted when a single call would exceed ``max_cost_per_call``.

        Returns:
            Number of calls granted (possibly 0)
        """
        if requested_calls <= 0 or cost_per_call <= 0:
            return 0
        if max_cost_per_call is not None and cost_per_call > max_cost_per_call:
            logger.warning(
                "AI call cost exceeds per-email ceiling",
                subject_id=subject_id,
                cost_per_call=cost_per_call,
                max_cost_per_call=max_cost_per_call,
            )
            return 0

        with self._lock:
            entry = self._current(subject_id)
            remaining = max(0, budget_cents - entry.spent_cents)
            granted = min(requested_calls, remaining // cost_per_call)
            if granted:
                entry.spent_cents += granted * cost_per_call
                entry.calls += granted

        if granted < requested_calls:
            logger.info(
                "AI budget limited batch",
                subject_id=subject_id,
                requested=requested_calls,
                granted=granted,
                remaining_cents=remaining,
            )
        return granted

    def usage(self, subject_id: str, budget_cents: int) -> dict:
        """Today's spend for one subject."""
        with self._lock:
            entry = self._current(subject_id)
            return {
                "day": entry.day.isoformat(),
                "spent_cents": entry.spent_cents,
                "calls": entry.calls,
                "budget_cents": budget_cents,
                "remaining_cents": max(0, budget_cents - entry.spent_cents),
            }
