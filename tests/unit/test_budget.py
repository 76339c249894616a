import threading

from inbox_triage.triage.budget import DailyCostBudget


def test_reserve_grants_what_the_budget_covers(manual_clock):
    budget = DailyCostBudget(clock=manual_clock)

    granted = budget.reserve("user-123", 10, cost_per_call=5, budget_cents=20)

    assert granted == 4
    assert budget.spent("user-123") == 20
    assert budget.reserve("user-123", 1, cost_per_call=5, budget_cents=20) == 0


def test_per_call_ceiling_blocks_expensive_calls(manual_clock):
    budget = DailyCostBudget(clock=manual_clock)

    granted = budget.reserve("user-123", 3, cost_per_call=15, budget_cents=100, max_cost_per_call=10)

    assert granted == 0
    assert budget.spent("user-123") == 0


def test_budget_resets_at_utc_midnight(manual_clock):
    budget = DailyCostBudget(clock=manual_clock)
    budget.reserve("user-123", 4, cost_per_call=5, budget_cents=20)

    manual_clock.advance(hours=14, minutes=59)
    assert budget.remaining("user-123", 20) == 0

    manual_clock.advance(minutes=2)
    assert budget.remaining("user-123", 20) == 20
    assert budget.usage("user-123", 20)["calls"] == 0


def test_subjects_have_separate_budgets(manual_clock):
    budget = DailyCostBudget(clock=manual_clock)
    budget.reserve("user-a", 4, cost_per_call=5, budget_cents=20)

    assert budget.reserve("user-b", 4, cost_per_call=5, budget_cents=20) == 4


def test_concurrent_reservations_never_overspend(manual_clock):
    budget = DailyCostBudget(clock=manual_clock)
    grants = []

    def reserve():
        grants.append(budget.reserve("user-123", 3, cost_per_call=5, budget_cents=50))

    threads = [threading.Thread(target=reserve) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(grants) == 10
    assert budget.spent("user-123") == 50


def test_usage_reports_today(manual_clock):
    budget = DailyCostBudget(clock=manual_clock)
    budget.reserve("user-123", 2, cost_per_call=5, budget_cents=100)

    usage = budget.usage("user-123", 100)

    assert usage == {
        "day": manual_clock.now.date().isoformat(),
        "spent_cents": 10,
        "calls": 2,
        "budget_cents": 100,
        "remaining_cents": 90,
    }
    manual_clock.advance(days=1)
    assert budget.usage("user-123", 100)["spent_cents"] == 0
