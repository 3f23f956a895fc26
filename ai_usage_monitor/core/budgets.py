"""
Budget evaluation.

Compares the accumulated cost of a budget's period against its limits.

Evaluation Order:
1. Hard limit - the stronger signal wins when both limits are crossed
2. Soft limit - early warning

Crossing a limit only changes reported state. It never blocks or throttles
polling.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from ai_usage_monitor.storage.models import Budget, BudgetPeriod, Metric
from .aggregation import budget_used_percentage, period_cost, period_start


class BudgetLevel(Enum):
    """Budget state in order of severity."""
    OK = "ok"
    SOFT_EXCEEDED = "soft_exceeded"
    HARD_EXCEEDED = "hard_exceeded"


@dataclass(frozen=True)
class BudgetStatus:
    """Result of evaluating one budget."""
    budget: Budget
    period_start: datetime
    spent: float
    level: BudgetLevel
    used_percentage: Optional[float]

    @property
    def period(self) -> BudgetPeriod:
        return self.budget.period

    @property
    def exceeded(self) -> bool:
        return self.level != BudgetLevel.OK


def evaluate_budget(budget: Budget, metrics: Iterable[Metric], now: datetime) -> BudgetStatus:
    """Evaluate a budget against the provider's metric history.

    A limit is crossed when the period's cost reaches it (``>=``). The
    used percentage is measured against the hard limit when present,
    otherwise against the soft limit.

    Args:
        budget: Budget to evaluate
        metrics: Metrics for the budget's provider covering the period
        now: Reference time

    Returns:
        BudgetStatus for the current period
    """
    spent = period_cost(metrics, budget.period, now)

    level = BudgetLevel.OK
    if budget.hard_limit is not None and spent >= budget.hard_limit:
        level = BudgetLevel.HARD_EXCEEDED
    elif budget.soft_limit is not None and spent >= budget.soft_limit:
        level = BudgetLevel.SOFT_EXCEEDED

    reference_limit = budget.hard_limit if budget.hard_limit is not None else budget.soft_limit

    return BudgetStatus(
        budget=budget,
        period_start=period_start(budget.period, now),
        spent=spent,
        level=level,
        used_percentage=budget_used_percentage(spent, reference_limit),
    )
