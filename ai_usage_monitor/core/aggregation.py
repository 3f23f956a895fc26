"""
Usage aggregation.

Reduces canonical metrics into today / month-to-date totals and period
costs. All sums over an empty set are zero.
"""

from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from ai_usage_monitor.storage.models import (
    TOKEN_KINDS,
    BudgetPeriod,
    Metric,
    MetricKind,
    Provider,
    ProviderUsage,
)
from ai_usage_monitor.utils.time import (
    ensure_utc,
    start_of_day,
    start_of_month,
    start_of_week,
)


def period_start(period: BudgetPeriod, now: datetime) -> datetime:
    """Start of the UTC calendar period containing ``now``."""
    return {
        BudgetPeriod.DAILY: start_of_day,
        BudgetPeriod.WEEKLY: start_of_week,
        BudgetPeriod.MONTHLY: start_of_month,
    }[period](now)


def budget_used_percentage(usage: float, limit: Optional[float]) -> Optional[float]:
    """Share of ``limit`` consumed, as a percentage.

    Returns None when the limit is absent or zero.
    """
    if limit is None or limit == 0:
        return None
    return (usage / limit) * 100


def sum_tokens(metrics: Iterable[Metric], since: Optional[datetime] = None) -> int:
    """Sum of TokensIn and TokensOut values at or after ``since``."""
    total = 0.0
    for metric in metrics:
        if metric.kind not in TOKEN_KINDS:
            continue
        if since is not None and metric.timestamp < since:
            continue
        total += metric.value
    return int(total)


def sum_cost(metrics: Iterable[Metric], since: Optional[datetime] = None) -> float:
    """Cost accumulated at or after ``since``.

    Itemized CostUsd metrics are summed. Cumulative series (running totals
    reported by credit-based providers) contribute the increase over the
    window: the latest reading minus the last reading before ``since``. When
    nothing earlier is known the first in-window reading is the baseline, so
    a first poll never reports a lifetime total as period spend.
    """
    total = 0.0
    cumulative: Dict[Tuple[Tuple[str, str], ...], List[Metric]] = defaultdict(list)

    for metric in metrics:
        if metric.kind != MetricKind.COST_USD:
            continue
        if metric.is_cumulative:
            cumulative[tuple(sorted(metric.dimensions.items()))].append(metric)
            continue
        if since is not None and metric.timestamp < since:
            continue
        total += metric.value

    for series in cumulative.values():
        total += _cumulative_increase(series, since)

    return total


def _cumulative_increase(series: List[Metric], since: Optional[datetime]) -> float:
    ordered = sorted(series, key=lambda m: m.timestamp)
    in_window = [m for m in ordered if since is None or m.timestamp >= since]
    if not in_window:
        return 0.0

    before = [m for m in ordered if since is not None and m.timestamp < since]
    baseline = before[-1] if before else in_window[0]
    # A reset (new key, refund) shows up as a drop; never report negative spend
    return max(in_window[-1].value - baseline.value, 0.0)


def period_cost(metrics: Iterable[Metric], period: BudgetPeriod, now: datetime) -> float:
    """Cost accumulated in the current ``period``."""
    return sum_cost(metrics, since=period_start(period, now))


def latest_value(metrics: Iterable[Metric], kind: MetricKind) -> Optional[float]:
    """Most recent reading of ``kind``, or None when there is none."""
    latest: Optional[Metric] = None
    for metric in metrics:
        if metric.kind != kind:
            continue
        if latest is None or metric.timestamp > latest.timestamp:
            latest = metric
    return latest.value if latest else None


def summarize_usage(
    provider: Provider,
    metrics: Iterable[Metric],
    now: datetime,
    balance: Optional[float] = None,
    credits: Optional[float] = None,
    budget_limit: Optional[float] = None,
) -> ProviderUsage:
    """Build a usage snapshot for ``provider`` from its metric history.

    Args:
        provider: Provider the metrics belong to
        metrics: Metrics covering at least the month-to-date window
        now: Reference time; today and month boundaries are UTC
        balance: Balance to report; defaults to the latest Balance metric
        credits: Credits to report; defaults to the latest CreditsRemaining metric
        budget_limit: Monthly limit used for the budget-used percentage

    Returns:
        ProviderUsage snapshot
    """
    now = ensure_utc(now)
    day_start = start_of_day(now)
    month_start = start_of_month(now)
    month_metrics = [m for m in metrics if month_start <= m.timestamp <= now]
    history = list(metrics)

    mtd_cost = sum_cost([m for m in history if m.timestamp <= now], since=month_start)

    if balance is None:
        balance = latest_value(month_metrics, MetricKind.BALANCE)
    if credits is None:
        credits = latest_value(month_metrics, MetricKind.CREDITS_REMAINING)

    return ProviderUsage(
        provider=provider,
        today_tokens=sum_tokens(month_metrics, since=day_start),
        today_cost=sum_cost([m for m in history if m.timestamp <= now], since=day_start),
        mtd_tokens=sum_tokens(month_metrics),
        mtd_cost=mtd_cost,
        balance=balance,
        credits=credits,
        budget_used_percentage=budget_used_percentage(mtd_cost, budget_limit),
    )
