"""
Alert rule evaluation and status transitions.

Rules:
- SpendThreshold: cost accumulated in the rule's period >= amount
- CreditThreshold: remaining credits (or balance) <= amount
- ProjectedRunOut: linear burn-rate projection reaches zero within days_before

Status transitions driven by evaluation:
- Active -> Triggered when the rule is satisfied (records last_fired_at)
- Triggered -> Triggered re-fires only after the cooldown has elapsed
- Triggered -> Active when the condition clears
Snoozed and Disabled are user-driven and never left automatically.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from ai_usage_monitor.storage.models import (
    Alert,
    AlertStatus,
    CreditThreshold,
    Metric,
    MetricKind,
    ProjectedRunOut,
    SpendThreshold,
)
from .aggregation import latest_value, period_cost

DEFAULT_COOLDOWN = timedelta(minutes=60)
DEFAULT_BURN_RATE_WINDOW = timedelta(days=7)
SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class RuleContext:
    """Inputs a rule is evaluated against."""
    metrics: Sequence[Metric]
    now: datetime
    burn_rate_window: timedelta = DEFAULT_BURN_RATE_WINDOW


@dataclass(frozen=True)
class RuleOutcome:
    """Result of evaluating one rule."""
    satisfied: bool
    observed: Optional[float]
    threshold: float
    message: str
    projected_run_out_at: Optional[datetime] = None


@dataclass(frozen=True)
class BurnRateProjection:
    """Linear projection of a remaining-credit series."""
    remaining: float
    burn_per_day: float
    sample_count: int

    @property
    def days_left(self) -> Optional[float]:
        """Days until exhaustion, or None when credits are not being consumed."""
        if self.remaining <= 0:
            return 0.0
        if self.burn_per_day <= 0:
            return None
        return self.remaining / self.burn_per_day


@dataclass(frozen=True)
class AlertTransition:
    """Outcome of applying an evaluation to an alert."""
    alert: Alert
    previous_status: AlertStatus
    fired: bool
    outcome: Optional[RuleOutcome] = None

    @property
    def changed(self) -> bool:
        return self.fired or self.alert.status != self.previous_status


def remaining_credit_series(metrics: Sequence[Metric]) -> List[Metric]:
    """CreditsRemaining readings, falling back to Balance readings."""
    credits = [m for m in metrics if m.kind == MetricKind.CREDITS_REMAINING]
    if credits:
        return credits
    return [m for m in metrics if m.kind == MetricKind.BALANCE]


def project_burn_rate(
    metrics: Sequence[Metric],
    now: datetime,
    window: timedelta = DEFAULT_BURN_RATE_WINDOW,
) -> Optional[BurnRateProjection]:
    """Project credit exhaustion from readings inside ``window``.

    Uses a least-squares slope over the readings so a single noisy sample
    does not dominate. At least two readings at different times are needed.

    Args:
        metrics: Provider metric history
        now: Reference time
        window: How far back readings are considered

    Returns:
        Projection, or None when there is not enough data
    """
    cutoff = now - window
    readings = sorted(
        (m for m in remaining_credit_series(metrics) if cutoff < m.timestamp <= now),
        key=lambda m: m.timestamp,
    )
    if len(readings) < 2:
        return None

    origin = readings[0].timestamp
    xs = [(m.timestamp - origin).total_seconds() / SECONDS_PER_DAY for m in readings]
    ys = [m.value for m in readings]

    n = len(readings)
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    variance = sum((x - mean_x) ** 2 for x in xs)
    if variance == 0:
        return None

    slope = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys)) / variance

    return BurnRateProjection(
        remaining=readings[-1].value,
        burn_per_day=-slope,
        sample_count=n,
    )


def evaluate_rule(rule, context: RuleContext) -> RuleOutcome:
    """Evaluate an alert rule.

    Args:
        rule: SpendThreshold, CreditThreshold or ProjectedRunOut
        context: Metrics and reference time

    Returns:
        RuleOutcome describing whether the rule is satisfied

    Raises:
        TypeError: If the rule is not a known variant
    """
    if isinstance(rule, SpendThreshold):
        spent = period_cost(context.metrics, rule.period, context.now)
        return RuleOutcome(
            satisfied=spent >= rule.amount,
            observed=spent,
            threshold=rule.amount,
            message=f"{rule.period.value} spend ${spent:.2f} vs threshold ${rule.amount:.2f}",
        )

    if isinstance(rule, CreditThreshold):
        remaining = latest_value(context.metrics, MetricKind.CREDITS_REMAINING)
        if remaining is None:
            remaining = latest_value(context.metrics, MetricKind.BALANCE)
        if remaining is None:
            return RuleOutcome(
                satisfied=False,
                observed=None,
                threshold=rule.amount,
                message="no credit or balance readings",
            )
        return RuleOutcome(
            satisfied=remaining <= rule.amount,
            observed=remaining,
            threshold=rule.amount,
            message=f"remaining credits {remaining:.2f} vs threshold {rule.amount:.2f}",
        )

    if isinstance(rule, ProjectedRunOut):
        projection = project_burn_rate(context.metrics, context.now, context.burn_rate_window)
        if projection is None:
            return RuleOutcome(
                satisfied=False,
                observed=None,
                threshold=float(rule.days_before),
                message="not enough credit readings to project a burn rate",
            )

        days_left = projection.days_left
        if days_left is None:
            return RuleOutcome(
                satisfied=False,
                observed=None,
                threshold=float(rule.days_before),
                message="credits are not being consumed",
            )

        run_out_at = context.now + timedelta(days=days_left)
        return RuleOutcome(
            satisfied=days_left <= rule.days_before,
            observed=days_left,
            threshold=float(rule.days_before),
            message=(
                f"projected to run out in {days_left:.1f} days "
                f"at {projection.burn_per_day:.2f}/day"
            ),
            projected_run_out_at=run_out_at,
        )

    raise TypeError(f"Unknown alert rule: {rule!r}")


def apply_outcome(
    alert: Alert,
    outcome: RuleOutcome,
    now: datetime,
    cooldown: timedelta = DEFAULT_COOLDOWN,
) -> AlertTransition:
    """Apply a rule outcome to an alert's status.

    Firing is suppressed while ``now - last_fired_at`` is below the
    cooldown, whatever the current status.

    Args:
        alert: Alert being evaluated
        outcome: Result of evaluating the alert's rule
        now: Evaluation time
        cooldown: Minimum interval between two firings

    Returns:
        AlertTransition with the updated alert
    """
    previous = alert.status

    if previous in (AlertStatus.SNOOZED, AlertStatus.DISABLED):
        return AlertTransition(alert=alert, previous_status=previous, fired=False, outcome=outcome)

    if not outcome.satisfied:
        if previous == AlertStatus.TRIGGERED:
            # Condition cleared: re-arm
            return AlertTransition(
                alert=alert.with_status(AlertStatus.ACTIVE),
                previous_status=previous,
                fired=False,
                outcome=outcome,
            )
        return AlertTransition(alert=alert, previous_status=previous, fired=False, outcome=outcome)

    cooled_down = alert.last_fired_at is None or now - alert.last_fired_at >= cooldown
    if cooled_down:
        return AlertTransition(
            alert=alert.with_status(AlertStatus.TRIGGERED, last_fired_at=now),
            previous_status=previous,
            fired=True,
            outcome=outcome,
        )

    return AlertTransition(
        alert=alert.with_status(AlertStatus.TRIGGERED),
        previous_status=previous,
        fired=False,
        outcome=outcome,
    )


def snooze(alert: Alert) -> Alert:
    """Suppress evaluation until the alert is reactivated."""
    if alert.status == AlertStatus.DISABLED:
        raise ValueError("A disabled alert must be reactivated before it can be snoozed")
    return alert.with_status(AlertStatus.SNOOZED)


def disable(alert: Alert) -> Alert:
    return alert.with_status(AlertStatus.DISABLED)


def reactivate(alert: Alert) -> Alert:
    """Return a snoozed, disabled or triggered alert to Active."""
    return alert.with_status(AlertStatus.ACTIVE)
