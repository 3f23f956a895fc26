"""
Usage evaluation against stored metrics.

Builds usage snapshots, evaluates budgets and drives alert status
transitions. Runs after every provider poll and on demand.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ai_usage_monitor.storage.models import (
    Alert,
    AlertStatus,
    BudgetPeriod,
    Provider,
    ProviderHealth,
    ProviderUsage,
    UsageEvent,
)
from ai_usage_monitor.storage.repository import MetricsStore
from ai_usage_monitor.utils.time import ensure_utc, start_of_month, start_of_week, utcnow
from .aggregation import summarize_usage
from .alerts import (
    DEFAULT_BURN_RATE_WINDOW,
    DEFAULT_COOLDOWN,
    AlertTransition,
    RuleContext,
    apply_outcome,
    disable,
    evaluate_rule,
    reactivate,
    snooze,
)
from .budgets import BudgetLevel, BudgetStatus, evaluate_budget

logger = logging.getLogger(__name__)

# Extra history loaded before the earliest period start so cumulative
# series have a reading to diff against
HISTORY_LOOKBACK = timedelta(days=31)

EVENT_POLL_SUCCEEDED = "poll_succeeded"
EVENT_POLL_FAILED = "poll_failed"
EVENT_ALERT_FIRED = "alert_fired"
EVENT_BUDGET_CROSSED = "budget_threshold_crossed"

FAILURE_TRANSIENT = "transient"
FAILURE_PERMANENT = "permanent"
FAILURE_CREDENTIAL = "credential_missing"
FAILURE_STORE = "store"
FAILURE_UNEXPECTED = "unexpected"


@dataclass
class EvaluationReport:
    """Budget and alert results for one provider."""
    provider_id: str
    evaluated_at: datetime
    budgets: List[BudgetStatus] = field(default_factory=list)
    transitions: List[AlertTransition] = field(default_factory=list)

    @property
    def fired(self) -> List[AlertTransition]:
        return [t for t in self.transitions if t.fired]

    @property
    def exceeded_budgets(self) -> List[BudgetStatus]:
        return [b for b in self.budgets if b.exceeded]


class UsageEvaluator:
    """Evaluates snapshots, budgets and alerts from the metrics store."""

    def __init__(
        self,
        store: MetricsStore,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        burn_rate_window: timedelta = DEFAULT_BURN_RATE_WINDOW,
    ):
        self.store = store
        self.cooldown = cooldown
        self.burn_rate_window = burn_rate_window

    async def _history(self, provider_id: str, now: datetime):
        # Weekly periods can start in the previous month
        earliest = min(start_of_month(now), start_of_week(now), now - self.burn_rate_window)
        return await self.store.query_window(provider_id, earliest - HISTORY_LOOKBACK, now + timedelta(microseconds=1))

    async def snapshot(self, provider: Provider, now: Optional[datetime] = None) -> ProviderUsage:
        """Usage snapshot for ``provider`` computed from stored metrics.

        Raises:
            StoreFailure: If the store cannot be read
        """
        now = ensure_utc(now or utcnow())
        metrics = await self._history(provider.id, now)

        monthly_limit = None
        for budget in await self.store.list_budgets(provider.id):
            if budget.period == BudgetPeriod.MONTHLY:
                monthly_limit = budget.hard_limit if budget.hard_limit is not None else budget.soft_limit

        return summarize_usage(provider, metrics, now, budget_limit=monthly_limit)

    async def evaluate_provider(self, provider: Provider, now: Optional[datetime] = None) -> EvaluationReport:
        """Evaluate every budget and evaluable alert of ``provider``.

        Alert state changes are persisted. Firings and budget crossings are
        recorded in the audit trail.

        Args:
            provider: Provider to evaluate
            now: Evaluation time (defaults to current UTC time)

        Returns:
            EvaluationReport with budget statuses and alert transitions
        """
        now = ensure_utc(now or utcnow())
        metrics = await self._history(provider.id, now)
        report = EvaluationReport(provider_id=provider.id, evaluated_at=now)

        for budget in await self.store.list_budgets(provider.id):
            status = evaluate_budget(budget, metrics, now)
            report.budgets.append(status)
            if status.exceeded:
                await self._record_budget_crossing(status, now)

        context = RuleContext(metrics=metrics, now=now, burn_rate_window=self.burn_rate_window)
        alerts = await self.store.list_alerts(
            provider.id, statuses=[AlertStatus.ACTIVE, AlertStatus.TRIGGERED]
        )
        for alert in alerts:
            outcome = evaluate_rule(alert.rule, context)
            transition = apply_outcome(alert, outcome, now, self.cooldown)
            report.transitions.append(transition)

            if transition.changed:
                await self.store.update_alert(transition.alert)
            if transition.fired:
                logger.warning("Alert %s for %s fired: %s", alert.id, provider.id, outcome.message)
                await self.store.record_event(UsageEvent(
                    provider_id=provider.id,
                    kind=EVENT_ALERT_FIRED,
                    timestamp=now,
                    payload={
                        "alert_id": alert.id,
                        "rule": alert.rule.to_dict(),
                        "observed": outcome.observed,
                        "message": outcome.message,
                    },
                ))

        return report

    async def _record_budget_crossing(self, status: BudgetStatus, now: datetime) -> None:
        """Record a crossing once per budget, period and level."""
        budget = status.budget
        previous = await self.store.list_events(
            provider_id=budget.provider_id,
            kinds=[EVENT_BUDGET_CROSSED],
            since=status.period_start,
            limit=1000,
        )
        for event in previous:
            payload = event.payload or {}
            if payload.get("budget_id") == budget.id and payload.get("level") == status.level.value:
                return

        log = logger.error if status.level == BudgetLevel.HARD_EXCEEDED else logger.warning
        log(
            "Budget %s (%s) for %s at $%.2f: %s",
            budget.id, budget.period.value, budget.provider_id, status.spent, status.level.value
        )
        await self.store.record_event(UsageEvent(
            provider_id=budget.provider_id,
            kind=EVENT_BUDGET_CROSSED,
            timestamp=now,
            payload={
                "budget_id": budget.id,
                "period": budget.period.value,
                "level": status.level.value,
                "spent": status.spent,
                "soft_limit": budget.soft_limit,
                "hard_limit": budget.hard_limit,
            },
        ))

    async def provider_health(self, provider: Provider) -> ProviderHealth:
        """Health derived from the most recent poll outcome."""
        event = await self.store.latest_event(provider.id, [EVENT_POLL_SUCCEEDED, EVENT_POLL_FAILED])
        if event is None:
            return ProviderHealth.UNKNOWN
        if event.kind == EVENT_POLL_SUCCEEDED:
            return ProviderHealth.OK

        failure = (event.payload or {}).get("failure")
        if failure in (FAILURE_PERMANENT, FAILURE_CREDENTIAL):
            return ProviderHealth.NEEDS_ATTENTION
        return ProviderHealth.DEGRADED

    async def health_report(self, providers: List[Provider]) -> Dict[str, ProviderHealth]:
        return {p.id: await self.provider_health(p) for p in providers}

    async def snooze_alert(self, alert_id: str) -> Alert:
        return await self._transition_alert(alert_id, snooze)

    async def disable_alert(self, alert_id: str) -> Alert:
        return await self._transition_alert(alert_id, disable)

    async def reactivate_alert(self, alert_id: str) -> Alert:
        return await self._transition_alert(alert_id, reactivate)

    async def _transition_alert(self, alert_id: str, action: Callable[[Alert], Alert]) -> Alert:
        """Apply a user action to a stored alert.

        Raises:
            KeyError: If no alert has ``alert_id``
            ValueError: If the action is not allowed from the current status
        """
        alert = await self.store.get_alert(alert_id)
        if alert is None:
            raise KeyError(alert_id)

        updated = action(alert)
        await self.store.update_alert(updated)
        logger.info("Alert %s: %s -> %s", alert_id, alert.status.value, updated.status.value)
        return updated
