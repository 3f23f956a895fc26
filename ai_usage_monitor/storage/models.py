"""
Data models for storage layer.

Defines the canonical metric model, provider registry entries, budgets,
alerts and the audit events persisted next to them.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from ai_usage_monitor.errors import SerializationFailure
from ai_usage_monitor.utils.time import ensure_utc, utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class ProviderKind(Enum):
    """Closed set of supported provider APIs."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OPENROUTER = "openrouter"


class MetricKind(Enum):
    """Canonical metric kinds. Values are the persisted names."""
    TOKENS_IN = "TokensIn"
    TOKENS_OUT = "TokensOut"
    TOKENS_CACHED = "TokensCached"
    COST_USD = "CostUsd"
    CREDITS_REMAINING = "CreditsRemaining"
    BALANCE = "Balance"


TOKEN_KINDS = frozenset({MetricKind.TOKENS_IN, MetricKind.TOKENS_OUT})

# Dimension marking a cost series whose readings are running totals
BASIS_DIMENSION = "basis"
CUMULATIVE_BASIS = "cumulative"


class BudgetPeriod(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class AlertStatus(Enum):
    """Alert lifecycle. Snoozed and Disabled are only set by the user."""
    ACTIVE = "active"
    TRIGGERED = "triggered"
    SNOOZED = "snoozed"
    DISABLED = "disabled"


class ProviderHealth(Enum):
    """Status derived from the most recent poll of a provider."""
    UNKNOWN = "unknown"
    OK = "ok"
    DEGRADED = "degraded"
    NEEDS_ATTENTION = "needs_attention"


@dataclass(frozen=True)
class Provider:
    """An external provider account being monitored."""
    id: str
    name: str
    kind: ProviderKind
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    api_key_ref: Optional[str] = None

    @property
    def credential_key(self) -> str:
        """Identity under which the secret is stored."""
        return self.api_key_ref or self.id


@dataclass(frozen=True)
class Metric:
    """Immutable, timestamped usage fact.

    ``timestamp`` is the time of the usage event reported by the provider;
    ``created_at`` is when the monitor ingested it.
    """
    provider_id: str
    kind: MetricKind
    value: float
    unit: str
    timestamp: datetime
    dimensions: Dict[str, str] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        """Validate the value and normalize the timestamp to UTC."""
        if self.value is None or self.value != self.value:
            raise ValueError("metric value must be a number")
        if self.value < 0:
            raise ValueError("metric value cannot be negative")
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))

    @property
    def is_cumulative(self) -> bool:
        return self.dimensions.get(BASIS_DIMENSION) == CUMULATIVE_BASIS


@dataclass(frozen=True)
class Budget:
    """Spend limits for one provider over one period."""
    provider_id: str
    period: BudgetPeriod
    soft_limit: Optional[float] = None
    hard_limit: Optional[float] = None
    notes: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        """Validate limits are positive and ordered."""
        if self.soft_limit is not None and self.soft_limit <= 0:
            raise ValueError("soft_limit must be > 0")
        if self.hard_limit is not None and self.hard_limit <= 0:
            raise ValueError("hard_limit must be > 0")
        if (self.soft_limit is not None and self.hard_limit is not None
                and self.soft_limit > self.hard_limit):
            raise ValueError("soft_limit cannot exceed hard_limit")


@dataclass(frozen=True)
class SpendThreshold:
    """Fires when accumulated cost for ``period`` reaches ``amount``."""
    amount: float
    is_soft: bool = True
    period: BudgetPeriod = BudgetPeriod.MONTHLY

    tag = "spend_threshold"

    def to_dict(self) -> Dict[str, Any]:
        return {self.tag: {"amount": self.amount, "is_soft": self.is_soft, "period": self.period.value}}


@dataclass(frozen=True)
class CreditThreshold:
    """Fires when remaining credits drop to ``amount`` or below."""
    amount: float
    is_soft: bool = True

    tag = "credit_threshold"

    def to_dict(self) -> Dict[str, Any]:
        return {self.tag: {"amount": self.amount, "is_soft": self.is_soft}}


@dataclass(frozen=True)
class ProjectedRunOut:
    """Fires when projected credit exhaustion is within ``days_before`` days."""
    days_before: int

    tag = "projected_run_out"

    def to_dict(self) -> Dict[str, Any]:
        return {self.tag: {"days_before": self.days_before}}


AlertRule = Union[SpendThreshold, CreditThreshold, ProjectedRunOut]


def rule_from_dict(data: Any) -> AlertRule:
    """Decode an externally tagged rule mapping.

    Raises:
        SerializationFailure: If the mapping is not a known rule variant
    """
    if not isinstance(data, dict) or len(data) != 1:
        raise SerializationFailure(f"Alert rule must be a single-key mapping, got: {data!r}")

    tag, body = next(iter(data.items()))
    if not isinstance(body, dict):
        raise SerializationFailure(f"Alert rule '{tag}' body must be a mapping")

    try:
        if tag == SpendThreshold.tag:
            return SpendThreshold(
                amount=float(body["amount"]),
                is_soft=bool(body.get("is_soft", True)),
                period=BudgetPeriod(body.get("period", BudgetPeriod.MONTHLY.value)),
            )
        if tag == CreditThreshold.tag:
            return CreditThreshold(
                amount=float(body["amount"]),
                is_soft=bool(body.get("is_soft", True)),
            )
        if tag == ProjectedRunOut.tag:
            return ProjectedRunOut(days_before=int(body["days_before"]))
    except (KeyError, TypeError, ValueError) as e:
        raise SerializationFailure(f"Invalid alert rule '{tag}': {e}") from e

    raise SerializationFailure(f"Unknown alert rule type: {tag}")


@dataclass(frozen=True)
class Alert:
    """A user-configured alert and its evaluation state."""
    provider_id: str
    rule: AlertRule
    status: AlertStatus = AlertStatus.ACTIVE
    last_fired_at: Optional[datetime] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def with_status(self, status: AlertStatus, last_fired_at: Optional[datetime] = None) -> "Alert":
        return replace(self, status=status, last_fired_at=last_fired_at or self.last_fired_at)


@dataclass(frozen=True)
class UsageEvent:
    """Append-only audit trail entry."""
    provider_id: str
    kind: str
    payload: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ProviderUsage:
    """Point-in-time usage snapshot. Derived, never persisted."""
    provider: Provider
    today_tokens: int = 0
    today_cost: float = 0.0
    mtd_tokens: int = 0
    mtd_cost: float = 0.0
    balance: Optional[float] = None
    credits: Optional[float] = None
    budget_used_percentage: Optional[float] = None
