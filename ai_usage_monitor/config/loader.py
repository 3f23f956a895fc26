"""
Configuration management and loading.

Handles monitor settings and the providers, budgets and alerts declared in
the YAML configuration file.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ai_usage_monitor.errors import SerializationFailure
from ai_usage_monitor.storage.models import (
    AlertRule,
    BudgetPeriod,
    ProviderKind,
    rule_from_dict,
)

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class MonitorSettings:
    """Runtime settings for polling, evaluation and retention."""
    database: str = "ai_usage_monitor.db"
    poll_interval_seconds: float = 60.0
    request_timeout_seconds: float = 15.0
    poll_immediately: bool = False
    alert_cooldown_minutes: float = 60.0
    burn_rate_window_days: int = 7
    retention_days: int = 90
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        """Validate timing values are positive and consistent."""
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be > 0")
        if self.request_timeout_seconds >= self.poll_interval_seconds:
            raise ValueError("request_timeout_seconds must be below poll_interval_seconds")
        if self.alert_cooldown_minutes < 0:
            raise ValueError("alert_cooldown_minutes cannot be negative")
        if self.burn_rate_window_days <= 0:
            raise ValueError("burn_rate_window_days must be > 0")
        if self.retention_days <= 0:
            raise ValueError("retention_days must be > 0")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {sorted(LOG_LEVELS)}")


@dataclass(frozen=True)
class ProviderEntry:
    """A provider account declared in configuration."""
    id: str
    name: str
    kind: ProviderKind
    enabled: bool = True
    api_key_ref: Optional[str] = None


@dataclass(frozen=True)
class BudgetEntry:
    """Budget limits declared for a provider."""
    provider: str
    period: BudgetPeriod
    soft_limit: Optional[float] = None
    hard_limit: Optional[float] = None
    notes: Optional[str] = None

    def __post_init__(self):
        """Validate at least one limit is set and limits are ordered."""
        if self.soft_limit is None and self.hard_limit is None:
            raise ValueError(f"budget for '{self.provider}' needs soft_limit or hard_limit")
        if self.soft_limit is not None and self.soft_limit <= 0:
            raise ValueError("soft_limit must be > 0")
        if self.hard_limit is not None and self.hard_limit <= 0:
            raise ValueError("hard_limit must be > 0")
        if (self.soft_limit is not None and self.hard_limit is not None
                and self.soft_limit > self.hard_limit):
            raise ValueError("soft_limit cannot exceed hard_limit")


@dataclass(frozen=True)
class AlertEntry:
    """Alert rule declared for a provider."""
    provider: str
    rule: AlertRule


@dataclass(frozen=True)
class MonitorConfig:
    """Complete monitor configuration."""
    settings: MonitorSettings = field(default_factory=MonitorSettings)
    providers: Tuple[ProviderEntry, ...] = ()
    budgets: Tuple[BudgetEntry, ...] = ()
    alerts: Tuple[AlertEntry, ...] = ()

    def get_provider(self, provider_id: str) -> Optional[ProviderEntry]:
        """Get a declared provider by id."""
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None


def load_monitor_config(path: str) -> MonitorConfig:
    """Load and validate monitor configuration from YAML file.

    Strict validation ensures typos surface as errors instead of silently
    falling back to defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MonitorConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Monitor config file not found: {path}")

    # Load YAML content
    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    # Validate top-level structure
    allowed_top_keys = {'monitor', 'providers', 'budgets', 'alerts'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    settings = _parse_settings(raw_config.get('monitor') or {})

    providers_data = _require_list(raw_config, 'providers')
    providers = []
    seen_ids = set()
    for index, provider_data in enumerate(providers_data):
        provider = _parse_provider(provider_data, f"providers[{index}]")
        if provider.id in seen_ids:
            raise ValueError(f"Duplicate provider id: {provider.id}")
        seen_ids.add(provider.id)
        providers.append(provider)

    budgets = []
    seen_budgets = set()
    for index, budget_data in enumerate(_require_list(raw_config, 'budgets')):
        budget = _parse_budget(budget_data, f"budgets[{index}]")
        if budget.provider not in seen_ids:
            raise ValueError(f"budgets[{index}] references unknown provider '{budget.provider}'")
        key = (budget.provider, budget.period)
        if key in seen_budgets:
            raise ValueError(
                f"Duplicate {budget.period.value} budget for provider '{budget.provider}'"
            )
        seen_budgets.add(key)
        budgets.append(budget)

    alerts = []
    for index, alert_data in enumerate(_require_list(raw_config, 'alerts')):
        alert = _parse_alert(alert_data, f"alerts[{index}]")
        if alert.provider not in seen_ids:
            raise ValueError(f"alerts[{index}] references unknown provider '{alert.provider}'")
        alerts.append(alert)

    return MonitorConfig(
        settings=settings,
        providers=tuple(providers),
        budgets=tuple(budgets),
        alerts=tuple(alerts)
    )


def _require_list(raw_config: Dict, key: str) -> List:
    value = raw_config.get(key) or []
    if not isinstance(value, list):
        raise ValueError(f"'{key}' must be a list")
    return value


def _check_keys(data: Any, path: str, allowed: set, required: set) -> None:
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    for key in sorted(required):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")


def _number(value: Any, name: str, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{name}' in {path} must be a number")
    return float(value)


def _parse_settings(data: Dict) -> MonitorSettings:
    """Parse the ``monitor`` section, applying defaults for missing keys."""
    allowed_keys = {
        'database', 'poll_interval_seconds', 'request_timeout_seconds',
        'poll_immediately', 'alert_cooldown_minutes', 'burn_rate_window_days',
        'retention_days', 'log_level', 'log_file',
    }
    _check_keys(data, "monitor", allowed_keys, set())

    kwargs: Dict[str, Any] = {}
    for key in ('poll_interval_seconds', 'request_timeout_seconds', 'alert_cooldown_minutes'):
        if key in data:
            kwargs[key] = _number(data[key], key, "monitor")
    for key in ('burn_rate_window_days', 'retention_days'):
        if key in data:
            if isinstance(data[key], bool) or not isinstance(data[key], int):
                raise ValueError(f"'{key}' in monitor must be an integer")
            kwargs[key] = data[key]
    if 'poll_immediately' in data:
        if not isinstance(data['poll_immediately'], bool):
            raise ValueError("'poll_immediately' in monitor must be a boolean")
        kwargs['poll_immediately'] = data['poll_immediately']
    for key in ('database', 'log_level', 'log_file'):
        if key in data and data[key] is not None:
            if not isinstance(data[key], str) or not data[key].strip():
                raise ValueError(f"'{key}' in monitor must be a non-empty string")
            kwargs[key] = data[key]

    return MonitorSettings(**kwargs)


def _parse_provider(data: Any, path: str) -> ProviderEntry:
    _check_keys(data, path, {'id', 'name', 'kind', 'enabled', 'api_key_ref'}, {'id', 'kind'})

    provider_id = data['id']
    if not isinstance(provider_id, str) or not provider_id.strip():
        raise ValueError(f"'id' in {path} must be a non-empty string")

    kind_str = data['kind']
    try:
        kind = ProviderKind(str(kind_str).lower())
    except ValueError:
        valid_kinds = [kind.value for kind in ProviderKind]
        raise ValueError(f"'kind' in {path} must be one of: {valid_kinds}")

    enabled = data.get('enabled', True)
    if not isinstance(enabled, bool):
        raise ValueError(f"'enabled' in {path} must be a boolean")

    return ProviderEntry(
        id=provider_id,
        name=str(data.get('name') or provider_id),
        kind=kind,
        enabled=enabled,
        api_key_ref=data.get('api_key_ref')
    )


def _parse_budget(data: Any, path: str) -> BudgetEntry:
    _check_keys(
        data, path,
        {'provider', 'period', 'soft_limit', 'hard_limit', 'notes'},
        {'provider', 'period'}
    )

    try:
        period = BudgetPeriod(str(data['period']).lower())
    except ValueError:
        valid_periods = [period.value for period in BudgetPeriod]
        raise ValueError(f"'period' in {path} must be one of: {valid_periods}")

    soft_limit = data.get('soft_limit')
    hard_limit = data.get('hard_limit')

    return BudgetEntry(
        provider=str(data['provider']),
        period=period,
        soft_limit=_number(soft_limit, 'soft_limit', path) if soft_limit is not None else None,
        hard_limit=_number(hard_limit, 'hard_limit', path) if hard_limit is not None else None,
        notes=data.get('notes')
    )


def _parse_alert(data: Any, path: str) -> AlertEntry:
    """Parse an alert entry.

    The rule is written as ``{type: spend_threshold, amount: 40, ...}`` in
    YAML and converted to the tagged form used in storage.
    """
    _check_keys(data, path, {'provider', 'rule'}, {'provider', 'rule'})

    rule_data = data['rule']
    if not isinstance(rule_data, dict):
        raise ValueError(f"'rule' in {path} must be a dictionary")
    if 'type' not in rule_data:
        raise ValueError(f"Missing required 'type' in {path}.rule")

    body = {k: v for k, v in rule_data.items() if k != 'type'}
    rule_type = str(rule_data['type']).lower()
    allowed_rule_keys = {
        'spend_threshold': {'amount', 'is_soft', 'period'},
        'credit_threshold': {'amount', 'is_soft'},
        'projected_run_out': {'days_before'},
    }
    if rule_type not in allowed_rule_keys:
        raise ValueError(f"'type' in {path}.rule must be one of: {sorted(allowed_rule_keys)}")
    unknown_keys = set(body.keys()) - allowed_rule_keys[rule_type]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}.rule: {unknown_keys}")

    try:
        rule = rule_from_dict({rule_type: body})
    except SerializationFailure as e:
        raise ValueError(f"Invalid rule in {path}: {e}")

    amount = getattr(rule, 'amount', None)
    if amount is not None and amount < 0:
        raise ValueError(f"'amount' in {path}.rule cannot be negative")
    days_before = getattr(rule, 'days_before', None)
    if days_before is not None and days_before <= 0:
        raise ValueError(f"'days_before' in {path}.rule must be > 0")

    return AlertEntry(provider=str(data['provider']), rule=rule)
