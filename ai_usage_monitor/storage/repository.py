"""
Repository pattern for data access.

Persists the provider registry, canonical metrics, budgets, alerts and the
audit trail. Metrics are append-only facts keyed on a natural key so that
re-polling an overlapping window never duplicates them.
"""

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from ai_usage_monitor.errors import SerializationFailure, StoreFailure
from ai_usage_monitor.utils.time import from_db, to_db, utcnow
from .db import get_connection
from .models import (
    Alert,
    AlertStatus,
    Budget,
    BudgetPeriod,
    Metric,
    MetricKind,
    Provider,
    ProviderKind,
    UsageEvent,
    rule_from_dict,
)

logger = logging.getLogger(__name__)

ADDITIVE_KINDS = frozenset({MetricKind.TOKENS_IN, MetricKind.TOKENS_OUT, MetricKind.TOKENS_CACHED})

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS providers (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        provider_type TEXT NOT NULL,
        api_key_ref TEXT,
        enabled INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS metrics (
        id TEXT PRIMARY KEY,
        provider_id TEXT NOT NULL REFERENCES providers(id) ON DELETE CASCADE,
        metric_type TEXT NOT NULL,
        value REAL NOT NULL,
        unit TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        dimensions TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_metrics_provider_timestamp
    ON metrics(provider_id, timestamp DESC)
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_metrics_natural_key
    ON metrics(provider_id, metric_type, timestamp, dimensions)
    """,
    """
    CREATE TABLE IF NOT EXISTS budgets (
        id TEXT PRIMARY KEY,
        provider_id TEXT NOT NULL REFERENCES providers(id) ON DELETE CASCADE,
        period TEXT NOT NULL,
        soft_limit REAL,
        hard_limit REAL,
        notes TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (provider_id, period)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS alerts (
        id TEXT PRIMARY KEY,
        provider_id TEXT NOT NULL REFERENCES providers(id) ON DELETE CASCADE,
        rule TEXT NOT NULL,
        last_fired_at TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        id TEXT PRIMARY KEY,
        provider_id TEXT NOT NULL REFERENCES providers(id) ON DELETE CASCADE,
        timestamp TEXT NOT NULL,
        kind TEXT NOT NULL,
        payload TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_events_provider_timestamp
    ON events(provider_id, timestamp DESC)
    """,
)

METRIC_COLUMNS = "id, provider_id, metric_type, value, unit, timestamp, dimensions, created_at"


def encode_dimensions(dimensions: Dict[str, str]) -> str:
    """Canonical JSON so equal mappings produce equal natural keys."""
    return json.dumps(dimensions or {}, sort_keys=True, separators=(",", ":"))


def decode_dimensions(raw: Optional[str]) -> Dict[str, str]:
    """Decode stored dimensions.

    Raises:
        SerializationFailure: If the stored text is not a JSON object
    """
    if raw is None or raw == "":
        return {}
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise SerializationFailure(f"Malformed dimensions: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SerializationFailure(f"Dimensions must be a JSON object, got {type(data).__name__}")
    return {str(k): str(v) for k, v in data.items()}


class MetricsStore:
    """Async repository over the monitor's SQLite database.

    Every call opens its own connection, so the store is safe to share
    between the polling loop and on-demand queries.
    """

    def __init__(self, db_path: str = "ai_usage_monitor.db"):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with get_connection(self.db_path) as conn:
                yield conn
        except aiosqlite.Error as e:
            raise StoreFailure(f"Database error on {self.db_path}: {e}") from e

    async def initialize_schema(self) -> None:
        """Create all tables and indexes if they don't exist."""
        async with self._connect() as conn:
            await conn.execute("PRAGMA journal_mode = WAL")
            for statement in SCHEMA:
                await conn.execute(statement)
            await conn.commit()
        logger.info("Database schema ready at %s", self.db_path)

    # Providers

    async def add_provider(self, provider: Provider) -> Provider:
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO providers (id, name, provider_type, api_key_ref, enabled, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    provider.id,
                    provider.name,
                    provider.kind.value,
                    provider.api_key_ref,
                    int(provider.enabled),
                    to_db(provider.created_at),
                ),
            )
            await conn.commit()
        logger.info("Registered provider %s (%s)", provider.id, provider.kind.value)
        return provider

    async def get_provider(self, provider_id: str) -> Optional[Provider]:
        async with self._connect() as conn:
            cursor = await conn.execute(
                "SELECT id, name, provider_type, api_key_ref, enabled, created_at FROM providers WHERE id = ?",
                (provider_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        try:
            return _row_to_provider(row)
        except ValueError as e:
            raise StoreFailure(f"Provider {provider_id} has an unreadable registration: {e}") from e

    async def list_providers(self, enabled_only: bool = False) -> List[Provider]:
        """List registered providers.

        The returned list is a snapshot; later enable/disable changes do not
        affect it. Rows with an unknown provider type are skipped and logged.

        Args:
            enabled_only: Only return providers with the enabled flag set

        Returns:
            Providers ordered by creation time
        """
        query = "SELECT id, name, provider_type, api_key_ref, enabled, created_at FROM providers"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY created_at, id"

        async with self._connect() as conn:
            cursor = await conn.execute(query)
            rows = await cursor.fetchall()

        providers = []
        for row in rows:
            try:
                providers.append(_row_to_provider(row))
            except ValueError as e:
                logger.warning("Skipping provider %s with unreadable registration: %s", row["id"], e)
        return providers

    async def set_provider_enabled(self, provider_id: str, enabled: bool) -> bool:
        async with self._connect() as conn:
            cursor = await conn.execute(
                "UPDATE providers SET enabled = ? WHERE id = ?",
                (int(enabled), provider_id),
            )
            await conn.commit()
            return cursor.rowcount > 0

    async def delete_provider(self, provider_id: str) -> bool:
        """Delete a provider together with its metrics, budgets, alerts and events."""
        async with self._connect() as conn:
            cursor = await conn.execute("DELETE FROM providers WHERE id = ?", (provider_id,))
            await conn.commit()
            return cursor.rowcount > 0

    # Metrics

    async def insert(self, metric: Metric) -> None:
        """Append a single metric."""
        await self.insert_metrics([metric])

    async def insert_metrics(self, metrics: Sequence[Metric]) -> int:
        """Append metrics atomically.

        Metrics of one batch that share a natural key (provider, kind,
        timestamp, dimensions) are first merged: token counts and itemized
        cost add up, gauges keep the last reading. A merged metric whose key
        already exists does not create a second row. When the vendor has
        revised the value of a still-open bucket the stored value follows the
        revision; the row keeps its original id and ingestion time.

        Args:
            metrics: Metrics to store

        Returns:
            Number of rows inserted or revised
        """
        metrics = merge_batch(metrics)
        if not metrics:
            return 0

        rows = [
            (
                m.id,
                m.provider_id,
                m.kind.value,
                float(m.value),
                m.unit,
                to_db(m.timestamp),
                encode_dimensions(m.dimensions),
                to_db(m.created_at),
            )
            for m in metrics
        ]

        async with self._connect() as conn:
            before = conn.total_changes
            try:
                await conn.executemany(
                    f"""
                    INSERT INTO metrics ({METRIC_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (provider_id, metric_type, timestamp, dimensions)
                    DO UPDATE SET value = excluded.value, unit = excluded.unit
                    WHERE metrics.value != excluded.value OR metrics.unit != excluded.unit
                    """,
                    rows,
                )
                await conn.commit()
            except aiosqlite.Error:
                await conn.rollback()
                raise
            return conn.total_changes - before

    async def query_recent(
        self,
        provider_id: str,
        since: timedelta,
        now: Optional[datetime] = None,
    ) -> List[Metric]:
        """Get metrics newer than ``now - since``, newest first.

        Args:
            provider_id: Owning provider
            since: Look-back duration
            now: Reference time (defaults to current UTC time)

        Returns:
            Metrics with timestamp strictly greater than the cutoff
        """
        cutoff = (now or utcnow()) - since
        async with self._connect() as conn:
            cursor = await conn.execute(
                f"""
                SELECT {METRIC_COLUMNS} FROM metrics
                WHERE provider_id = ? AND timestamp > ?
                ORDER BY timestamp DESC, rowid DESC
                """,
                (provider_id, to_db(cutoff)),
            )
            rows = await cursor.fetchall()
        return [_row_to_metric(row) for row in rows]

    async def query_window(
        self,
        provider_id: str,
        start: datetime,
        end: Optional[datetime] = None,
        kinds: Optional[Iterable[MetricKind]] = None,
    ) -> List[Metric]:
        """Get metrics with ``start <= timestamp < end``, newest first."""
        query = f"SELECT {METRIC_COLUMNS} FROM metrics WHERE provider_id = ? AND timestamp >= ?"
        params: List[Any] = [provider_id, to_db(start)]

        if end is not None:
            query += " AND timestamp < ?"
            params.append(to_db(end))
        if kinds is not None:
            kind_values = [k.value for k in kinds]
            if not kind_values:
                return []
            query += f" AND metric_type IN ({','.join('?' for _ in kind_values)})"
            params.extend(kind_values)

        query += " ORDER BY timestamp DESC, rowid DESC"

        async with self._connect() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
        return [_row_to_metric(row) for row in rows]

    async def count_metrics(self, provider_id: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) FROM metrics"
        params: List[Any] = []
        if provider_id is not None:
            query += " WHERE provider_id = ?"
            params.append(provider_id)

        async with self._connect() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
        return row[0]

    async def purge_older_than(self, age: timedelta, now: Optional[datetime] = None) -> int:
        """Delete metrics with timestamp strictly older than ``now - age``.

        Returns:
            Number of deleted metrics
        """
        cutoff = (now or utcnow()) - age
        async with self._connect() as conn:
            cursor = await conn.execute("DELETE FROM metrics WHERE timestamp < ?", (to_db(cutoff),))
            await conn.commit()
            deleted = cursor.rowcount
        logger.info("Purged %d metrics older than %s", deleted, to_db(cutoff))
        return deleted

    # Budgets

    async def save_budget(self, budget: Budget) -> Budget:
        """Create the budget, or update the existing one for the same provider and period."""
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO budgets
                (id, provider_id, period, soft_limit, hard_limit, notes, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (provider_id, period) DO UPDATE SET
                    soft_limit = excluded.soft_limit,
                    hard_limit = excluded.hard_limit,
                    notes = excluded.notes,
                    updated_at = excluded.updated_at
                """,
                (
                    budget.id,
                    budget.provider_id,
                    budget.period.value,
                    budget.soft_limit,
                    budget.hard_limit,
                    budget.notes,
                    to_db(budget.created_at),
                    to_db(budget.updated_at),
                ),
            )
            await conn.commit()
            cursor = await conn.execute(
                "SELECT * FROM budgets WHERE provider_id = ? AND period = ?",
                (budget.provider_id, budget.period.value),
            )
            row = await cursor.fetchone()
        return _row_to_budget(row)

    async def list_budgets(self, provider_id: Optional[str] = None) -> List[Budget]:
        query = "SELECT * FROM budgets"
        params: List[Any] = []
        if provider_id is not None:
            query += " WHERE provider_id = ?"
            params.append(provider_id)
        query += " ORDER BY provider_id, period"

        async with self._connect() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
        return [_row_to_budget(row) for row in rows]

    async def delete_budget(self, budget_id: str) -> bool:
        async with self._connect() as conn:
            cursor = await conn.execute("DELETE FROM budgets WHERE id = ?", (budget_id,))
            await conn.commit()
            return cursor.rowcount > 0

    # Alerts

    async def save_alert(self, alert: Alert) -> Alert:
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO alerts (id, provider_id, rule, last_fired_at, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    alert.id,
                    alert.provider_id,
                    json.dumps(alert.rule.to_dict(), sort_keys=True),
                    to_db(alert.last_fired_at) if alert.last_fired_at else None,
                    alert.status.value,
                    to_db(alert.created_at),
                ),
            )
            await conn.commit()
        return alert

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        """Get one alert.

        Raises:
            SerializationFailure: If the stored rule cannot be decoded
        """
        async with self._connect() as conn:
            cursor = await conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,))
            row = await cursor.fetchone()
        return _row_to_alert(row) if row else None

    async def list_alerts(
        self,
        provider_id: Optional[str] = None,
        statuses: Optional[Iterable[AlertStatus]] = None,
    ) -> List[Alert]:
        """List alerts, skipping rows whose rule cannot be decoded."""
        query = "SELECT * FROM alerts"
        params: List[Any] = []
        conditions = []

        if provider_id is not None:
            conditions.append("provider_id = ?")
            params.append(provider_id)
        if statuses is not None:
            status_values = [s.value for s in statuses]
            if not status_values:
                return []
            conditions.append(f"status IN ({','.join('?' for _ in status_values)})")
            params.extend(status_values)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at, id"

        async with self._connect() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()

        alerts = []
        for row in rows:
            try:
                alerts.append(_row_to_alert(row))
            except SerializationFailure as e:
                logger.error("Skipping alert %s with unreadable rule: %s", row["id"], e)
        return alerts

    async def update_alert(self, alert: Alert) -> bool:
        """Persist an alert's status and last-fired time."""
        async with self._connect() as conn:
            cursor = await conn.execute(
                "UPDATE alerts SET status = ?, last_fired_at = ? WHERE id = ?",
                (
                    alert.status.value,
                    to_db(alert.last_fired_at) if alert.last_fired_at else None,
                    alert.id,
                ),
            )
            await conn.commit()
            return cursor.rowcount > 0

    async def delete_alert(self, alert_id: str) -> bool:
        async with self._connect() as conn:
            cursor = await conn.execute("DELETE FROM alerts WHERE id = ?", (alert_id,))
            await conn.commit()
            return cursor.rowcount > 0

    # Audit events

    async def record_event(self, event: UsageEvent) -> UsageEvent:
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO events (id, provider_id, timestamp, kind, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.provider_id,
                    to_db(event.timestamp),
                    event.kind,
                    json.dumps(event.payload, sort_keys=True) if event.payload is not None else None,
                    to_db(event.created_at),
                ),
            )
            await conn.commit()
        return event

    async def list_events(
        self,
        provider_id: Optional[str] = None,
        kinds: Optional[Iterable[str]] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[UsageEvent]:
        """Get audit events, newest first."""
        query = "SELECT * FROM events"
        params: List[Any] = []
        conditions = []

        if provider_id is not None:
            conditions.append("provider_id = ?")
            params.append(provider_id)
        if kinds is not None:
            kind_values = list(kinds)
            if not kind_values:
                return []
            conditions.append(f"kind IN ({','.join('?' for _ in kind_values)})")
            params.extend(kind_values)
        if since is not None:
            conditions.append("timestamp >= ?")
            params.append(to_db(since))

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY timestamp DESC, rowid DESC LIMIT ?"
        params.append(limit)

        async with self._connect() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
        return [_row_to_event(row) for row in rows]

    async def latest_event(self, provider_id: str, kinds: Iterable[str]) -> Optional[UsageEvent]:
        events = await self.list_events(provider_id=provider_id, kinds=kinds, limit=1)
        return events[0] if events else None


def _natural_key(metric: Metric) -> Tuple[str, str, str, str]:
    return (
        metric.provider_id,
        metric.kind.value,
        to_db(metric.timestamp),
        encode_dimensions(metric.dimensions),
    )


def merge_batch(metrics: Sequence[Metric]) -> List[Metric]:
    """Collapse metrics sharing a natural key into one, keeping first-seen order.

    Vendors can return several line items for the same bucket (two cost
    items on one day, two usage rows for one model). Additive kinds are
    summed; cumulative totals and gauges keep the last value.
    """
    merged: Dict[Tuple[str, str, str, str], Metric] = {}
    for metric in metrics:
        key = _natural_key(metric)
        previous = merged.get(key)
        if previous is not None and _is_additive(metric):
            metric = replace(previous, value=float(previous.value) + float(metric.value))
        elif previous is not None:
            metric = replace(previous, value=metric.value, unit=metric.unit)
        merged[key] = metric
    return list(merged.values())


def _is_additive(metric: Metric) -> bool:
    if metric.kind in ADDITIVE_KINDS:
        return True
    return metric.kind == MetricKind.COST_USD and not metric.is_cumulative

def _row_to_provider(row: aiosqlite.Row) -> Provider:
    return Provider(
        id=row["id"],
        name=row["name"],
        kind=ProviderKind(row["provider_type"]),
        api_key_ref=row["api_key_ref"],
        enabled=bool(row["enabled"]),
        created_at=from_db(row["created_at"]),
    )


def _row_to_metric(row: aiosqlite.Row) -> Metric:
    try:
        dimensions = decode_dimensions(row["dimensions"])
    except SerializationFailure as e:
        logger.warning("Metric %s has unreadable dimensions, using empty mapping: %s", row["id"], e)
        dimensions = {}

    return Metric(
        id=row["id"],
        provider_id=row["provider_id"],
        kind=MetricKind(row["metric_type"]),
        value=row["value"],
        unit=row["unit"],
        timestamp=from_db(row["timestamp"]),
        dimensions=dimensions,
        created_at=from_db(row["created_at"]),
    )


def _row_to_budget(row: aiosqlite.Row) -> Budget:
    return Budget(
        id=row["id"],
        provider_id=row["provider_id"],
        period=BudgetPeriod(row["period"]),
        soft_limit=row["soft_limit"],
        hard_limit=row["hard_limit"],
        notes=row["notes"],
        created_at=from_db(row["created_at"]),
        updated_at=from_db(row["updated_at"]),
    )


def _row_to_alert(row: aiosqlite.Row) -> Alert:
    try:
        rule_data = json.loads(row["rule"])
    except ValueError as e:
        raise SerializationFailure(f"Malformed alert rule JSON: {e}") from e

    return Alert(
        id=row["id"],
        provider_id=row["provider_id"],
        rule=rule_from_dict(rule_data),
        status=AlertStatus(row["status"]),
        last_fired_at=from_db(row["last_fired_at"]) if row["last_fired_at"] else None,
        created_at=from_db(row["created_at"]),
    )


def _row_to_event(row: aiosqlite.Row) -> UsageEvent:
    payload = None
    if row["payload"] is not None:
        try:
            payload = json.loads(row["payload"])
        except ValueError:
            logger.warning("Event %s has unreadable payload", row["id"])

    return UsageEvent(
        id=row["id"],
        provider_id=row["provider_id"],
        kind=row["kind"],
        payload=payload,
        timestamp=from_db(row["timestamp"]),
        created_at=from_db(row["created_at"]),
    )


# Global store instances, one per database path
_default_stores: Dict[str, MetricsStore] = {}


def get_store(db_path: str = "ai_usage_monitor.db") -> MetricsStore:
    """Get a store instance for ``db_path``.

    Args:
        db_path: Path to SQLite database file

    Returns:
        A shared MetricsStore for that path
    """
    if db_path not in _default_stores:
        _default_stores[db_path] = MetricsStore(db_path)
    return _default_stores[db_path]
