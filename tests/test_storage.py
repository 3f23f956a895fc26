"""
Unit tests for storage layer.

Tests schema creation, metric insertion and retrieval, retention, and the
provider, budget, alert and event tables.
"""

import asyncio
from datetime import timedelta

import pytest

from ai_usage_monitor.errors import SerializationFailure, StoreFailure
from ai_usage_monitor.storage.db import get_connection
from ai_usage_monitor.storage.models import (
    Alert,
    AlertStatus,
    Budget,
    BudgetPeriod,
    CreditThreshold,
    Metric,
    MetricKind,
    SpendThreshold,
    UsageEvent,
)
from ai_usage_monitor.storage.repository import MetricsStore, decode_dimensions, encode_dimensions


def _metric(provider_id, when, value=1.0, kind=MetricKind.TOKENS_IN, dimensions=None):
    return Metric(
        provider_id=provider_id,
        kind=kind,
        value=value,
        unit="tokens",
        timestamp=when,
        dimensions=dimensions or {},
    )


async def _register_raw_provider(store, provider_id, provider_type):
    """Write a provider row directly, bypassing model validation."""
    async with get_connection(store.db_path) as conn:
        await conn.execute(
            "INSERT INTO providers (id, name, provider_type, api_key_ref, enabled, created_at) "
            "VALUES (?, ?, ?, NULL, 1, ?)",
            (provider_id, provider_id, provider_type, "2024-01-01T00:00:00.000000+00:00"),
        )
        await conn.commit()

class TestStorageSchema:
    """Test database schema creation and structure."""

    @pytest.mark.asyncio
    async def test_schema_creation(self, store):
        """Verify all tables are created."""
        async with get_connection(store.db_path) as conn:
            cursor = await conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in await cursor.fetchall()}

        assert {"providers", "metrics", "budgets", "alerts", "events"} <= tables

    @pytest.mark.asyncio
    async def test_schema_is_idempotent(self, store):
        await store.initialize_schema()
        await store.initialize_schema()
        assert await store.count_metrics() == 0

    @pytest.mark.asyncio
    async def test_wal_journal_mode(self, store):
        async with get_connection(store.db_path) as conn:
            cursor = await conn.execute("PRAGMA journal_mode")
            row = await cursor.fetchone()
        assert row[0].lower() == "wal"

    @pytest.mark.asyncio
    async def test_unopenable_database_raises_store_failure(self, tmp_path):
        store = MetricsStore(str(tmp_path))
        with pytest.raises(StoreFailure):
            await store.initialize_schema()


class TestProviderRegistry:
    """Test provider registration."""

    @pytest.mark.asyncio
    async def test_add_and_get_provider(self, store, openai_provider):
        await store.add_provider(openai_provider)

        loaded = await store.get_provider("openai-main")
        assert loaded.name == "OpenAI"
        assert loaded.kind == openai_provider.kind
        assert loaded.enabled is True
        assert await store.get_provider("missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_provider_raises_store_failure(self, store, openai_provider):
        await store.add_provider(openai_provider)
        with pytest.raises(StoreFailure):
            await store.add_provider(openai_provider)

    @pytest.mark.asyncio
    async def test_enabled_only_filter(self, store, openai_provider, anthropic_provider):
        await store.add_provider(openai_provider)
        await store.add_provider(anthropic_provider)

        assert await store.set_provider_enabled("anthropic-main", False) is True
        assert await store.set_provider_enabled("missing", False) is False

        enabled = await store.list_providers(enabled_only=True)
        assert [p.id for p in enabled] == ["openai-main"]
        assert len(await store.list_providers()) == 2

    @pytest.mark.asyncio
    async def test_delete_provider_cascades(self, store, openai_provider, now):
        await store.add_provider(openai_provider)
        await store.insert(_metric("openai-main", now))
        await store.save_budget(Budget(provider_id="openai-main", period=BudgetPeriod.MONTHLY, hard_limit=10))

        assert await store.delete_provider("openai-main") is True
        assert await store.count_metrics() == 0
        assert await store.list_budgets() == []

    @pytest.mark.asyncio
    async def test_unknown_provider_type_is_skipped(self, store, openai_provider, caplog):
        await store.add_provider(openai_provider)
        await _register_raw_provider(store, "gemini-main", "gemini")

        providers = await store.list_providers(enabled_only=True)

        assert [p.id for p in providers] == ["openai-main"]
        assert "gemini-main" in caplog.text
        with pytest.raises(StoreFailure):
            await store.get_provider("gemini-main")


class TestMetricInsertion:
    """Test metric insertion operations."""

    @pytest.mark.asyncio
    async def test_dimensions_round_trip(self, store, openai_provider, now):
        await store.add_provider(openai_provider)
        dimensions = {"model": "gpt-4o", "project": "proj_1"}
        await store.insert(_metric("openai-main", now, dimensions=dimensions))

        metrics = await store.query_recent("openai-main", timedelta(days=1), now=now + timedelta(seconds=1))
        assert len(metrics) == 1
        assert metrics[0].dimensions == dimensions
        assert metrics[0].timestamp == now

    @pytest.mark.asyncio
    async def test_empty_dimensions_read_back_empty(self, store, openai_provider, now):
        await store.add_provider(openai_provider)
        await store.insert(_metric("openai-main", now))

        metrics = await store.query_window("openai-main", now - timedelta(hours=1))
        assert metrics[0].dimensions == {}

    @pytest.mark.asyncio
    async def test_malformed_dimensions_degrade_to_empty(self, store, openai_provider, now, caplog):
        await store.add_provider(openai_provider)
        metric = _metric("openai-main", now)
        await store.insert(metric)

        async with get_connection(store.db_path) as conn:
            await conn.execute("UPDATE metrics SET dimensions = ? WHERE id = ?", ("{not json", metric.id))
            await conn.commit()

        metrics = await store.query_window("openai-main", now - timedelta(hours=1))
        assert metrics[0].dimensions == {}
        assert "unreadable dimensions" in caplog.text

    @pytest.mark.asyncio
    async def test_null_dimensions_read_back_empty(self, store, openai_provider, now):
        await store.add_provider(openai_provider)
        metric = _metric("openai-main", now)
        await store.insert(metric)

        async with get_connection(store.db_path) as conn:
            await conn.execute("UPDATE metrics SET dimensions = NULL WHERE id = ?", (metric.id,))
            await conn.commit()

        metrics = await store.query_window("openai-main", now - timedelta(hours=1))
        assert metrics[0].dimensions == {}

    @pytest.mark.asyncio
    async def test_reinserting_same_metrics_is_idempotent(self, store, openai_provider, now):
        await store.add_provider(openai_provider)
        batch = [_metric("openai-main", now - timedelta(hours=i), value=10.0 * i) for i in range(3)]

        assert await store.insert_metrics(batch) == 3
        # Same natural keys, fresh ids
        again = [_metric("openai-main", m.timestamp, value=m.value) for m in batch]
        assert await store.insert_metrics(again) == 0
        assert await store.count_metrics("openai-main") == 3

    @pytest.mark.asyncio
    async def test_revised_value_updates_existing_row(self, store, openai_provider, now):
        await store.add_provider(openai_provider)
        original = _metric("openai-main", now, value=100.0, dimensions={"model": "gpt-4o"})
        await store.insert(original)

        revised = _metric("openai-main", now, value=150.0, dimensions={"model": "gpt-4o"})
        assert await store.insert_metrics([revised]) == 1

        metrics = await store.query_window("openai-main", now)
        assert len(metrics) == 1
        assert metrics[0].value == 150.0
        assert metrics[0].id == original.id

    @pytest.mark.asyncio
    async def test_same_key_items_in_one_batch_add_up(self, store, openai_provider, now):
        await store.add_provider(openai_provider)
        cost = dict(kind=MetricKind.COST_USD)

        inserted = await store.insert_metrics([
            _metric("openai-main", now, value=3.5, **cost),
            _metric("openai-main", now, value=1.5, **cost),
            _metric("openai-main", now, value=100.0, dimensions={"model": "gpt-4o"}),
            _metric("openai-main", now, value=200.0, dimensions={"model": "gpt-4o"}),
        ])

        assert inserted == 2
        stored = {m.kind: m.value for m in await store.query_window("openai-main", now)}
        assert stored == {MetricKind.COST_USD: 5.0, MetricKind.TOKENS_IN: 300.0}

    @pytest.mark.asyncio
    async def test_same_key_gauges_keep_last_reading(self, store, openai_provider, now):
        await store.add_provider(openai_provider)
        gauge = dict(kind=MetricKind.CREDITS_REMAINING)
        running_total = dict(kind=MetricKind.COST_USD, dimensions={"basis": "cumulative"})

        await store.insert_metrics([
            _metric("openai-main", now, value=20.0, **gauge),
            _metric("openai-main", now, value=18.0, **gauge),
            _metric("openai-main", now, value=40.0, **running_total),
            _metric("openai-main", now, value=42.0, **running_total),
        ])

        stored = {m.kind: m.value for m in await store.query_window("openai-main", now)}
        assert stored == {MetricKind.CREDITS_REMAINING: 18.0, MetricKind.COST_USD: 42.0}

    @pytest.mark.asyncio
    async def test_different_dimensions_are_distinct_rows(self, store, openai_provider, now):
        await store.add_provider(openai_provider)
        await store.insert_metrics([
            _metric("openai-main", now, dimensions={"model": "gpt-4o"}),
            _metric("openai-main", now, dimensions={"model": "gpt-4o-mini"}),
            _metric("openai-main", now),
        ])
        assert await store.count_metrics() == 3

    @pytest.mark.asyncio
    async def test_empty_batch(self, store):
        assert await store.insert_metrics([]) == 0

    @pytest.mark.asyncio
    async def test_concurrent_inserts_are_all_stored(self, store, openai_provider, anthropic_provider, now):
        await store.add_provider(openai_provider)
        await store.add_provider(anthropic_provider)

        def batch(provider_id, offset):
            return [
                _metric(provider_id, now - timedelta(minutes=offset * 100 + i))
                for i in range(20)
            ]

        await asyncio.gather(*[
            store.insert_metrics(batch(provider_id, offset))
            for offset in range(5)
            for provider_id in ("openai-main", "anthropic-main")
        ])

        assert await store.count_metrics("openai-main") == 100
        assert await store.count_metrics("anthropic-main") == 100

    @pytest.mark.asyncio
    async def test_unknown_provider_is_rejected(self, store, now):
        with pytest.raises(StoreFailure):
            await store.insert(_metric("nobody", now))


class TestMetricRetrieval:
    """Test query and retention operations."""

    @pytest.mark.asyncio
    async def test_query_recent_newest_first_and_strict_cutoff(self, store, openai_provider, now):
        await store.add_provider(openai_provider)
        await store.insert_metrics([
            _metric("openai-main", now - timedelta(hours=2), value=1),
            _metric("openai-main", now - timedelta(hours=1), value=2),
            _metric("openai-main", now - timedelta(minutes=30), value=3),
            _metric("openai-main", now - timedelta(minutes=5), value=4),
        ])

        metrics = await store.query_recent("openai-main", timedelta(hours=1), now=now)

        # The metric exactly at the cutoff is excluded
        assert [m.value for m in metrics] == [4, 3]

    @pytest.mark.asyncio
    async def test_query_recent_is_scoped_to_provider(self, store, openai_provider, anthropic_provider, now):
        await store.add_provider(openai_provider)
        await store.add_provider(anthropic_provider)
        await store.insert(_metric("anthropic-main", now))

        assert await store.query_recent("openai-main", timedelta(days=1), now=now) == []

    @pytest.mark.asyncio
    async def test_query_window_filters_kinds_and_range(self, store, openai_provider, now):
        await store.add_provider(openai_provider)
        await store.insert_metrics([
            _metric("openai-main", now - timedelta(days=2), kind=MetricKind.TOKENS_IN),
            _metric("openai-main", now - timedelta(hours=1), kind=MetricKind.TOKENS_IN),
            _metric("openai-main", now - timedelta(hours=1), kind=MetricKind.COST_USD),
            _metric("openai-main", now, kind=MetricKind.TOKENS_IN),
        ])

        metrics = await store.query_window(
            "openai-main", now - timedelta(days=1), now, kinds=[MetricKind.TOKENS_IN]
        )
        assert len(metrics) == 1
        assert metrics[0].timestamp == now - timedelta(hours=1)
        assert await store.query_window("openai-main", now - timedelta(days=1), kinds=[]) == []

    @pytest.mark.asyncio
    async def test_purge_older_than(self, store, openai_provider, now):
        await store.add_provider(openai_provider)
        await store.insert_metrics([
            _metric("openai-main", now - timedelta(days=120)),
            _metric("openai-main", now - timedelta(days=91)),
            _metric("openai-main", now - timedelta(days=90)),
            _metric("openai-main", now - timedelta(days=10)),
        ])

        deleted = await store.purge_older_than(timedelta(days=90), now=now)

        assert deleted == 2
        assert await store.count_metrics() == 2
        assert await store.purge_older_than(timedelta(days=90), now=now) == 0


class TestDimensionsCodec:
    """Test canonical dimension encoding."""

    def test_encoding_is_key_order_independent(self):
        assert encode_dimensions({"b": "2", "a": "1"}) == encode_dimensions({"a": "1", "b": "2"})

    def test_empty_and_null(self):
        assert encode_dimensions({}) == "{}"
        assert decode_dimensions(None) == {}
        assert decode_dimensions("") == {}
        assert decode_dimensions("null") == {}

    def test_non_object_raises(self):
        with pytest.raises(SerializationFailure):
            decode_dimensions("[1, 2]")
        with pytest.raises(SerializationFailure):
            decode_dimensions("{broken")


class TestBudgetsAlertsEvents:
    """Test budget, alert and audit event tables."""

    @pytest.mark.asyncio
    async def test_save_budget_upserts_per_period(self, store, openai_provider):
        await store.add_provider(openai_provider)
        first = await store.save_budget(
            Budget(provider_id="openai-main", period=BudgetPeriod.MONTHLY, soft_limit=50, hard_limit=100)
        )
        second = await store.save_budget(
            Budget(provider_id="openai-main", period=BudgetPeriod.MONTHLY, hard_limit=200, notes="raised")
        )
        await store.save_budget(Budget(provider_id="openai-main", period=BudgetPeriod.DAILY, hard_limit=10))

        assert second.id == first.id
        assert second.hard_limit == 200
        assert second.soft_limit is None
        assert second.notes == "raised"
        assert len(await store.list_budgets("openai-main")) == 2

        assert await store.delete_budget(first.id) is True
        assert [b.period for b in await store.list_budgets()] == [BudgetPeriod.DAILY]

    @pytest.mark.asyncio
    async def test_alert_round_trip_and_update(self, store, openrouter_provider, now):
        await store.add_provider(openrouter_provider)
        alert = await store.save_alert(Alert(provider_id="openrouter", rule=CreditThreshold(amount=10)))

        loaded = await store.get_alert(alert.id)
        assert loaded.rule == CreditThreshold(amount=10)
        assert loaded.status == AlertStatus.ACTIVE
        assert loaded.last_fired_at is None

        assert await store.update_alert(loaded.with_status(AlertStatus.TRIGGERED, last_fired_at=now)) is True
        updated = await store.get_alert(alert.id)
        assert updated.status == AlertStatus.TRIGGERED
        assert updated.last_fired_at == now

    @pytest.mark.asyncio
    async def test_list_alerts_by_status(self, store, openrouter_provider):
        await store.add_provider(openrouter_provider)
        active = await store.save_alert(Alert(provider_id="openrouter", rule=CreditThreshold(amount=10)))
        await store.save_alert(Alert(
            provider_id="openrouter", rule=SpendThreshold(amount=5), status=AlertStatus.SNOOZED
        ))

        listed = await store.list_alerts("openrouter", statuses=[AlertStatus.ACTIVE, AlertStatus.TRIGGERED])
        assert [a.id for a in listed] == [active.id]
        assert len(await store.list_alerts()) == 2
        assert await store.list_alerts(statuses=[]) == []

    @pytest.mark.asyncio
    async def test_unreadable_alert_rule(self, store, openrouter_provider):
        await store.add_provider(openrouter_provider)
        good = await store.save_alert(Alert(provider_id="openrouter", rule=CreditThreshold(amount=10)))
        bad = await store.save_alert(Alert(provider_id="openrouter", rule=CreditThreshold(amount=5)))

        async with get_connection(store.db_path) as conn:
            await conn.execute("UPDATE alerts SET rule = ? WHERE id = ?", ('{"mystery": {}}', bad.id))
            await conn.commit()

        assert [a.id for a in await store.list_alerts()] == [good.id]
        with pytest.raises(SerializationFailure):
            await store.get_alert(bad.id)

    @pytest.mark.asyncio
    async def test_events_newest_first(self, store, openai_provider, now):
        await store.add_provider(openai_provider)
        await store.record_event(UsageEvent(
            provider_id="openai-main", kind="poll_failed", timestamp=now - timedelta(minutes=2),
            payload={"failure": "transient"},
        ))
        await store.record_event(UsageEvent(
            provider_id="openai-main", kind="poll_succeeded", timestamp=now - timedelta(minutes=1)
        ))
        await store.record_event(UsageEvent(provider_id="openai-main", kind="alert_fired", timestamp=now))

        events = await store.list_events("openai-main", kinds=["poll_failed", "poll_succeeded"])
        assert [e.kind for e in events] == ["poll_succeeded", "poll_failed"]
        assert events[1].payload == {"failure": "transient"}

        latest = await store.latest_event("openai-main", ["poll_failed"])
        assert latest.payload["failure"] == "transient"

        recent = await store.list_events("openai-main", since=now - timedelta(seconds=90))
        assert {e.kind for e in recent} == {"poll_succeeded", "alert_fired"}
