"""
Tests for the CLI interface.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml
from rich.console import Console
from typer.testing import CliRunner

from ai_usage_monitor.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, app, describe_rule
from ai_usage_monitor.core.evaluator import EVENT_POLL_FAILED, EVENT_POLL_SUCCEEDED
from ai_usage_monitor.core.scheduler import TickReport
from ai_usage_monitor.credentials import InMemoryCredentialResolver
from ai_usage_monitor.storage.models import (
    AlertStatus,
    BudgetPeriod,
    CreditThreshold,
    Metric,
    MetricKind,
    ProjectedRunOut,
    ProviderUsage,
    SpendThreshold,
    UsageEvent,
)
from ai_usage_monitor.storage.repository import MetricsStore

runner = CliRunner()

CONFIG = {
    "monitor": {"poll_interval_seconds": 60, "request_timeout_seconds": 5, "retention_days": 30},
    "providers": [
        {"id": "oa", "name": "OpenAI", "kind": "openai"},
        {"id": "orr", "name": "OpenRouter", "kind": "openrouter"},
    ],
    "budgets": [{"provider": "oa", "period": "monthly", "hard_limit": 100}],
    "alerts": [{"provider": "orr", "rule": {"type": "credit_threshold", "amount": 10}}],
}


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Config and database paths inside a temporary working directory."""
    monkeypatch.chdir(tmp_path)
    config_path = tmp_path / "monitor.yaml"
    config_path.write_text(yaml.dump(CONFIG), encoding="utf-8")
    return {"config": str(config_path), "db": str(tmp_path / "monitor.db")}


@pytest.fixture(autouse=True)
def wide_console():
    """Render tables wide enough that cells never wrap."""
    with patch("ai_usage_monitor.cli.main.console", Console(width=200)):
        yield


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep CLI commands from attaching handlers to captured streams."""
    with patch("ai_usage_monitor.cli.main.setup_logging") as mock:
        yield mock


def _invoke(workspace, *args):
    return runner.invoke(app, ["--config", workspace["config"], "--db", workspace["db"], *args])


def _init(workspace):
    result = _invoke(workspace, "init")
    assert result.exit_code == EXIT_CODE_PASS, result.output
    return MetricsStore(workspace["db"])


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_hint(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_init_seeds_config(self, workspace):
        result = _invoke(workspace, "init")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert "2 provider(s) added" in result.output

        store = MetricsStore(workspace["db"])
        providers = asyncio.run(store.list_providers())
        assert sorted(p.id for p in providers) == ["oa", "orr"]
        budgets = asyncio.run(store.list_budgets())
        assert [(b.provider_id, b.period, b.hard_limit) for b in budgets] == [("oa", BudgetPeriod.MONTHLY, 100.0)]
        alerts = asyncio.run(store.list_alerts())
        assert [a.rule for a in alerts] == [CreditThreshold(amount=10.0)]

    def test_init_twice_does_not_duplicate(self, workspace):
        store = _init(workspace)
        result = _invoke(workspace, "init")

        assert result.exit_code == EXIT_CODE_PASS
        assert "0 provider(s) added" in result.output
        assert "0 alert(s) added" in result.output
        assert len(asyncio.run(store.list_alerts())) == 1
        assert len(asyncio.run(store.list_budgets())) == 1

    def test_invalid_config_fails(self, workspace, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text(yaml.dump({"providers": [{"id": "x", "kind": "mistral"}]}), encoding="utf-8")

        result = runner.invoke(app, ["--config", str(bad), "--db", workspace["db"], "init"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Configuration error" in result.output

    def test_missing_config_file_fails(self, workspace):
        result = runner.invoke(app, ["--config", "nope.yaml", "init"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "not found" in result.output

    def test_defaults_without_config(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(app, ["--db", str(tmp_path / "plain.db"), "init"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "0 provider(s) added" in result.output

    def test_poll_success(self, workspace):
        _init(workspace)
        report = TickReport(started_at=datetime.now(timezone.utc), polled=["oa"], inserted={"oa": 4})

        with patch("ai_usage_monitor.cli.main._poll_once", AsyncMock(return_value=report)):
            result = _invoke(workspace, "poll")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Poll result" in result.output

    def test_poll_with_failure_exits_nonzero(self, workspace):
        _init(workspace)
        report = TickReport(
            started_at=datetime.now(timezone.utc),
            polled=["oa"],
            failures={"orr": "orr: returned HTTP 401"},
        )

        with patch("ai_usage_monitor.cli.main._poll_once", AsyncMock(return_value=report)):
            result = _invoke(workspace, "poll")

        assert result.exit_code == EXIT_CODE_FAIL

    def test_poll_without_credentials_reports_failures(self, workspace):
        _init(workspace)

        with patch("ai_usage_monitor.cli.main._build_credentials", return_value=InMemoryCredentialResolver()):
            result = _invoke(workspace, "poll")

        assert result.exit_code == EXIT_CODE_FAIL
        store = MetricsStore(workspace["db"])
        events = asyncio.run(store.list_events(kinds=["poll_failed"]))
        assert {e.provider_id for e in events} == {"oa", "orr"}
        assert all(e.payload["failure"] == "credential_missing" for e in events)

    def test_run_stops_on_interrupt(self, workspace):
        _init(workspace)

        with patch("ai_usage_monitor.cli.main._run_forever", AsyncMock(side_effect=KeyboardInterrupt)):
            result = _invoke(workspace, "run")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Stopped" in result.output

    def test_usage_without_providers(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        db = str(tmp_path / "empty.db")
        runner.invoke(app, ["--db", db, "init"])

        result = runner.invoke(app, ["--db", db, "usage"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No providers registered" in result.output

    def test_usage_from_store(self, workspace):
        store = _init(workspace)
        now = datetime.now(timezone.utc)
        asyncio.run(store.insert(Metric(
            provider_id="oa", kind=MetricKind.COST_USD, value=12.5, unit="usd", timestamp=now - timedelta(minutes=1)
        )))

        asyncio.run(store.record_event(UsageEvent(
            provider_id="oa", kind=EVENT_POLL_SUCCEEDED, timestamp=now
        )))
        asyncio.run(store.record_event(UsageEvent(
            provider_id="orr", kind=EVENT_POLL_FAILED, timestamp=now,
            payload={"failure": "credential_missing", "message": "no credential stored for orr"},
        )))

        result = _invoke(workspace, "usage")

        assert result.exit_code == EXIT_CODE_PASS
        assert "$12.50" in result.output
        assert "needs_attention" in result.output
        assert "Needs attention: orr" in result.output
        oa_row = next(line for line in result.output.splitlines() if " oa " in line)
        assert "ok" in oa_row

    def test_usage_live(self, workspace):
        _init(workspace)
        adapter = MagicMock()
        adapter.get_current_usage = AsyncMock(side_effect=lambda credential: ProviderUsage(
            provider=MagicMock(), mtd_cost=7.25, credits=3.0
        ))
        credentials = InMemoryCredentialResolver({"oa": "sk-oa"})

        with patch("ai_usage_monitor.cli.main.get_adapter", return_value=adapter), \
                patch("ai_usage_monitor.cli.main._build_credentials", return_value=credentials):
            result = _invoke(workspace, "usage", "--live")

        # The second provider has no credential
        assert result.exit_code == EXIT_CODE_FAIL
        assert "$7.25" in result.output
        adapter.get_current_usage.assert_awaited_once_with("sk-oa")

    def test_status_shows_health(self, workspace):
        _init(workspace)

        result = _invoke(workspace, "status")

        assert result.exit_code == EXIT_CODE_PASS
        assert "unknown" in result.output

    def test_alerts_and_snooze(self, workspace):
        store = _init(workspace)
        alert_id = asyncio.run(store.list_alerts())[0].id

        listed = _invoke(workspace, "alerts")
        assert listed.exit_code == EXIT_CODE_PASS
        assert "active" in listed.output

        snoozed = _invoke(workspace, "snooze", alert_id)
        assert snoozed.exit_code == EXIT_CODE_PASS
        assert asyncio.run(store.get_alert(alert_id)).status == AlertStatus.SNOOZED

        disabled = _invoke(workspace, "disable", alert_id)
        assert disabled.exit_code == EXIT_CODE_PASS

        # Disabled alerts must be reactivated first
        again = _invoke(workspace, "snooze", alert_id)
        assert again.exit_code == EXIT_CODE_FAIL

        reactivated = _invoke(workspace, "reactivate", alert_id)
        assert reactivated.exit_code == EXIT_CODE_PASS
        assert asyncio.run(store.get_alert(alert_id)).status == AlertStatus.ACTIVE

    def test_snooze_unknown_alert(self, workspace):
        _init(workspace)

        result = _invoke(workspace, "snooze", "missing")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Alert not found" in result.output

    def test_purge_uses_retention_days(self, workspace):
        store = _init(workspace)
        now = datetime.now(timezone.utc)
        asyncio.run(store.insert_metrics([
            Metric(provider_id="oa", kind=MetricKind.TOKENS_IN, value=1, unit="tokens",
                   timestamp=now - timedelta(days=45)),
            Metric(provider_id="oa", kind=MetricKind.TOKENS_IN, value=1, unit="tokens",
                   timestamp=now - timedelta(days=5)),
        ]))

        result = _invoke(workspace, "purge")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Deleted 1 metric(s) older than 30 day(s)" in result.output

    def test_purge_with_days_option(self, workspace):
        store = _init(workspace)
        now = datetime.now(timezone.utc)
        asyncio.run(store.insert(Metric(
            provider_id="oa", kind=MetricKind.TOKENS_IN, value=1, unit="tokens", timestamp=now - timedelta(days=5)
        )))

        result = _invoke(workspace, "purge", "--days", "1")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Deleted 1 metric(s)" in result.output


class TestDescribeRule:
    """Test alert rule descriptions."""

    def test_descriptions(self):
        assert describe_rule(SpendThreshold(amount=40.0, is_soft=False)) == "monthly spend >= $40.00 (hard)"
        assert describe_rule(CreditThreshold(amount=10.0)) == "credits <= 10.00 (soft)"
        assert describe_rule(ProjectedRunOut(days_before=3)) == "run-out within 3 day(s)"
