"""
Anthropic usage adapter.

Uses the organization usage report (token counts per model) and the cost
report, both filtered by calendar date.
"""

from datetime import datetime
from typing import Any, Dict, List

from ai_usage_monitor.storage.models import Metric, MetricKind, ProviderKind
from ai_usage_monitor.utils.time import ensure_utc, parse_timestamp
from .base import ProviderAdapter

USAGE_PATH = "/organizations/usage_report/messages"
COST_PATH = "/organizations/cost_report"
API_VERSION = "2023-06-01"


class AnthropicAdapter(ProviderAdapter):
    """Adapter for the Anthropic usage and cost reports."""

    kind = ProviderKind.ANTHROPIC
    default_base_url = "https://api.anthropic.com/v1"

    def auth_headers(self, credential: str) -> Dict[str, str]:
        return {"x-api-key": credential, "anthropic-version": API_VERSION}

    async def fetch_usage(self, credential: str, start: datetime, end: datetime) -> List[Metric]:
        start, end = ensure_utc(start), ensure_utc(end)
        params = {
            "start_date": start.strftime("%Y-%m-%d"),
            "end_date": end.strftime("%Y-%m-%d"),
        }

        usage_report = await self.get_json(USAGE_PATH, credential, params)
        try:
            metrics = self._usage_metrics(usage_report["usage"], start, end)
        except (KeyError, TypeError, ValueError) as e:
            raise self.shape_error("usage", e) from e

        cost_report = await self.get_json(COST_PATH, credential, params)
        try:
            metrics.extend(self._cost_metrics(cost_report["costs"], start, end))
        except (KeyError, TypeError, ValueError) as e:
            raise self.shape_error("cost", e) from e

        return metrics

    def _usage_metrics(self, items: List[Dict[str, Any]], start: datetime, end: datetime) -> List[Metric]:
        metrics = []
        for item in items:
            if _outside(item.get("timestamp"), start, end):
                continue
            timestamp = self.event_time(item.get("timestamp"))
            model = item.get("model")
            dimensions = {"model": str(model)} if model else {}
            metrics.extend(self.token_metrics(
                item,
                input_key="input_tokens",
                output_key="output_tokens",
                cached_key="input_cached_tokens",
                timestamp=timestamp,
                dimensions=dimensions,
            ))
        return metrics

    def _cost_metrics(self, items: List[Dict[str, Any]], start: datetime, end: datetime) -> List[Metric]:
        metrics = []
        for item in items:
            if _outside(item.get("timestamp"), start, end):
                continue
            metrics.append(self.metric(
                MetricKind.COST_USD,
                item["amount"],
                str(item["currency"]).lower(),
                self.event_time(item.get("timestamp")),
            ))
        return metrics


def _outside(raw: Any, start: datetime, end: datetime) -> bool:
    """True when a parseable timestamp falls outside ``[start, end)``.

    The report is filtered by whole dates, so items from outside the exact
    window can come back. Unparseable times are kept.
    """
    parsed = parse_timestamp(raw)
    if parsed is None:
        return False
    return not start <= parsed < end
