"""
OpenAI organization usage adapter.

Reads the completions usage report and the costs report, both bucketed per
UTC day. Requires an organization admin key.
"""

from datetime import datetime
from typing import Any, Dict, List

from ai_usage_monitor.storage.models import Metric, MetricKind, ProviderKind
from ai_usage_monitor.utils.time import ensure_utc
from .base import ProviderAdapter

USAGE_PATH = "/organization/usage/completions"
COSTS_PATH = "/organization/costs"

# Upper bound on followed pages; a month of daily buckets fits in one or two
MAX_PAGES = 50


class OpenAIAdapter(ProviderAdapter):
    """Adapter for the OpenAI organization usage and costs endpoints."""

    kind = ProviderKind.OPENAI
    default_base_url = "https://api.openai.com/v1"

    def auth_headers(self, credential: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {credential}"}

    async def fetch_usage(self, credential: str, start: datetime, end: datetime) -> List[Metric]:
        start, end = ensure_utc(start), ensure_utc(end)
        window = {
            "start_time": int(start.timestamp()),
            "end_time": int(end.timestamp()),
            "bucket_width": "1d",
            "limit": 31,
        }

        usage_buckets = await self._collect(USAGE_PATH, credential, {**window, "group_by": "model"})
        cost_buckets = await self._collect(COSTS_PATH, credential, {**window, "group_by": "line_item"})

        try:
            metrics = self._usage_metrics(usage_buckets)
        except (KeyError, TypeError, ValueError) as e:
            raise self.shape_error("usage", e) from e
        try:
            metrics.extend(self._cost_metrics(cost_buckets))
        except (KeyError, TypeError, ValueError) as e:
            raise self.shape_error("cost", e) from e

        return metrics

    async def _collect(self, path: str, credential: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Follow ``next_page`` cursors and return all buckets."""
        buckets: List[Dict[str, Any]] = []
        page = None

        for _ in range(MAX_PAGES):
            query = dict(params)
            if page:
                query["page"] = page

            payload = await self.get_json(path, credential, query)
            if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
                raise self.shape_error(path, TypeError("missing 'data' list"))

            buckets.extend(payload["data"])
            page = payload.get("next_page")
            if not payload.get("has_more") or not page:
                break

        return buckets

    def _usage_metrics(self, buckets: List[Dict[str, Any]]) -> List[Metric]:
        metrics = []
        for bucket in buckets:
            timestamp = self.event_time(bucket.get("start_time"))
            for result in bucket["results"]:
                model = result.get("model")
                dimensions = {"model": str(model)} if model else {}
                metrics.extend(self.token_metrics(
                    result,
                    input_key="input_tokens",
                    output_key="output_tokens",
                    cached_key="input_cached_tokens",
                    timestamp=timestamp,
                    dimensions=dimensions,
                ))
        return metrics

    def _cost_metrics(self, buckets: List[Dict[str, Any]]) -> List[Metric]:
        metrics = []
        for bucket in buckets:
            timestamp = self.event_time(bucket.get("start_time"))
            for result in bucket["results"]:
                amount = result["amount"]
                line_item = result.get("line_item")
                dimensions = {"line_item": str(line_item)} if line_item else {}
                metrics.append(self.metric(
                    MetricKind.COST_USD,
                    float(amount["value"]),
                    str(amount.get("currency") or "usd").lower(),
                    timestamp,
                    dimensions,
                ))
        return metrics
