"""
OpenRouter credit adapter.

OpenRouter exposes no itemized usage, only the account's credit totals and
the spend limit of the API key. Usage is therefore reported as remaining
credits plus consumed credits, and token totals are always zero.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ai_usage_monitor.core.aggregation import budget_used_percentage
from ai_usage_monitor.storage.models import (
    BASIS_DIMENSION,
    CUMULATIVE_BASIS,
    Metric,
    MetricKind,
    ProviderKind,
    ProviderUsage,
)
from ai_usage_monitor.utils.time import ensure_utc
from .base import ProviderAdapter

CREDITS_PATH = "/credits"
KEY_PATH = "/key"


class OpenRouterAdapter(ProviderAdapter):
    """Adapter for the OpenRouter credits and key endpoints."""

    kind = ProviderKind.OPENROUTER
    default_base_url = "https://openrouter.ai/api/v1"

    def auth_headers(self, credential: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {credential}"}

    async def fetch_usage(self, credential: str, start: datetime, end: datetime) -> List[Metric]:
        """Current credit totals, stamped at the end of the window.

        The vendor reports running totals rather than events, so the window
        is not sent upstream.
        """
        used, remaining = await self._credits(credential)
        as_of = ensure_utc(end)

        return [
            self.metric(MetricKind.CREDITS_REMAINING, remaining, "credits", as_of),
            self.metric(
                MetricKind.COST_USD, used, "credits", as_of,
                {BASIS_DIMENSION: CUMULATIVE_BASIS},
            ),
        ]

    async def fetch_balance(self, credential: str) -> Optional[float]:
        key_data = await self._key_info(credential)
        try:
            return _optional_float(key_data.get("limit_remaining"))
        except (TypeError, ValueError) as e:
            raise self.shape_error("key", e) from e

    async def get_current_usage(self, credential: str, now: Optional[datetime] = None) -> ProviderUsage:
        key_data = await self._key_info(credential)
        used, remaining = await self._credits(credential)

        try:
            limit = _optional_float(key_data.get("limit"))
            key_usage = float(key_data.get("usage") or 0.0)
            balance = _optional_float(key_data.get("limit_remaining"))
        except (TypeError, ValueError) as e:
            raise self.shape_error("key", e) from e

        return ProviderUsage(
            provider=self.provider,
            today_tokens=0,
            today_cost=0.0,
            mtd_tokens=0,
            mtd_cost=used,
            balance=balance,
            credits=remaining,
            budget_used_percentage=budget_used_percentage(key_usage, limit),
        )

    async def _credits(self, credential: str) -> Tuple[float, float]:
        """Return (used, remaining) credits."""
        payload = await self.get_json(CREDITS_PATH, credential)
        try:
            data = payload.get("data", payload) if isinstance(payload, dict) else payload
            used = _first_number(data, "used_credits", "total_usage")
            remaining = data.get("remaining_credits")
            if remaining is None:
                remaining = _first_number(data, "total_credits") - used
            # Overdrawn accounts report negative remaining credits
            return used, max(float(remaining), 0.0)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise self.shape_error("credits", e) from e

    async def _key_info(self, credential: str) -> Dict[str, Any]:
        payload = await self.get_json(KEY_PATH, credential)
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
            raise self.shape_error("key", TypeError("missing 'data' object"))
        return payload["data"]


def _first_number(data: Dict[str, Any], *keys: str) -> float:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return float(value)
    raise KeyError(keys[0])


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)
