"""
Base provider adapter.

Every adapter translates one vendor's usage API into canonical Metrics and
classifies failures as transient (retry next tick) or permanent (needs
attention).
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import httpx

from ai_usage_monitor.core.aggregation import summarize_usage
from ai_usage_monitor.errors import PermanentProviderFailure, TransientProviderFailure
from ai_usage_monitor.storage.models import Metric, MetricKind, Provider, ProviderKind, ProviderUsage
from ai_usage_monitor.utils.time import ensure_utc, parse_timestamp, start_of_month, utcnow

logger = logging.getLogger(__name__)


class ProviderAdapter(ABC):
    """Abstract base class for provider usage integrations.

    An adapter is bound to one registered Provider and shares the caller's
    HTTP client. It never owns or closes the client.
    """

    kind: ProviderKind
    default_base_url: str

    def __init__(self, provider: Provider, client: httpx.AsyncClient, base_url: Optional[str] = None):
        if provider.kind != self.kind:
            raise ValueError(
                f"{type(self).__name__} cannot serve provider '{provider.id}' of kind {provider.kind.value}"
            )
        self.provider = provider
        self.client = client
        self.base_url = (base_url or self.default_base_url).rstrip("/")

    @abstractmethod
    def auth_headers(self, credential: str) -> Dict[str, str]:
        """Headers presenting ``credential`` to the vendor."""
        ...

    @abstractmethod
    async def fetch_usage(self, credential: str, start: datetime, end: datetime) -> List[Metric]:
        """Fetch canonical metrics for the half-open window ``[start, end)``.

        Raises:
            TransientProviderFailure: Network error, timeout, 429 or 5xx
            PermanentProviderFailure: Other 4xx or unexpected payload shape
        """
        ...

    async def fetch_balance(self, credential: str) -> Optional[float]:
        """Remaining spendable balance. None when the vendor has no balance."""
        return None

    async def get_current_usage(self, credential: str, now: Optional[datetime] = None) -> ProviderUsage:
        """Month-to-date usage snapshot computed from ``fetch_usage``."""
        now = ensure_utc(now or utcnow())
        metrics = await self.fetch_usage(credential, start_of_month(now), now)
        balance = await self.fetch_balance(credential)
        return summarize_usage(self.provider, metrics, now, balance=balance)

    async def get_json(self, path: str, credential: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """GET ``path`` and decode the JSON body, classifying failures."""
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.get(url, headers=self.auth_headers(credential), params=params)
        except httpx.TimeoutException as e:
            raise TransientProviderFailure(self.provider.id, f"request to {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientProviderFailure(self.provider.id, f"network error on {path}: {e}") from e
        except httpx.HTTPError as e:
            raise PermanentProviderFailure(self.provider.id, f"request to {path} failed: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientProviderFailure(
                self.provider.id, f"{path} returned HTTP {status}", status_code=status
            )
        if not 200 <= status < 300:
            raise PermanentProviderFailure(
                self.provider.id, f"{path} returned HTTP {status}", status_code=status
            )

        try:
            return response.json()
        except ValueError as e:
            raise PermanentProviderFailure(self.provider.id, f"{path} returned invalid JSON") from e

    def shape_error(self, what: str, error: Exception) -> PermanentProviderFailure:
        return PermanentProviderFailure(self.provider.id, f"unexpected {what} payload: {error!r}")

    def event_time(self, raw: Any) -> datetime:
        """Vendor event time, or the ingestion time when it cannot be parsed."""
        parsed = parse_timestamp(raw)
        if parsed is None:
            logger.warning(
                "Provider %s reported unparseable timestamp %r, using ingestion time",
                self.provider.id, raw
            )
            return utcnow()
        return parsed

    def metric(
        self,
        kind: MetricKind,
        value: Any,
        unit: str,
        timestamp: datetime,
        dimensions: Optional[Dict[str, str]] = None,
    ) -> Metric:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"{kind.value} value must be numeric, got {value!r}")
        return Metric(
            provider_id=self.provider.id,
            kind=kind,
            value=float(value),
            unit=unit,
            timestamp=timestamp,
            dimensions=dict(dimensions or {}),
        )

    def token_metrics(
        self,
        item: Mapping[str, Any],
        input_key: str,
        output_key: str,
        cached_key: str,
        timestamp: datetime,
        dimensions: Dict[str, str],
    ) -> List[Metric]:
        """Expand one usage record into TokensIn, TokensOut and optional TokensCached."""
        metrics = [
            self.metric(MetricKind.TOKENS_IN, item[input_key], "tokens", timestamp, dimensions),
            self.metric(MetricKind.TOKENS_OUT, item[output_key], "tokens", timestamp, dimensions),
        ]
        cached = item.get(cached_key)
        if cached is not None:
            metrics.append(self.metric(MetricKind.TOKENS_CACHED, cached, "tokens", timestamp, dimensions))
        return metrics
