"""
Polling scheduler.

Runs one tick per interval: every enabled provider is polled in turn, its
metrics persisted and its budgets and alerts evaluated. A failing provider
never stops the others or the loop.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

import httpx

from ai_usage_monitor.credentials import CredentialResolver
from ai_usage_monitor.errors import CredentialMissing, ProviderFailure, StoreFailure, TransientProviderFailure
from ai_usage_monitor.providers import ProviderAdapter, get_adapter
from ai_usage_monitor.storage.models import Provider, UsageEvent
from ai_usage_monitor.storage.repository import MetricsStore
from ai_usage_monitor.utils.time import ensure_utc, start_of_month, utcnow
from .evaluator import (
    EVENT_POLL_FAILED,
    EVENT_POLL_SUCCEEDED,
    FAILURE_CREDENTIAL,
    FAILURE_PERMANENT,
    FAILURE_STORE,
    FAILURE_TRANSIENT,
    FAILURE_UNEXPECTED,
    EvaluationReport,
    UsageEvaluator,
)

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 60.0
DEFAULT_REQUEST_TIMEOUT = 15.0

AdapterFactory = Callable[[Provider, httpx.AsyncClient], ProviderAdapter]


@dataclass
class TickReport:
    """Result of one polling cycle."""
    started_at: datetime
    polled: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    inserted: Dict[str, int] = field(default_factory=dict)
    evaluations: Dict[str, EvaluationReport] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


def classify_failure(error: Exception) -> str:
    if isinstance(error, CredentialMissing):
        return FAILURE_CREDENTIAL
    if isinstance(error, ProviderFailure):
        return FAILURE_TRANSIENT if error.transient else FAILURE_PERMANENT
    if isinstance(error, StoreFailure):
        return FAILURE_STORE
    return FAILURE_UNEXPECTED


class PollingScheduler:
    """Periodically polls every enabled provider.

    The enabled providers are re-read from the store on every tick, so
    providers added or disabled while running are picked up on the next one.
    """

    def __init__(
        self,
        store: MetricsStore,
        credentials: CredentialResolver,
        evaluator: UsageEvaluator,
        client: httpx.AsyncClient,
        interval: float = DEFAULT_INTERVAL,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        poll_immediately: bool = False,
        adapter_factory: AdapterFactory = get_adapter,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        if request_timeout <= 0:
            raise ValueError("request_timeout must be positive")

        self.store = store
        self.credentials = credentials
        self.evaluator = evaluator
        self.client = client
        self.interval = interval
        self.request_timeout = request_timeout
        self.poll_immediately = poll_immediately
        self.adapter_factory = adapter_factory

        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        """Poll every enabled provider once.

        Args:
            now: Reference time for windows and evaluation (defaults to current UTC time)

        Returns:
            TickReport listing polled providers and per-provider failures

        Raises:
            StoreFailure: If the provider list itself cannot be read
        """
        now = ensure_utc(now or utcnow())
        report = TickReport(started_at=now)
        providers = await self.store.list_providers(enabled_only=True)
        logger.debug("Tick %d: polling %d provider(s)", self.ticks + 1, len(providers))

        for provider in providers:
            try:
                inserted, evaluation = await self.poll_provider(provider, now)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._record_failure(provider, e, report)
                continue

            report.polled.append(provider.id)
            report.inserted[provider.id] = inserted
            report.evaluations[provider.id] = evaluation

        self.ticks += 1
        return report

    async def poll_provider(self, provider: Provider, now: datetime):
        """Fetch, persist and evaluate one provider.

        Returns:
            Tuple of (rows inserted, EvaluationReport)
        """
        credential = self.credentials.get(provider.credential_key)
        adapter = self.adapter_factory(provider, self.client)

        usage = await self._bounded(provider, adapter.get_current_usage(credential, now))
        logger.info(
            "%s: today %d tokens / $%.4f, month %d tokens / $%.4f, balance=%s credits=%s",
            provider.id, usage.today_tokens, usage.today_cost, usage.mtd_tokens, usage.mtd_cost,
            usage.balance, usage.credits
        )

        metrics = await self._bounded(provider, adapter.fetch_usage(credential, start_of_month(now), now))
        inserted = await self.store.insert_metrics(metrics)
        logger.debug("%s: %d metric(s) fetched, %d row(s) written", provider.id, len(metrics), inserted)

        evaluation = await self.evaluator.evaluate_provider(provider, now)

        await self.store.record_event(UsageEvent(
            provider_id=provider.id,
            kind=EVENT_POLL_SUCCEEDED,
            timestamp=now,
            payload={"metrics": len(metrics), "inserted": inserted},
        ))
        return inserted, evaluation

    async def _bounded(self, provider: Provider, call):
        try:
            return await asyncio.wait_for(call, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise TransientProviderFailure(
                provider.id, f"no response within {self.request_timeout:g}s"
            ) from e

    async def _record_failure(self, provider: Provider, error: Exception, report: TickReport) -> None:
        failure = classify_failure(error)
        report.failures[provider.id] = str(error)

        if failure == FAILURE_TRANSIENT:
            logger.warning("Polling %s failed, retrying next tick: %s", provider.id, error)
        elif failure == FAILURE_UNEXPECTED:
            logger.exception("Unexpected error while polling %s", provider.id)
        else:
            logger.error("Polling %s failed (%s): %s", provider.id, failure, error)

        payload = {"failure": failure, "message": str(error)}
        status_code = getattr(error, "status_code", None)
        if status_code is not None:
            payload["status_code"] = status_code

        try:
            await self.store.record_event(UsageEvent(
                provider_id=provider.id,
                kind=EVENT_POLL_FAILED,
                timestamp=report.started_at,
                payload=payload,
            ))
        except StoreFailure as e:
            logger.error("Could not record poll failure for %s: %s", provider.id, e)

    async def run(self) -> None:
        """Tick every ``interval`` seconds until ``stop`` is called."""
        logger.info(
            "Scheduler started: interval=%gs, request timeout=%gs",
            self.interval, self.request_timeout
        )
        first = True
        while not self._stop_event.is_set():
            if not (first and self.poll_immediately):
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                    break
                except asyncio.TimeoutError:
                    pass
            first = False

            try:
                report = await self.tick()
            except StoreFailure as e:
                logger.error("Tick skipped, provider list unavailable: %s", e)
                continue
            except Exception:
                logger.exception("Tick failed, polling continues")
                continue

            if report.failures:
                logger.info(
                    "Tick %d done: %d polled, %d failed",
                    self.ticks, len(report.polled), len(report.failures)
                )
        logger.info("Scheduler stopped after %d tick(s)", self.ticks)

    def start(self) -> asyncio.Task:
        """Spawn the polling loop as a background task."""
        if self.running:
            raise RuntimeError("Scheduler is already running")
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name="ai-usage-monitor-scheduler")
        return self._task

    async def stop(self, timeout: float = DEFAULT_REQUEST_TIMEOUT) -> None:
        """Stop scheduling new ticks and wait for the in-flight one.

        The running tick gets ``timeout`` seconds to finish before it is
        cancelled.
        """
        self._stop_event.set()
        task = self._task
        if task is None or task.done():
            return

        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("In-flight tick did not finish within %gs, cancelling", timeout)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
