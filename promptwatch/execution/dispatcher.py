"""Dispatcher: runs every (prompt, provider) job of a trigger in a rolling window.

    run_all(business_id)             all prompts x all active providers
    run_single(business_id, prompt)  one prompt x all active providers

At most ``concurrency`` jobs are in flight per call. When the window is full
the dispatcher waits for the first job to finish before admitting the next,
then drains the rest. An optional process-wide semaphore caps jobs across
concurrent calls.

Per job:
  1. create the pending record (same-day policy in ExecutionStore.begin_execution)
  2. re-check the prompt still exists
  3. mark running, publish "started"
  4. call the provider
  5. extract mentions with the primary provider
  6. score visibility
  7. re-check the prompt and persist everything with "completed"
  8. publish the terminal event

Job failures are written to the record and never leave the job. A
PersistenceError aborts the run: no new jobs are admitted, in-flight jobs
finish, and the error is re-raised.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import nullcontext
from datetime import date, datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

from promptwatch.analysis.extraction import ExtractionEngine
from promptwatch.analysis.scoring import compute_visibility
from promptwatch.analysis.types import ExtractionResult, VisibilityMetrics
from promptwatch.core.config import settings
from promptwatch.core.metrics import EXECUTION_RUNS, PROMPT_EXECUTIONS
from promptwatch.execution.broadcaster import UpdateBroker
from promptwatch.execution.errors import PersistenceError, ValidationError
from promptwatch.execution.store import EXECUTION_TIMED_OUT, PROMPT_REMOVED, ExecutionStore
from promptwatch.execution.types import (
    BusinessContext,
    ExecutionJob,
    JobOutcome,
    PromptSnapshot,
    ReanalysisSummary,
    RunSummary,
)
from promptwatch.models.execution import ExecutionRecord, ExecutionStatus
from promptwatch.providers.adapters import BaseProviderAdapter, build_adapter
from promptwatch.providers.types import ProviderSettings
from promptwatch.schemas.execution import ExecutionEvent

logger = logging.getLogger(__name__)

ANALYSIS_FAILED = "analysis failed"

AdapterFactory = Callable[..., BaseProviderAdapter]


def refresh_date_for(moment: datetime, tz_name: str = "UTC") -> date:
    """Calendar day a trigger started on, in the configured time zone."""
    return moment.astimezone(ZoneInfo(tz_name)).date()


def derived_fields(extraction: ExtractionResult, metrics: VisibilityMetrics) -> dict[str, Any]:
    """Columns written together with ``completed`` (and by reanalysis)."""
    return {
        "brand_mentions": extraction.brand_mentions,
        "brand_rank": metrics.brand_rank,
        "competitors_mentioned": extraction.competitors_mentioned,
        "mention_analysis": extraction.mention_analysis,
        "sources": extraction.sources,
        "analysis_confidence": extraction.confidence,
        "business_visibility": metrics.business_visibility,
        "share_of_voice": metrics.share_of_voice,
        "competitor_share_of_voice": metrics.competitor_share_of_voice,
        "competitor_visibilities": metrics.competitor_visibilities,
    }


def global_semaphore_from_settings() -> asyncio.Semaphore | None:
    if settings.execution_global_concurrency:
        return asyncio.Semaphore(settings.execution_global_concurrency)
    return None


class Dispatcher:
    def __init__(
        self,
        store: ExecutionStore,
        broker: UpdateBroker,
        *,
        concurrency: int | None = None,
        global_semaphore: asyncio.Semaphore | None = None,
        adapter_factory: AdapterFactory = build_adapter,
        provider_timeout: float | None = None,
        analysis_timeout: float | None = None,
        analysis_retry_delay: float = 1.0,
    ):
        self.store = store
        self.broker = broker
        self.concurrency = max(1, concurrency or settings.execution_concurrency)
        self.global_semaphore = global_semaphore
        self.adapter_factory = adapter_factory
        self.provider_timeout = provider_timeout or settings.provider_timeout_seconds
        self.analysis_timeout = analysis_timeout or settings.analysis_timeout_seconds
        self.analysis_retry_delay = analysis_retry_delay

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def run_all(self, business_id: int, force: bool = False, trigger: str = "manual") -> RunSummary:
        """Run every prompt of the business against every active provider.

        Raises:
            ValidationError: the business does not exist.
            PersistenceError: the store failed; the run was aborted.
        """
        context = await self._load(business_id, trigger)
        return await self._run(context, context.prompts, force, trigger)

    async def run_single(
        self, business_id: int, prompt_id: int, force: bool = False, trigger: str = "manual"
    ) -> RunSummary:
        """Run one prompt against every active provider.

        Raises:
            ValidationError: the business or the prompt does not exist.
            PersistenceError: the store failed; the run was aborted.
        """
        context = await self._load(business_id, trigger)
        prompts = [p for p in context.prompts if p.id == prompt_id]
        if not prompts:
            raise ValidationError(f"Prompt {prompt_id} not found for business {business_id}")
        return await self._run(context, prompts, force, trigger)

    async def _load(self, business_id: int, trigger: str) -> BusinessContext:
        try:
            return await self.store.load_context(business_id)
        except PersistenceError:
            EXECUTION_RUNS.labels(trigger=trigger, status="error").inc()
            raise

    async def _run(
        self, context: BusinessContext, prompts: list[PromptSnapshot], force: bool, trigger: str
    ) -> RunSummary:
        refresh_date = refresh_date_for(datetime.now(timezone.utc), settings.timezone)
        summary = RunSummary(business_id=context.business_id, refresh_date=refresh_date)

        if not context.providers or not prompts:
            logger.info(
                "Nothing to run for business %d: %d prompt(s), %d active provider(s)",
                context.business_id,
                len(prompts),
                len(context.providers),
            )
            EXECUTION_RUNS.labels(trigger=trigger, status="empty").inc()
            return summary

        # Adapters are resolved once per provider for the whole trigger
        adapters = {p.id: self.adapter_factory(p, timeout=self.provider_timeout) for p in context.providers}
        engine = self._extraction_engine(context.primary_provider)

        jobs = [
            ExecutionJob(business_id=context.business_id, prompt=prompt, provider=provider, refresh_date=refresh_date)
            for prompt in prompts
            for provider in context.providers
        ]
        logger.info(
            "Dispatching %d job(s) for business %d (refresh_date=%s, concurrency=%d, trigger=%s)",
            len(jobs),
            context.business_id,
            refresh_date,
            self.concurrency,
            trigger,
        )

        in_flight: set[asyncio.Task[JobOutcome]] = set()
        try:
            for job in jobs:
                if len(in_flight) >= self.concurrency:
                    done, in_flight = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                    self._collect(done, summary)
                task = asyncio.create_task(self._run_job(job, context, adapters[job.provider.id], engine, force))
                in_flight.add(task)

            if in_flight:
                done, in_flight = await asyncio.wait(in_flight)
                self._collect(done, summary)
        except PersistenceError:
            logger.error("Aborting run for business %d: store unavailable", context.business_id)
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            EXECUTION_RUNS.labels(trigger=trigger, status="error").inc()
            raise
        except asyncio.CancelledError:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            raise

        EXECUTION_RUNS.labels(trigger=trigger, status="success").inc()
        logger.info(
            "Run finished for business %d: %s (completed=%d, failed=%d, skipped=%d)",
            context.business_id,
            summary.message,
            summary.completed,
            summary.failed,
            summary.skipped,
        )
        return summary

    @staticmethod
    def _collect(done: set[asyncio.Task[JobOutcome]], summary: RunSummary) -> None:
        for task in done:
            # re-raises PersistenceError from the job
            summary.outcomes.append(task.result())

    def _extraction_engine(self, primary: ProviderSettings | None) -> ExtractionEngine:
        adapter = self.adapter_factory(primary, timeout=self.analysis_timeout) if primary else None
        return ExtractionEngine(adapter, retry_delay=self.analysis_retry_delay)

    # ------------------------------------------------------------------
    # Job pipeline
    # ------------------------------------------------------------------

    async def _run_job(
        self,
        job: ExecutionJob,
        context: BusinessContext,
        adapter: BaseProviderAdapter,
        engine: ExtractionEngine,
        force: bool,
    ) -> JobOutcome:
        async with self.global_semaphore or nullcontext():
            record_id = await self.store.begin_execution(job, force=force)
            if record_id is None:
                PROMPT_EXECUTIONS.labels(status="skipped").inc()
                return JobOutcome(job.prompt.id, job.provider.id, "skipped")

            try:
                return await self._process(job, context, adapter, engine, record_id)
            except PersistenceError:
                raise
            except Exception as e:
                logger.exception("Job %s crashed", job.label, extra=job.log_context(record_id))
                message = f"unknown: {type(e).__name__}: {e}"
                await self.store.fail(record_id, message)
                return await self._failed(job, record_id, message)

    async def _process(
        self,
        job: ExecutionJob,
        context: BusinessContext,
        adapter: BaseProviderAdapter,
        engine: ExtractionEngine,
        record_id: int,
    ) -> JobOutcome:
        if not await self.store.prompt_exists(job.business_id, job.prompt.id):
            await self.store.fail(record_id, PROMPT_REMOVED)
            return await self._failed(job, record_id, PROMPT_REMOVED)

        if not await self.store.mark_running(record_id):
            # swept while waiting
            logger.warning(
                "Job %s: record %d is no longer pending", job.label, record_id, extra=job.log_context(record_id)
            )
            return await self._failed(job, record_id, EXECUTION_TIMED_OUT, publish=False)
        self._publish(
            job,
            ExecutionEvent(
                status="started",
                prompt_id=job.prompt.id,
                platform_id=job.provider.id,
                execution_id=record_id,
                execution_count=await self.store.count_completed(job.prompt.id, job.provider.id),
            ),
        )

        answer = await adapter.invoke(job.prompt.text, temperature=settings.provider_temperature)
        if answer.error is not None:
            message = str(answer.error)
            logger.warning("Job %s: provider call failed: %s", job.label, message, extra=job.log_context(record_id))
            await self.store.fail(record_id, message)
            return await self._failed(job, record_id, message)

        # Registry read fresh so edits made during the run are honored
        competitors = await self.store.load_competitors(job.business_id)
        extraction = await engine.extract(
            answer.text,
            context.name,
            competitors,
            brand_website=context.website,
            cited_urls=answer.cited_urls,
        )
        provider_fields = {"model_version": answer.model_version or None, "cost_usd": answer.cost_usd}

        if extraction.analysis_failed:
            message = f"{ANALYSIS_FAILED}: {extraction.failure_reason}"
            logger.warning("Job %s: %s", job.label, message, extra=job.log_context(record_id))
            await self.store.fail(record_id, message, result=answer.text, fields=provider_fields)
            return await self._failed(job, record_id, message)

        metrics = compute_visibility(extraction, [c.name for c in competitors])
        fields = {"result": answer.text, **provider_fields, **derived_fields(extraction, metrics)}

        status = await self.store.complete(record_id, job.business_id, job.prompt.id, fields)
        if status is None:
            logger.warning(
                "Job %s: record %d left running state before completion",
                job.label,
                record_id,
                extra=job.log_context(record_id),
            )
            return await self._failed(job, record_id, EXECUTION_TIMED_OUT, publish=False)
        if status == ExecutionStatus.FAILED.value:
            return await self._failed(job, record_id, PROMPT_REMOVED)

        record = await self.store.get(record_id)
        count = await self.store.count_completed(job.prompt.id, job.provider.id)
        PROMPT_EXECUTIONS.labels(status="completed").inc()
        logger.info(
            "Job %s completed: record=%d visibility=%d sov=%.1f latency=%dms",
            job.label,
            record_id,
            metrics.business_visibility,
            metrics.share_of_voice,
            answer.latency_ms,
            extra=job.log_context(record_id),
        )
        self._publish(job, self._completed_event(record, count))
        return JobOutcome(job.prompt.id, job.provider.id, ExecutionStatus.COMPLETED.value, record_id)

    async def _failed(self, job: ExecutionJob, record_id: int, message: str, publish: bool = True) -> JobOutcome:
        PROMPT_EXECUTIONS.labels(status="failed").inc()
        if publish:
            count = await self.store.count_completed(job.prompt.id, job.provider.id)
            self._publish(
                job,
                ExecutionEvent(
                    status="failed",
                    prompt_id=job.prompt.id,
                    platform_id=job.provider.id,
                    execution_id=record_id,
                    execution_count=count,
                    error_message=message,
                ),
            )
        return JobOutcome(job.prompt.id, job.provider.id, ExecutionStatus.FAILED.value, record_id, message)

    @staticmethod
    def _completed_event(record: ExecutionRecord, count: int) -> ExecutionEvent:
        return ExecutionEvent(
            status="completed",
            prompt_id=record.prompt_id,
            platform_id=record.platform_id,
            execution_id=record.id,
            execution_count=count,
            result=record.result,
            completed_at=record.completed_at,
            refresh_date=record.refresh_date,
            brand_mentions=record.brand_mentions,
            competitors_mentioned=record.competitors_mentioned,
            analysis_confidence=record.analysis_confidence,
            business_visibility=record.business_visibility,
            share_of_voice=record.share_of_voice,
            competitor_share_of_voice=record.competitor_share_of_voice,
        )

    def _publish(self, job: ExecutionJob, event: ExecutionEvent) -> None:
        delivered = self.broker.publish(job.business_id, event.to_payload())
        logger.debug("Published %s for %s to %d subscriber(s)", event.status, job.label, delivered)

    # ------------------------------------------------------------------
    # Reanalysis
    # ------------------------------------------------------------------

    async def reanalyze(self, business_id: int, force_all: bool = False) -> ReanalysisSummary:
        """Re-run extraction and scoring over stored completed answers.

        Only the derived fields change. A record whose extraction fails is
        left as it was.
        """
        context = await self.store.load_context(business_id)
        records = await self.store.completed_for_reanalysis(business_id, force_all=force_all)
        summary = ReanalysisSummary(business_id=business_id)

        if context.primary_provider is None:
            logger.warning("Cannot reanalyze business %d: no active provider", business_id)
            summary.skipped = len(records)
            return summary

        engine = self._extraction_engine(context.primary_provider)
        registry = [c.name for c in context.competitors]
        window = asyncio.Semaphore(self.concurrency)

        async def reanalyze_one(record: ExecutionRecord) -> str:
            async with window:
                extraction = await engine.extract(
                    record.result or "",
                    context.name,
                    context.competitors,
                    brand_website=context.website,
                )
                if extraction.analysis_failed:
                    logger.warning("Reanalysis of record %d failed: %s", record.id, extraction.failure_reason)
                    return "failed"
                metrics = compute_visibility(extraction, registry)
                updated = await self.store.update_analysis(record.id, derived_fields(extraction, metrics))
                return "updated" if updated else "skipped"

        for outcome in await asyncio.gather(*(reanalyze_one(r) for r in records)):
            setattr(summary, outcome, getattr(summary, outcome) + 1)

        logger.info(
            "Reanalysis for business %d: updated=%d failed=%d skipped=%d",
            business_id,
            summary.updated,
            summary.failed,
            summary.skipped,
        )
        return summary
