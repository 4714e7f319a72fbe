from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Coroutine
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from common.utils import log_event, now_utc_iso
from fastapi.concurrency import run_in_threadpool

from jobintel.config import Settings
from jobintel.errors import StoreUnavailable
from jobintel.models import (
    CanonicalJob,
    IngestResult,
    PipelineResult,
    SourceConfig,
    SourceRunSummary,
    SourceTestResponse,
)
from jobintel.normalizer import normalize
from jobintel.registry import SourceRegistry
from jobintel.repository import JobRepository
from jobintel.workers import build_http_client, build_worker

LOGGER = logging.getLogger("jobintel.pipeline")

MAX_SYNC_ERROR_CHARS = 2000
TEST_SAMPLE_SIZE = 5


class JobPipeline:
    """Fans out enabled sources, normalizes their postings and upserts them in fetch order."""

    def __init__(
        self,
        repository: JobRepository,
        settings: Settings,
        *,
        registry: SourceRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.registry = registry or SourceRegistry(repository)
        self.transport = transport

    async def run_pipeline(self, run_id: str | None = None) -> PipelineResult:
        run_id = run_id or str(uuid.uuid4())
        started_at = now_utc_iso()
        started = time.monotonic()
        try:
            sources = await run_in_threadpool(self.registry.list_sources, enabled_only=True)
        except StoreUnavailable as exc:
            return self._failed(run_id, started_at, started, exc, [])
        return await self._execute(sources, run_id, started_at, started, expire_stale=True)

    async def run_source(self, source_key: str, run_id: str | None = None) -> PipelineResult:
        run_id = run_id or str(uuid.uuid4())
        started_at = now_utc_iso()
        started = time.monotonic()
        source = await run_in_threadpool(self.registry.get_source, source_key)
        return await self._execute([source], run_id, started_at, started, expire_stale=False)

    async def test_source(self, source_key: str) -> SourceTestResponse:
        """Fetch and normalize one source without touching stored jobs."""
        source = await run_in_threadpool(self.registry.get_source, source_key)
        async with build_http_client(self.settings, self.transport) as client:
            worker = build_worker(source, client, settings=self.settings)
            ingest = await self._ingest_with_timeout(
                worker.ingest(),
                self.settings.source_timeout_seconds,
            )

        samples: list[CanonicalJob] = []
        skipped = 0
        for raw in ingest.raw_jobs:
            job = normalize(raw, source.source_key)
            if job is None:
                skipped += 1
            elif len(samples) < TEST_SAMPLE_SIZE:
                samples.append(job)
        return SourceTestResponse(
            source_key=source.source_key,
            success=ingest.success,
            jobs_fetched=ingest.jobs_fetched,
            jobs_skipped=skipped,
            errors=ingest.errors,
            duration_ms=ingest.duration_ms,
            sample_jobs=samples,
        )

    async def _execute(
        self,
        sources: list[SourceConfig],
        run_id: str,
        started_at: str,
        started: float,
        *,
        expire_stale: bool,
    ) -> PipelineResult:
        deadline = (
            started
            + self.settings.pipeline_deadline_seconds
            - self.settings.deadline_margin_seconds
        )
        log_event(
            LOGGER,
            "pipeline_started",
            run_id=run_id,
            sources=[source.source_key for source in sources],
        )

        semaphore = asyncio.Semaphore(self.settings.max_concurrent_sources)
        async with build_http_client(self.settings, self.transport) as client:
            outcomes = await asyncio.gather(
                *(
                    self._run_one(source, client, semaphore, deadline, run_id)
                    for source in sources
                ),
                return_exceptions=True,
            )

        summaries: list[SourceRunSummary] = []
        store_error: BaseException | None = None
        for source, outcome in zip(sources, outcomes, strict=True):
            if isinstance(outcome, StoreUnavailable):
                store_error = store_error or outcome
                continue
            if isinstance(outcome, BaseException):
                # Unexpected worker bugs fail the source, not the run.
                log_event(
                    LOGGER,
                    "source_crashed",
                    level=logging.ERROR,
                    run_id=run_id,
                    source_key=source.source_key,
                    error=repr(outcome),
                )
                summary = SourceRunSummary(
                    source_key=source.source_key,
                    source_type=source.source_type,
                    status="failed",
                    errors=[f"Fatal: {outcome!r}"],
                )
                await self._record_outcome(summary, run_id)
                summaries.append(summary)
                continue
            summaries.append(outcome)

        if store_error is not None:
            return self._failed(run_id, started_at, started, store_error, summaries)

        jobs_expired = 0
        any_success = any(summary.status == "success" for summary in summaries)
        if expire_stale and any_success and self.settings.job_expire_days > 0:
            cutoff = datetime.now(UTC) - timedelta(days=self.settings.job_expire_days)
            try:
                jobs_expired = await run_in_threadpool(
                    self.repository.mark_stale_jobs,
                    cutoff.isoformat(),
                )
            except StoreUnavailable as exc:
                return self._failed(run_id, started_at, started, exc, summaries)

        errors: list[str] = []
        for summary in summaries:
            if summary.status == "success":
                errors.extend(f"{summary.source_key}: {error}" for error in summary.errors)
            else:
                errors.append(f"{summary.source_key}: {'; '.join(summary.errors)}")

        result = PipelineResult(
            success=not summaries or any_success,
            run_id=run_id,
            status="completed_with_errors" if errors else "completed",
            started_at=started_at,
            finished_at=now_utc_iso(),
            jobs_fetched=sum(summary.jobs_fetched for summary in summaries),
            jobs_normalized=sum(summary.jobs_normalized for summary in summaries),
            jobs_skipped=sum(summary.jobs_skipped for summary in summaries),
            jobs_created=sum(summary.jobs_created for summary in summaries),
            jobs_deduplicated=sum(summary.jobs_deduplicated for summary in summaries),
            jobs_expired=jobs_expired,
            duration_ms=int((time.monotonic() - started) * 1000),
            errors=errors,
            sources=summaries,
        )
        await self._record_run(result)
        log_event(
            LOGGER,
            "pipeline_finished",
            run_id=run_id,
            status=result.status,
            success=result.success,
            **result.stats().model_dump(),
            errors=len(errors),
        )
        return result

    async def _run_one(
        self,
        source: SourceConfig,
        client: httpx.AsyncClient,
        semaphore: asyncio.Semaphore,
        deadline: float,
        run_id: str,
    ) -> SourceRunSummary:
        async with semaphore:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                log_event(
                    LOGGER,
                    "source_skipped",
                    level=logging.WARNING,
                    run_id=run_id,
                    source_key=source.source_key,
                    reason="deadline",
                )
                return SourceRunSummary(
                    source_key=source.source_key,
                    source_type=source.source_type,
                    status="skipped",
                    errors=["skipped: run deadline reached before dispatch"],
                )
            worker = build_worker(source, client, settings=self.settings, run_id=run_id)
            ingest = await self._ingest_with_timeout(
                worker.ingest(),
                min(self.settings.source_timeout_seconds, remaining),
            )

        summary = await run_in_threadpool(self._store_postings, source, ingest, run_id)
        await self._record_outcome(summary, run_id)
        return summary

    async def _ingest_with_timeout(
        self,
        ingest: Coroutine[Any, Any, IngestResult],
        timeout: float,
    ) -> IngestResult:
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(ingest, timeout=timeout)
        except TimeoutError:
            return IngestResult(
                success=False,
                jobs_fetched=0,
                errors=[f"Fatal: timed out after {timeout:.1f}s"],
                duration_ms=int((time.perf_counter() - started) * 1000),
            )

    def _store_postings(
        self,
        source: SourceConfig,
        ingest: IngestResult,
        run_id: str,
    ) -> SourceRunSummary:
        summary = SourceRunSummary(
            source_key=source.source_key,
            source_type=source.source_type,
            status="success" if ingest.success else "failed",
            jobs_fetched=ingest.jobs_fetched,
            duration_ms=ingest.duration_ms,
            errors=list(ingest.errors),
        )
        # Partial postings of a failed source are still kept.
        posting_errors = 0
        for position, raw in enumerate(ingest.raw_jobs, start=1):
            try:
                job = normalize(raw, source.source_key)
                if job is None:
                    summary.jobs_skipped += 1
                    continue
                summary.jobs_normalized += 1
                outcome = self.repository.upsert_job(job)
            except StoreUnavailable:
                raise
            except Exception as exc:
                posting_errors += 1
                summary.errors.append(f"item {position}: {exc!r}")
                log_event(
                    LOGGER,
                    "posting_failed",
                    level=logging.WARNING,
                    run_id=run_id,
                    source_key=source.source_key,
                    position=position,
                    source_job_id=raw.source_job_id,
                    error=repr(exc),
                )
                continue
            if outcome.created:
                summary.jobs_created += 1
            else:
                summary.jobs_deduplicated += 1

        stored = summary.jobs_created + summary.jobs_deduplicated
        if posting_errors and not stored:
            summary.status = "failed"

        log_event(
            LOGGER,
            "source_processed",
            run_id=run_id,
            source_key=source.source_key,
            status=summary.status,
            jobs_fetched=summary.jobs_fetched,
            jobs_normalized=summary.jobs_normalized,
            jobs_skipped=summary.jobs_skipped,
            jobs_created=summary.jobs_created,
            jobs_deduplicated=summary.jobs_deduplicated,
        )
        return summary

    async def _record_outcome(self, summary: SourceRunSummary, run_id: str) -> None:
        error = "; ".join(summary.errors)[:MAX_SYNC_ERROR_CHARS] or None
        await run_in_threadpool(
            self.registry.record_sync_outcome,
            summary.source_key,
            summary.status,
            summary.jobs_fetched,
            error,
            run_id=run_id,
        )

    async def _record_run(self, result: PipelineResult) -> None:
        try:
            await run_in_threadpool(self.repository.record_pipeline_run, result)
        except StoreUnavailable as exc:
            log_event(
                LOGGER,
                "pipeline_run_not_recorded",
                level=logging.ERROR,
                run_id=result.run_id,
                error=str(exc),
            )

    def _failed(
        self,
        run_id: str,
        started_at: str,
        started: float,
        exc: BaseException,
        summaries: list[SourceRunSummary],
    ) -> PipelineResult:
        log_event(
            LOGGER,
            "pipeline_failed",
            level=logging.ERROR,
            run_id=run_id,
            error=str(exc),
        )
        return PipelineResult(
            success=False,
            run_id=run_id,
            status="failed",
            started_at=started_at,
            finished_at=now_utc_iso(),
            jobs_fetched=sum(summary.jobs_fetched for summary in summaries),
            jobs_normalized=sum(summary.jobs_normalized for summary in summaries),
            jobs_skipped=sum(summary.jobs_skipped for summary in summaries),
            jobs_created=sum(summary.jobs_created for summary in summaries),
            jobs_deduplicated=sum(summary.jobs_deduplicated for summary in summaries),
            duration_ms=int((time.monotonic() - started) * 1000),
            errors=[f"Store unavailable: {exc}"],
            sources=summaries,
        )
