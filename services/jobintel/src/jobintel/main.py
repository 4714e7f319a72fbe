from __future__ import annotations

import hashlib
import json
import logging
import secrets
import threading
import time
import uuid
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import UTC
from typing import Any

import httpx
from common.utils import log_event, now_utc_iso, parse_iso_datetime
from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from jobintel.config import Settings
from jobintel.errors import AuthorizationError, JobIntelError
from jobintel.matcher import profile_update_from_resume, rank_jobs
from jobintel.models import (
    AuditEvent,
    CustomSourceCreateRequest,
    HealthResponse,
    JobDetailResponse,
    JobListResponse,
    JobProfileUpsertRequest,
    JobSighting,
    MatchesResponse,
    MetricsSnapshot,
    PipelineResult,
    PipelineRunRecord,
    PipelineTriggerResponse,
    RemoteType,
    ResumeParseRequest,
    SourceConfig,
    SourceHealth,
    SourceSyncHistoryItem,
    SourceTestResponse,
    SourceUpdateRequest,
    SyncStatus,
    UserJobProfile,
)
from jobintel.pipeline import JobPipeline
from jobintel.registry import SourceRegistry
from jobintel.repository import JobRepository

LOGGER = logging.getLogger("jobintel.api")
MATCH_CANDIDATE_LIMIT = 500

IdentityProvider = Callable[[Request], str | None]


def build_auth_subject(token: str) -> str:
    token_digest = hashlib.sha1(token.encode()).hexdigest()[:12]
    return f"token:{token_digest}"


def normalize_scopes(scopes: list[str] | set[str]) -> list[str]:
    return sorted({scope.strip() for scope in scopes if scope.strip()})


def header_identity(request: Request) -> str | None:
    """Trust the user id forwarded by the upstream gateway."""
    user_id = request.headers.get("x-user-id", "").strip()
    return user_id or None


def to_trigger_response(result: PipelineResult) -> PipelineTriggerResponse:
    return PipelineTriggerResponse(
        success=result.success,
        run_id=result.run_id,
        status=result.status,
        stats=result.stats(),
        errors=result.errors,
        sources=result.sources,
        timestamp=result.finished_at or now_utc_iso(),
    )


class MetricsStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {"requests": 0, "errors": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}

    def observe(self, *, method: str, path: str, status_code: int, duration_ms: float) -> None:
        key = f"{method} {path}"
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            endpoint = self._endpoints.setdefault(
                key,
                {
                    "count": 0,
                    "2xx": 0,
                    "4xx": 0,
                    "5xx": 0,
                    "latency_ms_sum": 0.0,
                    "latency_ms_avg": 0.0,
                },
            )
            endpoint["count"] = int(endpoint["count"]) + 1
            if bucket in ("2xx", "4xx", "5xx"):
                endpoint[bucket] = int(endpoint[bucket]) + 1
            endpoint["latency_ms_sum"] = float(endpoint["latency_ms_sum"]) + duration_ms
            endpoint["latency_ms_avg"] = (
                float(endpoint["latency_ms_sum"]) / int(endpoint["count"])
            )

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints={key: dict(value) for key, value in self._endpoints.items()},
            )


def resolve_settings(
    settings: Settings | None,
    *,
    database_path: str | None,
    api_key: str | None,
    api_tokens: dict[str, list[str] | set[str]] | None,
    cron_secret: str | None,
    seed_builtin_sources: bool | None,
) -> Settings:
    resolved = settings or Settings.from_env()
    overrides: dict[str, Any] = {}
    if database_path:
        overrides["database_path"] = database_path

    token_map = {token: set(scopes) for token, scopes in resolved.api_tokens.items()}
    if api_tokens is not None:
        token_map = {
            token: set(
                normalize_scopes(
                    {str(scope).strip() for scope in scopes if str(scope).strip()}
                )
            )
            for token, scopes in api_tokens.items()
            if token.strip()
        }
    resolved_api_key = (api_key or "").strip()
    if resolved_api_key:
        token_map.setdefault(resolved_api_key, set()).add("*")
    overrides["api_tokens"] = token_map

    if cron_secret is not None:
        overrides["cron_secret"] = cron_secret.strip() or None
    if seed_builtin_sources is not None:
        overrides["seed_builtin_sources"] = seed_builtin_sources
    return resolved.model_copy(update=overrides)


def create_app(
    *,
    database_path: str | None = None,
    api_key: str | None = None,
    api_tokens: dict[str, list[str] | set[str]] | None = None,
    cron_secret: str | None = None,
    settings: Settings | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
    identity_provider: IdentityProvider | None = None,
    seed_builtin_sources: bool | None = None,
) -> FastAPI:
    resolved_settings = resolve_settings(
        settings,
        database_path=database_path,
        api_key=api_key,
        api_tokens=api_tokens,
        cron_secret=cron_secret,
        seed_builtin_sources=seed_builtin_sources,
    )
    repository = JobRepository(database_path=resolved_settings.database_path)
    registry = SourceRegistry(repository)
    pipeline = JobPipeline(
        repository,
        resolved_settings,
        registry=registry,
        transport=http_transport,
    )
    resolve_identity = identity_provider or header_identity

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        if resolved_settings.seed_builtin_sources:
            await run_in_threadpool(registry.seed_builtin_sources)
        app.state.repository = repository
        app.state.registry = registry
        app.state.pipeline = pipeline
        app.state.settings = resolved_settings
        app.state.auth_token_scopes = resolved_settings.api_tokens
        app.state.metrics = MetricsStore()
        try:
            yield
        finally:
            await run_in_threadpool(repository.close)

    app = FastAPI(title="JobIntel", version="0.1.0", lifespan=lifespan)

    async def write_audit_event(
        request: Request,
        *,
        action: str,
        scope: str | None,
        status: str,
        message: str | None = None,
        auth_subject: str | None = None,
    ) -> int:
        request_id = getattr(request.state, "request_id", None)
        source_ip = request.client.host if request.client else None
        user_agent = request.headers.get("user-agent")
        return await run_in_threadpool(
            request.app.state.repository.record_audit_event,
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            action=action,
            scope=scope,
            source_ip=source_ip,
            user_agent=user_agent,
            auth_subject=auth_subject,
            status=status,
            message=message,
        )

    @app.exception_handler(JobIntelError)
    async def jobintel_error_handler(request: Request, exc: JobIntelError) -> JSONResponse:
        log_event(
            LOGGER,
            "request_failed",
            level=logging.WARNING if exc.status_code < 500 else logging.ERROR,
            request_id=getattr(request.state, "request_id", None),
            path=request.url.path,
            status_code=exc.status_code,
            error=exc.message,
        )
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            request.app.state.metrics.observe(
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=duration_ms,
            )
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "request_complete",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "duration_ms": round(duration_ms, 3),
                        "error": str(exc),
                    }
                )
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        request.app.state.metrics.observe(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers["x-request-id"] = request_id
        log_event(
            LOGGER,
            "request_complete",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 3),
            source_ip=request.client.host if request.client else None,
        )
        return response

    async def require_scope(
        request: Request,
        *,
        action: str,
        scope: str,
        allow_cron: bool = False,
    ) -> str | None:
        current: Settings = request.app.state.settings
        if not current.auth_configured:
            return None

        if allow_cron and current.cron_secret:
            scheme, _, credential = request.headers.get("authorization", "").partition(" ")
            if scheme.lower() == "bearer" and secrets.compare_digest(
                credential.strip(),
                current.cron_secret,
            ):
                return "cron"

        token_map: dict[str, set[str]] = request.app.state.auth_token_scopes
        provided = request.headers.get("x-api-key", "")
        if not provided:
            await write_audit_event(
                request,
                action=action,
                scope=scope,
                status="unauthorized",
                message="missing api key",
            )
            raise HTTPException(status_code=401, detail="Unauthorized")

        scopes = token_map.get(provided)
        if scopes is None:
            await write_audit_event(
                request,
                action=action,
                scope=scope,
                status="unauthorized",
                message="invalid api key",
            )
            raise HTTPException(status_code=401, detail="Unauthorized")

        auth_subject = build_auth_subject(provided)
        if "*" not in scopes and scope not in scopes:
            await write_audit_event(
                request,
                action=action,
                scope=scope,
                status="forbidden",
                message="missing required scope",
                auth_subject=auth_subject,
            )
            raise HTTPException(status_code=403, detail="Forbidden")
        return auth_subject

    def require_user(request: Request) -> str:
        user_id = resolve_identity(request)
        if not user_id:
            raise AuthorizationError("An identified caller is required")
        return user_id

    async def trigger_pipeline(request: Request, response: Response, *, action: str):
        auth_subject = await require_scope(
            request,
            action=action,
            scope="pipeline:run",
            allow_cron=True,
        )
        result = await request.app.state.pipeline.run_pipeline()
        payload = to_trigger_response(result)
        if result.status == "failed":
            # The audit log lives in the same store, so nothing can be written here.
            return JSONResponse(status_code=500, content=payload.model_dump())
        event_id = await write_audit_event(
            request,
            action=action,
            scope="pipeline:run",
            status="ok" if result.success else "error",
            message=(
                f"run_id={result.run_id}; status={result.status}; "
                f"created={result.jobs_created}; deduplicated={result.jobs_deduplicated}"
            ),
            auth_subject=auth_subject,
        )
        response.headers["x-audit-event-id"] = str(event_id)
        return payload

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request) -> HealthResponse:
        repo: JobRepository = request.app.state.repository
        sources = await run_in_threadpool(request.app.state.registry.list_sources)
        counts = await run_in_threadpool(repo.active_job_counts_by_source)
        job_count = await run_in_threadpool(repo.count_active_jobs)
        last_sync_time = await run_in_threadpool(repo.last_sync_time)
        return HealthResponse(
            status="ok",
            service="jobintel",
            last_sync_time=last_sync_time,
            job_count=job_count,
            by_source=[
                SourceHealth(
                    source_key=source.source_key,
                    name=source.name,
                    source_type=source.source_type,
                    enabled=source.enabled,
                    last_sync_at=source.last_sync_at,
                    last_sync_status=source.last_sync_status,
                    last_sync_jobs_count=source.last_sync_jobs_count,
                    last_error=source.last_error,
                    active_jobs=counts.get(source.source_key, 0),
                )
                for source in sources
            ],
        )

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    @app.post("/pipeline/run", response_model=PipelineTriggerResponse)
    async def run_pipeline(request: Request, response: Response):
        return await trigger_pipeline(request, response, action="pipeline_run")

    @app.get("/cron/job-ingestion", response_model=PipelineTriggerResponse)
    async def cron_job_ingestion(request: Request, response: Response):
        return await trigger_pipeline(request, response, action="pipeline_cron")

    @app.get("/pipeline/runs", response_model=list[PipelineRunRecord])
    async def list_pipeline_runs(
        request: Request,
        limit: int = Query(default=20, ge=1, le=200),
        offset: int = Query(default=0, ge=0, le=10000),
    ) -> list[PipelineRunRecord]:
        await require_scope(request, action="pipeline_runs_list", scope="pipeline:read")
        return await run_in_threadpool(
            request.app.state.repository.list_pipeline_runs,
            limit=limit,
            offset=offset,
        )

    @app.get("/jobs", response_model=JobListResponse)
    async def list_jobs(
        request: Request,
        query: str | None = Query(default=None, max_length=200),
        remote_type: RemoteType | None = None,
        region_eligibility: str | None = None,
        seniority: str | None = None,
        posted_since: str | None = None,
        source: str | None = None,
        limit: int = Query(default=20, ge=1, le=100),
        offset: int = Query(default=0, ge=0, le=10000),
    ) -> JobListResponse:
        posted_since_iso: str | None = None
        if posted_since:
            parsed = parse_iso_datetime(posted_since)
            if parsed is None:
                raise HTTPException(status_code=422, detail="Invalid posted_since timestamp")
            posted_since_iso = parsed.astimezone(UTC).isoformat()
        jobs = await run_in_threadpool(
            request.app.state.repository.list_jobs,
            limit=limit,
            offset=offset,
            query=query.strip() if query else None,
            remote_type=remote_type,
            region_eligibility=region_eligibility,
            seniority=seniority,
            posted_since=posted_since_iso,
            source=source,
        )
        return JobListResponse(jobs=jobs, limit=limit, offset=offset)

    @app.get("/jobs/{job_id}", response_model=JobDetailResponse)
    async def get_job(job_id: str, request: Request) -> JobDetailResponse:
        repo: JobRepository = request.app.state.repository
        job = await run_in_threadpool(repo.get_job, job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Unknown job_id")
        sightings = await run_in_threadpool(repo.list_job_sightings, job_id)
        return JobDetailResponse(
            job=job,
            sightings=[JobSighting(**sighting) for sighting in sightings],
        )

    @app.get("/matches", response_model=MatchesResponse)
    async def matches(
        request: Request,
        limit: int = Query(default=20, ge=1, le=50),
    ) -> MatchesResponse:
        user_id = require_user(request)
        repo: JobRepository = request.app.state.repository
        profile = await run_in_threadpool(repo.get_profile, user_id)
        jobs = await run_in_threadpool(repo.list_jobs, limit=MATCH_CANDIDATE_LIMIT)
        ranked = rank_jobs(jobs, profile, limit=limit)
        return MatchesResponse(
            generated_at=now_utc_iso(),
            profile_found=profile is not None,
            matches=ranked,
        )

    @app.get("/job-profile", response_model=UserJobProfile)
    async def get_job_profile(request: Request) -> UserJobProfile:
        user_id = require_user(request)
        profile = await run_in_threadpool(request.app.state.repository.get_profile, user_id)
        return profile or UserJobProfile(clerk_id=user_id)

    @app.put("/job-profile", response_model=UserJobProfile)
    async def put_job_profile(
        payload: JobProfileUpsertRequest,
        request: Request,
    ) -> UserJobProfile:
        user_id = require_user(request)
        return await run_in_threadpool(
            request.app.state.repository.upsert_profile,
            user_id,
            payload,
        )

    @app.post("/job-profile/parse-resume", response_model=UserJobProfile)
    async def parse_resume(payload: ResumeParseRequest, request: Request) -> UserJobProfile:
        user_id = require_user(request)
        repo: JobRepository = request.app.state.repository
        existing = await run_in_threadpool(repo.get_profile, user_id)
        update = profile_update_from_resume(payload.resume_text, existing, merge=payload.merge)
        return await run_in_threadpool(repo.upsert_profile, user_id, update)

    @app.get("/sources", response_model=list[SourceConfig])
    async def list_sources(
        request: Request,
        enabled_only: bool = Query(default=False),
    ) -> list[SourceConfig]:
        await require_scope(request, action="sources_list", scope="sources:read")
        return await run_in_threadpool(
            request.app.state.registry.list_sources,
            enabled_only=enabled_only,
        )

    @app.post("/sources", response_model=SourceConfig, status_code=201)
    async def create_source(
        payload: CustomSourceCreateRequest,
        request: Request,
        response: Response,
    ) -> SourceConfig:
        auth_subject = await require_scope(request, action="source_create", scope="sources:write")
        registry: SourceRegistry = request.app.state.registry
        source_id = await run_in_threadpool(
            registry.add_custom_source,
            payload.name,
            payload.url,
            payload.source_type,
            payload.description,
            payload.config,
        )
        source = await run_in_threadpool(
            request.app.state.repository.get_source_by_id,
            source_id,
        )
        event_id = await write_audit_event(
            request,
            action="source_create",
            scope="sources:write",
            status="ok",
            message=f"source_key={source.source_key}; type={source.source_type}",
            auth_subject=auth_subject,
        )
        response.headers["x-audit-event-id"] = str(event_id)
        return source

    @app.get("/sources/sync-history", response_model=list[SourceSyncHistoryItem])
    async def source_sync_history(
        request: Request,
        limit: int = Query(default=100, ge=1, le=500),
        offset: int = Query(default=0, ge=0, le=10000),
        source_key: str | None = None,
        status: SyncStatus | None = None,
        run_id: str | None = None,
    ) -> list[SourceSyncHistoryItem]:
        await require_scope(request, action="source_sync_history", scope="sources:read")
        return await run_in_threadpool(
            request.app.state.registry.list_sync_history,
            limit=limit,
            offset=offset,
            source_key=source_key,
            status=status,
            run_id=run_id,
        )

    @app.get("/sources/{source_key}", response_model=SourceConfig)
    async def get_source(source_key: str, request: Request) -> SourceConfig:
        await require_scope(request, action="source_get", scope="sources:read")
        return await run_in_threadpool(request.app.state.registry.get_source, source_key)

    @app.patch("/sources/{source_key}", response_model=SourceConfig)
    async def update_source(
        source_key: str,
        payload: SourceUpdateRequest,
        request: Request,
        response: Response,
    ) -> SourceConfig:
        auth_subject = await require_scope(request, action="source_update", scope="sources:write")
        fields = payload.model_dump(exclude_unset=True)
        source = await run_in_threadpool(
            request.app.state.registry.update_source,
            source_key,
            fields,
        )
        event_id = await write_audit_event(
            request,
            action="source_update",
            scope="sources:write",
            status="ok",
            message=f"source_key={source_key}; fields={','.join(sorted(fields))}",
            auth_subject=auth_subject,
        )
        response.headers["x-audit-event-id"] = str(event_id)
        return source

    @app.delete("/sources/{source_key}")
    async def delete_source(
        source_key: str,
        request: Request,
        response: Response,
    ) -> dict[str, bool]:
        auth_subject = await require_scope(request, action="source_delete", scope="sources:write")
        await run_in_threadpool(request.app.state.registry.delete_source, source_key)
        event_id = await write_audit_event(
            request,
            action="source_delete",
            scope="sources:write",
            status="ok",
            message=f"source_key={source_key}",
            auth_subject=auth_subject,
        )
        response.headers["x-audit-event-id"] = str(event_id)
        return {"deleted": True}

    @app.post("/sources/{source_key}/test", response_model=SourceTestResponse)
    async def test_source(source_key: str, request: Request) -> SourceTestResponse:
        await require_scope(request, action="source_test", scope="sources:write")
        return await request.app.state.pipeline.test_source(source_key)

    @app.post("/sources/{source_key}/sync", response_model=PipelineTriggerResponse)
    async def sync_source(source_key: str, request: Request, response: Response):
        auth_subject = await require_scope(
            request,
            action="source_sync",
            scope="pipeline:run",
            allow_cron=True,
        )
        result = await request.app.state.pipeline.run_source(source_key)
        payload = to_trigger_response(result)
        if result.status == "failed":
            return JSONResponse(status_code=500, content=payload.model_dump())
        event_id = await write_audit_event(
            request,
            action="source_sync",
            scope="pipeline:run",
            status="ok" if result.success else "error",
            message=f"source_key={source_key}; run_id={result.run_id}; status={result.status}",
            auth_subject=auth_subject,
        )
        response.headers["x-audit-event-id"] = str(event_id)
        return payload

    @app.get("/audit-events", response_model=list[AuditEvent])
    async def list_audit_events(
        request: Request,
        response: Response,
        limit: int = Query(default=100, ge=1, le=500),
        action: str | None = None,
        status: str | None = None,
    ) -> list[AuditEvent]:
        auth_subject = await require_scope(
            request,
            action="audit_events_list",
            scope="audit:read",
        )
        events = await run_in_threadpool(
            request.app.state.repository.list_audit_events,
            limit=limit,
            action=action,
            status=status,
        )
        event_id = await write_audit_event(
            request,
            action="audit_events_list",
            scope="audit:read",
            status="ok",
            message=f"returned={len(events)}",
            auth_subject=auth_subject,
        )
        response.headers["x-audit-event-id"] = str(event_id)
        return events

    return app


app = create_app()
