from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Annotated, Any, Literal
from urllib.parse import urlsplit

import soupsieve
from common.utils import normalize_whitespace
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

SOURCE_TYPES = ("api", "rss", "scraper")
SourceType = Literal["api", "rss", "scraper"]
SyncStatus = Literal["pending", "success", "failed"]
RemoteType = Literal["remote", "hybrid", "onsite", "unknown"]
JobStatus = Literal["active", "expired", "removed"]
PipelineStatus = Literal["idle", "running", "completed", "completed_with_errors", "failed"]
SourceRunStatus = Literal["success", "failed", "skipped"]


def require_http_url(value: str) -> str:
    value = value.strip()
    parsed = urlsplit(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("url must be an absolute http(s) URL")
    return value


class SourceSettingsBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str) -> str:
        return require_http_url(value)


class ApiSourceConfig(SourceSettingsBase):
    kind: Literal["api"] = "api"
    jobs_path: str = "jobs"
    page_param: str | None = None
    page_size_param: str | None = None
    page_size: int | None = Field(default=None, ge=1, le=500)
    start_page: int = Field(default=1, ge=0)
    max_pages: int = Field(default=1, ge=1, le=50)
    max_items: int = Field(default=500, ge=1, le=5000)
    params: dict[str, str] = Field(default_factory=dict)
    env_params: dict[str, str] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    env_headers: dict[str, str] = Field(default_factory=dict)
    field_map: dict[str, str] = Field(default_factory=dict)
    defaults: dict[str, Any] = Field(default_factory=dict)
    page_delay_seconds: float = Field(default=0.0, ge=0, le=10)

    @property
    def paginated(self) -> bool:
        return bool(self.page_param) or "{page}" in self.url


class RssSourceConfig(SourceSettingsBase):
    kind: Literal["rss"] = "rss"
    company_from_title: bool = True
    default_company: str | None = None
    max_items: int = Field(default=500, ge=1, le=5000)


class ScraperSourceConfig(SourceSettingsBase):
    kind: Literal["scraper"] = "scraper"
    job_selector: str = "article, .job, .job-listing, li.job"
    title_selector: str = "h2, h3, .title, .job-title"
    company_selector: str | None = ".company, .company-name"
    location_selector: str | None = ".location"
    description_selector: str | None = ".description, .summary, p"
    url_selector: str | None = "a[href]"
    date_selector: str | None = "time, .date"
    salary_selector: str | None = ".salary"
    default_company: str | None = None
    next_page_selector: str | None = None
    max_pages: int = Field(default=1, ge=1, le=20)

    @field_validator(
        "job_selector",
        "title_selector",
        "company_selector",
        "location_selector",
        "description_selector",
        "url_selector",
        "date_selector",
        "salary_selector",
        "next_page_selector",
    )
    @classmethod
    def check_selector(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            soupsieve.compile(value)
        except soupsieve.SelectorSyntaxError as exc:
            raise ValueError(f"invalid CSS selector {value!r}: {exc}") from exc
        return value


SourceSettings = Annotated[
    ApiSourceConfig | RssSourceConfig | ScraperSourceConfig,
    Field(discriminator="kind"),
]
SOURCE_SETTINGS_ADAPTER: TypeAdapter[Any] = TypeAdapter(SourceSettings)


class SourceConfig(BaseModel):
    id: str
    source_key: str
    name: str
    description: str | None = None
    source_type: SourceType
    is_built_in: bool
    enabled: bool
    config: SourceSettings
    created_at: str
    updated_at: str
    last_sync_at: str | None = None
    last_sync_status: SyncStatus = "pending"
    last_sync_jobs_count: int = 0
    last_error: str | None = None


class CustomSourceCreateRequest(BaseModel):
    name: str = Field(..., max_length=120)
    url: str
    source_type: str
    description: str | None = Field(default=None, max_length=500)
    config: dict[str, Any] = Field(default_factory=dict)


class SourceUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=500)
    enabled: bool | None = None
    config: dict[str, Any] | None = None


class SourceSyncHistoryItem(BaseModel):
    history_id: int
    run_id: str | None = None
    source_key: str
    synced_at: str
    status: SyncStatus
    jobs_count: int
    error: str | None = None


@dataclass
class RawPosting:
    raw_data: dict[str, Any]
    source_url: str | None
    source_key: str
    source_job_id: str | None = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    field_map: dict[str, str] = field(default_factory=dict)


@dataclass
class IngestResult:
    success: bool
    jobs_fetched: int
    raw_jobs: list[RawPosting] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0


class CanonicalJob(BaseModel):
    id: str | None = None
    fingerprint: str
    title: str
    normalized_title: str
    company_name: str
    locations: list[str] = Field(default_factory=list)
    location_raw: str | None = None
    remote_type: RemoteType = "unknown"
    remote_region_eligibility: str | None = None
    employment_type: str | None = None
    seniority: str | None = None
    compensation_min: float | None = None
    compensation_max: float | None = None
    compensation_currency: str | None = None
    posted_at: str | None = None
    description_text: str = ""
    apply_url: str | None = None
    skills: list[str] = Field(default_factory=list)
    source_primary: str
    source_job_id: str | None = None
    status: JobStatus = "active"
    last_seen_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class UpsertOutcome(BaseModel):
    created: bool
    job_id: str


class JobListResponse(BaseModel):
    jobs: list[CanonicalJob]
    limit: int
    offset: int


class UserJobProfile(BaseModel):
    clerk_id: str
    skills: list[str] = Field(default_factory=list)
    role_keywords: list[str] = Field(default_factory=list)
    preferred_regions: list[str] = Field(default_factory=list)
    exclude_companies: list[str] = Field(default_factory=list)
    target_titles: list[str] = Field(default_factory=list)
    seniority: str | None = None
    salary_min: float | None = None
    salary_max: float | None = None
    profile_context_text: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class JobProfileUpsertRequest(BaseModel):
    skills: list[str] = Field(default_factory=list)
    role_keywords: list[str] = Field(default_factory=list)
    preferred_regions: list[str] = Field(default_factory=list)
    exclude_companies: list[str] = Field(default_factory=list)
    target_titles: list[str] = Field(default_factory=list)
    seniority: str | None = Field(default=None, max_length=40)
    salary_min: float | None = Field(default=None, ge=0)
    salary_max: float | None = Field(default=None, ge=0)
    profile_context_text: str | None = Field(default=None, max_length=20000)

    @field_validator(
        "skills",
        "role_keywords",
        "preferred_regions",
        "exclude_companies",
        "target_titles",
    )
    @classmethod
    def clean_list(cls, values: list[str]) -> list[str]:
        cleaned: list[str] = []
        for value in values:
            text = normalize_whitespace(value)
            if text and text not in cleaned:
                cleaned.append(text)
        return cleaned


class ResumeParseRequest(BaseModel):
    resume_text: str = Field(..., min_length=20, max_length=100000)
    merge: bool = True


class ScoreBreakdown(BaseModel):
    skill_overlap: float
    role_keyword: float
    region: float
    recency: float


class MatchResult(BaseModel):
    job: CanonicalJob
    score: float
    breakdown: ScoreBreakdown
    matched_skills: list[str] = Field(default_factory=list)


class MatchesResponse(BaseModel):
    generated_at: str
    profile_found: bool
    matches: list[MatchResult]


class SourceRunSummary(BaseModel):
    source_key: str
    source_type: SourceType
    status: SourceRunStatus
    jobs_fetched: int = 0
    jobs_normalized: int = 0
    jobs_skipped: int = 0
    jobs_created: int = 0
    jobs_deduplicated: int = 0
    duration_ms: int = 0
    errors: list[str] = Field(default_factory=list)


class PipelineStats(BaseModel):
    jobs_fetched: int = 0
    jobs_normalized: int = 0
    jobs_skipped: int = 0
    jobs_created: int = 0
    jobs_deduplicated: int = 0
    jobs_expired: int = 0
    duration_ms: int = 0


class PipelineResult(BaseModel):
    success: bool
    run_id: str
    status: PipelineStatus
    started_at: str
    finished_at: str | None = None
    jobs_fetched: int = 0
    jobs_normalized: int = 0
    jobs_skipped: int = 0
    jobs_created: int = 0
    jobs_deduplicated: int = 0
    jobs_expired: int = 0
    duration_ms: int = 0
    errors: list[str] = Field(default_factory=list)
    sources: list[SourceRunSummary] = Field(default_factory=list)

    def stats(self) -> PipelineStats:
        return PipelineStats(
            jobs_fetched=self.jobs_fetched,
            jobs_normalized=self.jobs_normalized,
            jobs_skipped=self.jobs_skipped,
            jobs_created=self.jobs_created,
            jobs_deduplicated=self.jobs_deduplicated,
            jobs_expired=self.jobs_expired,
            duration_ms=self.duration_ms,
        )


class PipelineTriggerResponse(BaseModel):
    success: bool
    run_id: str
    status: PipelineStatus
    stats: PipelineStats
    errors: list[str]
    sources: list[SourceRunSummary]
    timestamp: str


class PipelineRunRecord(BaseModel):
    run_id: str
    started_at: str
    finished_at: str | None = None
    status: PipelineStatus
    success: bool
    stats: PipelineStats
    errors: list[str] = Field(default_factory=list)


class SourceTestResponse(BaseModel):
    source_key: str
    success: bool
    jobs_fetched: int
    jobs_skipped: int
    errors: list[str]
    duration_ms: int
    sample_jobs: list[CanonicalJob]


class SourceHealth(BaseModel):
    source_key: str
    name: str
    source_type: SourceType
    enabled: bool
    last_sync_at: str | None = None
    last_sync_status: SyncStatus = "pending"
    last_sync_jobs_count: int = 0
    last_error: str | None = None
    active_jobs: int = 0


class HealthResponse(BaseModel):
    status: Literal["ok"]
    service: str
    last_sync_time: str | None = None
    job_count: int
    by_source: list[SourceHealth]


class AuditEvent(BaseModel):
    event_id: int
    request_id: str | None = None
    occurred_at: str
    method: str
    path: str
    action: str
    scope: str | None = None
    source_ip: str | None = None
    user_agent: str | None = None
    auth_subject: str | None = None
    status: str
    message: str | None = None


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]


class JobSighting(BaseModel):
    source_key: str
    source_job_id: str
    source_url: str | None = None
    first_seen_at: str
    last_seen_at: str


class JobDetailResponse(BaseModel):
    job: CanonicalJob
    sightings: list[JobSighting]
