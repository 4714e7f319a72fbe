from __future__ import annotations

import logging
import uuid
from typing import Any

from common.utils import log_event, normalize_whitespace
from pydantic import ValidationError as PydanticValidationError

from jobintel.errors import (
    ForbiddenError,
    JobIntelError,
    NotFoundError,
    StoreUnavailable,
    ValidationError,
)
from jobintel.models import (
    SOURCE_SETTINGS_ADAPTER,
    SOURCE_TYPES,
    SourceConfig,
    SourceSyncHistoryItem,
    require_http_url,
)
from jobintel.repository import JobRepository

LOGGER = logging.getLogger("jobintel.registry")

UPDATABLE_FIELDS = ("name", "description", "enabled", "config")

BUILTIN_SOURCES: tuple[dict[str, Any], ...] = (
    {
        "source_key": "remotive",
        "name": "Remotive",
        "description": "Remote jobs from the Remotive public API.",
        "source_type": "api",
        "enabled": True,
        "config": {
            "kind": "api",
            "url": "https://remotive.com/api/remote-jobs",
            "jobs_path": "jobs",
            "params": {"limit": "200"},
            "field_map": {"location": "candidate_required_location"},
            "defaults": {"remote_type": "remote"},
        },
    },
    {
        "source_key": "remoteok",
        "name": "RemoteOK",
        "description": "Remote jobs from the RemoteOK public API.",
        "source_type": "api",
        "enabled": True,
        "config": {
            "kind": "api",
            "url": "https://remoteok.com/api",
            "jobs_path": "",
            "field_map": {"title": "position", "posted_at": "date"},
            "defaults": {"remote_type": "remote"},
        },
    },
    {
        "source_key": "adzuna",
        "name": "Adzuna",
        "description": "Adzuna search API; needs ADZUNA_APP_ID and ADZUNA_APP_KEY.",
        "source_type": "api",
        "enabled": False,
        "config": {
            "kind": "api",
            "url": "https://api.adzuna.com/v1/api/jobs/gb/search/{page}",
            "jobs_path": "results",
            "page_size_param": "results_per_page",
            "page_size": 50,
            "max_pages": 3,
            "page_delay_seconds": 1.0,
            "params": {"what": "software developer", "content-type": "application/json"},
            "env_params": {"app_id": "ADZUNA_APP_ID", "app_key": "ADZUNA_APP_KEY"},
            "field_map": {
                "company": "company.display_name",
                "location": "location.display_name",
                "apply_url": "redirect_url",
                "posted_at": "created",
            },
        },
    },
    {
        "source_key": "getonboard",
        "name": "Get on Board",
        "description": "LATAM remote tech jobs; needs GETONBOARD_API_KEY.",
        "source_type": "api",
        "enabled": False,
        "config": {
            "kind": "api",
            "url": "https://www.getonbrd.com/api/v0/jobs",
            "jobs_path": "data",
            "page_param": "page",
            "page_size_param": "per_page",
            "page_size": 30,
            "max_pages": 3,
            "page_delay_seconds": 1.5,
            "params": {"expand": "company", "remote": "true", "sort": "-published_at"},
            "headers": {"Accept": "application/json"},
            "env_headers": {"Authorization": "Bearer {GETONBOARD_API_KEY}"},
            "field_map": {
                "title": "attributes.title",
                "company": "attributes.company.data.attributes.name",
                "description": "attributes.description",
                "posted_at": "attributes.published-at",
                "salary_min": "attributes.min-salary",
                "salary_max": "attributes.max-salary",
                "currency": "attributes.currency",
                "seniority": "attributes.seniority.data.attributes.name",
                "location": "attributes.remote-zone",
                "apply_url": "links.public-url",
            },
            "defaults": {"remote_type": "remote"},
        },
    },
    {
        "source_key": "weworkremotely",
        "name": "We Work Remotely",
        "description": "Programming category RSS feed.",
        "source_type": "rss",
        "enabled": True,
        "config": {
            "kind": "rss",
            "url": "https://weworkremotely.com/categories/remote-programming-jobs.rss",
            "company_from_title": True,
        },
    },
    {
        "source_key": "himalayas",
        "name": "Himalayas",
        "description": "Himalayas remote jobs RSS feed.",
        "source_type": "rss",
        "enabled": True,
        "config": {
            "kind": "rss",
            "url": "https://himalayas.app/jobs/rss",
            "company_from_title": True,
        },
    },
)


def _validation_message(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        parts.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(parts)


def validate_source_config(source_type: str, config: dict[str, Any]) -> dict[str, Any]:
    """Validate a raw config dict for a source type and return its stored form."""
    if source_type not in SOURCE_TYPES:
        raise ValidationError(
            f"Unsupported source type: {source_type!r} (expected one of {', '.join(SOURCE_TYPES)})"
        )
    candidate = {**config, "kind": source_type}
    try:
        validated = SOURCE_SETTINGS_ADAPTER.validate_python(candidate)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {source_type} config: {_validation_message(exc)}") from exc
    return validated.model_dump(exclude_defaults=True) | {"kind": source_type}


def merge_patch(target: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    merged = dict(target)
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_patch(merged[key], value)
        else:
            merged[key] = value
    return merged


class SourceRegistry:
    def __init__(self, repository: JobRepository) -> None:
        self.repository = repository

    def seed_builtin_sources(self) -> int:
        seeded = 0
        for definition in BUILTIN_SOURCES:
            created = self.repository.insert_source(
                source_key=definition["source_key"],
                name=definition["name"],
                description=definition["description"],
                source_type=definition["source_type"],
                config=validate_source_config(definition["source_type"], definition["config"]),
                is_built_in=True,
                enabled=definition["enabled"],
                ignore_existing=True,
            )
            if created is not None:
                seeded += 1
        if seeded:
            log_event(LOGGER, "builtin_sources_seeded", count=seeded)
        return seeded

    def list_sources(self, *, enabled_only: bool = False) -> list[SourceConfig]:
        return self.repository.list_sources(enabled_only=enabled_only)

    def get_source(self, source_key: str) -> SourceConfig:
        source = self.repository.get_source(source_key)
        if source is None:
            raise NotFoundError(f"Unknown source_key: {source_key}")
        return source

    def add_custom_source(
        self,
        name: str,
        url: str,
        source_type: str,
        description: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> str:
        name = normalize_whitespace(name or "")
        url = (url or "").strip()
        if not name:
            raise ValidationError("name must not be blank")
        if not url:
            raise ValidationError("url must not be blank")
        try:
            url = require_http_url(url)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        stored_config = validate_source_config(source_type, {**(config or {}), "url": url})
        source_key = f"custom_{uuid.uuid4().hex[:12]}"
        source = self.repository.insert_source(
            source_key=source_key,
            name=name,
            description=normalize_whitespace(description) if description else None,
            source_type=source_type,
            config=stored_config,
        )
        if source is None:
            raise StoreUnavailable(f"source {source_key} was not stored")
        log_event(
            LOGGER,
            "source_created",
            source_key=source_key,
            source_type=source_type,
            url=url,
        )
        return source.id

    def update_source(self, source_key: str, fields: dict[str, Any]) -> SourceConfig:
        unknown = sorted(set(fields) - set(UPDATABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(unknown)}")
        source = self.get_source(source_key)

        changes: dict[str, Any] = {}
        if "name" in fields:
            name = normalize_whitespace(fields["name"] or "")
            if not name:
                raise ValidationError("name must not be blank")
            changes["name"] = name
        if "description" in fields:
            changes["description"] = fields["description"]
        if "enabled" in fields and fields["enabled"] is not None:
            changes["enabled"] = bool(fields["enabled"])
        if fields.get("config") is not None:
            current = source.config.model_dump(exclude_defaults=True)
            patched = merge_patch(current, fields["config"])
            changes["config_json"] = validate_source_config(source.source_type, patched)

        updated = self.repository.update_source(source_key, changes)
        if updated is None:
            raise NotFoundError(f"Unknown source_key: {source_key}")
        log_event(LOGGER, "source_updated", source_key=source_key, fields=sorted(fields))
        return updated

    def delete_source(self, source_key: str) -> None:
        source = self.get_source(source_key)
        if source.is_built_in:
            raise ForbiddenError(f"Built-in source {source_key} cannot be deleted; disable it")
        self.repository.delete_source(source_key)
        log_event(LOGGER, "source_deleted", source_key=source_key)

    def record_sync_outcome(
        self,
        source_key: str,
        status: str,
        jobs_count: int,
        error: str | None = None,
        *,
        run_id: str | None = None,
    ) -> None:
        try:
            self.repository.record_sync_outcome(
                source_key,
                status=status,
                jobs_count=jobs_count,
                error=error,
                run_id=run_id,
            )
        except JobIntelError as exc:
            log_event(
                LOGGER,
                "sync_outcome_not_recorded",
                level=logging.ERROR,
                run_id=run_id,
                source_key=source_key,
                status=status,
                error=str(exc),
            )

    def list_sync_history(
        self,
        *,
        limit: int = 100,
        offset: int = 0,
        source_key: str | None = None,
        status: str | None = None,
        run_id: str | None = None,
    ) -> list[SourceSyncHistoryItem]:
        return self.repository.list_sync_history(
            limit=limit,
            offset=offset,
            source_key=source_key,
            status=status,
            run_id=run_id,
        )
