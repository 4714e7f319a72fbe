from __future__ import annotations

import asyncio
import logging
import os
import re
import string
import time
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urljoin

import feedparser
import httpx
from bs4 import BeautifulSoup, Tag
from common.utils import log_event, normalize_text, normalize_whitespace

from jobintel.config import Settings
from jobintel.errors import SourceFetchError
from jobintel.models import (
    ApiSourceConfig,
    IngestResult,
    RawPosting,
    RssSourceConfig,
    ScraperSourceConfig,
    SourceConfig,
)
from jobintel.normalizer import as_text, pick_field, resolve_path

LOGGER = logging.getLogger("jobintel.workers")
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

TITLE_COMPANY_PATTERNS = (
    re.compile(r"^(?P<title>.+?)\s+at\s+(?P<company>.+)$", re.I),
    re.compile(r"^(?P<company>[^:]{2,80}):\s+(?P<title>.+)$"),
    re.compile(r"^(?P<title>.+?)\s+\|\s+(?P<company>.+)$"),
    re.compile(r"^(?P<title>.+?)\s+-\s+(?P<company>.+)$"),
)
NOT_A_COMPANY = {"remote", "worldwide", "anywhere", "hybrid", "onsite", "on site", "full time"}


def split_company_from_title(title: str) -> tuple[str, str | None]:
    """Split listing titles such as "Backend Engineer at Acme" or "Acme: Backend Engineer"."""
    for pattern in TITLE_COMPANY_PATTERNS:
        match = pattern.match(title)
        if match is None:
            continue
        company = normalize_whitespace(match.group("company"))
        if normalize_text(company) in NOT_A_COMPANY:
            continue
        return normalize_whitespace(match.group("title")), company
    return title, None


class SourceWorker(ABC):
    def __init__(
        self,
        source: SourceConfig,
        client: httpx.AsyncClient,
        *,
        max_retries: int = 2,
        retry_backoff_seconds: float = 1.0,
        run_id: str | None = None,
    ) -> None:
        self.source = source
        self.client = client
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.run_id = run_id
        self.fetched_at = datetime.now(UTC)

    @property
    def source_key(self) -> str:
        return self.source.source_key

    @abstractmethod
    async def fetch(self) -> tuple[list[RawPosting], list[str]]:
        """Return raw postings and per-item errors, raising SourceFetchError on failure."""

    async def ingest(self) -> IngestResult:
        started = time.perf_counter()
        self.fetched_at = datetime.now(UTC)
        try:
            raw_jobs, errors = await self.fetch()
        except (SourceFetchError, httpx.HTTPError) as exc:
            duration_ms = int((time.perf_counter() - started) * 1000)
            log_event(
                LOGGER,
                "source_fetch_failed",
                level=logging.WARNING,
                run_id=self.run_id,
                source_key=self.source_key,
                duration_ms=duration_ms,
                error=str(exc),
            )
            return IngestResult(
                success=False,
                jobs_fetched=0,
                errors=[f"Fatal: {exc}"],
                duration_ms=duration_ms,
            )
        except Exception as exc:
            duration_ms = int((time.perf_counter() - started) * 1000)
            log_event(
                LOGGER,
                "source_fetch_crashed",
                level=logging.ERROR,
                run_id=self.run_id,
                source_key=self.source_key,
                duration_ms=duration_ms,
                error=repr(exc),
            )
            return IngestResult(
                success=False,
                jobs_fetched=0,
                errors=[f"Fatal: {exc!r}"],
                duration_ms=duration_ms,
            )

        duration_ms = int((time.perf_counter() - started) * 1000)
        success = not errors or len(raw_jobs) > len(errors)
        log_event(
            LOGGER,
            "source_fetch_complete",
            run_id=self.run_id,
            source_key=self.source_key,
            jobs_fetched=len(raw_jobs),
            errors=len(errors),
            success=success,
            duration_ms=duration_ms,
        )
        return IngestResult(
            success=success,
            jobs_fetched=len(raw_jobs),
            raw_jobs=raw_jobs,
            errors=errors,
            duration_ms=duration_ms,
        )

    async def get(
        self,
        url: str,
        *,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        attempt = 0
        while True:
            try:
                response = await self.client.get(url, params=params, headers=headers)
            except httpx.TransportError as exc:
                if attempt >= self.max_retries:
                    detail = str(exc) or type(exc).__name__
                    raise SourceFetchError(f"request to {url} failed: {detail}") from exc
                reason = type(exc).__name__
            else:
                retryable = response.status_code in RETRYABLE_STATUS_CODES
                if not retryable or attempt >= self.max_retries:
                    if response.status_code >= 400:
                        raise SourceFetchError(f"HTTP {response.status_code} from {url}")
                    return response
                reason = f"HTTP {response.status_code}"

            delay = self.retry_backoff_seconds * (2**attempt)
            attempt += 1
            log_event(
                LOGGER,
                "source_fetch_retry",
                level=logging.WARNING,
                run_id=self.run_id,
                source_key=self.source_key,
                url=url,
                attempt=attempt,
                delay_seconds=delay,
                reason=reason,
            )
            await asyncio.sleep(delay)

    async def get_json(self, url: str, **kwargs: Any) -> Any:
        response = await self.get(url, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise SourceFetchError(f"invalid JSON from {url}: {exc}") from exc


class ApiWorker(SourceWorker):
    """Structured job-board APIs, optionally paginated by page number."""

    def _base_params(self, config: ApiSourceConfig) -> dict[str, str]:
        params = dict(config.params)
        for param, env_name in config.env_params.items():
            value = os.getenv(env_name, "").strip()
            if not value:
                raise SourceFetchError(f"missing credential {env_name} for parameter {param}")
            params[param] = value
        if config.page_size_param and config.page_size:
            params[config.page_size_param] = str(config.page_size)
        return params

    def _headers(self, config: ApiSourceConfig) -> dict[str, str]:
        """Fill header templates such as "Bearer {API_KEY}" from the environment."""
        headers = dict(config.headers)
        for header, template in config.env_headers.items():
            values: dict[str, str] = {}
            for _, env_name, _, _ in string.Formatter().parse(template):
                if not env_name:
                    continue
                value = os.getenv(env_name, "").strip()
                if not value:
                    raise SourceFetchError(f"missing credential {env_name} for header {header}")
                values[env_name] = value
            headers[header] = template.format(**values)
        return headers

    def _to_raw(self, item: dict[str, Any], config: ApiSourceConfig) -> RawPosting:
        raw = RawPosting(
            raw_data={**config.defaults, **item},
            source_url=None,
            source_key=self.source_key,
            fetched_at=self.fetched_at,
            field_map=dict(config.field_map),
        )
        raw.source_url = as_text(pick_field(raw, "apply_url"))
        raw.source_job_id = as_text(pick_field(raw, "source_job_id"))
        return raw

    async def fetch(self) -> tuple[list[RawPosting], list[str]]:
        config = self.source.config
        if not isinstance(config, ApiSourceConfig):
            raise SourceFetchError(f"{self.source_key} has no api config")
        params = self._base_params(config)
        headers = self._headers(config)
        page_count = config.max_pages if config.paginated else 1

        raw_jobs: list[RawPosting] = []
        errors: list[str] = []
        for index in range(page_count):
            page = config.start_page + index
            url = config.url.replace("{page}", str(page))
            page_params = dict(params)
            if config.page_param:
                page_params[config.page_param] = str(page)

            try:
                payload = await self.get_json(url, params=page_params, headers=headers)
                items = resolve_path(payload, config.jobs_path)
                if not isinstance(items, list):
                    raise SourceFetchError(
                        f"expected a list at '{config.jobs_path or '.'}' in response from {url}"
                    )
            except SourceFetchError as exc:
                if index == 0:
                    raise
                errors.append(f"page {page}: {exc}")
                break

            if not items:
                break
            for position, item in enumerate(items, start=1):
                if len(raw_jobs) >= config.max_items:
                    break
                if not isinstance(item, dict):
                    errors.append(
                        f"page {page} item {position}: "
                        f"expected an object, got {type(item).__name__}"
                    )
                    continue
                raw_jobs.append(self._to_raw(item, config))

            if len(raw_jobs) >= config.max_items:
                break
            if config.page_size and len(items) < config.page_size:
                break
            if config.page_delay_seconds and index + 1 < page_count:
                await asyncio.sleep(config.page_delay_seconds)
        return raw_jobs, errors


def _entry_published(entry: Any) -> str | None:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if parsed:
        return datetime(*parsed[:6], tzinfo=UTC).isoformat()
    return entry.get("published") or entry.get("updated")


def _entry_description(entry: Any) -> str:
    content = entry.get("content") or []
    if content and isinstance(content[0], dict) and content[0].get("value"):
        return content[0]["value"]
    return entry.get("summary") or entry.get("description") or ""


class RssWorker(SourceWorker):
    async def fetch(self) -> tuple[list[RawPosting], list[str]]:
        config = self.source.config
        if not isinstance(config, RssSourceConfig):
            raise SourceFetchError(f"{self.source_key} has no rss config")
        response = await self.get(config.url)
        feed = feedparser.parse(response.content)
        entries = list(feed.entries)
        if feed.bozo and not entries:
            raise SourceFetchError(
                f"could not parse feed from {config.url}: {feed.get('bozo_exception')}"
            )

        raw_jobs: list[RawPosting] = []
        errors: list[str] = []
        for position, entry in enumerate(entries[: config.max_items], start=1):
            title = normalize_whitespace(entry.get("title") or "")
            if not title:
                errors.append(f"item {position}: missing title")
                continue

            company = normalize_whitespace(entry.get("author") or "") or None
            if config.company_from_title:
                split_title, split_company = split_company_from_title(title)
                if split_company:
                    title = split_title
                    company = company or split_company
            link = entry.get("link")
            raw_jobs.append(
                RawPosting(
                    raw_data={
                        "title": title,
                        "company": company or config.default_company,
                        "description": _entry_description(entry),
                        "url": link,
                        "posted_at": _entry_published(entry),
                        "location": entry.get("location") or entry.get("region"),
                        "tags": [
                            tag.get("term") for tag in entry.get("tags", []) if tag.get("term")
                        ],
                        "guid": entry.get("id"),
                    },
                    source_url=link,
                    source_key=self.source_key,
                    source_job_id=entry.get("id") or link,
                    fetched_at=self.fetched_at,
                )
            )
        return raw_jobs, errors


def _select_text(node: Tag, selector: str | None) -> str | None:
    if not selector:
        return None
    found = node.select_one(selector)
    if found is None:
        return None
    return normalize_whitespace(found.get_text(" ")) or None


def _select_href(node: Tag, selector: str | None) -> str | None:
    if node.name == "a" and node.get("href"):
        return str(node["href"])
    if not selector:
        return None
    found = node.select_one(selector)
    if found is None or not found.get("href"):
        return None
    return str(found["href"])


def _select_date(node: Tag, selector: str | None) -> str | None:
    if not selector:
        return None
    found = node.select_one(selector)
    if found is None:
        return None
    if found.get("datetime"):
        return str(found["datetime"])
    return normalize_whitespace(found.get_text(" ")) or None


class ScraperWorker(SourceWorker):
    """Selector-driven extraction from listing pages; all markup coupling lives here."""

    def _parse_card(
        self,
        card: Tag,
        page_url: str,
        config: ScraperSourceConfig,
    ) -> RawPosting | None:
        title = _select_text(card, config.title_selector)
        if not title:
            return None
        company = _select_text(card, config.company_selector)
        if not company:
            title, company = split_company_from_title(title)
        href = _select_href(card, config.url_selector)
        link = urljoin(page_url, href) if href else None
        return RawPosting(
            raw_data={
                "title": title,
                "company": company or config.default_company,
                "location": _select_text(card, config.location_selector),
                "description": _select_text(card, config.description_selector),
                "url": link,
                "posted_at": _select_date(card, config.date_selector),
                "salary": _select_text(card, config.salary_selector),
            },
            source_url=link,
            source_key=self.source_key,
            source_job_id=link,
            fetched_at=self.fetched_at,
        )

    async def fetch(self) -> tuple[list[RawPosting], list[str]]:
        config = self.source.config
        if not isinstance(config, ScraperSourceConfig):
            raise SourceFetchError(f"{self.source_key} has no scraper config")
        raw_jobs: list[RawPosting] = []
        errors: list[str] = []
        page_url = config.url
        visited: set[str] = set()

        for page_number in range(1, config.max_pages + 1):
            try:
                response = await self.get(page_url)
            except SourceFetchError as exc:
                if page_number == 1:
                    raise
                errors.append(f"page {page_number}: {exc}")
                break
            visited.add(page_url)

            soup = BeautifulSoup(response.text, "html.parser")
            cards = soup.select(config.job_selector)
            if not cards:
                errors.append(
                    f"page {page_number}: no elements matched job selector '{config.job_selector}'"
                )
                break
            for position, card in enumerate(cards, start=1):
                try:
                    raw = self._parse_card(card, page_url, config)
                except ValueError as exc:
                    errors.append(f"page {page_number} item {position}: {exc}")
                    continue
                if raw is None:
                    errors.append(f"page {page_number} item {position}: missing title")
                    continue
                raw_jobs.append(raw)

            next_href = _select_href(soup, config.next_page_selector)
            if not next_href:
                break
            try:
                page_url = urljoin(page_url, next_href)
            except ValueError as exc:
                errors.append(f"page {page_number}: bad next page link: {exc}")
                break
            if page_url in visited:
                break
        return raw_jobs, errors


WORKER_TYPES: dict[str, type[SourceWorker]] = {
    "api": ApiWorker,
    "rss": RssWorker,
    "scraper": ScraperWorker,
}


def build_worker(
    source: SourceConfig,
    client: httpx.AsyncClient,
    *,
    settings: Settings,
    run_id: str | None = None,
) -> SourceWorker:
    worker_type = WORKER_TYPES[source.config.kind]
    return worker_type(
        source,
        client,
        max_retries=settings.max_retries,
        retry_backoff_seconds=settings.retry_backoff_seconds,
        run_id=run_id,
    )


def build_http_client(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=settings.request_timeout_seconds,
        transport=transport,
        follow_redirects=True,
        headers={"User-Agent": settings.user_agent},
    )
