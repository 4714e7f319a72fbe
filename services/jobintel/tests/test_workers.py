from __future__ import annotations

from typing import Any

import httpx
import pytest
from jobintel.models import SourceConfig
from jobintel.normalizer import normalize
from jobintel.registry import BUILTIN_SOURCES
from jobintel.workers import (
    ApiWorker,
    RssWorker,
    ScraperWorker,
    split_company_from_title,
)

pytestmark = pytest.mark.unit

RSS_FEED = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Remote jobs</title>
    <item>
      <title>Acme: Senior Python Engineer</title>
      <link>https://board.example.com/jobs/acme-python</link>
      <guid>acme-python</guid>
      <pubDate>Fri, 01 Mar 2024 10:00:00 +0000</pubDate>
      <description>&lt;p&gt;Build APIs with Python and PostgreSQL.&lt;/p&gt;</description>
      <category>python</category>
    </item>
    <item>
      <title>Product Designer at Globex</title>
      <link>https://board.example.com/jobs/globex-design</link>
      <description>Design things.</description>
    </item>
    <item>
      <title></title>
      <link>https://board.example.com/jobs/untitled</link>
    </item>
  </channel>
</rss>
"""

LISTING_PAGE_ONE = """
<html><body>
  <div class="job">
    <h2 class="title">Data Engineer</h2>
    <span class="company">Initech</span>
    <span class="location">Remote - Europe</span>
    <p class="description">Spark and Airflow pipelines.</p>
    <a href="/jobs/1">Apply</a>
    <time datetime="2024-03-01T00:00:00Z">March 1</time>
  </div>
  <div class="job">
    <h2 class="title">QA Analyst at Hooli</h2>
    <a href="https://hooli.example/careers/qa">Apply</a>
  </div>
  <div class="job"><span class="company">No Title Co</span></div>
  <a class="next" href="/jobs?page=2">Next</a>
</body></html>
"""

LISTING_PAGE_TWO = """
<html><body>
  <div class="job">
    <h2 class="title">Support Engineer</h2>
    <span class="company">Umbrella</span>
    <a href="/jobs/3">Apply</a>
  </div>
  <a class="next" href="/jobs?page=2">Next</a>
</body></html>
"""


def make_source(kind: str, config: dict[str, Any], key: str = "demo") -> SourceConfig:
    return SourceConfig(
        id="source-1",
        source_key=key,
        name="Demo",
        source_type=kind,
        is_built_in=False,
        enabled=True,
        config={"kind": kind, **config},
        created_at="2024-03-01T00:00:00+00:00",
        updated_at="2024-03-01T00:00:00+00:00",
    )


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def api_item(index: int) -> dict[str, Any]:
    return {
        "id": f"job-{index}",
        "title": f"Engineer {index}",
        "company_name": "Acme",
        "url": f"https://acme.example/jobs/{index}",
    }


@pytest.mark.parametrize(
    ("title", "expected"),
    [
        ("Backend Engineer at Acme", ("Backend Engineer", "Acme")),
        ("Acme: Backend Engineer", ("Backend Engineer", "Acme")),
        ("Backend Engineer | Acme", ("Backend Engineer", "Acme")),
        ("Backend Engineer - Remote", ("Backend Engineer - Remote", None)),
        ("Backend Engineer", ("Backend Engineer", None)),
    ],
)
def test_split_company_from_title(title: str, expected: tuple[str, str | None]) -> None:
    assert split_company_from_title(title) == expected


@pytest.mark.asyncio
async def test_api_worker_paginates_until_short_page() -> None:
    requested_pages: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        page = request.url.params["page"]
        requested_pages.append(page)
        assert request.url.params["limit"] == "2"
        items = [api_item(1), api_item(2)] if page == "1" else [api_item(3)]
        return httpx.Response(200, json={"jobs": items})

    source = make_source(
        "api",
        {
            "url": "https://api.example.com/jobs",
            "page_param": "page",
            "page_size_param": "limit",
            "page_size": 2,
            "max_pages": 5,
            "defaults": {"remote_type": "remote"},
        },
    )
    async with client_for(handler) as client:
        result = await ApiWorker(source, client, max_retries=0).ingest()

    assert requested_pages == ["1", "2"]
    assert result.success is True
    assert result.jobs_fetched == 3
    assert result.errors == []
    first = result.raw_jobs[0]
    assert first.source_key == "demo"
    assert first.source_url == "https://acme.example/jobs/1"
    assert first.source_job_id == "job-1"
    assert first.raw_data["remote_type"] == "remote"


@pytest.mark.asyncio
async def test_api_worker_first_page_failure_is_fatal() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"detail": "gone"})

    source = make_source("api", {"url": "https://api.example.com/jobs"})
    async with client_for(handler) as client:
        result = await ApiWorker(source, client, max_retries=0).ingest()

    assert result.success is False
    assert result.jobs_fetched == 0
    assert result.raw_jobs == []
    assert result.errors == ["Fatal: HTTP 404 from https://api.example.com/jobs"]


@pytest.mark.asyncio
async def test_api_worker_later_page_failure_keeps_earlier_postings() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["page"] == "1":
            return httpx.Response(200, json={"jobs": [api_item(1), api_item(2)]})
        return httpx.Response(500)

    source = make_source(
        "api",
        {"url": "https://api.example.com/jobs", "page_param": "page", "max_pages": 3},
    )
    async with client_for(handler) as client:
        result = await ApiWorker(source, client, max_retries=0).ingest()

    assert result.success is True
    assert result.jobs_fetched == 2
    assert len(result.errors) == 1
    assert result.errors[0].startswith("page 2: HTTP 500")


@pytest.mark.asyncio
async def test_api_worker_reports_malformed_items() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[api_item(1), "junk", api_item(2)])

    source = make_source("api", {"url": "https://api.example.com/jobs", "jobs_path": ""})
    async with client_for(handler) as client:
        result = await ApiWorker(source, client, max_retries=0).ingest()

    assert result.success is True
    assert result.jobs_fetched == 2
    assert result.errors == ["page 1 item 2: expected an object, got str"]


@pytest.mark.asyncio
async def test_api_worker_rejects_non_list_payload() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"results": []})

    source = make_source("api", {"url": "https://api.example.com/jobs"})
    async with client_for(handler) as client:
        result = await ApiWorker(source, client, max_retries=0).ingest()

    assert result.success is False
    assert "expected a list at 'jobs'" in result.errors[0]


@pytest.mark.asyncio
async def test_api_worker_requires_env_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DEMO_APP_KEY", raising=False)
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"jobs": []})

    source = make_source(
        "api",
        {"url": "https://api.example.com/jobs", "env_params": {"app_key": "DEMO_APP_KEY"}},
    )
    async with client_for(handler) as client:
        result = await ApiWorker(source, client, max_retries=0).ingest()

    assert calls == []
    assert result.success is False
    assert result.errors == ["Fatal: missing credential DEMO_APP_KEY for parameter app_key"]

    monkeypatch.setenv("DEMO_APP_KEY", "secret")
    async with client_for(handler) as client:
        result = await ApiWorker(source, client, max_retries=0).ingest()
    assert calls[0].url.params["app_key"] == "secret"
    assert result.success is True


@pytest.mark.asyncio
async def test_retryable_statuses_are_retried_with_backoff() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"jobs": [api_item(1)]})

    source = make_source("api", {"url": "https://api.example.com/jobs"})
    async with client_for(handler) as client:
        worker = ApiWorker(source, client, max_retries=2, retry_backoff_seconds=0)
        result = await worker.ingest()

    assert len(attempts) == 3
    assert result.success is True
    assert result.jobs_fetched == 1


@pytest.mark.asyncio
async def test_transport_errors_become_fatal_after_retries() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        raise httpx.ConnectError("connection refused", request=request)

    source = make_source("api", {"url": "https://api.example.com/jobs"})
    async with client_for(handler) as client:
        worker = ApiWorker(source, client, max_retries=1, retry_backoff_seconds=0)
        result = await worker.ingest()

    assert len(attempts) == 2
    assert result.success is False
    assert result.errors[0].startswith("Fatal: request to https://api.example.com/jobs failed")


@pytest.mark.asyncio
async def test_rss_worker_parses_entries_and_splits_company() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=RSS_FEED,
            headers={"content-type": "application/rss+xml"},
        )

    source = make_source("rss", {"url": "https://board.example.com/feed.xml"}, key="board")
    async with client_for(handler) as client:
        result = await RssWorker(source, client, max_retries=0).ingest()

    assert result.success is True
    assert result.jobs_fetched == 2
    assert result.errors == ["item 3: missing title"]

    first, second = result.raw_jobs
    assert first.raw_data["title"] == "Senior Python Engineer"
    assert first.raw_data["company"] == "Acme"
    assert first.raw_data["posted_at"] == "2024-03-01T10:00:00+00:00"
    assert first.raw_data["tags"] == ["python"]
    assert first.source_url == "https://board.example.com/jobs/acme-python"
    assert first.source_job_id == "acme-python"
    assert second.raw_data["title"] == "Product Designer"
    assert second.raw_data["company"] == "Globex"


@pytest.mark.asyncio
async def test_rss_worker_fails_on_unparseable_feed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"this is not a feed <<<")

    source = make_source("rss", {"url": "https://board.example.com/feed.xml"})
    async with client_for(handler) as client:
        result = await RssWorker(source, client, max_retries=0).ingest()

    assert result.success is False
    assert result.jobs_fetched == 0
    assert result.errors[0].startswith("Fatal: could not parse feed")


@pytest.mark.asyncio
async def test_scraper_worker_follows_next_page_once() -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        if request.url.params.get("page") == "2":
            return httpx.Response(200, text=LISTING_PAGE_TWO)
        return httpx.Response(200, text=LISTING_PAGE_ONE)

    source = make_source(
        "scraper",
        {
            "url": "https://careers.example.com/jobs",
            "job_selector": "div.job",
            "title_selector": "h2.title",
            "description_selector": ".description",
            "next_page_selector": "a.next",
            "max_pages": 5,
        },
    )
    async with client_for(handler) as client:
        result = await ScraperWorker(source, client, max_retries=0).ingest()

    assert requested == [
        "https://careers.example.com/jobs",
        "https://careers.example.com/jobs?page=2",
    ]
    assert result.success is True
    assert result.jobs_fetched == 3
    assert result.errors == ["page 1 item 3: missing title"]

    data_engineer, qa_analyst, support = result.raw_jobs
    assert data_engineer.raw_data["company"] == "Initech"
    assert data_engineer.raw_data["location"] == "Remote - Europe"
    assert data_engineer.raw_data["posted_at"] == "2024-03-01T00:00:00Z"
    assert data_engineer.source_url == "https://careers.example.com/jobs/1"
    assert qa_analyst.raw_data["title"] == "QA Analyst"
    assert qa_analyst.raw_data["company"] == "Hooli"
    assert qa_analyst.source_url == "https://hooli.example/careers/qa"
    assert support.source_url == "https://careers.example.com/jobs/3"


@pytest.mark.asyncio
async def test_scraper_worker_without_matching_cards_fails() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html><body><p>Nothing here</p></body></html>")

    source = make_source(
        "scraper",
        {"url": "https://careers.example.com/jobs", "job_selector": "div.job"},
    )
    async with client_for(handler) as client:
        result = await ScraperWorker(source, client, max_retries=0).ingest()

    assert result.success is False
    assert result.errors == ["page 1: no elements matched job selector 'div.job'"]


@pytest.mark.asyncio
async def test_scraper_worker_skips_card_with_unparseable_link() -> None:
    listing = """
    <html><body>
      <article><h2>Backend Engineer</h2><span class="company">Acme</span>
        <a href="/jobs/1">Apply</a></article>
      <article><h2>Broken Link</h2><span class="company">Acme</span>
        <a href="http://[oops/2">Apply</a></article>
      <article><h2>Frontend Engineer</h2><span class="company">Acme</span>
        <a href="/jobs/3">Apply</a></article>
    </body></html>
    """

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=listing)

    source = make_source(
        "scraper",
        {"url": "https://careers.example.com/jobs", "job_selector": "article"},
    )
    async with client_for(handler) as client:
        result = await ScraperWorker(source, client, max_retries=0).ingest()

    assert result.success is True
    assert [raw.raw_data["title"] for raw in result.raw_jobs] == [
        "Backend Engineer",
        "Frontend Engineer",
    ]
    [error] = result.errors
    assert error.startswith("page 1 item 2: ")
    assert "IPv6" in error


@pytest.mark.asyncio
async def test_unexpected_fetch_errors_become_a_single_fatal_entry() -> None:
    class CrashingWorker(ApiWorker):
        async def fetch(self):
            raise RuntimeError("selector bug")

    source = make_source("api", {"url": "https://api.example.com/jobs"})
    async with client_for(lambda request: httpx.Response(200, json={"jobs": []})) as client:
        result = await CrashingWorker(source, client, max_retries=0).ingest()

    assert result.success is False
    assert result.jobs_fetched == 0
    assert result.raw_jobs == []
    assert result.errors == ["Fatal: RuntimeError('selector bug')"]


@pytest.mark.asyncio
async def test_worker_given_another_config_kind_fails_the_fetch() -> None:
    source = make_source("rss", {"url": "https://feed.example.com/rss"})
    async with client_for(lambda request: httpx.Response(200, json={"jobs": []})) as client:
        api_result = await ApiWorker(source, client, max_retries=0).ingest()
        scraper_result = await ScraperWorker(source, client, max_retries=0).ingest()

    assert api_result.success is False
    assert api_result.errors == ["Fatal: demo has no api config"]
    assert scraper_result.errors == ["Fatal: demo has no scraper config"]


@pytest.mark.asyncio
async def test_api_worker_fills_header_templates_from_env(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("DEMO_TOKEN", raising=False)
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"jobs": [api_item(1)]})

    source = make_source(
        "api",
        {
            "url": "https://api.example.com/jobs",
            "headers": {"Accept": "application/json"},
            "env_headers": {"Authorization": "Bearer {DEMO_TOKEN}"},
        },
    )
    async with client_for(handler) as client:
        missing = await ApiWorker(source, client, max_retries=0).ingest()

    assert calls == []
    assert missing.errors == ["Fatal: missing credential DEMO_TOKEN for header Authorization"]

    monkeypatch.setenv("DEMO_TOKEN", "tok-123")
    async with client_for(handler) as client:
        result = await ApiWorker(source, client, max_retries=0).ingest()

    assert result.success is True
    assert calls[0].headers["authorization"] == "Bearer tok-123"
    assert calls[0].headers["accept"] == "application/json"


@pytest.mark.asyncio
async def test_getonboard_builtin_maps_nested_fields(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GETONBOARD_API_KEY", "gob-key")
    builtin = next(item for item in BUILTIN_SOURCES if item["source_key"] == "getonboard")
    payload = {
        "data": [
            {
                "id": "senior-python-dev-acme",
                "attributes": {
                    "title": "Senior Python Developer",
                    "description": "<p>Django and PostgreSQL.</p>",
                    "published-at": 1709251200,
                    "remote-zone": "LATAM",
                    "min-salary": 4000,
                    "max-salary": 5500,
                    "currency": "usd",
                    "company": {"data": {"attributes": {"name": "Acme"}}},
                },
                "links": {"public-url": "https://www.getonbrd.com/jobs/senior-python-dev-acme"},
            }
        ],
        "meta": {"total-pages": 1},
    }
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=payload)

    source = make_source("api", builtin["config"], key="getonboard")
    async with client_for(handler) as client:
        result = await ApiWorker(source, client, max_retries=0).ingest()

    assert calls[0].headers["authorization"] == "Bearer gob-key"
    assert calls[0].url.params["page"] == "1"
    assert calls[0].url.params["per_page"] == "30"
    [raw] = result.raw_jobs
    assert raw.source_job_id == "senior-python-dev-acme"

    job = normalize(raw, "getonboard")
    assert job is not None
    assert job.title == "Senior Python Developer"
    assert job.company_name == "Acme"
    assert job.apply_url == "https://www.getonbrd.com/jobs/senior-python-dev-acme"
    assert job.remote_type == "remote"
    assert job.posted_at == "2024-03-01T00:00:00+00:00"
    assert (job.compensation_min, job.compensation_max) == (4000, 5500)
    assert job.compensation_currency == "USD"
