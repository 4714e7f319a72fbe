from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient
from jobintel.main import create_app

pytestmark = [pytest.mark.integration, pytest.mark.smoke]

SMOKE_SOURCE = {
    "name": "Smoke feed",
    "url": "https://feed.example.com/rss",
    "source_type": "rss",
}

FEED = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>Smoke</title>
  <item>
    <title>Backend Engineer at Acme</title>
    <link>https://acme.example/jobs/backend</link>
    <description>Remote. Python and PostgreSQL.</description>
  </item>
</channel></rss>
"""


def feed_transport() -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(200, content=FEED))


def test_smoke_service_ready(tmp_path: Path) -> None:
    app = create_app(database_path=str(tmp_path / "smoke.sqlite3"))

    with TestClient(app) as client:
        health = client.get("/health")
        metrics = client.get("/metrics")

    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert metrics.status_code == 200


def test_smoke_cron_ingestion_contract(tmp_path: Path) -> None:
    app = create_app(
        database_path=str(tmp_path / "smoke.sqlite3"),
        cron_secret="smoke-secret",
        api_key="smoke-admin",
        http_transport=feed_transport(),
    )

    with TestClient(app) as client:
        created = client.post(
            "/sources",
            headers={"x-api-key": "smoke-admin"},
            json=SMOKE_SOURCE,
        )
        run = client.get("/cron/job-ingestion", headers={"authorization": "Bearer smoke-secret"})
        jobs = client.get("/jobs")

    assert created.status_code == 201
    assert run.status_code == 200
    assert run.json()["stats"]["jobs_created"] == 1
    assert [job["company_name"] for job in jobs.json()["jobs"]] == ["Acme"]


def test_smoke_matches_for_new_user(tmp_path: Path) -> None:
    app = create_app(
        database_path=str(tmp_path / "smoke.sqlite3"),
        http_transport=feed_transport(),
    )

    with TestClient(app) as client:
        client.post("/sources", json=SMOKE_SOURCE)
        client.post("/pipeline/run")
        response = client.get("/matches", headers={"x-user-id": "smoke-user"})

    assert response.status_code == 200
    body = response.json()
    assert body["profile_found"] is False
    assert body["matches"][0]["job"]["title"] == "Backend Engineer"
