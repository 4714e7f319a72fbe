from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from jobintel.main import create_app

pytestmark = pytest.mark.integration


@pytest.fixture
def client(tmp_path: Path):
    db_path = tmp_path / "jobintel.sqlite3"
    app = create_app(database_path=str(db_path))
    with TestClient(app) as test_client:
        yield test_client


def test_metrics_bucket_requests_per_endpoint(client: TestClient) -> None:
    listed = client.get("/jobs")
    missing = client.get("/jobs/nope")
    run = client.post("/pipeline/run")
    metrics = client.get("/metrics")

    assert [listed.status_code, missing.status_code, run.status_code] == [200, 404, 200]
    request_ids = {
        response.headers.get("x-request-id") for response in (listed, missing, run, metrics)
    }
    assert None not in request_ids
    assert len(request_ids) == 4

    body = metrics.json()
    assert body["totals"] == {"requests": 3, "errors": 1}
    assert body["endpoints"]["GET /jobs"]["2xx"] == 1
    assert body["endpoints"]["GET /jobs/nope"]["4xx"] == 1
    pipeline = body["endpoints"]["POST /pipeline/run"]
    assert pipeline["count"] == 1
    assert pipeline["latency_ms_avg"] == pytest.approx(pipeline["latency_ms_sum"])


def test_incoming_request_id_is_preserved(client: TestClient) -> None:
    response = client.get("/health", headers={"x-request-id": "manual-request-id"})
    assert response.status_code == 200
    assert response.headers.get("x-request-id") == "manual-request-id"


def test_requests_are_logged_as_json(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    with caplog.at_level(logging.INFO, logger="jobintel.api"):
        client.get("/jobs", headers={"x-request-id": "logged-request"})

    records = [
        json.loads(record.getMessage())
        for record in caplog.records
        if record.name == "jobintel.api"
    ]
    completed = [record for record in records if record["event"] == "request_complete"]
    assert completed
    assert completed[-1]["request_id"] == "logged-request"
    assert completed[-1]["path"] == "/jobs"
    assert completed[-1]["status_code"] == 200


def test_domain_errors_use_detail_payload(client: TestClient) -> None:
    response = client.get("/sources/missing")

    assert response.status_code == 404
    assert response.json() == {"detail": "Unknown source_key: missing"}
    assert response.headers.get("x-request-id")
