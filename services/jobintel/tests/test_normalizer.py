from __future__ import annotations

from datetime import UTC, datetime

import pytest
from jobintel.models import RawPosting
from jobintel.normalizer import (
    build_dedupe_key,
    build_fingerprint,
    classify_remote_type,
    detect_regions,
    detect_seniority,
    normalize,
    normalize_company,
    normalize_employment_type,
    normalize_title,
    parse_compensation,
    parse_posted_at,
)

pytestmark = pytest.mark.unit

FETCHED_AT = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)


def raw_posting(data: dict, **kwargs) -> RawPosting:
    kwargs.setdefault("source_url", None)
    kwargs.setdefault("source_key", "demo")
    kwargs.setdefault("fetched_at", FETCHED_AT)
    return RawPosting(raw_data=data, **kwargs)


def test_missing_title_or_company_is_rejected() -> None:
    assert normalize(raw_posting({"company": "Acme"})) is None
    assert normalize(raw_posting({"title": "Backend Engineer"})) is None
    assert normalize(raw_posting({"title": "  ", "company": "Acme"})) is None


def test_aliases_and_field_map_resolve_source_shapes() -> None:
    job = normalize(
        raw_posting(
            {
                "position": "Sr. Python Dev",
                "company": {"display_name": "Acme Inc"},
                "candidate_required_location": "USA Only",
                "redirect_url": "https://jobs.example.com/acme/42/",
                "id": 42,
            },
        )
    )
    assert job is not None
    assert job.title == "Sr. Python Dev"
    assert job.normalized_title == "senior python developer"
    assert job.company_name == "Acme Inc"
    assert job.apply_url == "https://jobs.example.com/acme/42/"
    assert job.source_job_id == "42"
    assert job.seniority == "senior"
    assert job.remote_region_eligibility == "US"
    assert "python" in job.skills

    mapped = normalize(
        raw_posting(
            {"headline": "Data Analyst", "org": "Globex", "where": "Remote - Europe"},
            field_map={"title": "headline", "company": "org", "location": "where"},
        )
    )
    assert mapped is not None
    assert mapped.title == "Data Analyst"
    assert mapped.company_name == "Globex"
    assert mapped.remote_type == "remote"
    assert mapped.remote_region_eligibility == "Europe"


def test_description_html_is_stripped_and_skills_extracted() -> None:
    job = normalize(
        raw_posting(
            {
                "title": "Platform Engineer",
                "company": "Initech",
                "description": (
                    "<p>We use <b>Kubernetes</b> and Terraform.</p><ul><li>AWS</li></ul>"
                ),
                "tags": ["Go", "DevOps"],
            }
        )
    )
    assert job is not None
    assert "<" not in job.description_text
    assert job.description_text.startswith("We use Kubernetes and Terraform")
    assert {"kubernetes", "terraform", "aws", "devops", "go"} <= set(job.skills)
    assert job.skills == sorted(job.skills)


def test_non_http_apply_url_is_dropped_and_source_url_used_as_fallback() -> None:
    job = normalize(
        raw_posting(
            {"title": "Designer", "company": "Hooli", "url": "mailto:jobs@hooli.example"},
        )
    )
    assert job is not None
    assert job.apply_url is None

    fallback = normalize(
        raw_posting(
            {"title": "Designer", "company": "Hooli"},
            source_url="https://hooli.example/careers/designer",
        )
    )
    assert fallback is not None
    assert fallback.apply_url == "https://hooli.example/careers/designer"


@pytest.mark.parametrize(
    ("location", "description", "hint", "expected"),
    [
        ("Remote", "", None, "remote"),
        ("Hybrid - Berlin", "", None, "hybrid"),
        ("Remote or hybrid", "", None, "hybrid"),
        ("Remote", "This role is on-site three days a week.", None, "remote"),
        ("New York", "This role is on-site in our office.", None, "onsite"),
        ("On-site, remote possible", "", None, "onsite"),
        (None, "", True, "remote"),
        (None, "", "hybrid", "hybrid"),
        ("Lisbon", "", None, "unknown"),
    ],
)
def test_remote_type_precedence(
    location: str | None,
    description: str,
    hint: object,
    expected: str,
) -> None:
    assert classify_remote_type(location, description, hint=hint) == expected


def test_region_detection_trusts_short_tokens_only_in_location() -> None:
    assert detect_regions("Anywhere in the world") == ["Worldwide"]
    assert detect_regions("US") == ["US"]
    assert detect_regions("Remote", "Talk to us about the role") == []
    assert detect_regions("LATAM", "Candidates in Brazil preferred") == ["LATAM", "BR"]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("$120k-$150k", (120000.0, 150000.0, "USD")),
        ("R$ 8.000", (8000.0, 8000.0, "BRL")),
        ("€50,000 - €60,000", (50000.0, 60000.0, "EUR")),
        ("90k-110k GBP", (90000.0, 110000.0, "GBP")),
        (75000, (75000.0, 75000.0, None)),
        ("Competitive", (None, None, None)),
        (None, (None, None, None)),
    ],
)
def test_parse_compensation(value: object, expected: tuple) -> None:
    assert parse_compensation(value) == expected


def test_compensation_without_amount_has_no_currency() -> None:
    job = normalize(
        raw_posting(
            {"title": "Engineer", "company": "Acme", "salary": "DOE", "currency": "usd"}
        )
    )
    assert job is not None
    assert job.compensation_min is None
    assert job.compensation_max is None
    assert job.compensation_currency is None


def test_explicit_salary_fields_override_parsed_range() -> None:
    job = normalize(
        raw_posting(
            {
                "title": "Engineer",
                "company": "Acme",
                "salary_min": 150000,
                "salary_max": 120000,
                "salary_currency": "cad",
            }
        )
    )
    assert job is not None
    assert job.compensation_min == 120000
    assert job.compensation_max == 150000
    assert job.compensation_currency == "CAD"


def test_relative_dates_resolve_against_fetch_time() -> None:
    assert parse_posted_at("today", FETCHED_AT) == "2024-03-10T12:00:00+00:00"
    assert parse_posted_at("yesterday", FETCHED_AT) == "2024-03-09T12:00:00+00:00"
    assert parse_posted_at("3 days ago", FETCHED_AT) == "2024-03-07T12:00:00+00:00"
    assert parse_posted_at("Posted 2 weeks ago", FETCHED_AT) == "2024-02-25T12:00:00+00:00"


def test_absolute_and_epoch_dates_are_utc() -> None:
    assert parse_posted_at("2024-03-01T09:30:00-03:00", FETCHED_AT) == (
        "2024-03-01T12:30:00+00:00"
    )
    assert parse_posted_at("2024-03-01", FETCHED_AT) == "2024-03-01T00:00:00+00:00"
    assert parse_posted_at(1709251200, FETCHED_AT) == "2024-03-01T00:00:00+00:00"
    assert parse_posted_at(1709251200000, FETCHED_AT) == "2024-03-01T00:00:00+00:00"
    assert parse_posted_at("not a date at all", FETCHED_AT) is None


def test_out_of_range_dates_are_dropped() -> None:
    assert parse_posted_at("5000 years ago", FETCHED_AT) is None
    assert parse_posted_at("99999999999 days ago", FETCHED_AT) is None
    assert parse_posted_at(10**20, FETCHED_AT) is None


def test_seniority_and_employment_type() -> None:
    assert detect_seniority(normalize_title("VP of Engineering")) == "executive"
    assert detect_seniority(normalize_title("Senior Software Intern")) == "intern"
    assert detect_seniority(normalize_title("Jr Developer")) == "junior"
    assert detect_seniority(normalize_title("Backend Engineer")) is None
    assert detect_seniority("backend engineer", hint="Mid level") == "mid"

    assert normalize_employment_type("full_time") == "full-time"
    assert normalize_employment_type("Contractor") == "contract"
    assert normalize_employment_type("seasonal") == "seasonal"
    assert normalize_employment_type(None) is None


def test_company_and_title_normalization() -> None:
    assert normalize_company("Acme, Inc.") == "acme"
    assert normalize_company("Globex Corporation") == "globex"
    assert normalize_title("Sr SWE") == "senior software engineer"


def test_fingerprint_prefers_url_identity() -> None:
    by_url = build_fingerprint("https://Jobs.Example.com/a/1/", "engineer", "Acme", "one")
    same_url = build_fingerprint("https://jobs.example.com/a/1", "other title", "Other", "two")
    assert by_url == same_url

    by_tuple = build_fingerprint(None, "engineer", "Acme Inc", "one")
    assert by_tuple == build_fingerprint(None, "engineer", "ACME", "one")
    assert by_tuple != build_fingerprint(None, "engineer", "Acme", "two")
    assert by_tuple != by_url


def test_dedupe_key_ignores_source_and_company_suffixes() -> None:
    assert build_dedupe_key("senior engineer", "Acme, Inc.") == "acme::senior engineer"
    assert build_dedupe_key("senior engineer", "ACME") == "acme::senior engineer"
    assert build_dedupe_key("", "Acme") is None
    assert build_dedupe_key("senior engineer", "LLC") is None


def test_normalize_is_deterministic() -> None:
    data = {
        "title": "Backend Engineer",
        "company": "Acme",
        "location": "Worldwide",
        "publication_date": "2 days ago",
    }
    first = normalize(raw_posting(data))
    second = normalize(raw_posting(data))
    assert first is not None
    assert first == second
    assert first.remote_type == "remote"
    assert first.posted_at == "2024-03-08T12:00:00+00:00"
