"""Map raw, source-specific postings onto the canonical job shape.

Every helper here is pure: a raw posting plus the time it was fetched fully
determines the canonical record, which keeps re-ingestion idempotent.
"""

from __future__ import annotations

import hashlib
import re
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlsplit

from bs4 import BeautifulSoup
from common.utils import normalize_text, normalize_whitespace
from dateutil import parser as date_parser

from jobintel.models import CanonicalJob, RawPosting

MAX_DESCRIPTION_CHARS = 100_000
MAX_LOCATIONS = 5

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "title": ("title", "position", "job_title", "name"),
    "company": (
        "company",
        "company_name",
        "companyName",
        "company.display_name",
        "company.name",
        "organization",
        "author",
    ),
    "location": (
        "location",
        "candidate_required_location",
        "location.display_name",
        "job_location",
        "locations",
        "region",
    ),
    "description": ("description", "description_text", "summary", "content", "body"),
    "apply_url": ("apply_url", "applyUrl", "url", "redirect_url", "job_url", "link"),
    "posted_at": (
        "posted_at",
        "publication_date",
        "date_posted",
        "date",
        "created",
        "created_at",
        "published",
        "pubDate",
        "epoch",
    ),
    "salary": ("salary", "compensation", "salary_range"),
    "salary_min": ("salary_min", "min_salary", "compensation_min"),
    "salary_max": ("salary_max", "max_salary", "compensation_max"),
    "currency": ("salary_currency", "currency", "compensation_currency"),
    "skills": ("skills", "tags", "categories"),
    "employment_type": ("employment_type", "job_type", "contract_type", "contract_time"),
    "seniority": ("seniority", "experience_level"),
    "remote_type": ("remote_type", "workplace_type", "remote"),
    "source_job_id": ("id", "job_id", "slug", "guid"),
}

TITLE_ABBREVIATIONS = {
    "sr": "senior",
    "snr": "senior",
    "jr": "junior",
    "swe": "software engineer",
    "sde": "software development engineer",
    "eng": "engineer",
    "engr": "engineer",
    "dev": "developer",
    "mgr": "manager",
    "pm": "product manager",
    "fe": "frontend",
    "be": "backend",
    "ml": "machine learning",
    "qa": "quality assurance",
}

COMPANY_SUFFIXES = {
    "inc",
    "incorporated",
    "llc",
    "ltd",
    "limited",
    "corp",
    "corporation",
    "co",
    "gmbh",
    "plc",
    "ltda",
}

SKILLS_DICTIONARY = (
    "javascript",
    "typescript",
    "python",
    "react",
    "node.js",
    "nodejs",
    "sql",
    "aws",
    "api",
    "rest",
    "graphql",
    "docker",
    "kubernetes",
    "terraform",
    "ci/cd",
    "devops",
    "product management",
    "agile",
    "scrum",
    "user research",
    "figma",
    "llm",
    "machine learning",
    "data analysis",
    "postgresql",
    "mongodb",
    "redis",
    "next.js",
    "vue",
    "angular",
    "golang",
    "rust",
    "java",
    "kotlin",
    "swift",
    "ruby",
    "rails",
    "php",
    "laravel",
    "html",
    "css",
    "tailwind",
    "jest",
    "cypress",
    "gcp",
    "azure",
    "linux",
    "git",
    "airflow",
    "spark",
    "kafka",
    "django",
    "fastapi",
    "flask",
    "pandas",
    "tensorflow",
    "pytorch",
    "salesforce",
    "jira",
    "saas",
)
_SKILL_PATTERNS = tuple(
    (skill, re.compile(rf"(?<![a-z0-9]){re.escape(skill)}(?![a-z0-9])"))
    for skill in SKILLS_DICTIONARY
)

ONSITE_PATTERNS = (
    re.compile(r"\bin[-\s]?person\b"),
    re.compile(r"\bon[-\s]?site\b"),
    re.compile(r"\bin[-\s]?office\b"),
    re.compile(r"\boffice[-\s]?based\b"),
    re.compile(r"\bwork (in|at) (our )?office\b"),
    re.compile(r"\brelocate\s+(to|required)\b"),
    re.compile(r"\bno (remote|work from home)\b"),
    re.compile(r"\bnot (remote|eligible for remote)\b"),
)
HYBRID_PATTERNS = (
    re.compile(r"\bhybrid\b"),
    re.compile(r"\bsome (days )?in office\b"),
    re.compile(r"\bflexible (location|remote)\b"),
)
REMOTE_PATTERNS = (
    re.compile(r"\bremote\b"),
    re.compile(r"\bwork from home\b"),
    re.compile(r"\bwfh\b"),
    re.compile(r"\bdistributed\b"),
    re.compile(r"\bwork from anywhere\b"),
    re.compile(r"\banywhere\b"),
    re.compile(r"\bworldwide\b"),
)

REGION_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(global|worldwide|anywhere|work from anywhere)\b", re.I), "Worldwide"),
    (
        re.compile(r"\b(us only|usa only|united states only|u\.?s\.? only|us-based only)\b", re.I),
        "US",
    ),
    (re.compile(r"\bmust be (based |located |residing )?in (the )?u\.?s\.?(a\.?)?\b", re.I), "US"),
    (
        re.compile(r"\bauthorized to work (in|within) (the )?(united states|u\.?s\.?a\.?)\b", re.I),
        "US",
    ),
    (re.compile(r"\b(north america|n\.?a\.?) only\b", re.I), "US"),
    (re.compile(r"\b(uk only|united kingdom only|uk-based)\b", re.I), "GB"),
    (re.compile(r"\bmust be (based |located )?in the u\.?k\.?\b", re.I), "GB"),
    (re.compile(r"\b(great britain|britain)\b", re.I), "GB"),
    (re.compile(r"\b(eu only|europe only|european union|eea|european)\b", re.I), "Europe"),
    (re.compile(r"\bemea( only)?\b", re.I), "Europe"),
    (re.compile(r"\b(latam|latin america)( only)?\b", re.I), "LATAM"),
    (re.compile(r"\b(brazil|brasil)\b", re.I), "BR"),
    (re.compile(r"\bcanada\b", re.I), "CA"),
    (re.compile(r"\b(mexico|méxico)\b", re.I), "MX"),
    (re.compile(r"\bargentina\b", re.I), "AR"),
    (re.compile(r"\bcolombia\b", re.I), "CO"),
    (re.compile(r"\bchile\b", re.I), "CL"),
    (re.compile(r"\b(germany|deutschland)\b", re.I), "DE"),
    (re.compile(r"\bfrance\b", re.I), "FR"),
    (re.compile(r"\b(spain|españa)\b", re.I), "ES"),
    (re.compile(r"\b(australia|apac|asia[-\s]pacific|asia)\b", re.I), "APAC"),
)
# Short country tokens are only trusted inside the location field.
LOCATION_REGION_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(united states|usa|us|u\.s\.a?\.?)\b", re.I), "US"),
    (re.compile(r"\b(united kingdom|uk|england|scotland|london)\b", re.I), "GB"),
    (re.compile(r"\b(europe|eu)\b", re.I), "Europe"),
    (re.compile(r"\bamericas\b", re.I), "LATAM"),
)

REGION_ALIASES = {
    "global": "Worldwide",
    "worldwide": "Worldwide",
    "anywhere": "Worldwide",
    "us": "US",
    "usa": "US",
    "united states": "US",
    "north america": "US",
    "uk": "GB",
    "gb": "GB",
    "united kingdom": "GB",
    "europe": "Europe",
    "eu": "Europe",
    "emea": "Europe",
    "latam": "LATAM",
    "latin america": "LATAM",
    "br": "BR",
    "brazil": "BR",
    "ca": "CA",
    "canada": "CA",
    "mx": "MX",
    "mexico": "MX",
    "ar": "AR",
    "argentina": "AR",
    "co": "CO",
    "colombia": "CO",
    "cl": "CL",
    "chile": "CL",
    "de": "DE",
    "germany": "DE",
    "fr": "FR",
    "france": "FR",
    "es": "ES",
    "spain": "ES",
    "apac": "APAC",
    "australia": "APAC",
    "asia": "APAC",
}

CURRENCY_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"R\$"), "BRL"),
    (re.compile(r"(C\$|CA\$)"), "CAD"),
    (re.compile(r"(A\$|AU\$)"), "AUD"),
    (re.compile(r"MX\$"), "MXN"),
    (re.compile(r"\bUSD\b", re.I), "USD"),
    (re.compile(r"\bEUR\b", re.I), "EUR"),
    (re.compile(r"\bGBP\b", re.I), "GBP"),
    (re.compile(r"\bBRL\b", re.I), "BRL"),
    (re.compile(r"\bCAD\b", re.I), "CAD"),
    (re.compile(r"\bAUD\b", re.I), "AUD"),
    (re.compile(r"\bMXN\b", re.I), "MXN"),
    (re.compile(r"€"), "EUR"),
    (re.compile(r"£"), "GBP"),
    (re.compile(r"\$"), "USD"),
)
AMOUNT_PATTERN = re.compile(r"(\d+(?:[.,]\d+)*)\s*([kK])?(?![\d])")

RELATIVE_DATE_PATTERN = re.compile(
    r"(\d+)\+?\s*(minute|min|hour|hr|day|week|month|year)s?\s+ago",
    re.I,
)
RELATIVE_UNITS = {
    "minute": timedelta(minutes=1),
    "min": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "hr": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
}

SENIORITY_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("executive", re.compile(r"\b(chief|vp|vice president|director|head of|cto|ceo|cfo)\b")),
    ("intern", re.compile(r"\b(intern|internship|trainee)\b")),
    ("senior", re.compile(r"\b(senior|staff|principal|lead)\b")),
    ("junior", re.compile(r"\b(junior|entry level|graduate)\b")),
    ("mid", re.compile(r"\b(mid level|mid|intermediate)\b")),
)

EMPLOYMENT_TYPES = {
    "full_time": "full-time",
    "full-time": "full-time",
    "full time": "full-time",
    "fulltime": "full-time",
    "permanent": "full-time",
    "part_time": "part-time",
    "part-time": "part-time",
    "part time": "part-time",
    "contract": "contract",
    "contractor": "contract",
    "freelance": "contract",
    "internship": "internship",
    "temporary": "temporary",
}


def normalize_url(url: str | None) -> str:
    if not url:
        return ""
    parsed = urlsplit(url.strip())
    host = parsed.netloc.lower()
    path = parsed.path.rstrip("/")
    return f"{host}{path}"


def normalize_title(title: str) -> str:
    tokens = normalize_text(title).split()
    return " ".join(TITLE_ABBREVIATIONS.get(token, token) for token in tokens)


def normalize_company(company: str) -> str:
    tokens = [token for token in normalize_text(company).split() if token not in COMPANY_SUFFIXES]
    return " ".join(tokens)


def build_fingerprint(
    apply_url: str | None,
    normalized_title: str,
    company_name: str,
    source_key: str,
) -> str:
    """URL identity wins; title, company and source are the fallback."""
    normalized_apply_url = normalize_url(apply_url)
    if normalized_apply_url:
        key_input = f"url:{normalized_apply_url}"
    else:
        key_input = "tcs:" + "|".join(
            [normalized_title, normalize_company(company_name), source_key]
        )
    return hashlib.sha1(key_input.encode()).hexdigest()


def build_dedupe_key(normalized_title: str, company_name: str) -> str | None:
    """Company and title identity used to merge the same opening across sources."""
    company = normalize_company(company_name)
    if not normalized_title or not company:
        return None
    return f"{company}::{normalized_title}"


def resolve_path(data: Any, path: str) -> Any:
    current = data
    for part in path.split("."):
        if not part:
            continue
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
        if current is None:
            return None
    return current


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict)):
        return bool(value)
    return True


def pick_field(raw: RawPosting, canonical: str) -> Any:
    candidates: list[str] = []
    hint = raw.field_map.get(canonical)
    if hint:
        candidates.append(hint)
    candidates.extend(FIELD_ALIASES.get(canonical, ()))
    for path in candidates:
        value = resolve_path(raw.raw_data, path)
        if _is_present(value):
            return value
    return None


def as_text(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        return normalize_whitespace(value) or None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, dict):
        for key in ("display_name", "name", "label", "title"):
            if _is_present(value.get(key)):
                return as_text(value.get(key))
        return None
    if isinstance(value, list):
        parts = [text for text in (as_text(item) for item in value) if text]
        return ", ".join(parts) or None
    return None


def strip_html(text: str) -> str:
    if "<" in text and ">" in text:
        text = BeautifulSoup(text, "html.parser").get_text(" ")
    return normalize_whitespace(text)[:MAX_DESCRIPTION_CHARS]


def split_locations(location_raw: str | None, value: Any = None) -> list[str]:
    if isinstance(value, list):
        parts = [as_text(item) for item in value]
    elif location_raw:
        parts = re.split(r"\s*[;|/]\s*|\s+or\s+", location_raw)
    else:
        parts = []
    locations: list[str] = []
    for part in parts:
        cleaned = normalize_whitespace(part or "")
        if cleaned and cleaned not in locations:
            locations.append(cleaned)
    return locations[:MAX_LOCATIONS]


def _match_remote_type(text: str) -> str | None:
    lowered = text.lower()
    for patterns, label in (
        (ONSITE_PATTERNS, "onsite"),
        (HYBRID_PATTERNS, "hybrid"),
        (REMOTE_PATTERNS, "remote"),
    ):
        if any(pattern.search(lowered) for pattern in patterns):
            return label
    return None


def classify_remote_type(
    location_raw: str | None,
    description: str = "",
    hint: Any = None,
) -> str:
    """Onsite phrases win over hybrid, hybrid over remote."""
    if hint is True:
        return "remote"
    if isinstance(hint, str):
        hinted = _match_remote_type(hint.replace("_", " "))
        if hinted:
            return hinted
    for text in (location_raw or "", description):
        if not text:
            continue
        matched = _match_remote_type(text)
        if matched:
            return matched
    return "unknown"


def detect_regions(location_raw: str | None, description: str = "") -> list[str]:
    found: list[str] = []
    location_text = location_raw or ""
    for pattern, label in REGION_PATTERNS:
        if label not in found and (
            pattern.search(location_text) or pattern.search(description)
        ):
            found.append(label)
    for pattern, label in LOCATION_REGION_PATTERNS:
        if label not in found and pattern.search(location_text):
            found.append(label)
    return found


def canonical_region(value: str) -> str:
    cleaned = normalize_whitespace(value)
    return REGION_ALIASES.get(cleaned.lower(), cleaned)


def detect_currency(text: str) -> str | None:
    for pattern, code in CURRENCY_PATTERNS:
        if pattern.search(text):
            return code
    return None


def parse_amount(token: str, thousands: bool = False) -> float | None:
    if re.fullmatch(r"\d{1,3}([.,]\d{3})+", token):
        number = float(re.sub(r"[.,]", "", token))
    elif re.fullmatch(r"\d{1,3}([.,]\d{3})+[.,]\d{1,2}", token):
        whole, fraction = token[:-3], token[-2:]
        if token[-3] not in ".,":
            whole, fraction = token[:-2], token[-1:]
        number = float(re.sub(r"[.,]", "", whole) + "." + fraction)
    elif re.fullmatch(r"\d+[.,]\d+", token):
        number = float(token.replace(",", "."))
    elif token.isdigit():
        number = float(token)
    else:
        return None
    if thousands:
        number *= 1000
    return number


def parse_compensation(value: Any) -> tuple[float | None, float | None, str | None]:
    """Parse "$120k-$150k" or "R$ 8.000" style strings; never guesses."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        amount = float(value)
        return (amount, amount, None) if amount > 0 else (None, None, None)
    text = as_text(value)
    if not text or not re.search(r"\d", text):
        return None, None, None

    matches = AMOUNT_PATTERN.findall(text)
    has_suffix = any(suffix for _, suffix in matches)
    amounts: list[float] = []
    for token, suffix in matches[:2]:
        amount = parse_amount(token, thousands=bool(suffix))
        if amount is None or amount <= 0:
            continue
        if has_suffix and not suffix and amount < 1000:
            amount *= 1000
        amounts.append(amount)
    if not amounts:
        return None, None, None
    return min(amounts), max(amounts), detect_currency(text)


def as_amount(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    if isinstance(value, str):
        minimum, _, _ = parse_compensation(value)
        return minimum
    return None


def parse_posted_at(value: Any, fetched_at: datetime) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value if value.tzinfo else value.replace(tzinfo=UTC)
        return parsed.astimezone(UTC).isoformat()
    if isinstance(value, (int, float)):
        timestamp = float(value)
        if timestamp > 1e12:
            timestamp /= 1000
        try:
            return datetime.fromtimestamp(timestamp, tz=UTC).isoformat()
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None

    text = normalize_whitespace(value).lower()
    if not text:
        return None
    if text.isdigit():
        return parse_posted_at(int(text), fetched_at)
    if text in {"today", "just now", "just posted", "new"}:
        return fetched_at.astimezone(UTC).isoformat()
    if text == "yesterday":
        return (fetched_at - timedelta(days=1)).astimezone(UTC).isoformat()
    relative = RELATIVE_DATE_PATTERN.search(text)
    if relative:
        amount = int(relative.group(1))
        unit = RELATIVE_UNITS[relative.group(2).lower()]
        try:
            return (fetched_at - unit * amount).astimezone(UTC).isoformat()
        except OverflowError:
            return None

    try:
        parsed = date_parser.parse(value)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    try:
        return parsed.astimezone(UTC).isoformat()
    except OverflowError:
        return None


def normalize_skills(value: Any) -> list[str]:
    if isinstance(value, str):
        items: list[Any] = re.split(r"[,;|]", value)
    elif isinstance(value, list):
        items = value
    else:
        return []
    skills: set[str] = set()
    for item in items:
        text = as_text(item)
        if not text:
            continue
        skill = text.lower()
        if len(skill) <= 50:
            skills.add(skill)
    return sorted(skills)


def extract_skills(text: str) -> list[str]:
    lowered = text.lower()
    return sorted(skill for skill, pattern in _SKILL_PATTERNS if pattern.search(lowered))


def detect_seniority(normalized_title: str, hint: Any = None) -> str | None:
    for candidate in (normalize_title(as_text(hint) or ""), normalized_title):
        if not candidate:
            continue
        for label, pattern in SENIORITY_PATTERNS:
            if pattern.search(candidate):
                return label
    return None


def normalize_employment_type(value: Any) -> str | None:
    text = as_text(value)
    if not text:
        return None
    key = text.lower()
    return EMPLOYMENT_TYPES.get(key, EMPLOYMENT_TYPES.get(key.replace("-", "_"), key))


def normalize(raw: RawPosting, source_key: str | None = None) -> CanonicalJob | None:
    """Return the canonical job, or None when title or company is missing."""
    if not isinstance(raw.raw_data, dict):
        return None
    source_key = source_key or raw.source_key

    title = as_text(pick_field(raw, "title"))
    company = as_text(pick_field(raw, "company"))
    if not title or not company:
        return None

    description = strip_html(as_text(pick_field(raw, "description")) or "")
    location_value = pick_field(raw, "location")
    location_raw = as_text(location_value)

    apply_url = as_text(pick_field(raw, "apply_url")) or raw.source_url
    if apply_url and urlsplit(apply_url).scheme not in ("http", "https"):
        apply_url = None

    compensation_min, compensation_max, currency = parse_compensation(pick_field(raw, "salary"))
    explicit_min = as_amount(pick_field(raw, "salary_min"))
    explicit_max = as_amount(pick_field(raw, "salary_max"))
    if explicit_min is not None or explicit_max is not None:
        compensation_min = explicit_min if explicit_min is not None else explicit_max
        compensation_max = explicit_max if explicit_max is not None else explicit_min
    if (
        compensation_min is not None
        and compensation_max is not None
        and compensation_min > compensation_max
    ):
        compensation_min, compensation_max = compensation_max, compensation_min
    explicit_currency = as_text(pick_field(raw, "currency"))
    if explicit_currency and compensation_min is not None:
        currency = explicit_currency.upper()
    if compensation_min is None:
        currency = None

    skills = set(normalize_skills(pick_field(raw, "skills")))
    skills.update(extract_skills(f"{title} {description}"))

    normalized_title = normalize_title(title)
    regions = detect_regions(location_raw, description)
    source_job_id = as_text(pick_field(raw, "source_job_id")) or raw.source_job_id

    return CanonicalJob(
        fingerprint=build_fingerprint(apply_url, normalized_title, company, source_key),
        title=title,
        normalized_title=normalized_title,
        company_name=company,
        locations=split_locations(location_raw, location_value),
        location_raw=location_raw,
        remote_type=classify_remote_type(
            location_raw,
            description,
            hint=pick_field(raw, "remote_type"),
        ),
        remote_region_eligibility=", ".join(regions) or None,
        employment_type=normalize_employment_type(pick_field(raw, "employment_type")),
        seniority=detect_seniority(normalized_title, pick_field(raw, "seniority")),
        compensation_min=compensation_min,
        compensation_max=compensation_max,
        compensation_currency=currency,
        posted_at=parse_posted_at(pick_field(raw, "posted_at"), raw.fetched_at),
        description_text=description,
        apply_url=apply_url,
        skills=sorted(skills),
        source_primary=source_key,
        source_job_id=source_job_id,
    )
