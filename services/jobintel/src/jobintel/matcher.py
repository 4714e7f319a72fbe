from __future__ import annotations

import re
from datetime import UTC, datetime

from common.utils import normalize_text, parse_iso_datetime

from jobintel.errors import ValidationError
from jobintel.models import (
    CanonicalJob,
    JobProfileUpsertRequest,
    MatchResult,
    ScoreBreakdown,
    UserJobProfile,
)
from jobintel.normalizer import (
    canonical_region,
    detect_seniority,
    extract_skills,
    normalize_company,
    normalize_title,
)

SKILL_WEIGHT = 0.45
ROLE_KEYWORD_WEIGHT = 0.30
REGION_WEIGHT = 0.15
RECENCY_WEIGHT = 0.10

TITLE_KEYWORD_SCORE = 1.0
DESCRIPTION_KEYWORD_SCORE = 0.4
EXACT_REGION_SCORE = 1.0
WORLDWIDE_REGION_SCORE = 0.6
RECENCY_HALF_LIFE_DAYS = 7.0


def _contains_phrase(text: str, phrase: str) -> bool:
    if not phrase:
        return False
    return re.search(rf"(?<![a-z0-9]){re.escape(phrase)}(?![a-z0-9])", text) is not None


def _job_regions(job: CanonicalJob) -> set[str]:
    raw = job.remote_region_eligibility or ""
    return {canonical_region(part).lower() for part in raw.split(",") if part.strip()}


def _posted_at(job: CanonicalJob) -> datetime | None:
    return parse_iso_datetime(job.posted_at)


def score_skills(job: CanonicalJob, skills: list[str]) -> tuple[float, list[str]]:
    profile_skills = {normalize_text(skill) for skill in skills if normalize_text(skill)}
    if not profile_skills:
        return 0.0, []
    job_skills = {normalize_text(skill) for skill in job.skills}
    description = normalize_text(job.description_text)
    matched = sorted(
        skill
        for skill in profile_skills
        if skill in job_skills or _contains_phrase(description, skill)
    )
    return len(matched) / len(profile_skills), matched


def score_role_keywords(job: CanonicalJob, keywords: list[str]) -> float:
    title = f"{normalize_text(job.title)} {job.normalized_title}"
    description = normalize_text(job.description_text)
    best = 0.0
    for keyword in keywords:
        phrase = normalize_text(keyword)
        if _contains_phrase(title, phrase) or _contains_phrase(title, normalize_title(keyword)):
            return TITLE_KEYWORD_SCORE
        if _contains_phrase(description, phrase):
            best = DESCRIPTION_KEYWORD_SCORE
    return best


def score_region(job: CanonicalJob, preferred_regions: list[str]) -> float:
    preferred = {canonical_region(region).lower() for region in preferred_regions if region}
    if not preferred:
        return 0.0
    job_regions = _job_regions(job)
    if job_regions & preferred:
        return EXACT_REGION_SCORE
    if "worldwide" in job_regions:
        return WORLDWIDE_REGION_SCORE
    return 0.0


def score_recency(job: CanonicalJob, now: datetime) -> float:
    posted = _posted_at(job)
    if posted is None:
        return 0.0
    age_days = max((now - posted).total_seconds() / 86400, 0.0)
    return 0.5 ** (age_days / RECENCY_HALF_LIFE_DAYS)


def rank_jobs(
    jobs: list[CanonicalJob],
    profile: UserJobProfile | None,
    *,
    limit: int = 20,
    now: datetime | None = None,
) -> list[MatchResult]:
    """Score jobs against a profile; excluded companies are dropped before scoring.

    The breakdown carries each factor's weighted contribution, so the scores of a
    result always sum to its total.
    """
    if limit < 1:
        raise ValidationError("limit must be at least 1")
    now = now or datetime.now(UTC)
    profile = profile or UserJobProfile(clerk_id="anonymous")
    excluded = {normalize_company(company) for company in profile.exclude_companies}
    excluded.discard("")
    keywords = [*profile.role_keywords, *profile.target_titles]

    results: list[MatchResult] = []
    for job in jobs:
        if normalize_company(job.company_name) in excluded:
            continue
        skill_score, matched_skills = score_skills(job, profile.skills)
        breakdown = ScoreBreakdown(
            skill_overlap=round(SKILL_WEIGHT * skill_score, 4),
            role_keyword=round(ROLE_KEYWORD_WEIGHT * score_role_keywords(job, keywords), 4),
            region=round(REGION_WEIGHT * score_region(job, profile.preferred_regions), 4),
            recency=round(RECENCY_WEIGHT * score_recency(job, now), 4),
        )
        score = (
            breakdown.skill_overlap
            + breakdown.role_keyword
            + breakdown.region
            + breakdown.recency
        )
        results.append(
            MatchResult(
                job=job,
                score=round(score, 4),
                breakdown=breakdown,
                matched_skills=matched_skills,
            )
        )

    def sort_key(result: MatchResult) -> tuple[float, float, str]:
        posted = _posted_at(result.job)
        posted_ts = posted.timestamp() if posted else float("-inf")
        return (-result.score, -posted_ts, result.job.id or result.job.fingerprint)

    results.sort(key=sort_key)
    return results[:limit]


def extract_profile_skills(text: str) -> list[str]:
    return extract_skills(text)


def profile_update_from_resume(
    resume_text: str,
    existing: UserJobProfile | None,
    *,
    merge: bool = True,
) -> JobProfileUpsertRequest:
    skills = extract_profile_skills(resume_text)
    seniority = detect_seniority(normalize_title(resume_text[:200]))
    if existing is None or not merge:
        return JobProfileUpsertRequest(
            skills=skills,
            seniority=seniority,
            profile_context_text=resume_text,
        )
    return JobProfileUpsertRequest(
        skills=[*existing.skills, *skills],
        role_keywords=existing.role_keywords,
        preferred_regions=existing.preferred_regions,
        exclude_companies=existing.exclude_companies,
        target_titles=existing.target_titles,
        seniority=existing.seniority or seniority,
        salary_min=existing.salary_min,
        salary_max=existing.salary_max,
        profile_context_text=resume_text,
    )
