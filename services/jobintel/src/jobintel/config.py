from __future__ import annotations

import json
import os
import tempfile

from pydantic import BaseModel, Field

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "jobintel", "jobintel.sqlite3")


def parse_api_tokens(raw: str) -> dict[str, set[str]]:
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("JOBINTEL_API_TOKENS_JSON must be a JSON object.")

    token_map: dict[str, set[str]] = {}
    for token, scopes_value in parsed.items():
        if not isinstance(token, str) or not token.strip():
            raise ValueError("Token keys must be non-empty strings.")
        if isinstance(scopes_value, str):
            scopes = {scopes_value.strip()} if scopes_value.strip() else set()
        elif isinstance(scopes_value, list):
            scopes = {
                str(scope).strip()
                for scope in scopes_value
                if isinstance(scope, str) and scope.strip()
            }
        else:
            raise ValueError("Token scopes must be a string or list of strings.")
        token_map[token] = scopes
    return token_map


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    database_path: str = DEFAULT_DB_PATH
    api_tokens: dict[str, set[str]] = Field(default_factory=dict)
    cron_secret: str | None = None
    job_expire_days: int = Field(default=14, ge=0)
    request_timeout_seconds: float = Field(default=15.0, gt=0)
    source_timeout_seconds: float = Field(default=45.0, gt=0)
    pipeline_deadline_seconds: float = Field(default=280.0, gt=0)
    deadline_margin_seconds: float = Field(default=10.0, ge=0)
    max_concurrent_sources: int = Field(default=4, ge=1)
    max_retries: int = Field(default=2, ge=0)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)
    seed_builtin_sources: bool = True
    user_agent: str = "jobintel/0.1 (+job ingestion pipeline)"

    @property
    def auth_configured(self) -> bool:
        return bool(self.api_tokens) or bool(self.cron_secret)

    @classmethod
    def from_env(cls) -> Settings:
        token_map: dict[str, set[str]] = {}
        raw_tokens = os.getenv("JOBINTEL_API_TOKENS_JSON", "").strip()
        if raw_tokens:
            token_map = parse_api_tokens(raw_tokens)
        api_key = os.getenv("JOBINTEL_API_KEY", "").strip()
        if api_key:
            token_map.setdefault(api_key, set()).add("*")

        return cls(
            database_path=os.getenv("JOBINTEL_DB_PATH", DEFAULT_DB_PATH),
            api_tokens=token_map,
            cron_secret=os.getenv("CRON_SECRET", "").strip() or None,
            job_expire_days=int(os.getenv("JOB_EXPIRE_DAYS", "14")),
            request_timeout_seconds=float(os.getenv("JOBINTEL_REQUEST_TIMEOUT_SECONDS", "15")),
            source_timeout_seconds=float(os.getenv("JOBINTEL_SOURCE_TIMEOUT_SECONDS", "45")),
            pipeline_deadline_seconds=float(
                os.getenv("JOBINTEL_PIPELINE_DEADLINE_SECONDS", "280")
            ),
            max_concurrent_sources=int(os.getenv("JOBINTEL_MAX_CONCURRENT_SOURCES", "4")),
            max_retries=int(os.getenv("JOBINTEL_MAX_RETRIES", "2")),
            retry_backoff_seconds=float(os.getenv("JOBINTEL_RETRY_BACKOFF_SECONDS", "1")),
            seed_builtin_sources=_env_bool("JOBINTEL_SEED_BUILTIN_SOURCES", True),
        )
