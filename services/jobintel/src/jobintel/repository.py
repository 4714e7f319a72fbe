from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Any

from common.utils import now_utc_iso

from jobintel.errors import StoreUnavailable
from jobintel.models import (
    SOURCE_SETTINGS_ADAPTER,
    AuditEvent,
    CanonicalJob,
    JobProfileUpsertRequest,
    PipelineResult,
    PipelineRunRecord,
    PipelineStats,
    SourceConfig,
    SourceSyncHistoryItem,
    UpsertOutcome,
    UserJobProfile,
)
from jobintel.normalizer import build_dedupe_key

SOURCE_COLUMNS = """
    id,
    source_key,
    name,
    description,
    source_type,
    is_built_in,
    enabled,
    config_json,
    created_at,
    updated_at,
    last_sync_at,
    last_sync_status,
    last_sync_jobs_count,
    last_error
"""

JOB_COLUMNS = """
    id,
    fingerprint,
    title,
    normalized_title,
    company_name,
    locations_json,
    location_raw,
    remote_type,
    remote_region_eligibility,
    employment_type,
    seniority,
    compensation_min,
    compensation_max,
    compensation_currency,
    posted_at,
    description_text,
    apply_url,
    skills_json,
    source_primary,
    source_job_id,
    status,
    last_seen_at,
    created_at,
    updated_at
"""

# Columns overwritten when a job is seen again; id, created_at and source_primary never change.
MUTABLE_JOB_COLUMNS = (
    "title",
    "normalized_title",
    "company_name",
    "locations_json",
    "location_raw",
    "remote_type",
    "remote_region_eligibility",
    "employment_type",
    "seniority",
    "compensation_min",
    "compensation_max",
    "compensation_currency",
    "posted_at",
    "description_text",
    "apply_url",
    "skills_json",
    "dedupe_key",
)

UPDATABLE_SOURCE_COLUMNS = ("name", "description", "enabled", "config_json")


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class JobRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise StoreUnavailable("Database connection is not initialized")
        return self._connection

    @contextmanager
    def _store(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            connection = self.connection
            try:
                yield connection
            except sqlite3.IntegrityError:
                self._rollback(connection)
                raise
            except sqlite3.Error as exc:
                self._rollback(connection)
                raise StoreUnavailable(f"Store error: {exc}") from exc
            except Exception:
                self._rollback(connection)
                raise

    @staticmethod
    def _rollback(connection: sqlite3.Connection) -> None:
        with suppress(sqlite3.Error):
            connection.rollback()

    def connect(self) -> None:
        with self._lock:
            try:
                self.database_path.parent.mkdir(parents=True, exist_ok=True)
                self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            except (OSError, sqlite3.Error) as exc:
                raise StoreUnavailable(f"Cannot open store at {self.database_path}: {exc}") from exc
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS job_sources_config (
                    id TEXT NOT NULL UNIQUE,
                    source_key TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    source_type TEXT NOT NULL,
                    is_built_in INTEGER NOT NULL DEFAULT 0,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    config_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_sync_at TEXT,
                    last_sync_status TEXT NOT NULL DEFAULT 'pending',
                    last_sync_jobs_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT
                );

                CREATE TABLE IF NOT EXISTS source_sync_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    source_key TEXT NOT NULL,
                    synced_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    jobs_count INTEGER NOT NULL,
                    error TEXT
                );

                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    fingerprint TEXT NOT NULL UNIQUE,
                    title TEXT NOT NULL,
                    normalized_title TEXT NOT NULL DEFAULT '',
                    company_name TEXT NOT NULL,
                    locations_json TEXT NOT NULL DEFAULT '[]',
                    location_raw TEXT,
                    remote_type TEXT NOT NULL DEFAULT 'unknown',
                    remote_region_eligibility TEXT,
                    employment_type TEXT,
                    seniority TEXT,
                    compensation_min REAL,
                    compensation_max REAL,
                    compensation_currency TEXT,
                    posted_at TEXT,
                    description_text TEXT NOT NULL DEFAULT '',
                    apply_url TEXT,
                    skills_json TEXT NOT NULL DEFAULT '[]',
                    dedupe_key TEXT,
                    source_primary TEXT NOT NULL,
                    source_job_id TEXT,
                    status TEXT NOT NULL DEFAULT 'active',
                    last_seen_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_status_seen ON jobs (status, last_seen_at);
                CREATE INDEX IF NOT EXISTS idx_jobs_source_primary ON jobs (source_primary);
                CREATE INDEX IF NOT EXISTS idx_jobs_dedupe_key ON jobs (dedupe_key, status);

                CREATE TABLE IF NOT EXISTS job_source_links (
                    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    source_key TEXT NOT NULL,
                    source_job_id TEXT NOT NULL DEFAULT '',
                    source_url TEXT,
                    first_seen_at TEXT NOT NULL,
                    last_seen_at TEXT NOT NULL,
                    PRIMARY KEY (job_id, source_key, source_job_id)
                );

                CREATE TABLE IF NOT EXISTS user_job_profiles (
                    clerk_id TEXT PRIMARY KEY,
                    profile_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS pipeline_runs (
                    run_id TEXT PRIMARY KEY,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    status TEXT NOT NULL,
                    success INTEGER NOT NULL,
                    stats_json TEXT NOT NULL,
                    errors_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS audit_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    occurred_at TEXT NOT NULL,
                    request_id TEXT,
                    method TEXT NOT NULL,
                    path TEXT NOT NULL,
                    action TEXT NOT NULL,
                    scope TEXT,
                    source_ip TEXT,
                    user_agent TEXT,
                    auth_subject TEXT,
                    status TEXT NOT NULL,
                    message TEXT
                );
                """
            )
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    # Sources

    def insert_source(
        self,
        *,
        source_key: str,
        name: str,
        source_type: str,
        config: dict[str, Any],
        description: str | None = None,
        is_built_in: bool = False,
        enabled: bool = True,
        ignore_existing: bool = False,
    ) -> SourceConfig | None:
        conflict_clause = "ON CONFLICT(source_key) DO NOTHING" if ignore_existing else ""
        with self._store() as connection:
            now = now_utc_iso()
            cursor = connection.execute(
                f"""
                INSERT INTO job_sources_config (
                    id,
                    source_key,
                    name,
                    description,
                    source_type,
                    is_built_in,
                    enabled,
                    config_json,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                {conflict_clause}
                """,
                (
                    str(uuid.uuid4()),
                    source_key,
                    name,
                    description,
                    source_type,
                    int(is_built_in),
                    int(enabled),
                    json.dumps(config),
                    now,
                    now,
                ),
            )
            connection.commit()
            if cursor.rowcount == 0:
                return None
            return self.get_source(source_key)

    def get_source(self, source_key: str) -> SourceConfig | None:
        with self._store() as connection:
            row = connection.execute(
                f"SELECT {SOURCE_COLUMNS} FROM job_sources_config WHERE source_key = ?",
                (source_key,),
            ).fetchone()
            if row is None:
                return None
            return self._to_source(row)

    def get_source_by_id(self, source_id: str) -> SourceConfig | None:
        with self._store() as connection:
            row = connection.execute(
                f"SELECT {SOURCE_COLUMNS} FROM job_sources_config WHERE id = ?",
                (source_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_source(row)

    def list_sources(self, *, enabled_only: bool = False) -> list[SourceConfig]:
        with self._store() as connection:
            query = f"SELECT {SOURCE_COLUMNS} FROM job_sources_config"
            if enabled_only:
                query += " WHERE enabled = 1"
            query += " ORDER BY is_built_in DESC, name, source_key"
            cursor = connection.execute(query)
            return [self._to_source(row) for row in cursor.fetchall()]

    def update_source(self, source_key: str, fields: dict[str, Any]) -> SourceConfig | None:
        assignments: list[str] = []
        params: list[Any] = []
        for column in UPDATABLE_SOURCE_COLUMNS:
            if column not in fields:
                continue
            value = fields[column]
            if column == "enabled":
                value = int(bool(value))
            elif column == "config_json":
                value = json.dumps(value)
            assignments.append(f"{column} = ?")
            params.append(value)

        with self._store() as connection:
            if assignments:
                assignments.append("updated_at = ?")
                params.extend([now_utc_iso(), source_key])
                connection.execute(
                    f"UPDATE job_sources_config SET {', '.join(assignments)} WHERE source_key = ?",
                    tuple(params),
                )
                connection.commit()
            return self.get_source(source_key)

    def delete_source(self, source_key: str) -> bool:
        with self._store() as connection:
            cursor = connection.execute(
                "DELETE FROM job_sources_config WHERE source_key = ? AND is_built_in = 0",
                (source_key,),
            )
            connection.commit()
            return cursor.rowcount > 0

    def record_sync_outcome(
        self,
        source_key: str,
        *,
        status: str,
        jobs_count: int,
        error: str | None,
        run_id: str | None,
        synced_at: str | None = None,
    ) -> None:
        synced_at = synced_at or now_utc_iso()
        with self._store() as connection:
            connection.execute(
                """
                UPDATE job_sources_config
                SET
                    last_sync_at = ?,
                    last_sync_status = ?,
                    last_sync_jobs_count = ?,
                    last_error = ?,
                    updated_at = ?
                WHERE source_key = ?
                """,
                (synced_at, status, jobs_count, error, now_utc_iso(), source_key),
            )
            connection.execute(
                """
                INSERT INTO source_sync_history (
                    run_id,
                    source_key,
                    synced_at,
                    status,
                    jobs_count,
                    error
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (run_id, source_key, synced_at, status, jobs_count, error),
            )
            connection.commit()

    def list_sync_history(
        self,
        *,
        limit: int,
        offset: int,
        source_key: str | None = None,
        status: str | None = None,
        run_id: str | None = None,
    ) -> list[SourceSyncHistoryItem]:
        with self._store() as connection:
            query = """
                SELECT
                    id AS history_id,
                    run_id,
                    source_key,
                    synced_at,
                    status,
                    jobs_count,
                    error
                FROM source_sync_history
            """
            params: list[Any] = []
            filters: list[str] = []
            if source_key:
                filters.append("source_key = ?")
                params.append(source_key)
            if status:
                filters.append("status = ?")
                params.append(status)
            if run_id:
                filters.append("run_id = ?")
                params.append(run_id)
            if filters:
                query += " WHERE " + " AND ".join(filters)
            query += " ORDER BY id DESC LIMIT ? OFFSET ?"
            params.extend([limit, offset])
            cursor = connection.execute(query, tuple(params))
            return [SourceSyncHistoryItem(**dict(row)) for row in cursor.fetchall()]

    def last_sync_time(self) -> str | None:
        with self._store() as connection:
            row = connection.execute(
                "SELECT MAX(last_sync_at) AS last_sync_at FROM job_sources_config"
            ).fetchone()
            return row["last_sync_at"]

    # Jobs

    def find_job_by_fingerprint(self, fingerprint: str) -> CanonicalJob | None:
        with self._store() as connection:
            row = connection.execute(
                f"SELECT {JOB_COLUMNS} FROM jobs WHERE fingerprint = ?",
                (fingerprint,),
            ).fetchone()
            if row is None:
                return None
            return self._to_job(row)

    def get_job(self, job_id: str) -> CanonicalJob | None:
        with self._store() as connection:
            row = connection.execute(
                f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_job(row)

    def upsert_job(self, job: CanonicalJob, *, seen_at: str | None = None) -> UpsertOutcome:
        """Insert or merge a job by fingerprint; safe to repeat with identical input.

        A posting with a new fingerprint whose company and title match an active job
        from another source is recorded as a sighting of that job instead.
        """
        seen_at = seen_at or now_utc_iso()
        with self._store() as connection:
            existing = self.find_job_by_fingerprint(job.fingerprint)
            duplicate_id = None
            if existing is None:
                duplicate_id = self._find_cross_source_duplicate(connection, job)

            if duplicate_id is not None:
                job_id = duplicate_id
                connection.execute(
                    "UPDATE jobs SET last_seen_at = ? WHERE id = ?",
                    (seen_at, job_id),
                )
            else:
                if existing is None:
                    try:
                        job_id = self._insert_job(connection, job, seen_at)
                    except sqlite3.IntegrityError:
                        # Lost an insert race for this fingerprint: merge into the winner instead.
                        existing = self.find_job_by_fingerprint(job.fingerprint)
                        if existing is None:
                            raise
                if existing is not None:
                    job_id = str(existing.id)
                    self._update_job(connection, job_id, job, seen_at)

            self._link_source(connection, job_id, job, seen_at)
            connection.commit()
        return UpsertOutcome(
            created=existing is None and duplicate_id is None,
            job_id=job_id,
        )

    def _find_cross_source_duplicate(
        self,
        connection: sqlite3.Connection,
        job: CanonicalJob,
    ) -> str | None:
        dedupe_key = build_dedupe_key(job.normalized_title, job.company_name)
        if dedupe_key is None:
            return None
        row = connection.execute(
            """
            SELECT id
            FROM jobs
            WHERE dedupe_key = ? AND status = 'active' AND source_primary != ?
            ORDER BY created_at, id
            LIMIT 1
            """,
            (dedupe_key, job.source_primary),
        ).fetchone()
        return None if row is None else row["id"]

    def _job_values(self, job: CanonicalJob) -> dict[str, Any]:
        return {
            "title": job.title,
            "normalized_title": job.normalized_title,
            "company_name": job.company_name,
            "locations_json": json.dumps(job.locations),
            "location_raw": job.location_raw,
            "remote_type": job.remote_type,
            "remote_region_eligibility": job.remote_region_eligibility,
            "employment_type": job.employment_type,
            "seniority": job.seniority,
            "compensation_min": job.compensation_min,
            "compensation_max": job.compensation_max,
            "compensation_currency": job.compensation_currency,
            "posted_at": job.posted_at,
            "description_text": job.description_text,
            "apply_url": job.apply_url,
            "skills_json": json.dumps(sorted(set(job.skills))),
            "dedupe_key": build_dedupe_key(job.normalized_title, job.company_name),
        }

    def _insert_job(self, connection: sqlite3.Connection, job: CanonicalJob, seen_at: str) -> str:
        job_id = str(uuid.uuid4())
        values = self._job_values(job)
        columns = [
            "id",
            "fingerprint",
            *MUTABLE_JOB_COLUMNS,
            "source_primary",
            "source_job_id",
            "status",
            "last_seen_at",
            "created_at",
            "updated_at",
        ]
        params = [
            job_id,
            job.fingerprint,
            *(values[column] for column in MUTABLE_JOB_COLUMNS),
            job.source_primary,
            job.source_job_id,
            "active",
            seen_at,
            seen_at,
            seen_at,
        ]
        placeholders = ", ".join("?" for _ in columns)
        connection.execute(
            f"INSERT INTO jobs ({', '.join(columns)}) VALUES ({placeholders})",
            tuple(params),
        )
        return job_id

    def _update_job(
        self,
        connection: sqlite3.Connection,
        job_id: str,
        job: CanonicalJob,
        seen_at: str,
    ) -> None:
        values = self._job_values(job)
        row = connection.execute(
            f"SELECT {', '.join(MUTABLE_JOB_COLUMNS)}, status FROM jobs WHERE id = ?",
            (job_id,),
        ).fetchone()
        changed = row["status"] != "active" or any(
            row[column] != values[column] for column in MUTABLE_JOB_COLUMNS
        )
        if not changed:
            connection.execute(
                "UPDATE jobs SET last_seen_at = ? WHERE id = ?",
                (seen_at, job_id),
            )
            return

        assignments = ", ".join(f"{column} = ?" for column in MUTABLE_JOB_COLUMNS)
        connection.execute(
            f"""
            UPDATE jobs
            SET {assignments}, status = 'active', last_seen_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                *(values[column] for column in MUTABLE_JOB_COLUMNS),
                seen_at,
                seen_at,
                job_id,
            ),
        )

    def _link_source(
        self,
        connection: sqlite3.Connection,
        job_id: str,
        job: CanonicalJob,
        seen_at: str,
    ) -> None:
        connection.execute(
            """
            INSERT INTO job_source_links (
                job_id,
                source_key,
                source_job_id,
                source_url,
                first_seen_at,
                last_seen_at
            )
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(job_id, source_key, source_job_id) DO UPDATE SET
                source_url = excluded.source_url,
                last_seen_at = excluded.last_seen_at
            """,
            (
                job_id,
                job.source_primary,
                job.source_job_id or "",
                job.apply_url,
                seen_at,
                seen_at,
            ),
        )

    def list_job_sightings(self, job_id: str) -> list[dict[str, Any]]:
        with self._store() as connection:
            cursor = connection.execute(
                """
                SELECT source_key, source_job_id, source_url, first_seen_at, last_seen_at
                FROM job_source_links
                WHERE job_id = ?
                ORDER BY first_seen_at, source_key
                """,
                (job_id,),
            )
            return [dict(row) for row in cursor.fetchall()]

    def list_jobs(
        self,
        *,
        limit: int,
        offset: int = 0,
        query: str | None = None,
        remote_type: str | None = None,
        region_eligibility: str | None = None,
        seniority: str | None = None,
        posted_since: str | None = None,
        source: str | None = None,
        status: str = "active",
    ) -> list[CanonicalJob]:
        with self._store() as connection:
            sql = f"SELECT {JOB_COLUMNS} FROM jobs"
            filters = ["status = ?"]
            params: list[Any] = [status]
            if query:
                pattern = f"%{_escape_like(query)}%"
                filters.append(
                    "(title LIKE ? ESCAPE '\\' OR company_name LIKE ? ESCAPE '\\' "
                    "OR description_text LIKE ? ESCAPE '\\')"
                )
                params.extend([pattern, pattern, pattern])
            if remote_type:
                filters.append("remote_type = ?")
                params.append(remote_type)
            if region_eligibility:
                filters.append("remote_region_eligibility LIKE ? ESCAPE '\\'")
                params.append(f"%{_escape_like(region_eligibility)}%")
            if seniority:
                filters.append("seniority = ?")
                params.append(seniority)
            if posted_since:
                filters.append("posted_at >= ?")
                params.append(posted_since)
            if source:
                filters.append(
                    "(source_primary = ? OR id IN "
                    "(SELECT job_id FROM job_source_links WHERE source_key = ?))"
                )
                params.extend([source, source])
            sql += " WHERE " + " AND ".join(filters)
            sql += " ORDER BY last_seen_at DESC, id LIMIT ? OFFSET ?"
            params.extend([limit, offset])
            cursor = connection.execute(sql, tuple(params))
            return [self._to_job(row) for row in cursor.fetchall()]

    def mark_stale_jobs(self, not_seen_since: str) -> int:
        with self._store() as connection:
            cursor = connection.execute(
                """
                UPDATE jobs
                SET status = 'expired', updated_at = ?
                WHERE status = 'active' AND last_seen_at < ?
                """,
                (now_utc_iso(), not_seen_since),
            )
            connection.commit()
            return cursor.rowcount

    def count_active_jobs(self) -> int:
        with self._store() as connection:
            row = connection.execute(
                "SELECT COUNT(1) AS c FROM jobs WHERE status = 'active'"
            ).fetchone()
            return int(row["c"])

    def active_job_counts_by_source(self) -> dict[str, int]:
        with self._store() as connection:
            cursor = connection.execute(
                """
                SELECT source_primary, COUNT(1) AS c
                FROM jobs
                WHERE status = 'active'
                GROUP BY source_primary
                """
            )
            return {row["source_primary"]: int(row["c"]) for row in cursor.fetchall()}

    # Profiles

    def get_profile(self, clerk_id: str) -> UserJobProfile | None:
        with self._store() as connection:
            row = connection.execute(
                """
                SELECT clerk_id, profile_json, created_at, updated_at
                FROM user_job_profiles
                WHERE clerk_id = ?
                """,
                (clerk_id,),
            ).fetchone()
            if row is None:
                return None
            profile: dict[str, Any] = json.loads(row["profile_json"])
            return UserJobProfile(
                clerk_id=row["clerk_id"],
                created_at=row["created_at"],
                updated_at=row["updated_at"],
                **profile,
            )

    def upsert_profile(self, clerk_id: str, payload: JobProfileUpsertRequest) -> UserJobProfile:
        with self._store() as connection:
            now = now_utc_iso()
            connection.execute(
                """
                INSERT INTO user_job_profiles (clerk_id, profile_json, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(clerk_id) DO UPDATE SET
                    profile_json = excluded.profile_json,
                    updated_at = excluded.updated_at
                """,
                (clerk_id, payload.model_dump_json(), now, now),
            )
            connection.commit()
            profile = self.get_profile(clerk_id)
            if profile is None:
                raise StoreUnavailable(f"profile for {clerk_id} was not stored")
            return profile

    # Pipeline runs

    def record_pipeline_run(self, result: PipelineResult) -> None:
        with self._store() as connection:
            connection.execute(
                """
                INSERT INTO pipeline_runs (
                    run_id,
                    started_at,
                    finished_at,
                    status,
                    success,
                    stats_json,
                    errors_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    finished_at = excluded.finished_at,
                    status = excluded.status,
                    success = excluded.success,
                    stats_json = excluded.stats_json,
                    errors_json = excluded.errors_json
                """,
                (
                    result.run_id,
                    result.started_at,
                    result.finished_at,
                    result.status,
                    int(result.success),
                    result.stats().model_dump_json(),
                    json.dumps(result.errors),
                ),
            )
            connection.commit()

    def list_pipeline_runs(self, *, limit: int, offset: int = 0) -> list[PipelineRunRecord]:
        with self._store() as connection:
            cursor = connection.execute(
                """
                SELECT run_id, started_at, finished_at, status, success, stats_json, errors_json
                FROM pipeline_runs
                ORDER BY started_at DESC
                LIMIT ? OFFSET ?
                """,
                (limit, offset),
            )
            return [
                PipelineRunRecord(
                    run_id=row["run_id"],
                    started_at=row["started_at"],
                    finished_at=row["finished_at"],
                    status=row["status"],
                    success=bool(row["success"]),
                    stats=PipelineStats.model_validate_json(row["stats_json"]),
                    errors=json.loads(row["errors_json"]),
                )
                for row in cursor.fetchall()
            ]

    # Audit

    def record_audit_event(
        self,
        *,
        request_id: str | None,
        method: str,
        path: str,
        action: str,
        scope: str | None,
        source_ip: str | None,
        user_agent: str | None,
        auth_subject: str | None,
        status: str,
        message: str | None,
    ) -> int:
        with self._store() as connection:
            cursor = connection.execute(
                """
                INSERT INTO audit_events (
                    occurred_at,
                    request_id,
                    method,
                    path,
                    action,
                    scope,
                    source_ip,
                    user_agent,
                    auth_subject,
                    status,
                    message
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    now_utc_iso(),
                    request_id,
                    method,
                    path,
                    action,
                    scope,
                    source_ip,
                    user_agent,
                    auth_subject,
                    status,
                    message,
                ),
            )
            connection.commit()
            return int(cursor.lastrowid)

    def list_audit_events(
        self,
        *,
        limit: int,
        action: str | None,
        status: str | None,
    ) -> list[AuditEvent]:
        with self._store() as connection:
            query = """
                SELECT
                    id AS event_id,
                    occurred_at,
                    request_id,
                    method,
                    path,
                    action,
                    scope,
                    source_ip,
                    user_agent,
                    auth_subject,
                    status,
                    message
                FROM audit_events
            """
            params: list[Any] = []
            filters: list[str] = []
            if action:
                filters.append("action = ?")
                params.append(action)
            if status:
                filters.append("status = ?")
                params.append(status)
            if filters:
                query += " WHERE " + " AND ".join(filters)
            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)
            cursor = connection.execute(query, tuple(params))
            return [AuditEvent(**dict(row)) for row in cursor.fetchall()]

    def _to_source(self, row: sqlite3.Row) -> SourceConfig:
        config = SOURCE_SETTINGS_ADAPTER.validate_python(json.loads(row["config_json"]))
        return SourceConfig(
            id=row["id"],
            source_key=row["source_key"],
            name=row["name"],
            description=row["description"],
            source_type=row["source_type"],
            is_built_in=bool(row["is_built_in"]),
            enabled=bool(row["enabled"]),
            config=config,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_sync_at=row["last_sync_at"],
            last_sync_status=row["last_sync_status"] or "pending",
            last_sync_jobs_count=int(row["last_sync_jobs_count"] or 0),
            last_error=row["last_error"],
        )

    def _to_job(self, row: sqlite3.Row) -> CanonicalJob:
        return CanonicalJob(
            id=row["id"],
            fingerprint=row["fingerprint"],
            title=row["title"],
            normalized_title=row["normalized_title"],
            company_name=row["company_name"],
            locations=json.loads(row["locations_json"] or "[]"),
            location_raw=row["location_raw"],
            remote_type=row["remote_type"],
            remote_region_eligibility=row["remote_region_eligibility"],
            employment_type=row["employment_type"],
            seniority=row["seniority"],
            compensation_min=row["compensation_min"],
            compensation_max=row["compensation_max"],
            compensation_currency=row["compensation_currency"],
            posted_at=row["posted_at"],
            description_text=row["description_text"],
            apply_url=row["apply_url"],
            skills=json.loads(row["skills_json"] or "[]"),
            source_primary=row["source_primary"],
            source_job_id=row["source_job_id"],
            status=row["status"],
            last_seen_at=row["last_seen_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
