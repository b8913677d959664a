from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any

from common.utils import now_utc_iso, shift_iso

from harvester.errors import DuplicateSourceError
from harvester.models import (
    QUEUE_STATUSES,
    SESSION_STATUSES,
    JobSource,
    JobSourceCounts,
    JobSourceCreateRequest,
    ScrapedListing,
    ScrapeQueueItem,
    ScrapingSession,
    SourceScrapeResult,
    StoredJob,
    TriggerTask,
    UpsertSummary,
)

RETRY_STEP_SECONDS = 60

_SOURCE_COLUMNS = """
    s.id,
    s.name,
    s.base_url,
    s.rate_limit,
    s.config_json,
    s.is_active,
    s.created_at,
    s.updated_at
"""

_QUEUE_COLUMNS = """
    q.id,
    q.source_id,
    s.name AS source_name,
    q.url,
    q.priority,
    q.status,
    q.attempts,
    q.max_attempts,
    q.scheduled_for,
    q.claimed_at,
    q.processed_at,
    q.error,
    q.created_by,
    q.created_at
"""


class HarvesterRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS job_sources (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    base_url TEXT NOT NULL,
                    rate_limit INTEGER NOT NULL DEFAULT 1000,
                    config_json TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS scrape_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_id TEXT NOT NULL REFERENCES job_sources(id),
                    url TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    scheduled_for TEXT NOT NULL,
                    claimed_at TEXT,
                    processed_at TEXT,
                    error TEXT,
                    created_by TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_scrape_queue_due
                    ON scrape_queue (status, scheduled_for);

                CREATE TABLE IF NOT EXISTS scraping_sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_id TEXT NOT NULL REFERENCES job_sources(id),
                    status TEXT NOT NULL,
                    trigger TEXT NOT NULL,
                    jobs_found INTEGER NOT NULL DEFAULT 0,
                    jobs_created INTEGER NOT NULL DEFAULT 0,
                    jobs_updated INTEGER NOT NULL DEFAULT 0,
                    jobs_failed INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    started_at TEXT NOT NULL,
                    completed_at TEXT
                );

                CREATE TABLE IF NOT EXISTS scraped_jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_id TEXT NOT NULL REFERENCES job_sources(id),
                    external_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    company TEXT,
                    location TEXT,
                    description TEXT NOT NULL,
                    job_type TEXT,
                    salary_min INTEGER,
                    salary_max INTEGER,
                    is_remote INTEGER NOT NULL DEFAULT 0,
                    source_url TEXT,
                    first_seen_at TEXT NOT NULL,
                    last_scraped_at TEXT NOT NULL,
                    UNIQUE (source_id, external_id)
                );

                CREATE TABLE IF NOT EXISTS trigger_tasks (
                    task_id TEXT PRIMARY KEY,
                    sources_json TEXT,
                    status TEXT NOT NULL,
                    results_json TEXT NOT NULL DEFAULT '[]',
                    error TEXT,
                    created_at TEXT NOT NULL,
                    completed_at TEXT
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

    # Job sources

    def create_job_source(self, payload: JobSourceCreateRequest) -> JobSource:
        with self._lock:
            if self.get_job_source(payload.name) is not None:
                raise DuplicateSourceError(payload.name)
            now = now_utc_iso()
            source_id = str(uuid.uuid4())
            try:
                self.connection.execute(
                    """
                    INSERT INTO job_sources (
                        id,
                        name,
                        base_url,
                        rate_limit,
                        config_json,
                        is_active,
                        created_at,
                        updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (
                        source_id,
                        payload.name,
                        str(payload.base_url),
                        payload.rate_limit,
                        payload.config_json(),
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                self.connection.rollback()
                raise DuplicateSourceError(payload.name) from exc
            self.connection.commit()
            source = self.get_job_source(payload.name)
            if source is None:
                raise RuntimeError(f"Source {payload.name} vanished after insert")
            return source

    def get_job_source(self, name: str) -> JobSource | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {_SOURCE_COLUMNS} FROM job_sources s WHERE s.name = ?",
                (name,),
            ).fetchone()
            if row is None:
                return None
            return self._to_job_source(row)

    def get_job_source_by_id(self, source_id: str) -> JobSource | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {_SOURCE_COLUMNS} FROM job_sources s WHERE s.id = ?",
                (source_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_job_source(row)

    def list_job_sources(self) -> list[JobSource]:
        with self._lock:
            cursor = self.connection.execute(
                f"""
                SELECT
                    {_SOURCE_COLUMNS},
                    (SELECT COUNT(1) FROM scraped_jobs j WHERE j.source_id = s.id)
                        AS scraping_jobs_count,
                    (SELECT COUNT(1) FROM scraping_sessions ss WHERE ss.source_id = s.id)
                        AS scraping_sessions_count,
                    (SELECT COUNT(1) FROM scrape_queue q WHERE q.source_id = s.id)
                        AS queue_count
                FROM job_sources s
                ORDER BY s.created_at DESC, s.name
                """
            )
            sources: list[JobSource] = []
            for row in cursor.fetchall():
                source = self._to_job_source(row)
                source.counts = JobSourceCounts(
                    scraping_jobs=row["scraping_jobs_count"],
                    scraping_sessions=row["scraping_sessions_count"],
                    queue=row["queue_count"],
                )
                sources.append(source)
            return sources

    def list_active_sources(self, names: list[str] | None = None) -> list[JobSource]:
        with self._lock:
            query = f"SELECT {_SOURCE_COLUMNS} FROM job_sources s WHERE s.is_active = 1"
            params: list[Any] = []
            if names:
                placeholders = ", ".join("?" for _ in names)
                query += f" AND s.name IN ({placeholders})"
                params.extend(names)
            query += " ORDER BY s.name"
            cursor = self.connection.execute(query, tuple(params))
            return [self._to_job_source(row) for row in cursor.fetchall()]

    def set_source_active(self, name: str, is_active: bool) -> JobSource | None:
        with self._lock:
            cursor = self.connection.execute(
                "UPDATE job_sources SET is_active = ?, updated_at = ? WHERE name = ?",
                (int(is_active), now_utc_iso(), name),
            )
            self.connection.commit()
            if cursor.rowcount == 0:
                return None
            return self.get_job_source(name)

    # Scrape queue

    def enqueue(
        self,
        source: JobSource,
        *,
        url: str,
        priority: int = 0,
        max_attempts: int = 3,
        created_by: str = "system",
    ) -> ScrapeQueueItem:
        with self._lock:
            now = now_utc_iso()
            cursor = self.connection.execute(
                """
                INSERT INTO scrape_queue (
                    source_id,
                    url,
                    priority,
                    status,
                    attempts,
                    max_attempts,
                    scheduled_for,
                    created_by,
                    created_at
                )
                VALUES (?, ?, ?, 'pending', 0, ?, ?, ?, ?)
                """,
                (source.id, url, priority, max_attempts, now, created_by, now),
            )
            self.connection.commit()
            item = self.get_queue_item(int(cursor.lastrowid))
            if item is None:
                raise RuntimeError("Queue item vanished after insert")
            return item

    def get_queue_item(self, item_id: int) -> ScrapeQueueItem | None:
        with self._lock:
            row = self.connection.execute(
                f"""
                SELECT {_QUEUE_COLUMNS}
                FROM scrape_queue q
                JOIN job_sources s ON s.id = q.source_id
                WHERE q.id = ?
                """,
                (item_id,),
            ).fetchone()
            if row is None:
                return None
            return ScrapeQueueItem(**dict(row))

    def list_due_queue_items(self, *, now_iso: str, limit: int) -> list[ScrapeQueueItem]:
        with self._lock:
            cursor = self.connection.execute(
                f"""
                SELECT {_QUEUE_COLUMNS}
                FROM scrape_queue q
                JOIN job_sources s ON s.id = q.source_id
                WHERE q.status = 'pending' AND q.scheduled_for <= ?
                ORDER BY q.priority DESC, q.created_at ASC, q.id ASC
                LIMIT ?
                """,
                (now_iso, limit),
            )
            return [ScrapeQueueItem(**dict(row)) for row in cursor.fetchall()]

    def list_queue_items(self, *, status: str | None, limit: int) -> list[ScrapeQueueItem]:
        with self._lock:
            query = f"""
                SELECT {_QUEUE_COLUMNS}
                FROM scrape_queue q
                JOIN job_sources s ON s.id = q.source_id
            """
            params: list[Any] = []
            if status:
                query += " WHERE q.status = ?"
                params.append(status)
            query += " ORDER BY q.id DESC LIMIT ?"
            params.append(limit)
            cursor = self.connection.execute(query, tuple(params))
            return [ScrapeQueueItem(**dict(row)) for row in cursor.fetchall()]

    def claim_queue_item(self, item_id: int, *, now_iso: str) -> bool:
        with self._lock:
            cursor = self.connection.execute(
                """
                UPDATE scrape_queue
                SET status = 'processing', claimed_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (now_iso, item_id),
            )
            self.connection.commit()
            return cursor.rowcount == 1

    def complete_queue_item(self, item_id: int, *, now_iso: str) -> None:
        with self._lock:
            self.connection.execute(
                """
                UPDATE scrape_queue
                SET status = 'done', processed_at = ?, error = NULL
                WHERE id = ? AND status = 'processing'
                """,
                (now_iso, item_id),
            )
            self.connection.commit()

    def fail_queue_item(self, item_id: int, *, error: str, now_iso: str) -> ScrapeQueueItem:
        with self._lock:
            row = self.connection.execute(
                "SELECT attempts, max_attempts FROM scrape_queue WHERE id = ?",
                (item_id,),
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown queue item: {item_id}")

            attempts = int(row["attempts"]) + 1
            if attempts >= int(row["max_attempts"]):
                self.connection.execute(
                    """
                    UPDATE scrape_queue
                    SET status = 'failed', attempts = ?, error = ?, processed_at = ?
                    WHERE id = ?
                    """,
                    (attempts, error, now_iso, item_id),
                )
            else:
                self.connection.execute(
                    """
                    UPDATE scrape_queue
                    SET status = 'pending', attempts = ?, error = ?, scheduled_for = ?,
                        claimed_at = NULL
                    WHERE id = ?
                    """,
                    (
                        attempts,
                        error,
                        shift_iso(now_iso, seconds=attempts * RETRY_STEP_SECONDS),
                        item_id,
                    ),
                )
            self.connection.commit()
            item = self.get_queue_item(item_id)
            if item is None:
                raise KeyError(f"Unknown queue item: {item_id}")
            return item

    def requeue_stale_items(self, *, cutoff_iso: str) -> int:
        with self._lock:
            cursor = self.connection.execute(
                """
                UPDATE scrape_queue
                SET status = 'pending', claimed_at = NULL
                WHERE status = 'processing' AND (claimed_at IS NULL OR claimed_at < ?)
                """,
                (cutoff_iso,),
            )
            self.connection.commit()
            return cursor.rowcount

    def queue_stats(self) -> dict[str, int]:
        with self._lock:
            return self._count_by_status("scrape_queue", QUEUE_STATUSES)

    # Scraping sessions

    def start_session(self, source_id: str, *, trigger: str) -> int:
        with self._lock:
            cursor = self.connection.execute(
                """
                INSERT INTO scraping_sessions (source_id, status, trigger, started_at)
                VALUES (?, 'running', ?, ?)
                """,
                (source_id, trigger, now_utc_iso()),
            )
            self.connection.commit()
            return int(cursor.lastrowid)

    def finish_session(
        self,
        session_id: int,
        *,
        status: str,
        jobs_found: int = 0,
        jobs_created: int = 0,
        jobs_updated: int = 0,
        jobs_failed: int = 0,
        error_message: str | None = None,
    ) -> None:
        with self._lock:
            self.connection.execute(
                """
                UPDATE scraping_sessions
                SET
                    status = ?,
                    jobs_found = ?,
                    jobs_created = ?,
                    jobs_updated = ?,
                    jobs_failed = ?,
                    error_message = ?,
                    completed_at = ?
                WHERE id = ?
                """,
                (
                    status,
                    jobs_found,
                    jobs_created,
                    jobs_updated,
                    jobs_failed,
                    error_message,
                    now_utc_iso(),
                    session_id,
                ),
            )
            self.connection.commit()

    def list_sessions(self, *, source_id: str | None, limit: int) -> list[ScrapingSession]:
        with self._lock:
            query = """
                SELECT
                    id,
                    source_id,
                    status,
                    trigger,
                    jobs_found,
                    jobs_created,
                    jobs_updated,
                    jobs_failed,
                    error_message,
                    started_at,
                    completed_at
                FROM scraping_sessions
            """
            params: list[Any] = []
            if source_id:
                query += " WHERE source_id = ?"
                params.append(source_id)
            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)
            cursor = self.connection.execute(query, tuple(params))
            return [ScrapingSession(**dict(row)) for row in cursor.fetchall()]

    def session_stats(self) -> dict[str, int]:
        with self._lock:
            return self._count_by_status("scraping_sessions", SESSION_STATUSES)

    # Scraped jobs

    def upsert_jobs(self, source_id: str, listings: list[ScrapedListing]) -> UpsertSummary:
        with self._lock:
            now = now_utc_iso()
            created = 0
            updated = 0
            for listing in listings:
                existing = self.connection.execute(
                    "SELECT id FROM scraped_jobs WHERE source_id = ? AND external_id = ?",
                    (source_id, listing.external_id),
                ).fetchone()
                values = (
                    listing.title,
                    listing.company,
                    listing.location,
                    listing.description,
                    listing.job_type,
                    listing.salary_min,
                    listing.salary_max,
                    int(listing.is_remote),
                    listing.source_url,
                    now,
                )
                if existing is None:
                    self.connection.execute(
                        """
                        INSERT INTO scraped_jobs (
                            title,
                            company,
                            location,
                            description,
                            job_type,
                            salary_min,
                            salary_max,
                            is_remote,
                            source_url,
                            last_scraped_at,
                            source_id,
                            external_id,
                            first_seen_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (*values, source_id, listing.external_id, now),
                    )
                    created += 1
                else:
                    self.connection.execute(
                        """
                        UPDATE scraped_jobs
                        SET
                            title = ?,
                            company = ?,
                            location = ?,
                            description = ?,
                            job_type = ?,
                            salary_min = ?,
                            salary_max = ?,
                            is_remote = ?,
                            source_url = ?,
                            last_scraped_at = ?
                        WHERE id = ?
                        """,
                        (*values, existing["id"]),
                    )
                    updated += 1
            self.connection.commit()
            return UpsertSummary(created=created, updated=updated)

    def list_jobs(self, *, source_id: str | None, limit: int) -> list[StoredJob]:
        with self._lock:
            query = """
                SELECT
                    id,
                    source_id,
                    external_id,
                    title,
                    company,
                    location,
                    description,
                    job_type,
                    salary_min,
                    salary_max,
                    is_remote,
                    source_url,
                    first_seen_at,
                    last_scraped_at
                FROM scraped_jobs
            """
            params: list[Any] = []
            if source_id:
                query += " WHERE source_id = ?"
                params.append(source_id)
            query += " ORDER BY last_scraped_at DESC, id DESC LIMIT ?"
            params.append(limit)
            cursor = self.connection.execute(query, tuple(params))
            return [
                StoredJob(**{**dict(row), "is_remote": bool(row["is_remote"])})
                for row in cursor.fetchall()
            ]

    def totals(self) -> dict[str, int]:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT
                    (SELECT COUNT(1) FROM job_sources) AS sources,
                    (SELECT COUNT(1) FROM job_sources WHERE is_active = 1) AS active_sources,
                    (SELECT COUNT(1) FROM scraped_jobs) AS jobs
                """
            ).fetchone()
            return dict(row)

    # Trigger tasks

    def create_trigger_task(self, task_id: str, sources: list[str] | None) -> TriggerTask:
        with self._lock:
            self.connection.execute(
                """
                INSERT INTO trigger_tasks (task_id, sources_json, status, created_at)
                VALUES (?, ?, 'running', ?)
                """,
                (task_id, json.dumps(sources) if sources else None, now_utc_iso()),
            )
            self.connection.commit()
            task = self.get_trigger_task(task_id)
            if task is None:
                raise RuntimeError(f"Trigger task {task_id} vanished after insert")
            return task

    def finish_trigger_task(
        self,
        task_id: str,
        *,
        status: str,
        results: list[SourceScrapeResult],
        error: str | None,
    ) -> None:
        with self._lock:
            self.connection.execute(
                """
                UPDATE trigger_tasks
                SET status = ?, results_json = ?, error = ?, completed_at = ?
                WHERE task_id = ?
                """,
                (
                    status,
                    json.dumps([result.model_dump() for result in results]),
                    error,
                    now_utc_iso(),
                    task_id,
                ),
            )
            self.connection.commit()

    def get_trigger_task(self, task_id: str) -> TriggerTask | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT task_id, sources_json, status, results_json, error, created_at, completed_at
                FROM trigger_tasks
                WHERE task_id = ?
                """,
                (task_id,),
            ).fetchone()
            if row is None:
                return None
            return TriggerTask(
                task_id=row["task_id"],
                sources=json.loads(row["sources_json"]) if row["sources_json"] else None,
                status=row["status"],
                results=[SourceScrapeResult(**item) for item in json.loads(row["results_json"])],
                error=row["error"],
                created_at=row["created_at"],
                completed_at=row["completed_at"],
            )

    def _count_by_status(self, table: str, statuses: tuple[str, ...]) -> dict[str, int]:
        counts = {status: 0 for status in statuses}
        cursor = self.connection.execute(
            f"SELECT status, COUNT(1) AS c FROM {table} GROUP BY status"
        )
        for row in cursor.fetchall():
            counts[row["status"]] = int(row["c"])
        return counts

    def _to_job_source(self, row: sqlite3.Row) -> JobSource:
        config: dict[str, Any] | None = None
        if row["config_json"]:
            config = json.loads(row["config_json"])
        return JobSource(
            id=row["id"],
            name=row["name"],
            base_url=row["base_url"],
            rate_limit=int(row["rate_limit"]),
            config=config,
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
