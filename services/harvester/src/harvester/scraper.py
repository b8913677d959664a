from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from common.utils import normalize_url, normalize_whitespace, now_utc_iso
from fastapi.concurrency import run_in_threadpool

from harvester.errors import (
    RateLimitExceededError,
    SourceNotFoundError,
    SourcePayloadError,
)
from harvester.models import (
    JobSource,
    QueueDrainSummary,
    ScrapedListing,
    ScrapeQueueItem,
    SourceScrapeResult,
)
from harvester.repository import HarvesterRepository

FORMAT_JSON = "json"
FORMAT_INLINE = "inline"
SOURCE_FORMATS = (FORMAT_JSON, FORMAT_INLINE)
RATE_LIMIT_WINDOW_SECONDS = 3600.0
LOGGER = logging.getLogger("jobwire.harvester.scraper")


class SourceRateLimiter:
    """Fixed-window request budget per source, sized by the source's rate_limit."""

    def __init__(self, window_seconds: float = RATE_LIMIT_WINDOW_SECONDS) -> None:
        self.window_seconds = window_seconds
        self._windows: dict[str, tuple[int, float]] = {}

    def acquire(self, source: JobSource) -> None:
        now = time.monotonic()
        count, reset_at = self._windows.get(source.id, (0, now + self.window_seconds))
        if now >= reset_at:
            count, reset_at = 0, now + self.window_seconds
        if count >= source.rate_limit:
            raise RateLimitExceededError(source.name, source.rate_limit, reset_at - now)
        self._windows[source.id] = (count + 1, reset_at)


def _first_text(item: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = item.get(key)
        if value is None:
            continue
        text = normalize_whitespace(str(value))
        if text:
            return text
    return None


def _first_int(item: dict[str, Any], *keys: str) -> int | None:
    for key in keys:
        value = item.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None


def build_external_id(
    title: str,
    company: str | None,
    location: str | None,
    source_url: str | None,
) -> str:
    key_input = "|".join(
        [
            title.lower(),
            (company or "").lower(),
            (location or "").lower(),
            normalize_url(source_url),
        ]
    )
    return hashlib.sha1(key_input.encode()).hexdigest()[:16]


def extract_listings(payload: Any, *, listing_key: str | None = None) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        raw_listings = payload
    elif isinstance(payload, dict):
        keys = [listing_key] if listing_key else ["postings", "jobs"]
        raw_listings = next((payload[key] for key in keys if key in payload), None)
        if raw_listings is None:
            raise SourcePayloadError(f"Payload has none of the listing keys: {', '.join(keys)}")
    else:
        raise SourcePayloadError("Source payload must be a JSON object or list.")

    if not isinstance(raw_listings, list):
        raise SourcePayloadError("Source payload listings must be a list.")
    return [item for item in raw_listings if isinstance(item, dict)]


def to_scraped_listing(item: dict[str, Any]) -> ScrapedListing | None:
    title = _first_text(item, "title")
    if not title:
        return None
    company = _first_text(item, "company", "company_name")
    location = _first_text(item, "location")
    source_url = _first_text(item, "source_url", "apply_url", "url")
    external_id = _first_text(item, "external_id", "id") or build_external_id(
        title, company, location, source_url
    )

    remote_value = item.get("is_remote", item.get("remote"))
    if isinstance(remote_value, bool):
        is_remote = remote_value
    else:
        is_remote = "remote" in (location or "").lower()

    return ScrapedListing(
        external_id=external_id,
        title=title,
        company=company,
        location=location,
        description=_first_text(item, "description") or title,
        job_type=_first_text(item, "job_type", "type"),
        salary_min=_first_int(item, "salary_min"),
        salary_max=_first_int(item, "salary_max"),
        is_remote=is_remote,
        source_url=source_url,
    )


def parse_listings(payload: Any, *, listing_key: str | None = None) -> list[ScrapedListing]:
    listings: list[ScrapedListing] = []
    for item in extract_listings(payload, listing_key=listing_key):
        listing = to_scraped_listing(item)
        if listing is not None:
            listings.append(listing)
    return listings


class Scraper:
    def __init__(
        self,
        repository: HarvesterRepository,
        *,
        timeout_seconds: float = 15.0,
        stale_after_seconds: float = 900.0,
        batch_size: int = 10,
        transport: httpx.AsyncBaseTransport | None = None,
        rate_limiter: SourceRateLimiter | None = None,
    ) -> None:
        self.repository = repository
        self.timeout_seconds = timeout_seconds
        self.stale_after_seconds = stale_after_seconds
        self.batch_size = batch_size
        self.transport = transport
        self.rate_limiter = rate_limiter or SourceRateLimiter()

    async def fetch_payload(self, source: JobSource, url: str) -> Any:
        self.rate_limiter.acquire(source)
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds,
            transport=self.transport,
            follow_redirects=True,
        ) as client:
            response = await client.get(url, headers={"accept": "application/json"})
            response.raise_for_status()
        try:
            return response.json()
        except ValueError as exc:
            raise SourcePayloadError(f"{url} did not return JSON") from exc

    async def scrape_source(
        self,
        source: JobSource,
        *,
        url: str | None = None,
    ) -> list[ScrapedListing]:
        config = source.config or {}
        source_format = str(config.get("format", FORMAT_JSON))
        if source_format not in SOURCE_FORMATS:
            raise SourcePayloadError(f"Unsupported source format: {source_format}")

        if source_format == FORMAT_INLINE:
            payload: Any = config.get("postings", [])
        else:
            target = url or str(config.get("listing_url") or source.base_url)
            payload = await self.fetch_payload(source, target)

        listing_key = config.get("listing_key")
        return parse_listings(payload, listing_key=str(listing_key) if listing_key else None)

    async def scrape_from_multiple_sources(
        self,
        sources: list[str] | None = None,
        *,
        trigger: str = "manual",
    ) -> list[SourceScrapeResult]:
        active_sources = await run_in_threadpool(self.repository.list_active_sources, sources)
        if sources:
            known = {source.name for source in active_sources}
            missing = [name for name in sources if name not in known]
            if missing:
                LOGGER.warning(
                    json.dumps({"event": "scrape_sources_missing", "sources": missing})
                )

        results: list[SourceScrapeResult] = []
        for source in active_sources:
            results.append(await self._scrape_with_session(source, trigger=trigger))
        return results

    async def _scrape_with_session(self, source: JobSource, *, trigger: str) -> SourceScrapeResult:
        session_id = await run_in_threadpool(
            self.repository.start_session, source.id, trigger=trigger
        )
        try:
            listings = await self.scrape_source(source)
            summary = await run_in_threadpool(self.repository.upsert_jobs, source.id, listings)
        except asyncio.CancelledError:
            await self._close_cancelled_session(session_id, source.name)
            raise
        except Exception as exc:
            LOGGER.exception(
                json.dumps(
                    {"event": "source_scrape_failed", "source": source.name, "error": str(exc)}
                )
            )
            await run_in_threadpool(
                self.repository.finish_session,
                session_id,
                status="failed",
                jobs_failed=1,
                error_message=str(exc),
            )
            return SourceScrapeResult(source=source.name, success=False, error=str(exc))

        await run_in_threadpool(
            self.repository.finish_session,
            session_id,
            status="completed",
            jobs_found=len(listings),
            jobs_created=summary.created,
            jobs_updated=summary.updated,
        )
        return SourceScrapeResult(
            source=source.name,
            jobs_found=len(listings),
            jobs_created=summary.created,
            jobs_updated=summary.updated,
            success=True,
        )

    async def process_scraping_queue(self, batch_size: int | None = None) -> QueueDrainSummary:
        now = datetime.now(UTC)
        cutoff = (now - timedelta(seconds=self.stale_after_seconds)).isoformat()
        summary = QueueDrainSummary()
        summary.requeued_stale = await run_in_threadpool(
            self.repository.requeue_stale_items, cutoff_iso=cutoff
        )
        if summary.requeued_stale:
            LOGGER.warning(
                json.dumps({"event": "queue_requeued_stale", "count": summary.requeued_stale})
            )

        due_items = await run_in_threadpool(
            self.repository.list_due_queue_items,
            now_iso=now.isoformat(),
            limit=batch_size or self.batch_size,
        )
        for item in due_items:
            claimed = await run_in_threadpool(
                self.repository.claim_queue_item, item.id, now_iso=now_utc_iso()
            )
            if not claimed:
                summary.skipped += 1
                continue
            summary.claimed += 1
            if await self._process_queue_item(item):
                summary.completed += 1
            else:
                summary.failed += 1
        return summary

    async def _process_queue_item(self, item: ScrapeQueueItem) -> bool:
        source = await run_in_threadpool(self.repository.get_job_source_by_id, item.source_id)
        session_id: int | None = None
        try:
            if source is None or not source.is_active:
                raise SourceNotFoundError(item.source_name)
            session_id = await run_in_threadpool(
                self.repository.start_session, source.id, trigger="queue"
            )
            listings = await self.scrape_source(source, url=item.url)
            summary = await run_in_threadpool(self.repository.upsert_jobs, source.id, listings)
        except asyncio.CancelledError:
            # The claim stays in processing until the next stale requeue.
            if session_id is not None:
                await self._close_cancelled_session(session_id, item.source_name)
            raise
        except Exception as exc:
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "queue_item_failed",
                        "item_id": item.id,
                        "source": item.source_name,
                        "url": item.url,
                        "error": str(exc),
                    }
                )
            )
            if session_id is not None:
                await run_in_threadpool(
                    self.repository.finish_session,
                    session_id,
                    status="failed",
                    jobs_failed=1,
                    error_message=str(exc),
                )
            await run_in_threadpool(
                self.repository.fail_queue_item, item.id, error=str(exc), now_iso=now_utc_iso()
            )
            return False

        await run_in_threadpool(
            self.repository.finish_session,
            session_id,
            status="completed",
            jobs_found=len(listings),
            jobs_created=summary.created,
            jobs_updated=summary.updated,
        )
        await run_in_threadpool(self.repository.complete_queue_item, item.id, now_iso=now_utc_iso())
        LOGGER.info(
            json.dumps(
                {
                    "event": "queue_item_completed",
                    "item_id": item.id,
                    "source": item.source_name,
                    "jobs_found": len(listings),
                }
            )
        )
        return True

    async def _close_cancelled_session(self, session_id: int, source_name: str) -> None:
        LOGGER.warning(
            json.dumps(
                {"event": "scrape_cancelled", "session_id": session_id, "source": source_name}
            )
        )
        await run_in_threadpool(
            self.repository.finish_session,
            session_id,
            status="failed",
            error_message="cancelled",
        )
