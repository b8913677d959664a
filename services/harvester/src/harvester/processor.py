from __future__ import annotations

import asyncio
import json
import logging

from common.utils import now_utc_iso

from harvester.models import FullScrapeResult, ProcessorStatus, QueueDrainSummary
from harvester.scraper import Scraper

DEFAULT_INTERVAL_MINUTES = 15.0
LOGGER = logging.getLogger("jobwire.harvester.processor")


class BackgroundProcessor:
    """Periodically drains the scrape queue through a scraper.

    Every tick launches its own pass as an independent task, so a slow or hung
    pass never delays the next tick. Pass failures are logged and swallowed;
    the next tick is the retry.
    """

    def __init__(
        self,
        scraper: Scraper,
        *,
        default_interval_minutes: float = DEFAULT_INTERVAL_MINUTES,
    ) -> None:
        self.scraper = scraper
        self.default_interval_minutes = default_interval_minutes
        self.interval_minutes: float | None = None
        self.passes_started = 0
        self.passes_completed = 0
        self.passes_failed = 0
        self.last_pass_started_at: str | None = None
        self.last_pass_finished_at: str | None = None
        self.last_error: str | None = None
        self._running = False
        self._timer_task: asyncio.Task | None = None
        self._passes: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, interval_minutes: float | None = None) -> bool:
        if self._running:
            LOGGER.info(json.dumps({"event": "processor_already_running"}))
            return False

        interval = interval_minutes or self.default_interval_minutes
        self._running = True
        self.interval_minutes = interval
        LOGGER.info(json.dumps({"event": "processor_started", "interval_minutes": interval}))

        self._launch_pass()
        self._timer_task = asyncio.create_task(self._tick(interval * 60))
        return True

    def stop(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
        if self._running:
            LOGGER.info(json.dumps({"event": "processor_stopped"}))
        self._running = False

    async def shutdown(self, grace_seconds: float = 5.0) -> None:
        self.stop()
        if not self._passes:
            return
        _, pending = await asyncio.wait(set(self._passes), timeout=grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def process_queue(self) -> QueueDrainSummary | None:
        self.passes_started += 1
        self.last_pass_started_at = now_utc_iso()
        LOGGER.info(json.dumps({"event": "queue_pass_started"}))
        try:
            summary = await self.scraper.process_scraping_queue()
        except Exception as exc:
            self.passes_failed += 1
            self.last_error = str(exc)
            LOGGER.exception(json.dumps({"event": "queue_pass_failed", "error": str(exc)}))
            return None
        finally:
            self.last_pass_finished_at = now_utc_iso()

        self.passes_completed += 1
        self.last_error = None
        LOGGER.info(json.dumps({"event": "queue_pass_completed", **summary.model_dump()}))
        return summary

    async def trigger_full_scraping(self, sources: list[str] | None = None) -> FullScrapeResult:
        LOGGER.info(json.dumps({"event": "full_scrape_started", "sources": sources or "all"}))
        try:
            results = await self.scraper.scrape_from_multiple_sources(sources)
        except Exception as exc:
            LOGGER.exception(json.dumps({"event": "full_scrape_failed", "error": str(exc)}))
            return FullScrapeResult(success=False, error=str(exc))

        LOGGER.info(
            json.dumps(
                {
                    "event": "full_scrape_completed",
                    "results": [result.model_dump() for result in results],
                }
            )
        )
        return FullScrapeResult(success=True, results=results)

    def status(self) -> ProcessorStatus:
        return ProcessorStatus(
            running=self._running,
            interval_minutes=self.interval_minutes if self._running else None,
            passes_started=self.passes_started,
            passes_completed=self.passes_completed,
            passes_failed=self.passes_failed,
            in_flight=len(self._passes),
            last_pass_started_at=self.last_pass_started_at,
            last_pass_finished_at=self.last_pass_finished_at,
            last_error=self.last_error,
        )

    async def _tick(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self._launch_pass()

    def _launch_pass(self) -> None:
        task = asyncio.create_task(self.process_queue())
        self._passes.add(task)
        task.add_done_callback(self._passes.discard)
