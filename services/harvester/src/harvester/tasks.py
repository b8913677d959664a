from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass

from fastapi.concurrency import run_in_threadpool

from harvester.models import TriggerTask
from harvester.repository import HarvesterRepository
from harvester.scraper import Scraper

LOGGER = logging.getLogger("jobwire.harvester.tasks")


@dataclass
class TriggerJob:
    task_id: str
    sources: list[str] | None


class TriggerTaskRunner:
    """Runs manually triggered scrapes in the background under a correlation id."""

    def __init__(self, repository: HarvesterRepository, scraper: Scraper) -> None:
        self.repository = repository
        self.scraper = scraper
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def submit(self, sources: list[str] | None) -> TriggerTask:
        job = TriggerJob(task_id=str(uuid.uuid4()), sources=sources or None)
        record = await run_in_threadpool(
            self.repository.create_trigger_task, job.task_id, job.sources
        )
        task = asyncio.create_task(self._run(job))
        self._tasks[job.task_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.task_id, None))
        return record

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, job: TriggerJob) -> None:
        try:
            results = await self.scraper.scrape_from_multiple_sources(job.sources)
        except asyncio.CancelledError:
            await run_in_threadpool(
                self.repository.finish_trigger_task,
                job.task_id,
                status="failed",
                results=[],
                error="cancelled",
            )
            raise
        except Exception as exc:
            LOGGER.exception(
                json.dumps({"event": "trigger_failed", "task_id": job.task_id, "error": str(exc)})
            )
            await run_in_threadpool(
                self.repository.finish_trigger_task,
                job.task_id,
                status="failed",
                results=[],
                error=str(exc),
            )
            return

        await run_in_threadpool(
            self.repository.finish_trigger_task,
            job.task_id,
            status="completed",
            results=results,
            error=None,
        )
        LOGGER.info(
            json.dumps(
                {
                    "event": "trigger_completed",
                    "task_id": job.task_id,
                    "sources": job.sources or "all",
                    "succeeded": sum(1 for result in results if result.success),
                    "failed": sum(1 for result in results if not result.success),
                }
            )
        )
