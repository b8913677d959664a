from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
import uuid
from contextlib import asynccontextmanager
from typing import Literal

import httpx
from common.utils import now_utc_iso
from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from harvester.errors import DuplicateSourceError, SourceNotFoundError
from harvester.models import (
    FullScrapeRequest,
    FullScrapeResult,
    JobSource,
    JobSourceCreateRequest,
    JobSourceUpdateRequest,
    MetricsSnapshot,
    ProcessorCommandResponse,
    ProcessorStartRequest,
    ProcessorStatus,
    QueueEnqueueRequest,
    ScrapeQueueItem,
    ScrapingSession,
    ScrapingStats,
    StoredJob,
    TriggerRequest,
    TriggerResponse,
    TriggerTask,
)
from harvester.processor import DEFAULT_INTERVAL_MINUTES, BackgroundProcessor
from harvester.repository import HarvesterRepository
from harvester.scraper import Scraper
from harvester.tasks import TriggerTaskRunner

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "jobwire", "harvester.sqlite3")
LOGGER = logging.getLogger("jobwire.harvester")


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def parse_api_tokens(raw: str) -> dict[str, set[str]]:
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("HARVESTER_API_TOKENS_JSON must be a JSON object.")

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


def normalize_source_names(sources: list[str] | None) -> list[str]:
    names: list[str] = []
    for name in sources or []:
        stripped = name.strip()
        if stripped and stripped not in names:
            names.append(stripped)
    return names


class MetricsStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {"requests": 0, "errors": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}

    def observe(self, *, method: str, path: str, status_code: int, duration_ms: float) -> None:
        key = f"{method} {path}"
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            endpoint = self._endpoints.setdefault(
                key,
                {
                    "count": 0,
                    "2xx": 0,
                    "4xx": 0,
                    "5xx": 0,
                    "latency_ms_sum": 0.0,
                    "latency_ms_avg": 0.0,
                },
            )
            endpoint["count"] = int(endpoint["count"]) + 1
            if bucket in ("2xx", "4xx", "5xx"):
                endpoint[bucket] = int(endpoint[bucket]) + 1
            endpoint["latency_ms_sum"] = float(endpoint["latency_ms_sum"]) + duration_ms
            endpoint["latency_ms_avg"] = (
                float(endpoint["latency_ms_sum"]) / int(endpoint["count"])
            )

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints={key: dict(value) for key, value in self._endpoints.items()},
            )


def create_app(
    *,
    database_path: str | None = None,
    api_key: str | None = None,
    api_tokens: dict[str, list[str] | set[str]] | None = None,
    autostart_processor: bool | None = None,
    interval_minutes: float | None = None,
    batch_size: int | None = None,
    stale_after_seconds: float | None = None,
    fetch_timeout_seconds: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    resolved_path = database_path or os.getenv("HARVESTER_DB_PATH", DEFAULT_DB_PATH)
    resolved_api_key = (api_key or os.getenv("HARVESTER_API_KEY", "")).strip() or None
    resolved_token_map: dict[str, set[str]] = {}
    if api_tokens is not None:
        resolved_token_map = {
            token: {str(scope).strip() for scope in scopes if str(scope).strip()}
            for token, scopes in api_tokens.items()
            if token.strip()
        }
    else:
        raw_tokens = os.getenv("HARVESTER_API_TOKENS_JSON", "").strip()
        if raw_tokens:
            resolved_token_map = parse_api_tokens(raw_tokens)

    if resolved_api_key:
        resolved_token_map.setdefault(resolved_api_key, set()).add("*")

    resolved_autostart = (
        autostart_processor
        if autostart_processor is not None
        else env_flag("HARVESTER_PROCESSOR_AUTOSTART")
    )
    resolved_interval = interval_minutes or float(
        os.getenv("HARVESTER_SCRAPE_INTERVAL_MINUTES", DEFAULT_INTERVAL_MINUTES)
    )

    repository = HarvesterRepository(database_path=resolved_path)
    scraper = Scraper(
        repository,
        timeout_seconds=fetch_timeout_seconds
        or float(os.getenv("HARVESTER_FETCH_TIMEOUT_SECONDS", "15")),
        stale_after_seconds=stale_after_seconds
        or float(os.getenv("HARVESTER_STALE_AFTER_SECONDS", "900")),
        batch_size=batch_size or int(os.getenv("HARVESTER_QUEUE_BATCH_SIZE", "10")),
        transport=transport,
    )
    processor = BackgroundProcessor(scraper, default_interval_minutes=resolved_interval)
    task_runner = TriggerTaskRunner(repository, scraper)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        app.state.repository = repository
        app.state.scraper = scraper
        app.state.processor = processor
        app.state.task_runner = task_runner
        app.state.auth_token_scopes = resolved_token_map
        app.state.metrics = MetricsStore()
        if resolved_autostart:
            processor.start(resolved_interval)
        try:
            yield
        finally:
            await task_runner.shutdown()
            await processor.shutdown()
            await run_in_threadpool(repository.close)

    app = FastAPI(title="Jobwire Harvester", version="0.3.0", lifespan=lifespan)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid input", "errors": jsonable_encoder(exc.errors())},
        )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            request.app.state.metrics.observe(
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=duration_ms,
            )
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "request_complete",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "duration_ms": round(duration_ms, 3),
                        "error": str(exc),
                    }
                )
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        request.app.state.metrics.observe(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers["x-request-id"] = request_id
        LOGGER.info(
            json.dumps(
                {
                    "event": "request_complete",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 3),
                    "source_ip": request.client.host if request.client else None,
                }
            )
        )
        return response

    def require_scope(request: Request, *, scope: str) -> None:
        token_map: dict[str, set[str]] = request.app.state.auth_token_scopes
        if not token_map:
            return
        provided = request.headers.get("x-api-key", "")
        scopes = token_map.get(provided) if provided else None
        if scopes is None:
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "auth_rejected",
                        "request_id": getattr(request.state, "request_id", None),
                        "path": request.url.path,
                        "reason": "missing api key" if not provided else "invalid api key",
                    }
                )
            )
            raise HTTPException(status_code=401, detail="Unauthorized")
        if "*" not in scopes and scope not in scopes:
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "auth_rejected",
                        "request_id": getattr(request.state, "request_id", None),
                        "path": request.url.path,
                        "reason": f"missing scope {scope}",
                    }
                )
            )
            raise HTTPException(status_code=403, detail="Forbidden")

    async def resolve_source_or_404(request: Request, name: str) -> JobSource:
        source = await run_in_threadpool(request.app.state.repository.get_job_source, name)
        if source is None:
            raise HTTPException(status_code=404, detail=f"Unknown source: {name}")
        return source

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "harvester"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    @app.get("/scraping/sources", response_model=list[JobSource])
    async def list_sources(request: Request) -> list[JobSource]:
        return await run_in_threadpool(request.app.state.repository.list_job_sources)

    @app.post("/scraping/sources", response_model=JobSource, status_code=201)
    async def create_source(payload: JobSourceCreateRequest, request: Request) -> JobSource:
        require_scope(request, scope="sources:write")
        try:
            source = await run_in_threadpool(
                request.app.state.repository.create_job_source, payload
            )
        except DuplicateSourceError as exc:
            raise HTTPException(status_code=400, detail="Source already exists") from exc
        LOGGER.info(
            json.dumps({"event": "source_created", "source": source.name, "id": source.id})
        )
        return source

    @app.patch("/scraping/sources/{name}", response_model=JobSource)
    async def update_source(
        name: str,
        payload: JobSourceUpdateRequest,
        request: Request,
    ) -> JobSource:
        require_scope(request, scope="sources:write")
        source = await run_in_threadpool(
            request.app.state.repository.set_source_active,
            name,
            payload.is_active,
        )
        if source is None:
            raise HTTPException(status_code=404, detail=f"Unknown source: {name}")
        return source

    @app.post("/scraping/queue", response_model=ScrapeQueueItem, status_code=201)
    async def enqueue_scrape(payload: QueueEnqueueRequest, request: Request) -> ScrapeQueueItem:
        require_scope(request, scope="queue:write")
        source = await run_in_threadpool(
            request.app.state.repository.get_job_source,
            payload.source,
        )
        if source is None or not source.is_active:
            missing = SourceNotFoundError(payload.source)
            raise HTTPException(status_code=404, detail=str(missing)) from missing
        item = await run_in_threadpool(
            request.app.state.repository.enqueue,
            source,
            url=str(payload.url) if payload.url else source.base_url,
            priority=payload.priority,
            max_attempts=payload.max_attempts,
            created_by="api",
        )
        LOGGER.info(
            json.dumps(
                {
                    "event": "queue_item_enqueued",
                    "item_id": item.id,
                    "source": source.name,
                    "priority": item.priority,
                }
            )
        )
        return item

    @app.get("/scraping/queue", response_model=list[ScrapeQueueItem])
    async def list_queue(
        request: Request,
        status: Literal["pending", "processing", "done", "failed"] | None = None,
        limit: int = Query(default=100, ge=1, le=500),
    ) -> list[ScrapeQueueItem]:
        return await run_in_threadpool(
            request.app.state.repository.list_queue_items,
            status=status,
            limit=limit,
        )

    @app.post("/scraping/trigger", response_model=TriggerResponse)
    async def trigger_scraping(
        request: Request,
        payload: TriggerRequest | None = Body(default=None),
    ) -> TriggerResponse:
        require_scope(request, scope="scrape")
        sources = normalize_source_names(payload.sources if payload else None)
        LOGGER.info(json.dumps({"event": "trigger_requested", "sources": sources or "all"}))
        try:
            task = await request.app.state.task_runner.submit(sources)
        except Exception as exc:
            LOGGER.exception(json.dumps({"event": "trigger_setup_failed", "error": str(exc)}))
            raise HTTPException(status_code=500, detail="Internal server error") from exc

        return TriggerResponse(
            message="Job scraping started",
            sources=sources or "all",
            status="running",
            task_id=task.task_id,
        )

    @app.get("/scraping/tasks/{task_id}", response_model=TriggerTask)
    async def get_trigger_task(task_id: str, request: Request) -> TriggerTask:
        task = await run_in_threadpool(request.app.state.repository.get_trigger_task, task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Unknown task_id")
        return task

    @app.get("/scraping/sessions", response_model=list[ScrapingSession])
    async def list_sessions(
        request: Request,
        source: str | None = None,
        limit: int = Query(default=100, ge=1, le=500),
    ) -> list[ScrapingSession]:
        source_id = (await resolve_source_or_404(request, source)).id if source else None
        return await run_in_threadpool(
            request.app.state.repository.list_sessions,
            source_id=source_id,
            limit=limit,
        )

    @app.get("/scraping/jobs", response_model=list[StoredJob])
    async def list_jobs(
        request: Request,
        source: str | None = None,
        limit: int = Query(default=100, ge=1, le=500),
    ) -> list[StoredJob]:
        source_id = (await resolve_source_or_404(request, source)).id if source else None
        return await run_in_threadpool(
            request.app.state.repository.list_jobs,
            source_id=source_id,
            limit=limit,
        )

    @app.get("/scraping/stats", response_model=ScrapingStats)
    async def scraping_stats(request: Request) -> ScrapingStats:
        repository: HarvesterRepository = request.app.state.repository
        totals = await run_in_threadpool(repository.totals)
        return ScrapingStats(
            generated_at=now_utc_iso(),
            sources=totals["sources"],
            active_sources=totals["active_sources"],
            jobs=totals["jobs"],
            queue=await run_in_threadpool(repository.queue_stats),
            sessions=await run_in_threadpool(repository.session_stats),
            processor=request.app.state.processor.status(),
        )

    @app.get("/scraping/processor", response_model=ProcessorStatus)
    async def processor_status(request: Request) -> ProcessorStatus:
        return request.app.state.processor.status()

    @app.post("/scraping/processor/start", response_model=ProcessorCommandResponse)
    async def start_processor(
        request: Request,
        payload: ProcessorStartRequest | None = Body(default=None),
    ) -> ProcessorCommandResponse:
        require_scope(request, scope="processor:admin")
        background: BackgroundProcessor = request.app.state.processor
        started = background.start(payload.interval_minutes if payload else None)
        return ProcessorCommandResponse(changed=started, processor=background.status())

    @app.post("/scraping/processor/stop", response_model=ProcessorCommandResponse)
    async def stop_processor(request: Request) -> ProcessorCommandResponse:
        require_scope(request, scope="processor:admin")
        background: BackgroundProcessor = request.app.state.processor
        was_running = background.is_running
        background.stop()
        return ProcessorCommandResponse(changed=was_running, processor=background.status())

    @app.post("/scraping/processor/full-scrape", response_model=FullScrapeResult)
    async def full_scrape(
        request: Request,
        payload: FullScrapeRequest | None = Body(default=None),
    ) -> FullScrapeResult:
        require_scope(request, scope="processor:admin")
        sources = normalize_source_names(payload.sources if payload else None)
        return await request.app.state.processor.trigger_full_scraping(sources or None)

    return app


app = create_app()
