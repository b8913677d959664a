from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from harvester.main import create_app
from harvester.models import SourceScrapeResult

pytestmark = pytest.mark.integration


@pytest.fixture
def client(tmp_path: Path):
    db_path = tmp_path / "harvester.sqlite3"
    app = create_app(database_path=str(db_path))
    with TestClient(app) as test_client:
        yield test_client


def wait_for_task(client: TestClient, task_id: str, timeout: float = 3.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/scraping/tasks/{task_id}").json()
        if body["status"] != "running":
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"task {task_id} still running")
        time.sleep(0.02)


def test_trigger_without_body_targets_all_sources_and_returns_immediately(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def slow_scrape(sources: list[str] | None = None) -> list[SourceScrapeResult]:
        await asyncio.sleep(5)
        return []

    monkeypatch.setattr(client.app.state.scraper, "scrape_from_multiple_sources", slow_scrape)

    started = time.perf_counter()
    response = client.post("/scraping/trigger")
    elapsed = time.perf_counter() - started

    assert response.status_code == 200
    body = response.json()
    assert body["sources"] == "all"
    assert body["status"] == "running"
    assert body["message"] == "Job scraping started"
    assert body["task_id"]
    assert elapsed < 0.5

    task = client.get(f"/scraping/tasks/{body['task_id']}").json()
    assert task["status"] == "running"
    assert task["sources"] is None
    assert client.app.state.task_runner.in_flight == 1


def test_trigger_with_empty_list_also_means_all(client: TestClient) -> None:
    response = client.post("/scraping/trigger", json={"sources": []})
    assert response.status_code == 200
    assert response.json()["sources"] == "all"


def test_trigger_task_records_results_for_named_sources(client: TestClient) -> None:
    client.post(
        "/scraping/sources",
        json={
            "name": "Manual",
            "base_url": "https://manual.example.com",
            "config": {
                "format": "inline",
                "postings": [
                    {"external_id": "pm-1", "title": "Product Manager", "company": "ProductCorp"},
                    {"external_id": "ux-1", "title": "UX Designer", "location": "Remote"},
                ],
            },
        },
    )
    client.post(
        "/scraping/sources",
        json={
            "name": "Other",
            "base_url": "https://other.example.com",
            "config": {"format": "inline"},
        },
    )

    response = client.post("/scraping/trigger", json={"sources": ["Manual", " Manual "]})
    assert response.status_code == 200
    assert response.json()["sources"] == ["Manual"]

    task = wait_for_task(client, response.json()["task_id"])
    assert task["status"] == "completed"
    assert task["sources"] == ["Manual"]
    assert task["completed_at"]
    assert task["results"] == [
        {
            "source": "Manual",
            "jobs_found": 2,
            "jobs_created": 2,
            "jobs_updated": 0,
            "success": True,
            "error": None,
        }
    ]

    jobs = client.get("/scraping/jobs", params={"source": "Manual"}).json()
    assert sorted(job["external_id"] for job in jobs) == ["pm-1", "ux-1"]
    sessions = client.get("/scraping/sessions", params={"source": "Manual"}).json()
    assert [session["status"] for session in sessions] == ["completed"]
    assert client.get("/scraping/sessions", params={"source": "Other"}).json() == []


def test_trigger_task_failure_is_observable_by_polling(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def broken_scrape(sources: list[str] | None = None) -> list[SourceScrapeResult]:
        raise RuntimeError("scraper crashed")

    monkeypatch.setattr(client.app.state.scraper, "scrape_from_multiple_sources", broken_scrape)

    response = client.post("/scraping/trigger", json={"sources": ["Remotive"]})
    assert response.status_code == 200
    assert response.json()["status"] == "running"

    task = wait_for_task(client, response.json()["task_id"])
    assert task["status"] == "failed"
    assert task["error"] == "scraper crashed"


def test_trigger_setup_failure_returns_500(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def broken_insert(task_id: str, sources: list[str] | None) -> None:
        raise RuntimeError("disk full")

    monkeypatch.setattr(client.app.state.repository, "create_trigger_task", broken_insert)

    response = client.post("/scraping/trigger")
    assert response.status_code == 500
    assert response.json() == {"detail": "Internal server error"}


def test_unknown_task_id_is_not_found(client: TestClient) -> None:
    response = client.get("/scraping/tasks/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {"detail": "Unknown task_id"}


def test_sessions_for_unknown_source_are_not_found(client: TestClient) -> None:
    assert client.get("/scraping/sessions", params={"source": "Nope"}).status_code == 404
    assert client.get("/scraping/jobs", params={"source": "Nope"}).status_code == 404
