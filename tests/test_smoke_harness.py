from __future__ import annotations

import json
import time
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient
from harvester.main import create_app

pytestmark = [pytest.mark.integration, pytest.mark.smoke]

FEED_URL = "https://greenhouse.example.com/v1/boards/acme/jobs"
FEED_PAYLOAD = {
    "postings": [
        {"id": "gh-1", "title": "Backend Engineer", "company": "Acme", "location": "Remote"},
        {"id": "gh-2", "title": "Data Engineer", "company": "Acme", "location": "Berlin"},
    ]
}


def feed_handler(request: httpx.Request) -> httpx.Response:
    if str(request.url) == FEED_URL:
        return httpx.Response(200, content=json.dumps(FEED_PAYLOAD).encode("utf-8"))
    return httpx.Response(404)


def test_smoke_register_trigger_and_poll(tmp_path: Path) -> None:
    app = create_app(
        database_path=str(tmp_path / "harvester.sqlite3"),
        api_key="smoke-key",
        transport=httpx.MockTransport(feed_handler),
    )
    headers = {"x-api-key": "smoke-key"}

    with TestClient(app) as client:
        health = client.get("/health")
        created = client.post(
            "/scraping/sources",
            json={"name": "Greenhouse", "base_url": FEED_URL},
            headers=headers,
        )
        trigger = client.post("/scraping/trigger", headers=headers)

        task_id = trigger.json()["task_id"]
        deadline = time.monotonic() + 3.0
        task = client.get(f"/scraping/tasks/{task_id}").json()
        while task["status"] == "running" and time.monotonic() < deadline:
            time.sleep(0.02)
            task = client.get(f"/scraping/tasks/{task_id}").json()

        jobs = client.get("/scraping/jobs").json()
        stats = client.get("/scraping/stats").json()

    assert health.status_code == 200
    assert created.status_code == 201
    assert trigger.status_code == 200
    assert task["status"] == "completed"
    assert task["results"][0]["jobs_created"] == 2
    assert sorted(job["external_id"] for job in jobs) == ["gh-1", "gh-2"]
    assert stats["jobs"] == 2
    assert stats["sessions"]["completed"] == 1


def test_smoke_queue_drained_by_full_processor_pass(tmp_path: Path) -> None:
    app = create_app(
        database_path=str(tmp_path / "harvester.sqlite3"),
        transport=httpx.MockTransport(feed_handler),
    )

    with TestClient(app) as client:
        client.post("/scraping/sources", json={"name": "Greenhouse", "base_url": FEED_URL})
        queued = client.post("/scraping/queue", json={"source": "Greenhouse", "priority": 5})
        client.post("/scraping/processor/start", json={"interval_minutes": 60})

        deadline = time.monotonic() + 3.0
        status = client.get("/scraping/processor").json()
        while status["passes_completed"] < 1 and time.monotonic() < deadline:
            time.sleep(0.02)
            status = client.get("/scraping/processor").json()
        queue = client.get("/scraping/queue").json()

    assert queued.status_code == 201
    assert queued.json()["priority"] == 5
    assert status["passes_completed"] == 1
    assert [item["status"] for item in queue] == ["done"]
