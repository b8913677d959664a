from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from harvester.main import create_app
from pytest_bdd import given, parsers, scenario, then, when

pytestmark = pytest.mark.bdd


@scenario("features/harvester.feature", "Register a new job source")
def test_register_job_source() -> None:
    pass


@scenario("features/harvester.feature", "Reject a duplicate job source")
def test_reject_duplicate_job_source() -> None:
    pass


@scenario("features/harvester.feature", "Trigger a scrape of every source")
def test_trigger_scrape_of_every_source() -> None:
    pass


@pytest.fixture
def client(tmp_path: Path):
    app = create_app(database_path=str(tmp_path / "harvester.sqlite3"))
    with TestClient(app) as test_client:
        yield test_client


@given("an empty harvester")
def given_empty_harvester(client: TestClient) -> None:
    assert client.get("/scraping/sources").json() == []


@given(parsers.parse('the source "{name}" is already registered'))
def given_registered_source(client: TestClient, name: str) -> None:
    response = client.post(
        "/scraping/sources",
        json={"name": name, "base_url": "https://remotive.example.com/api"},
    )
    assert response.status_code == 201


@when(
    parsers.parse('the source "{name}" is registered with base url "{base_url}"'),
    target_fixture="response",
)
def when_source_is_registered(client: TestClient, name: str, base_url: str):
    return client.post("/scraping/sources", json={"name": name, "base_url": base_url})


@when("a scrape is triggered without naming sources", target_fixture="response")
def when_scrape_is_triggered(client: TestClient):
    return client.post("/scraping/trigger")


@then(parsers.parse("the harvester responds with status {status_code:d}"))
def then_status_matches(response, status_code: int) -> None:
    assert response.status_code == status_code


@then(parsers.parse('the source list contains "{name}" with a rate limit of {rate_limit:d}'))
def then_source_is_listed(client: TestClient, name: str, rate_limit: int) -> None:
    sources = {source["name"]: source for source in client.get("/scraping/sources").json()}
    assert sources[name]["rate_limit"] == rate_limit
    assert sources[name]["is_active"] is True


@then(parsers.parse("the source list has {count:d} entry"))
def then_source_count_matches(client: TestClient, count: int) -> None:
    assert len(client.get("/scraping/sources").json()) == count


@then(parsers.parse('the trigger covers "{sources}" sources and is running'))
def then_trigger_is_running(response, sources: str) -> None:
    body = response.json()
    assert body["sources"] == sources
    assert body["status"] == "running"
    assert body["task_id"]
