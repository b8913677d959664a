import pytest
from fastapi.testclient import TestClient
from harvester.main import create_app

pytestmark = pytest.mark.integration


def test_health(tmp_path) -> None:
    app = create_app(database_path=str(tmp_path / "harvester.sqlite3"))
    with TestClient(app) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "harvester"}
