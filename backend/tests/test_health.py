import pytest
from fastapi.testclient import TestClient

from atsguard.api.routers.system import reset_ready_cache
from atsguard.config import settings
from atsguard.main import app


@pytest.fixture(autouse=True)
def fresh_ready_cache():
    reset_ready_cache()
    yield
    reset_ready_cache()


def test_root_endpoint() -> None:
    with TestClient(app) as client:
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"


def test_health_endpoint() -> None:
    with TestClient(app) as client:
        for path in ("/health", "/api/health"):
            response = client.get(path)
            assert response.status_code == 200
            assert response.json()["status"] == "ok"


def test_ready_endpoint() -> None:
    with TestClient(app) as client:
        response = client.get("/ready")
        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "ready"
        assert payload["checks"]["drafting"]["ok"] is True
        assert payload["checks"]["engine"]["ok"] is True


def test_ready_endpoint_reports_missing_model_ids(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "bedrock_lite_model_id", "")
    with TestClient(app) as client:
        response = client.get("/ready")
        assert response.status_code == 503
        payload = response.json()
        assert payload["status"] == "not_ready"
        assert payload["checks"]["drafting"]["missing"] == ["BEDROCK_LITE_MODEL_ID"]


def test_ready_result_is_cached(monkeypatch: pytest.MonkeyPatch) -> None:
    with TestClient(app) as client:
        assert client.get("/ready").status_code == 200
        monkeypatch.setattr(settings, "bedrock_model_id", "")
        assert client.get("/ready").status_code == 200
