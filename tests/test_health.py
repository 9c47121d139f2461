from unittest.mock import patch

from fastapi.testclient import TestClient

from resilience.app.core.config import settings
from resilience.app.main import app, run


def test_health():
    client = TestClient(app)
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    # Realtime registry and both limiters report in
    assert "realtime" in data["components"]
    assert "rate_limiter" in data["components"]
    assert data["components"]["realtime"]["active_connections"] == 0


def test_health_carries_request_id():
    client = TestClient(app)
    resp = client.get("/health", headers={"X-Request-ID": "health-check-1"})
    assert resp.headers["X-Request-ID"] == "health-check-1"


def test_run_serves_app_with_uvicorn():
    with patch("resilience.app.main.uvicorn.run") as mock_run:
        run()

    mock_run.assert_called_once()
    args, kwargs = mock_run.call_args
    assert args == ("resilience.app.main:app",)
    assert kwargs["host"] == settings.host
    assert kwargs["port"] == settings.port
    # Forwarded headers are resolved inside the app, for trusted proxies only
    assert kwargs["proxy_headers"] is False
