"""
Tests for liveness, readiness, diagnostics and metrics routes.
"""

from sqlalchemy import text

from relay.storage import ExchangeRecorder
from conftest import make_settings, text_event


class TestLiveness:

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert "alive" in response.text

    def test_health_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_test_page(self, client):
        response = client.get("/test")

        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]
        assert "/ask" in response.text


class TestReadiness:

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_ready_without_store(self, make_client):
        client = make_client(recorder_override=ExchangeRecorder())

        assert client.get("/health/ready").status_code == 200

    def test_not_ready_without_verify_token(self, make_client):
        client = make_client(make_settings(WHATSAPP_VERIFY_TOKEN=None))

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert "WHATSAPP_VERIFY_TOKEN" in response.json()["reason"]

    def test_not_ready_without_schema(self, client, session_factory):
        with session_factory() as db:
            db.execute(text("DROP TABLE exchanges"))
            db.commit()

        assert client.get("/health/ready").status_code == 503


class TestTestInsert:

    def test_inserts_synthetic_row(self, client, recorder):
        response = client.get("/test-insert")

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert recorder.get_exchange(data["message_id"]) is not None

    def test_store_disabled(self, make_client):
        client = make_client(recorder_override=ExchangeRecorder())

        response = client.get("/test-insert")

        assert response.status_code == 500
        assert response.json() == {"ok": False, "error": "failed to insert test row"}

    def test_store_failure_hides_detail(self, client, session_factory):
        with session_factory() as db:
            db.execute(text("DROP TABLE exchanges"))
            db.commit()

        response = client.get("/test-insert")

        assert response.status_code == 500
        assert response.json()["error"] == "failed to insert test row"


class TestMetrics:

    def test_exposes_relay_metrics(self, client):
        client.post("/webhook", json=text_event())

        response = client.get("/metrics")

        assert response.status_code == 200
        body = response.text
        assert "webhook_requests_total" in body
        assert "pipeline_events_total" in body
        assert 'pipeline_stage_total{stage="generate",status="ok"}' in body
