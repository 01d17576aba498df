"""Tests for POST /webhooks/whatsapp/evolution (in-memory store, no Postgres)."""

import pytest
from fastapi.testclient import TestClient

from konver.api.factory import create_app

from .helpers import evolution_message, record_logs

INSTANCE = "bot_abcdefghij"
URL = "/webhooks/whatsapp/evolution"


@pytest.fixture
def client(bridge, store):
    store.add_bot(
        "bot-1",
        instance_name=INSTANCE,
        status="connected",
        phone_number="5511912345678",
        profile_name="Clinica Sorriso",
    )
    with TestClient(create_app(bridge)) as c:
        yield c


class TestWebhookEvolution:
    def test_valid_message_acknowledged(self, client, store):
        response = client.post(URL, json=evolution_message())

        assert response.status_code == 200
        assert response.json() == {"ok": True, "status": "processed"}
        assert len(store.messages) == 1

    def test_redelivery_acknowledged_as_duplicate(self, client, store):
        client.post(URL, json=evolution_message())
        response = client.post(URL, json=evolution_message())

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"
        assert len(store.messages) == 1

    def test_unknown_instance_still_acknowledged(self, client):
        response = client.post(URL, json=evolution_message(instance="bot_gone"))
        assert response.status_code == 200
        assert response.json()["status"] == "unknown_instance"

    def test_non_object_body_is_400(self, client):
        response = client.post(URL, json=["not", "an", "object"])
        assert response.status_code == 400

    def test_invalid_json_is_400(self, client):
        response = client.post(
            URL, content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400

    def test_log_failure_is_500(self, client, store):
        store.fail_webhook_log = RuntimeError("database unavailable")
        response = client.post(URL, json=evolution_message())
        assert response.status_code == 500

    def test_correlation_id_echoed(self, client):
        response = client.post(
            URL, json=evolution_message(), headers={"X-Correlation-ID": "corr-123"}
        )
        assert response.headers["X-Correlation-ID"] == "corr-123"

    def test_correlation_id_generated(self, client):
        response = client.post(URL, json=evolution_message())
        assert len(response.headers["X-Correlation-ID"]) == 32

    def test_logs_contain_no_pii(self, client):
        with record_logs("konver.api.routes.webhooks_whatsapp", "konver.domain.ingestion") as logs:
            client.post(URL, json=evolution_message())
        assert "5511999999999" not in logs.text
        assert "Oi, quero agendar" not in logs.text


class TestWebhookSecret:
    def test_matching_secret_accepted(self, client, monkeypatch):
        monkeypatch.setenv("EVOLUTION_WEBHOOK_SECRET", "s3cret")
        response = client.post(
            URL, json=evolution_message(), headers={"X-Webhook-Secret": "s3cret"}
        )
        assert response.status_code == 200

    def test_wrong_secret_rejected(self, client, store, monkeypatch):
        monkeypatch.setenv("EVOLUTION_WEBHOOK_SECRET", "s3cret")
        response = client.post(
            URL, json=evolution_message(), headers={"X-Webhook-Secret": "guess"}
        )
        assert response.status_code == 401
        assert store.webhook_events == {}

    def test_missing_secret_rejected(self, client, monkeypatch):
        monkeypatch.setenv("EVOLUTION_WEBHOOK_SECRET", "s3cret")
        assert client.post(URL, json=evolution_message()).status_code == 401

    def test_production_without_configured_secret_fails_closed(self, client, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        assert client.post(URL, json=evolution_message()).status_code == 401


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "konver-whatsapp-bridge"}
