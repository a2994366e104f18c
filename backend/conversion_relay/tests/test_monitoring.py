"""Monitoring router tests (queues injected via dependency override)."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from conversion_relay.main import create_app
from conversion_relay.models import IntegrationTypeEnum
from conversion_relay.routers.monitoring import get_queues


@pytest.fixture
def client(meta_queue, google_queue, monkeypatch):
    monkeypatch.delenv("SENTRY_DSN", raising=False)
    app = create_app()
    app.dependency_overrides[get_queues] = lambda: {
        IntegrationTypeEnum.meta_capi: meta_queue,
        IntegrationTypeEnum.google_ads: google_queue,
    }
    # Not used as a context manager: the Redis lifespan never runs
    return TestClient(app)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_queue_stats_per_platform(client, meta_queue, make_job):
    asyncio.run(meta_queue.enqueue(make_job()))

    response = client.get("/monitoring/queues")

    assert response.status_code == 200
    body = response.json()
    assert set(body) == {"META_CAPI", "GOOGLE_ADS"}
    assert body["META_CAPI"]["waiting"] == 1
    assert body["GOOGLE_ADS"] == {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}


def test_dead_letters_listing(client, meta_queue, make_job):
    asyncio.run(meta_queue.record_failed(make_job(), "Invalid parameter", "100", 1, "non_retryable"))

    response = client.get("/monitoring/queues/META_CAPI/dead-letters", params={"limit": 10})

    assert response.status_code == 200
    (entry,) = response.json()
    assert entry["job_id"] == "meta-evt_1"
    assert entry["error_code"] == "100"


def test_dead_letters_for_unknown_platform(client):
    assert client.get("/monitoring/queues/TIKTOK/dead-letters").status_code == 422


def test_dead_letters_for_platform_without_queue(client):
    client.app.dependency_overrides[get_queues] = lambda: {}

    assert client.get("/monitoring/queues/GOOGLE_ADS/dead-letters").status_code == 404
