from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from benefits_worker.application.interfaces import QueueStats
from benefits_worker.container import get_metrics_collector, get_task_broker
from benefits_worker.fast_api import app
from benefits_worker.infrastructure.services import PrometheusMetricsCollector


@pytest.fixture
def broker_mock():
    broker = AsyncMock()
    broker.stats.return_value = [
        QueueStats("checkSocialGroupQueue", pending=2, active=1, scheduled=3, dead=0),
        QueueStats("sendEmailQueue", pending=0, active=0, scheduled=0, dead=4),
    ]
    broker.list_dead.return_value = ['{"id":"1"}']
    return broker


@pytest.fixture
def client(broker_mock):
    """ Клиент API с подмененными зависимостями контейнера """
    collector = PrometheusMetricsCollector()
    app.dependency_overrides[get_metrics_collector] = lambda: collector
    app.dependency_overrides[get_task_broker] = lambda: broker_mock
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/api/v0/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["queue_size"] == 0
    assert body["error_rate"] == 0.0


def test_metrics(client):
    response = client.get("/api/v0/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "tasks_processed_total" in response.text


def test_queue_status(client):
    response = client.get("/api/v0/queue/status")

    assert response.status_code == 200
    assert response.json() == {"queues": [
        {"queue": "checkSocialGroupQueue", "pending": 2, "active": 1, "scheduled": 3, "dead": 0},
        {"queue": "sendEmailQueue", "pending": 0, "active": 0, "scheduled": 0, "dead": 4},
    ]}


def test_queue_status_when_broker_is_down(client, broker_mock):
    broker_mock.stats.side_effect = ConnectionError("redis is down")

    response = client.get("/api/v0/queue/status")

    assert response.status_code == 503


def test_dead_tasks(client, broker_mock):
    response = client.get("/api/v0/queue/sendEmailQueue/dead", params={"limit": 5})

    assert response.status_code == 200
    assert response.json() == {"queue": "sendEmailQueue", "tasks": ['{"id":"1"}']}
    broker_mock.list_dead.assert_awaited_once_with("sendEmailQueue", 5)


def test_dead_tasks_limit_is_validated(client):
    assert client.get("/api/v0/queue/sendEmailQueue/dead", params={"limit": 0}).status_code == 422
