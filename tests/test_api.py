import pytest
from fastapi.testclient import TestClient

from harvester.main import create_application


@pytest.fixture
def client(settings):
    app = create_application(settings, create_schema=True)
    with TestClient(app) as test_client:
        yield test_client


def test_health_reports_database_and_queue(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["components"]["database"] == {"status": "healthy"}
    assert body["components"]["queue"] == {"status": "healthy", "depth": 0}


def test_seed_then_status(client) -> None:
    seeded = client.post("/api/v1/seed", json={"mode": "test", "sources": ["FL_DBPR"]})
    repeated = client.post("/api/v1/seed", json={"mode": "test", "sources": ["FL_DBPR"]})
    status = client.get("/api/v1/status", params={"source_type": "FL_DBPR"})

    assert seeded.status_code == 202
    assert seeded.json() == {"queued": 5, "skipped": 0, "errors": 0}
    assert repeated.json() == {"queued": 0, "skipped": 5, "errors": 0}

    body = status.json()
    assert body["queue_depth"] == 5
    assert body["open_dead_letters"] == 0
    [source] = body["sources"]
    assert source["source_type"] == "FL_DBPR"
    assert source["counts"] == {"queued": 5}
    assert source["total"] == 5
    assert source["rate_limit"]["requests_per_second"] == 1.0
    assert source["rate_limit"]["is_throttled"] is False


def test_status_lists_every_registered_source(client) -> None:
    body = client.get("/api/v1/status").json()

    assert [s["source_type"] for s in body["sources"]] == ["CA_DRE", "FL_DBPR", "TX_TREC", "WA_DOL"]
    assert all(s["total"] == 0 for s in body["sources"])


def test_unknown_source_is_rejected(client) -> None:
    response = client.post("/api/v1/seed", json={"sources": ["NV_RED"]})

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["details"]["field_errors"]["sources"] == ["Unknown source type: NV_RED"]


def test_invalid_mode_fails_request_validation(client) -> None:
    response = client.post("/api/v1/seed", json={"mode": "everything"})

    assert response.status_code == 422


def test_dead_letters_and_alerts_start_empty(client) -> None:
    assert client.get("/api/v1/dead-letters").json() == []
    assert client.get("/api/v1/alerts").json() == []
    assert client.get("/api/v1/dead-letters", params={"limit": 0}).status_code == 422


def test_resolve_dead_letter(client) -> None:
    client.post("/api/v1/seed", json={"mode": "test", "sources": ["TX_TREC"]})
    queue = client.app.state.runtime.queue

    async def fail_one():
        [message] = await queue.receive_batch(1)
        await queue.dead_letter(message, "selector not found", {"strategy": "direct_url"})

    client.portal.call(fail_one)
    [entry] = client.get("/api/v1/dead-letters").json()

    response = client.post(
        f"/api/v1/dead-letters/{entry['id']}/resolve",
        json={"resolved_by": "ops@example.com", "notes": "Selector updated"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["resolved"] is True
    assert body["resolved_by"] == "ops@example.com"
    assert body["resolution_notes"] == "Selector updated"
    assert client.get("/api/v1/dead-letters").json() == []
    assert client.get("/api/v1/status").json()["open_dead_letters"] == 0
    assert len(client.get("/api/v1/dead-letters", params={"include_resolved": True}).json()) == 1


def test_resolve_unknown_dead_letter_is_not_found(client) -> None:
    response = client.post(
        "/api/v1/dead-letters/00000000-0000-0000-0000-000000000000/resolve",
        json={"resolved_by": "ops@example.com"},
    )

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "ENTITY_NOT_FOUND"
