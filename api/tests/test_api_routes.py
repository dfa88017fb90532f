from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from hareline.main import app
from hareline.services.repository import get_repository
from hareline.services.store import InMemoryStore


@pytest.fixture
def store() -> InMemoryStore:
    store = InMemoryStore()
    store.add_source("src-site", name="hashnyc.com")
    store.add_kennel("k-nych3", "NYCH3", region="New York City, NY")
    store.add_kennel("k-boh3", "BoH3", region="Boston, MA")
    store.link_kennel("src-site", "k-nych3")
    return store


@pytest.fixture
def client(store: InMemoryStore) -> Iterator[TestClient]:
    app.dependency_overrides[get_repository] = lambda: store
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "events": [
            {
                "date": "2026-11-01",
                "kennelTag": "NYCH3",
                "runNumber": 2150,
                "title": "Fall Back Trail",
                "startTime": "13:00",
                "sourceUrl": "https://hashnyc.com/events/2150",
            },
            {"date": "2026-11-01", "kennelTag": "BoH3", "title": "Visiting"},
        ],
        "errors": [],
    }
    payload.update(overrides)
    return payload


def test_ingest_scrape_results_runs_pipeline(client: TestClient, store: InMemoryStore) -> None:
    response = client.post("/sources/src-site/scrape-results", json=_payload())

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["created"] == 1
    assert body["blocked"] == 1
    assert body["blocked_tags"] == ["BoH3"]
    assert body["health_status"] == "DEGRADED"
    assert len(store.events) == 1


def test_ingest_keeps_absent_fields_distinct_from_cleared(client: TestClient, store: InMemoryStore) -> None:
    client.post("/sources/src-site/scrape-results", json=_payload())
    update = {"events": [{"date": "2026-11-01", "kennelTag": "NYCH3", "title": "Renamed"}]}

    response = client.post("/sources/src-site/scrape-results", json=update)

    assert response.status_code == 200
    event = next(iter(store.events.values()))
    assert event.title == "Renamed"
    assert event.start_time == "13:00"
    assert event.run_number == 2150


def test_ingest_unknown_source_returns_404(client: TestClient) -> None:
    response = client.post("/sources/missing/scrape-results", json=_payload())
    assert response.status_code == 404


def test_ingest_rejects_invalid_window(client: TestClient) -> None:
    response = client.post("/sources/src-site/scrape-results", json=_payload(days=0))
    assert response.status_code == 422


def test_alert_lifecycle_over_http(client: TestClient) -> None:
    client.post("/sources/src-site/scrape-results", json=_payload())

    listed = client.get("/sources/src-site/alerts", params={"status": "OPEN"})
    assert listed.status_code == 200
    alerts = listed.json()
    assert [alert["type"] for alert in alerts] == ["SOURCE_KENNEL_MISMATCH"]
    alert_id = alerts[0]["id"]

    acknowledged = client.post(f"/alerts/{alert_id}/acknowledge")
    assert acknowledged.status_code == 200
    assert acknowledged.json()["status"] == "ACKNOWLEDGED"
    assert client.post(f"/alerts/{alert_id}/acknowledge").status_code == 409

    snoozed = client.post(f"/alerts/{alert_id}/snooze", json={"hours": 12})
    assert snoozed.status_code == 200
    assert snoozed.json()["snoozed_until"] is not None

    resolved = client.post(f"/alerts/{alert_id}/resolve", json={"resolved_by": "admin-1"})
    assert resolved.status_code == 200
    assert resolved.json()["resolved_by"] == "admin-1"
    assert client.post(f"/alerts/{alert_id}/resolve", json={}).status_code == 409


def test_alert_routes_validate_input(client: TestClient) -> None:
    assert client.get("/alerts/missing").status_code == 404
    assert client.post("/alerts/missing/acknowledge").status_code == 404
    assert client.post("/alerts/missing/snooze", json={"hours": -1}).status_code == 422
    assert client.get("/sources/missing/alerts").status_code == 404


def test_resolve_all_for_source(client: TestClient) -> None:
    client.post("/sources/src-site/scrape-results", json=_payload())

    response = client.post("/sources/src-site/alerts/resolve-all", json={"resolved_by": "admin-1"})

    assert response.status_code == 200
    assert response.json() == {"resolved": 1}
    remaining = client.get("/sources/src-site/alerts", params=[("status", "OPEN"), ("status", "ACKNOWLEDGED")])
    assert remaining.json() == []
