"""Tests for the HTTP endpoints."""
import pytest
from fastapi.testclient import TestClient

from abengine.main import app
from abengine.services.experiments import get_experiment_service


@pytest.fixture
def client(service):
    """Test client bound to the in-memory service, without the lifespan scheduler."""
    app.dependency_overrides[get_experiment_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create(client, experiment_id="exp_api", **overrides):
    body = {
        "id": experiment_id,
        "name": "checkout_button_color",
        "variants": [
            {"id": "control", "name": "Blue", "weight": 50, "is_control": True},
            {"id": "green", "name": "Green", "weight": 50, "config": {"color": "#0a0"}}
        ],
        "metrics": ["conversion_rate"],
        "sample_size": 1000,
        "allocation": {"type": "bandit", "algorithm": "epsilon_greedy"}
    }
    body.update(overrides)
    return client.post("/experiments", json=body)


def test_health(client):
    """Test the basic health endpoint."""
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_create_and_get_experiment(client):
    """Test experiment creation over HTTP."""
    response = _create(client)

    assert response.status_code == 201
    assert response.json()["status"] == "planning"
    assert client.get("/experiments/exp_api").json()["name"] == "checkout_button_color"


def test_invalid_weights_return_400(client):
    """Test that validation errors map to 400."""
    response = _create(client, variants=[
        {"id": "control", "name": "Blue", "weight": 60},
        {"id": "green", "name": "Green", "weight": 30}
    ])

    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"


def test_unknown_experiment_returns_404(client):
    """Test that missing experiments map to 404."""
    assert client.get("/experiments/nope").status_code == 404


def test_assign_requires_running(client):
    """Test that lifecycle violations map to 409."""
    _create(client)

    response = client.post("/experiments/exp_api/assign", json={"user_id": "user_1"})

    assert response.status_code == 409


def test_assign_record_and_stop(client):
    """Test the full flow over HTTP."""
    _create(client)
    assert client.post("/experiments/exp_api/start").json()["status"] == "running"
    assert [e["id"] for e in client.get("/experiments/active").json()] == ["exp_api"]

    assigned = client.post("/experiments/exp_api/assign", json={"user_id": "user_1"}).json()
    again = client.post("/experiments/exp_api/assign", json={"user_id": "user_1"}).json()
    assert assigned["variant_id"] == again["variant_id"]

    event = {"user_id": "user_1", "event_id": "imp-1", "metric": "impression"}
    assert client.post("/experiments/exp_api/events", json=event).json() == {"status": "recorded", "recorded": True}
    assert client.post("/experiments/exp_api/events", json=event).json() == {"status": "ignored", "recorded": False}

    tracking = client.get("/experiments/exp_api/tracking").json()
    assert sum(row["impressions"] for row in tracking) == 1

    response = client.post("/experiments/exp_api/stop")
    assert response.status_code == 200
    assert response.json()["winner"] is None
    assert client.get("/experiments/exp_api/result").json() == response.json()


def test_result_without_data_returns_422(client):
    """Test that insufficient data maps to 422."""
    _create(client)

    assert client.get("/experiments/exp_api/result").status_code == 422


def test_event_requires_event_id(client):
    """Test that HTTP events must carry an idempotency key."""
    _create(client)
    client.post("/experiments/exp_api/start")

    response = client.post("/experiments/exp_api/events", json={"user_id": "user_1", "metric": "click"})

    assert response.status_code == 422


def test_reallocate_and_rollback(client, service):
    """Test reallocation, history and rollback endpoints."""
    _create(client)
    client.post("/experiments/exp_api/start")
    service.record_exposure("exp_api", "control", count=100)
    service.record_exposure("exp_api", "green", count=100)
    service.record_event("exp_api", "green", "conversion", count=20)

    response = client.post("/experiments/exp_api/reallocate", params={"force": True}).json()
    assert response["updated"] is True
    assert [v["weight"] for v in response["variants"]] == [10.0, 90.0]

    history = client.get("/experiments/exp_api/allocation-history").json()
    assert [h["strategy"] for h in history] == ["initial", "epsilon_greedy"]

    rolled_back = client.post(f"/experiments/exp_api/allocation-history/{history[0]['id']}/rollback").json()
    assert [v["weight"] for v in rolled_back] == [50.0, 50.0]


def test_reallocate_fixed_experiment_is_noop(client):
    """Test that fixed experiments report no update."""
    _create(client, allocation={"type": "fixed"})
    client.post("/experiments/exp_api/start")

    response = client.post("/experiments/exp_api/reallocate").json()

    assert response["updated"] is False
    assert [v["weight"] for v in response["variants"]] == [50.0, 50.0]


def test_trace_id_header(client):
    """Test that responses carry the request trace id."""
    response = client.get("/health", headers={"X-Trace-ID": "trace-123"})

    assert response.headers["X-Trace-ID"] == "trace-123"


def test_flag_endpoints(client):
    """Test flag CRUD, evaluation and experiment-linked flags over HTTP."""
    _create(client)
    client.post("/experiments/exp_api/start")
    flag = {
        "id": "cta_text",
        "name": "CTA text",
        "variations": {"control": "Buy", "green": "Buy now"},
        "experiments": ["exp_api"]
    }

    assert client.put("/flags/cta_text", json=flag).status_code == 200
    assert [f["id"] for f in client.get("/flags").json()] == ["cta_text"]

    user = {"session_id": "sess_1", "user_id": "user_1"}
    resolved = client.post("/experiments/exp_api/flags", json=user).json()
    assigned = client.post("/experiments/exp_api/assign", json={"user_id": "user_1"}).json()
    assert resolved["variant_id"] == assigned["variant_id"]
    assert resolved["flags"] == {"cta_text": flag["variations"][assigned["variant_id"]]}

    assert client.post("/flags/evaluate", json=user).json()["cta_text"] in ("Buy", "Buy now")

    assert client.delete("/flags/cta_text").status_code == 204
    response = client.get("/flags/cta_text")
    assert response.status_code == 404
    assert response.json()["error"] == "FlagNotFoundError"


def test_flag_id_must_match_path(client):
    """Test that the body id and path id agree."""
    response = client.put("/flags/one", json={"id": "two", "name": "Two"})

    assert response.status_code == 400
