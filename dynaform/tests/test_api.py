"""
Integration tests for the FastAPI API layer.

Tests cover:
- GET /api/forms and /api/forms/{form_id}
- POST /api/sessions with known, unknown and unavailable forms
- PATCH /api/sessions/{id}/values: visibility, options, bad fields
- POST /api/sessions/{id}/submit: validation failure, success, sink failure
- GET /api/submissions table
- POST /api/sessions/reset
- GET /api/health
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from dynaform.api.routes import configure_routes, router
from dynaform.core.errors import ConfigurationLoadError
from dynaform.core.options import OptionResolver
from dynaform.core.session import SessionStore
from dynaform.core.sources import InMemorySubmissionStore, JsonDirectorySource
from dynaform.tests.conftest import SCHEMAS_DIR, STATES_BY_COUNTRY, FailingSink, FakeOptionFetcher

CAR_ANSWERS = {
    "full_name": "Ada Lovelace",
    "age": 36,
    "vehicle": {"make": "VW", "model": "Golf", "year": 2015},
    "had_accidents": "no",
}


class UnavailableSource:
    async def list_forms(self):
        raise ConfigurationLoadError("forms API unreachable")

    async def get_form(self, form_id):
        raise ConfigurationLoadError("forms API unreachable")


# --- Fixtures ---


def _create_test_app(source=None, sink=None):
    """Create a FastAPI app wired to local forms and fake collaborators."""
    app = FastAPI()
    session_store = SessionStore(timeout_seconds=3600)
    sink = sink if sink is not None else InMemorySubmissionStore()
    configure_routes(
        session_store,
        source or JsonDirectorySource(SCHEMAS_DIR),
        OptionResolver(FakeOptionFetcher(STATES_BY_COUNTRY)),
        sink,
    )
    app.include_router(router, prefix="/api")
    return app, session_store, sink


@pytest.fixture
def client():
    app, _, _ = _create_test_app()
    with TestClient(app) as test_client:
        yield test_client


def _start(client, form_id: str, values: dict | None = None) -> dict:
    body = {"form_id": form_id}
    if values is not None:
        body["values"] = values
    response = client.post("/api/sessions", json=body)
    assert response.status_code == 200
    return response.json()


# --- /api/forms ---


class TestForms:

    def test_list_forms(self, client):
        response = client.get("/api/forms")
        assert response.status_code == 200
        ids = {form["formId"] for form in response.json()["forms"]}
        assert ids == {
            "car_insurance_application",
            "health_insurance_application",
            "home_insurance_application",
        }

    def test_get_form(self, client):
        response = client.get("/api/forms/home_insurance_application")
        assert response.status_code == 200
        data = response.json()
        assert data["formId"] == "home_insurance_application"
        address = next(f for f in data["fields"] if f["id"] == "address")
        state = next(f for f in address["fields"] if f["id"] == "state")
        assert state["dynamicOptions"]["dependsOn"] == "address.country"

    def test_get_unknown_form(self, client):
        assert client.get("/api/forms/nope").status_code == 404

    def test_unavailable_source(self):
        app, _, _ = _create_test_app(source=UnavailableSource())
        with TestClient(app) as test_client:
            assert test_client.get("/api/forms").status_code == 503
            response = test_client.post("/api/sessions", json={"form_id": "x"})
            assert response.status_code == 503
            assert "unreachable" in response.json()["detail"]


# --- /api/sessions ---


class TestSessions:

    def test_create_session(self, client):
        view = _start(client, "health_insurance_application")
        assert view["status"] == "ready"
        assert view["session_id"]
        assert view["visibility"]["pregnancy_status"] is False
        assert "full_name" in view["required"]
        assert [o["value"] for o in view["options"]["gender"]] == ["male", "female", "other"]

    def test_create_session_with_values(self, client):
        view = _start(client, "car_insurance_application", {"vehicle": {"make": "VW"}})
        assert view["values"]["vehicle.make"] == "VW"

    def test_create_session_unknown_form(self, client):
        response = client.post("/api/sessions", json={"form_id": "nope"})
        assert response.status_code == 404

    def test_get_session(self, client):
        view = _start(client, "car_insurance_application")
        response = client.get(f"/api/sessions/{view['session_id']}")
        assert response.status_code == 200
        assert response.json()["form_id"] == "car_insurance_application"

    def test_update_values_changes_visibility(self, client):
        view = _start(client, "health_insurance_application")
        response = client.patch(
            f"/api/sessions/{view['session_id']}/values",
            json={"values": {"gender": "female"}},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["visibility"]["pregnancy_status"] is True
        assert "pregnancy_status" in data["required"]

    def test_update_values_resolves_dependent_options(self, client):
        view = _start(client, "home_insurance_application")
        assert view["options"]["address.state"] == []
        response = client.patch(
            f"/api/sessions/{view['session_id']}/values",
            json={"values": {"address": {"country": "USA"}}},
        )
        data = response.json()
        assert [o["value"] for o in data["options"]["address.state"]] == [
            "California", "New York", "Texas",
        ]
        assert data["busy"]["address.state"] is False

    def test_update_unknown_field(self, client):
        view = _start(client, "car_insurance_application")
        response = client.patch(
            f"/api/sessions/{view['session_id']}/values",
            json={"values": {"colour": "red"}},
        )
        assert response.status_code == 422

    def test_update_unknown_session(self, client):
        response = client.patch("/api/sessions/nope/values", json={"values": {}})
        assert response.status_code == 404

    def test_reset_session(self, client):
        view = _start(client, "car_insurance_application")
        response = client.post("/api/sessions/reset", json={"session_id": view["session_id"]})
        assert response.json()["success"] is True
        assert client.get(f"/api/sessions/{view['session_id']}").status_code == 404

    def test_reset_unknown_session(self, client):
        response = client.post("/api/sessions/reset", json={"session_id": "nope"})
        assert response.status_code == 200
        assert response.json()["success"] is False


# --- /api/sessions/{id}/submit and /api/submissions ---


class TestSubmit:

    def test_submit_invalid(self, client):
        view = _start(client, "car_insurance_application")
        response = client.post(f"/api/sessions/{view['session_id']}/submit")
        assert response.status_code == 422
        errors = response.json()["detail"]["errors"]
        assert errors["full_name"] == ["Full Name is required"]

    def test_submit_valid_then_list(self, client):
        view = _start(client, "car_insurance_application", CAR_ANSWERS)
        response = client.post(f"/api/sessions/{view['session_id']}/submit")
        assert response.status_code == 200
        record = response.json()
        assert record["formId"] == "car_insurance_application"
        assert record["values"]["vehicle.year"] == 2015
        assert "num_accidents" not in record["values"]

        table = client.get("/api/submissions").json()
        assert table["columns"] == [
            "full_name", "age", "vehicle.make", "vehicle.model", "vehicle.year", "had_accidents",
        ]
        assert table["data"][0]["id"] == record["id"]

    def test_submit_twice_conflicts(self, client):
        view = _start(client, "car_insurance_application", CAR_ANSWERS)
        client.post(f"/api/sessions/{view['session_id']}/submit")
        response = client.post(f"/api/sessions/{view['session_id']}/submit")
        assert response.status_code == 409

    def test_sink_failure(self):
        app, _, _ = _create_test_app(sink=FailingSink())
        with TestClient(app) as test_client:
            view = _start(test_client, "car_insurance_application", CAR_ANSWERS)
            response = test_client.post(f"/api/sessions/{view['session_id']}/submit")
            assert response.status_code == 502

            after = test_client.get(f"/api/sessions/{view['session_id']}").json()
            assert after["status"] == "failed"
            assert after["values"]["full_name"] == "Ada Lovelace"


# --- /api/health ---


class TestHealth:

    def test_health(self, client):
        _start(client, "car_insurance_application")
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "active_sessions": 1}
