"""API tests through FastAPI's TestClient with in-memory collaborators."""

import pytest
from fastapi.testclient import TestClient

from linkwizard.app import create_app
from linkwizard.session_store import SessionStore


@pytest.fixture
def api(settings, gateway, suggestions):
    app = create_app(settings=settings, gateway=gateway, suggestions=suggestions, session_store=SessionStore())
    return TestClient(app)


def _turn(api, session_id, **body):
    response = api.post(f"/api/conversations/{session_id}/turns", json=body)
    assert response.status_code == 200
    return response.json()


class TestConversationApi:
    def test_start(self, api):
        response = api.post("/api/conversations", json={"user_id": 7, "account_id": 3})
        assert response.status_code == 200
        data = response.json()
        assert data["step"] == "campaign-type"
        assert [o["action"] for o in data["messages"][-1]["options"]] == ["start-existing", "start-new"]

    def test_full_flow_and_links(self, api, gateway):
        session_id = api.post("/api/conversations", json={}).json()["session_id"]
        _turn(api, session_id, action="start-new")
        data = _turn(api, session_id, text="Spring")
        assert data["step"] == "landing-pages"
        _turn(api, session_id, action="select-landing-page", payload="https://shop.example.com/")
        _turn(api, session_id, action="continue")
        _turn(api, session_id, action="toggle-source", payload="google")
        _turn(api, session_id, action="continue")
        _turn(api, session_id, action="toggle-medium", payload="cpc")
        _turn(api, session_id, action="continue")
        _turn(api, session_id, action="skip")
        _turn(api, session_id, action="skip")
        data = _turn(api, session_id, action="skip")
        assert data["step"] == "review"
        assert data["link_count"] == 1

        data = _turn(api, session_id, action="commit")
        assert data["step"] == "complete"

        links = api.get(f"/api/conversations/{session_id}/links").json()
        assert links[0]["full_tracking_url"] == (
            "https://shop.example.com/?utm_source=google&utm_medium=cpc&utm_campaign=spring"
        )
        assert len(gateway.tracking_links) == 1

        sessions = api.get("/api/sessions").json()
        assert sessions[0]["session_id"] == session_id
        assert sessions[0]["step"] == "complete"

    def test_restart(self, api):
        session_id = api.post("/api/conversations", json={}).json()["session_id"]
        _turn(api, session_id, action="start-new")
        data = api.post(f"/api/conversations/{session_id}/restart").json()
        assert data["step"] == "campaign-type"
        history = api.get(f"/api/sessions/{session_id}").json()
        assert len(history["messages"]) == 1

    def test_unknown_session(self, api):
        response = api.post("/api/conversations/missing/turns", json={"action": "continue"})
        assert response.status_code == 404
        assert api.get("/api/sessions/missing").status_code == 404

    def test_empty_turn_rejected(self, api):
        session_id = api.post("/api/conversations", json={}).json()["session_id"]
        response = api.post(f"/api/conversations/{session_id}/turns", json={})
        assert response.status_code == 422
