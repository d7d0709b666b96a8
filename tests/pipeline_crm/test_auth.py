from __future__ import annotations

from datetime import datetime, timedelta

import jwt
from fastapi.testclient import TestClient

from pipeline_crm.app.main import create_app


def _token(secret: str, subject: str, roles: list[str]) -> str:
    payload = {
        "sub": subject,
        "roles": roles,
        "exp": datetime.utcnow() + timedelta(hours=1),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def _auth_client(monkeypatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    return TestClient(create_app())


def test_auth_blocks_missing_token_when_enabled(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    response = client.post("/candidates", json={"name": "Auth Test"})
    assert response.status_code == 401


def test_auth_rejects_token_signed_with_other_secret(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("wrong-secret", "recruiter-1", ["recruiter"])
    response = client.get("/candidates", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_recruiter_token_is_recorded_as_actor(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    headers = {"Authorization": f"Bearer {_token('test-secret', 'recruiter-1', ['recruiter'])}"}

    created = client.post("/candidates", headers=headers, json={"name": "Auth Test"})
    assert created.status_code == 201
    candidate_id = created.json()["id"]

    moved = client.post(
        f"/candidates/{candidate_id}/transition",
        headers=headers,
        json={"to_stage": "TRAINING"},
    )
    assert moved.status_code == 200

    events = client.get(f"/candidates/{candidate_id}/timeline", headers=headers).json()
    assert {event["created_by"] for event in events} == {"recruiter-1"}


def test_trainer_can_read_and_annotate_but_not_transition(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    recruiter = {"Authorization": f"Bearer {_token('test-secret', 'recruiter-1', ['recruiter'])}"}
    trainer = {"Authorization": f"Bearer {_token('test-secret', 'trainer-1', ['trainer'])}"}
    candidate_id = client.post(
        "/candidates", headers=recruiter, json={"name": "Auth Test"}
    ).json()["id"]

    assert client.get(f"/candidates/{candidate_id}", headers=trainer).status_code == 200
    note = client.post(
        f"/candidates/{candidate_id}/timeline",
        headers=trainer,
        json={"event_type": "MOCK", "title": "Mock theory round booked"},
    )
    assert note.status_code == 201
    assert note.json()["created_by"] == "trainer-1"

    response = client.post(
        f"/candidates/{candidate_id}/transition",
        headers=trainer,
        json={"to_stage": "TRAINING"},
    )
    assert response.status_code == 403
