from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from pipeline_crm.app.main import create_app
from pipeline_crm.app.models import (
    CandidateCreateRequest,
    CandidateStage,
    CandidateSubStatus,
    TimelineEventType,
    TransitionRequest,
)
from pipeline_crm.app.persistence import SqlitePersistence
from pipeline_crm.app.services.lifecycle import LifecycleEngine
from pipeline_crm.app.store import InMemoryStore, StoreConflictError


def _new_client(monkeypatch, db_path: Path) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "true")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("PERSISTENCE_DB_PATH", str(db_path))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{str(db_path).replace(chr(92), '/')}")
    return TestClient(create_app())


def test_candidate_and_timeline_persist_across_restart(monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "pipeline_crm.sqlite3"
    first_client = _new_client(monkeypatch, db_path)
    create = first_client.post("/candidates", json={"name": "Ravi Kumar"})
    assert create.status_code == 201
    candidate_id = create.json()["id"]
    moved = first_client.post(
        f"/candidates/{candidate_id}/transition",
        json={"to_stage": "ELIMINATED", "close_reason": "no_response", "reason": "ghosted"},
    )
    assert moved.status_code == 200

    restarted_client = _new_client(monkeypatch, db_path)
    loaded = restarted_client.get(f"/candidates/{candidate_id}")
    assert loaded.status_code == 200
    assert loaded.json()["stage"] == "ELIMINATED"
    assert loaded.json()["close_reason"] == "NO_RESPONSE"
    assert loaded.json()["last_active_stage"] == "SOURCING"
    assert loaded.json()["version"] == 2

    events = restarted_client.get(f"/candidates/{candidate_id}/timeline").json()
    assert [event["event_type"] for event in events] == [
        "CANDIDATE_CREATED",
        "STAGE_CHANGED",
        "ELIMINATED",
    ]
    assert [event["sequence"] for event in events] == [1, 2, 3]


def test_sequence_continues_after_restart(monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "pipeline_crm.sqlite3"
    first_client = _new_client(monkeypatch, db_path)
    candidate_id = first_client.post("/candidates", json={"name": "Ravi Kumar"}).json()["id"]

    restarted_client = _new_client(monkeypatch, db_path)
    note = restarted_client.post(
        f"/candidates/{candidate_id}/timeline", json={"title": "Followed up"}
    )
    assert note.status_code == 201
    assert note.json()["sequence"] == 2


def test_stale_database_version_is_a_conflict(tmp_path) -> None:
    db_url = f"sqlite:///{(tmp_path / 'pipeline_crm.sqlite3').as_posix()}"
    engine = LifecycleEngine(InMemoryStore(persistence=SqlitePersistence(db_url)))
    created = engine.create_candidate(CandidateCreateRequest(name="Meera Iyer"))

    # A second process that hydrated earlier and writes after us.
    other = InMemoryStore(persistence=SqlitePersistence(db_url))
    engine.store.save(created.model_copy(update={"notes": "first writer"}))

    with pytest.raises(StoreConflictError):
        other.save(other.load(created.id).model_copy(update={"notes": "second writer"}))


def test_sqlite_url_creates_missing_parent_directories(tmp_path) -> None:
    db_path = tmp_path / "nested" / "pipeline_crm.sqlite3"
    persistence = SqlitePersistence(f"sqlite:///{db_path.as_posix()}")
    assert db_path.parent.exists()
    assert persistence.ping()


def _fail_event_insert(conn, events) -> None:
    raise OperationalError("INSERT INTO timeline_events", {}, Exception("disk I/O error"))


def test_failed_event_write_rolls_back_transition(monkeypatch, tmp_path) -> None:
    db_url = f"sqlite:///{(tmp_path / 'pipeline_crm.sqlite3').as_posix()}"
    persistence = SqlitePersistence(db_url)
    engine = LifecycleEngine(InMemoryStore(persistence=persistence))
    created = engine.create_candidate(CandidateCreateRequest(name="Meera Iyer"))

    monkeypatch.setattr(persistence, "_insert_events", _fail_event_insert)
    with pytest.raises(OperationalError):
        engine.request_transition(created.id, TransitionRequest(to_stage=CandidateStage.TRAINING))

    current = engine.store.load(created.id)
    assert current.stage == CandidateStage.SOURCING
    assert current.version == 1
    assert [event.event_type for event in engine.recorder.list_events(created.id)] == [
        TimelineEventType.CANDIDATE_CREATED
    ]
    reloaded = InMemoryStore(persistence=SqlitePersistence(db_url))
    assert reloaded.load(created.id).stage == CandidateStage.SOURCING
    assert reloaded.load(created.id).version == 1
    assert len(reloaded.list_events(created.id)) == 1

    monkeypatch.undo()
    moved = engine.request_transition(
        created.id, TransitionRequest(to_stage=CandidateStage.TRAINING)
    )
    assert moved.version == 2
    assert [event.sequence for event in engine.recorder.list_events(created.id)] == [1, 2]


def test_failed_event_write_rolls_back_sub_status_and_creation(monkeypatch, tmp_path) -> None:
    db_url = f"sqlite:///{(tmp_path / 'pipeline_crm.sqlite3').as_posix()}"
    persistence = SqlitePersistence(db_url)
    engine = LifecycleEngine(InMemoryStore(persistence=persistence))
    created = engine.create_candidate(CandidateCreateRequest(name="Meera Iyer"))

    monkeypatch.setattr(persistence, "_insert_events", _fail_event_insert)
    with pytest.raises(OperationalError):
        engine.request_sub_status_update(created.id, CandidateSubStatus.CONTACTED)
    with pytest.raises(OperationalError):
        engine.create_candidate(CandidateCreateRequest(name="Never Stored"))

    assert engine.store.load(created.id).sub_status == CandidateSubStatus.SOURCED
    assert [record.id for record in engine.store.list_candidates()] == [created.id]
    reloaded = InMemoryStore(persistence=SqlitePersistence(db_url))
    assert [record.id for record in reloaded.list_candidates()] == [created.id]
    assert reloaded.load(created.id).sub_status == CandidateSubStatus.SOURCED
