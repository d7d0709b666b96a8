from __future__ import annotations

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from pipeline_crm.app.main import create_app
from pipeline_crm.app.models import CandidateCreateRequest, CandidateRecord
from pipeline_crm.app.services.lifecycle import LifecycleEngine
from pipeline_crm.app.store import InMemoryStore

FIXED_NOW = datetime(2024, 1, 10, 9, 30)


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    app = create_app()
    return TestClient(app)


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def engine(store: InMemoryStore) -> LifecycleEngine:
    return LifecycleEngine(store, clock=lambda: FIXED_NOW)


@pytest.fixture()
def candidate(engine: LifecycleEngine) -> CandidateRecord:
    return engine.create_candidate(CandidateCreateRequest(name="Lin Zhao", email="lin@example.com"))
