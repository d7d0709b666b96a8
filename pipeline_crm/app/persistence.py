from __future__ import annotations

import json
from pathlib import Path
from threading import Lock
from typing import Sequence

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from pipeline_crm.app.models import CandidateRecord, TimelineEventRecord


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqlitePersistence:
    """
    Write-through backing for the candidate store. Uses SQLAlchemy and accepts
    both SQLite and PostgreSQL URLs. Timeline rows are only ever inserted.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.candidates = Table(
            "candidates",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("version", Integer, nullable=False),
            Column("stage", String(32), nullable=False),
            Column("sub_status", String(64), nullable=True),
            Column("payload_json", Text, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.timeline_events = Table(
            "timeline_events",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("sequence", Integer, nullable=False, unique=True),
            Column("candidate_id", String(64), nullable=False, index=True),
            Column("event_type", String(32), nullable=False),
            Column("event_date", DateTime, nullable=False),
            Column("payload_json", Text, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    @staticmethod
    def _candidate_row(record: CandidateRecord) -> dict:
        return {
            "version": record.version,
            "stage": record.stage.value,
            "sub_status": record.sub_status.value if record.sub_status else None,
            "payload_json": json.dumps(record.model_dump(mode="json")),
            "created_at_utc": record.created_at_utc,
            "updated_at_utc": record.updated_at_utc,
        }

    def insert_candidate(
        self, record: CandidateRecord, events: Sequence[TimelineEventRecord] = ()
    ) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(
                    self.candidates.insert().values(id=record.id, **self._candidate_row(record))
                )
                self._insert_events(conn, events)

    def update_candidate(
        self,
        record: CandidateRecord,
        *,
        expected_version: int,
        events: Sequence[TimelineEventRecord] = (),
    ) -> bool:
        """Version-checked update plus its events, committed together or not at all."""
        with self._lock:
            with self.engine.begin() as conn:
                result = conn.execute(
                    self.candidates.update()
                    .where(self.candidates.c.id == record.id)
                    .where(self.candidates.c.version == expected_version)
                    .values(**self._candidate_row(record))
                )
                if result.rowcount != 1:
                    return False
                self._insert_events(conn, events)
            return True

    def list_candidates(self) -> list[CandidateRecord]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(self.candidates.c.payload_json).order_by(
                        self.candidates.c.created_at_utc
                    )
                ).all()
        return [CandidateRecord.model_validate(json.loads(row.payload_json)) for row in rows]

    def insert_timeline_event(self, record: TimelineEventRecord) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                self._insert_events(conn, [record])

    def _insert_events(self, conn: Connection, events: Sequence[TimelineEventRecord]) -> None:
        for record in events:
            conn.execute(
                self.timeline_events.insert().values(
                    id=record.id,
                    sequence=record.sequence,
                    candidate_id=record.candidate_id,
                    event_type=record.event_type.value,
                    event_date=record.event_date,
                    payload_json=json.dumps(record.model_dump(mode="json")),
                )
            )

    def list_timeline_events(self) -> list[TimelineEventRecord]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(self.timeline_events.c.payload_json).order_by(
                        self.timeline_events.c.sequence
                    )
                ).all()
        return [TimelineEventRecord.model_validate(json.loads(row.payload_json)) for row in rows]
