from __future__ import annotations

from threading import RLock
from typing import TYPE_CHECKING, Optional, Sequence
from uuid import uuid4

from pipeline_crm.app.models import (
    CandidateRecord,
    CandidateStage,
    TimelineEventRecord,
    utc_now,
)

if TYPE_CHECKING:
    from pipeline_crm.app.persistence import SqlitePersistence


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class InMemoryStore:
    """Candidate aggregates plus their append-only timeline.

    Reads hand out copies; writes go through ``save`` which compares the
    caller's ``version`` with the stored one. With a persistence backend every
    write is mirrored to it and the store hydrates from it on startup.
    """

    def __init__(self, persistence: Optional["SqlitePersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.candidates: dict[str, CandidateRecord] = {}
        self.timeline_events: list[TimelineEventRecord] = []
        self._next_sequence = 1

        if self.persistence:
            for candidate in self.persistence.list_candidates():
                self.candidates[candidate.id] = candidate
            self.timeline_events = self.persistence.list_timeline_events()
            if self.timeline_events:
                self._next_sequence = max(event.sequence for event in self.timeline_events) + 1

    def insert_candidate(
        self, candidate: CandidateRecord, events: Sequence[TimelineEventRecord] = ()
    ) -> CandidateRecord:
        with self._lock:
            if candidate.id in self.candidates:
                raise StoreConflictError(f"candidate already exists: {candidate.id}")
            stored = candidate.model_copy(update={"version": 1}, deep=True)
            stored_events = self._number_events(stored.id, events)
            if self.persistence:
                self.persistence.insert_candidate(stored, stored_events)
            self.candidates[stored.id] = stored
            self._commit_events(stored_events)
            return stored.model_copy(deep=True)

    def load(self, candidate_id: str) -> CandidateRecord:
        with self._lock:
            candidate = self.candidates.get(candidate_id)
            if not candidate:
                raise StoreNotFoundError(f"candidate not found: {candidate_id}")
            return candidate.model_copy(deep=True)

    def save(
        self, candidate: CandidateRecord, events: Sequence[TimelineEventRecord] = ()
    ) -> CandidateRecord:
        """Store a new version of ``candidate`` together with ``events``.

        Nothing in memory changes unless the persistence write, candidate row
        and events alike, has committed.
        """
        with self._lock:
            current = self.candidates.get(candidate.id)
            if not current:
                raise StoreNotFoundError(f"candidate not found: {candidate.id}")
            if current.version != candidate.version:
                raise StoreConflictError(
                    f"candidate {candidate.id} was modified concurrently "
                    f"(expected version {candidate.version}, found {current.version})"
                )
            stored = candidate.model_copy(
                update={"version": candidate.version + 1, "updated_at_utc": utc_now()},
                deep=True,
            )
            stored_events = self._number_events(stored.id, events)
            if self.persistence and not self.persistence.update_candidate(
                stored, expected_version=candidate.version, events=stored_events
            ):
                raise StoreConflictError(
                    f"candidate {candidate.id} was modified concurrently in the database"
                )
            self.candidates[stored.id] = stored
            self._commit_events(stored_events)
            return stored.model_copy(deep=True)

    def list_candidates(self, stage: Optional[CandidateStage] = None) -> list[CandidateRecord]:
        with self._lock:
            records = [record.model_copy(deep=True) for record in self.candidates.values()]
        if stage:
            records = [record for record in records if record.stage == stage]
        records.sort(key=lambda record: record.created_at_utc)
        return records

    def exists(self, candidate_id: str) -> bool:
        with self._lock:
            return candidate_id in self.candidates

    def append_event(self, event: TimelineEventRecord) -> TimelineEventRecord:
        with self._lock:
            if event.candidate_id not in self.candidates:
                raise StoreNotFoundError(f"candidate not found: {event.candidate_id}")
            (stored,) = self._number_events(event.candidate_id, [event])
            if self.persistence:
                self.persistence.insert_timeline_event(stored)
            self._commit_events([stored])
            return stored

    def _number_events(
        self, candidate_id: str, events: Sequence[TimelineEventRecord]
    ) -> list[TimelineEventRecord]:
        numbered = []
        for offset, event in enumerate(events):
            if event.candidate_id != candidate_id:
                raise ValueError(
                    f"event {event.id} belongs to {event.candidate_id}, not {candidate_id}"
                )
            numbered.append(event.model_copy(update={"sequence": self._next_sequence + offset}))
        return numbered

    def _commit_events(self, events: list[TimelineEventRecord]) -> None:
        self._next_sequence += len(events)
        self.timeline_events.extend(events)

    def list_events(self, candidate_id: str) -> list[TimelineEventRecord]:
        with self._lock:
            events = [
                event for event in self.timeline_events if event.candidate_id == candidate_id
            ]
        events.sort(key=lambda event: (event.event_date, event.sequence))
        return events
