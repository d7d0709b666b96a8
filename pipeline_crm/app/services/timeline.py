from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pipeline_crm.app.models import (
    CandidateStage,
    CandidateSubStatus,
    CloseReason,
    TimelineEventRecord,
    TimelineEventType,
    utc_now,
)
from pipeline_crm.app.store import InMemoryStore, new_id


def build_event(
    *,
    candidate_id: str,
    event_type: TimelineEventType,
    title: str,
    description: Optional[str] = None,
    from_stage: Optional[CandidateStage] = None,
    to_stage: Optional[CandidateStage] = None,
    sub_status: Optional[CandidateSubStatus] = None,
    close_reason: Optional[CloseReason] = None,
    sub_type: Optional[str] = None,
    meta: Optional[dict[str, Any]] = None,
    created_by: Optional[str] = None,
    event_date: Optional[datetime] = None,
) -> TimelineEventRecord:
    return TimelineEventRecord(
        id=new_id("evt"),
        candidate_id=candidate_id,
        event_type=event_type,
        event_date=event_date or utc_now(),
        title=title,
        description=description,
        from_stage=from_stage,
        to_stage=to_stage,
        sub_status=sub_status,
        close_reason=close_reason,
        sub_type=sub_type,
        meta=meta or {},
        created_by=created_by,
    )


class TimelineRecorder:
    """Append-only audit log per candidate.

    Events are never updated or deleted; a correction is a new event.
    """

    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    def append(self, candidate_id: str, event: TimelineEventRecord) -> TimelineEventRecord:
        if event.candidate_id != candidate_id:
            raise ValueError(
                f"event {event.id} belongs to {event.candidate_id}, not {candidate_id}"
            )
        return self.store.append_event(event)

    def list_events(self, candidate_id: str) -> list[TimelineEventRecord]:
        return self.store.list_events(candidate_id)
