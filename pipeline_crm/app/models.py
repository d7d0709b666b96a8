from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utc_now() -> datetime:
    return datetime.utcnow()


class CandidateStage(str, Enum):
    SOURCING = "SOURCING"
    TRAINING = "TRAINING"
    RESUME = "RESUME"
    MOCKING = "MOCKING"
    MARKETING = "MARKETING"
    OFFERED = "OFFERED"
    PLACED = "PLACED"
    ON_HOLD = "ON_HOLD"
    ELIMINATED = "ELIMINATED"
    WITHDRAWN = "WITHDRAWN"


class CandidateSubStatus(str, Enum):
    # SOURCING
    SOURCED = "SOURCED"
    CONTACTED = "CONTACTED"
    SCREENING_SCHEDULED = "SCREENING_SCHEDULED"
    SCREENING_PASSED = "SCREENING_PASSED"
    SCREENING_FAILED = "SCREENING_FAILED"
    TRAINING_CONTRACT_SENT = "TRAINING_CONTRACT_SENT"
    TRAINING_CONTRACT_SIGNED = "TRAINING_CONTRACT_SIGNED"
    BATCH_ASSIGNED = "BATCH_ASSIGNED"
    DIRECT_MARKETING_READY = "DIRECT_MARKETING_READY"
    # TRAINING
    IN_TRAINING = "IN_TRAINING"
    # RESUME
    RESUME_PREPARING = "RESUME_PREPARING"
    RESUME_READY = "RESUME_READY"
    # MOCKING
    MOCK_THEORY_READY = "MOCK_THEORY_READY"
    MOCK_THEORY_SCHEDULED = "MOCK_THEORY_SCHEDULED"
    MOCK_THEORY_PASSED = "MOCK_THEORY_PASSED"
    MOCK_THEORY_FAILED = "MOCK_THEORY_FAILED"
    MOCK_REAL_SCHEDULED = "MOCK_REAL_SCHEDULED"
    MOCK_REAL_PASSED = "MOCK_REAL_PASSED"
    MOCK_REAL_FAILED = "MOCK_REAL_FAILED"
    # OFFERED
    OFFER_PENDING = "OFFER_PENDING"
    OFFER_ACCEPTED = "OFFER_ACCEPTED"
    OFFER_DECLINED = "OFFER_DECLINED"
    # PLACED
    PLACED_CONFIRMED = "PLACED_CONFIRMED"
    # ON_HOLD
    WAITING_DOCS = "WAITING_DOCS"
    PERSONAL_PAUSE = "PERSONAL_PAUSE"
    VISA_ISSUE = "VISA_ISSUE"
    OTHER = "OTHER"
    # ELIMINATED / WITHDRAWN
    CLOSED = "CLOSED"
    SELF_WITHDRAWN = "SELF_WITHDRAWN"


class CloseReason(str, Enum):
    RETURNED_HOME = "RETURNED_HOME"
    FOUND_FULLTIME = "FOUND_FULLTIME"
    OTHER_OPPORTUNITY = "OTHER_OPPORTUNITY"
    NO_HOMEWORK = "NO_HOMEWORK"
    BEHAVIOR_ISSUE = "BEHAVIOR_ISSUE"
    NO_RESPONSE = "NO_RESPONSE"


class OfferType(str, Enum):
    W2 = "W2"
    C2C = "C2C"


class TimelineEventType(str, Enum):
    CANDIDATE_CREATED = "CANDIDATE_CREATED"
    STAGE_CHANGED = "STAGE_CHANGED"
    SUBSTATUS_CHANGED = "SUBSTATUS_CHANGED"
    ON_HOLD = "ON_HOLD"
    ELIMINATED = "ELIMINATED"
    WITHDRAWN = "WITHDRAWN"
    REACTIVATED = "REACTIVATED"
    OFFERED = "OFFERED"
    PLACED = "PLACED"
    NOTE = "NOTE"
    COMMUNICATION = "COMMUNICATION"
    CONTRACT = "CONTRACT"
    BATCH = "BATCH"
    READINESS = "READINESS"
    MOCK = "MOCK"
    INTERVIEW = "INTERVIEW"


# Written only by the lifecycle engine.
ENGINE_EVENT_TYPES = frozenset(
    {
        TimelineEventType.CANDIDATE_CREATED,
        TimelineEventType.STAGE_CHANGED,
        TimelineEventType.SUBSTATUS_CHANGED,
        TimelineEventType.ON_HOLD,
        TimelineEventType.ELIMINATED,
        TimelineEventType.WITHDRAWN,
        TimelineEventType.REACTIVATED,
        TimelineEventType.OFFERED,
        TimelineEventType.PLACED,
    }
)


class CandidateCreateRequest(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    email: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=20)
    batch: Optional[str] = Field(default=None, max_length=120)
    recruiter: Optional[str] = Field(default=None, max_length=120)
    notes: Optional[str] = Field(default=None, max_length=2000)


class TransitionRequest(BaseModel):
    to_stage: CandidateStage
    to_sub_status: Optional[CandidateSubStatus] = None
    reason: Optional[str] = Field(default=None, max_length=500)
    # Enum-valued extras stay raw so the guard can report invalid_enum.
    close_reason: Optional[str] = None
    withdraw_reason: Optional[str] = Field(default=None, max_length=500)
    hold_reason: Optional[str] = Field(default=None, max_length=500)
    next_follow_up_at: Optional[datetime] = None
    offer_type: Optional[str] = None
    offer_date: Optional[date] = None
    start_date: Optional[date] = None
    reactivate_reason: Optional[str] = Field(default=None, max_length=500)


class SubStatusUpdateRequest(BaseModel):
    sub_status: CandidateSubStatus
    reason: Optional[str] = Field(default=None, max_length=500)


class TimelineNoteRequest(BaseModel):
    event_type: TimelineEventType = TimelineEventType.NOTE
    sub_type: Optional[str] = Field(default=None, max_length=120)
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    event_date: Optional[datetime] = None
    meta: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def normalize_event_date(self) -> "TimelineNoteRequest":
        # Timeline timestamps are naive UTC.
        if self.event_date and self.event_date.tzinfo:
            self.event_date = self.event_date.astimezone(timezone.utc).replace(tzinfo=None)
        return self


class CandidateRecord(BaseModel):
    id: str
    version: int = 0
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    batch: Optional[str] = None
    recruiter: Optional[str] = None
    notes: Optional[str] = None
    stage: CandidateStage = CandidateStage.SOURCING
    sub_status: Optional[CandidateSubStatus] = CandidateSubStatus.SOURCED
    last_active_stage: Optional[CandidateStage] = None
    stage_updated_at_utc: datetime
    hold_reason: Optional[str] = None
    next_follow_up_at: Optional[datetime] = None
    close_reason: Optional[CloseReason] = None
    close_reason_note: Optional[str] = None
    withdraw_reason: Optional[str] = None
    reactivate_reason: Optional[str] = None
    offer_type: Optional[OfferType] = None
    offer_date: Optional[date] = None
    start_date: Optional[date] = None
    resume_ready: bool = False
    created_at_utc: datetime
    updated_at_utc: datetime


class TimelineEventRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    candidate_id: str
    sequence: int = 0
    event_type: TimelineEventType
    event_date: datetime
    title: str
    description: Optional[str] = None
    from_stage: Optional[CandidateStage] = None
    to_stage: Optional[CandidateStage] = None
    sub_status: Optional[CandidateSubStatus] = None
    close_reason: Optional[CloseReason] = None
    sub_type: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None


class StageGraphEntry(BaseModel):
    stage: CandidateStage
    active_flow: bool
    allowed_next: list[CandidateStage]
    sub_statuses: list[CandidateSubStatus]


class StageGraphResponse(BaseModel):
    active_flow_stages: list[CandidateStage]
    branch_stages: list[CandidateStage]
    stages: list[StageGraphEntry]
