from __future__ import annotations

import logging
from datetime import datetime
from threading import Lock
from typing import TYPE_CHECKING, Any, Callable, Optional

from pipeline_crm.app.models import (
    ENGINE_EVENT_TYPES,
    CandidateCreateRequest,
    CandidateRecord,
    CandidateStage,
    CandidateSubStatus,
    TimelineEventRecord,
    TimelineEventType,
    TimelineNoteRequest,
    TransitionRequest,
    utc_now,
)
from pipeline_crm.app.services.guard import (
    GuardFailure,
    check_transition,
    effective_reason,
    parse_close_reason,
    parse_offer_type,
)
from pipeline_crm.app.services.timeline import TimelineRecorder, build_event
from pipeline_crm.app.services.workflow import (
    default_sub_status,
    is_active_flow,
    is_branch,
    sub_statuses_for,
)
from pipeline_crm.app.store import (
    InMemoryStore,
    StoreConflictError,
    StoreNotFoundError,
    new_id,
)

if TYPE_CHECKING:
    from pipeline_crm.app.observability import MetricsRegistry

logger = logging.getLogger("pipeline_crm.lifecycle")

_MARKER_EVENTS: dict[CandidateStage, tuple[TimelineEventType, str]] = {
    CandidateStage.ON_HOLD: (TimelineEventType.ON_HOLD, "Placed On Hold"),
    CandidateStage.ELIMINATED: (TimelineEventType.ELIMINATED, "Closed"),
    CandidateStage.WITHDRAWN: (TimelineEventType.WITHDRAWN, "Withdrawn"),
    CandidateStage.OFFERED: (TimelineEventType.OFFERED, "Offer Received"),
    CandidateStage.PLACED: (TimelineEventType.PLACED, "Placed Successfully"),
}


class LifecycleError(Exception):
    kind = "lifecycle_error"
    field: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "field": self.field, "message": str(self)}


class TransitionRejectedError(LifecycleError):
    def __init__(self, candidate_id: str, failure: GuardFailure) -> None:
        super().__init__(failure.message)
        self.candidate_id = candidate_id
        self.failure = failure
        self.kind = failure.kind.value
        self.field = failure.field


class InvalidSubStatusError(LifecycleError):
    kind = "invalid_sub_status"
    field = "sub_status"


class NoChangeError(LifecycleError):
    kind = "no_change"
    field = "sub_status"


class ReservedEventTypeError(LifecycleError):
    kind = "invalid_event_type"
    field = "event_type"


class CandidateLocks:
    """One mutex per candidate id; different candidates never contend."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[str, Lock] = {}

    def for_candidate(self, candidate_id: str) -> Lock:
        with self._guard:
            lock = self._locks.get(candidate_id)
            if lock is None:
                lock = Lock()
                self._locks[candidate_id] = lock
            return lock

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def _resume_ready(
    stage: CandidateStage, sub_status: Optional[CandidateSubStatus], current: bool
) -> bool:
    if stage != CandidateStage.RESUME:
        return current
    if sub_status == CandidateSubStatus.RESUME_READY:
        return True
    if sub_status == CandidateSubStatus.RESUME_PREPARING:
        return False
    return current


def _marker_description(request: TransitionRequest) -> Optional[str]:
    to_stage = request.to_stage
    if to_stage == CandidateStage.ON_HOLD:
        return (
            f"{request.hold_reason.strip()} "
            f"(follow up {request.next_follow_up_at.date().isoformat()})"
        )
    if to_stage == CandidateStage.ELIMINATED:
        return f"Close reason: {parse_close_reason(request.close_reason).value}"
    if to_stage == CandidateStage.WITHDRAWN:
        return request.withdraw_reason.strip()
    if to_stage == CandidateStage.OFFERED:
        return f"Offer type: {parse_offer_type(request.offer_type).value}"
    if to_stage == CandidateStage.PLACED:
        return f"Start date: {request.start_date.isoformat()}"
    return None


class LifecycleEngine:
    """Single entry point for changing a candidate's stage or sub-status.

    Each operation holds the candidate's lock for its whole load, validate,
    save sequence, and a new candidate version is saved together with its
    timeline events in one store write. The guard runs against the freshly
    loaded state and all mutation happens on a copy, so a rejected or failed
    request leaves both the stored candidate and its timeline untouched. A version conflict at save
    time reloads and re-validates up to ``conflict_max_retries`` times.
    """

    def __init__(
        self,
        store: InMemoryStore,
        recorder: Optional[TimelineRecorder] = None,
        *,
        metrics: Optional["MetricsRegistry"] = None,
        conflict_max_retries: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.recorder = recorder or TimelineRecorder(store)
        self.metrics = metrics
        self.conflict_max_retries = max(1, conflict_max_retries)
        self._clock = clock
        self._locks = CandidateLocks()

    def create_candidate(
        self, request: CandidateCreateRequest, *, actor_id: Optional[str] = None
    ) -> CandidateRecord:
        now = self._clock()
        candidate = CandidateRecord(
            id=new_id("cand"),
            name=request.name.strip(),
            email=request.email,
            phone=request.phone,
            batch=request.batch,
            recruiter=request.recruiter,
            notes=request.notes,
            stage=CandidateStage.SOURCING,
            sub_status=default_sub_status(CandidateStage.SOURCING),
            stage_updated_at_utc=now,
            created_at_utc=now,
            updated_at_utc=now,
        )
        created = build_event(
            candidate_id=candidate.id,
            event_type=TimelineEventType.CANDIDATE_CREATED,
            title="Candidate Created",
            description="Candidate record created.",
            to_stage=candidate.stage,
            sub_status=candidate.sub_status,
            created_by=actor_id,
            event_date=now,
        )
        with self._locks.for_candidate(candidate.id):
            saved = self.store.insert_candidate(candidate, [created])
        logger.info("candidate_created candidate_id=%s actor=%s", saved.id, actor_id)
        return saved

    def request_transition(
        self,
        candidate_id: str,
        request: TransitionRequest,
        *,
        actor_id: Optional[str] = None,
    ) -> CandidateRecord:
        with self._lock_for(candidate_id):
            attempt = 0
            while True:
                attempt += 1
                candidate = self.store.load(candidate_id)
                now = self._clock()
                failure = check_transition(candidate, request, today=now.date())
                if failure:
                    logger.info(
                        "transition_rejected candidate_id=%s from=%s to=%s error=%s field=%s",
                        candidate_id,
                        candidate.stage.value,
                        request.to_stage.value,
                        failure.kind.value,
                        failure.field,
                    )
                    self._record_transition("rejected")
                    raise TransitionRejectedError(candidate_id, failure)

                updated = self._apply_transition(candidate, request, now=now)
                events = self._transition_events(
                    candidate, updated, request, now=now, actor_id=actor_id
                )
                try:
                    saved = self.store.save(updated, events)
                except StoreConflictError:
                    self._record_transition("conflict")
                    if attempt >= self.conflict_max_retries:
                        raise
                    logger.warning(
                        "transition_conflict_retry candidate_id=%s attempt=%s",
                        candidate_id,
                        attempt,
                    )
                    continue

                self._record_transition("applied")
                logger.info(
                    "transition_applied candidate_id=%s from=%s to=%s sub_status=%s actor=%s",
                    candidate_id,
                    candidate.stage.value,
                    saved.stage.value,
                    saved.sub_status.value if saved.sub_status else None,
                    actor_id,
                )
                return saved

    def request_sub_status_update(
        self,
        candidate_id: str,
        sub_status: CandidateSubStatus,
        reason: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
    ) -> CandidateRecord:
        with self._lock_for(candidate_id):
            attempt = 0
            while True:
                attempt += 1
                candidate = self.store.load(candidate_id)
                stage = candidate.stage
                if sub_status not in sub_statuses_for(stage):
                    self._record_sub_status("rejected")
                    raise InvalidSubStatusError(
                        f"SubStatus {sub_status.value} is not allowed for stage {stage.value}"
                    )
                if candidate.sub_status == sub_status:
                    self._record_sub_status("rejected")
                    raise NoChangeError(
                        f"candidate {candidate_id} is already {sub_status.value}"
                    )

                now = self._clock()
                updated = candidate.model_copy(
                    update={
                        "sub_status": sub_status,
                        "resume_ready": _resume_ready(
                            stage, sub_status, candidate.resume_ready
                        ),
                    }
                )
                changed = build_event(
                    candidate_id=candidate_id,
                    event_type=TimelineEventType.SUBSTATUS_CHANGED,
                    title=f"Sub-status set to {sub_status.value}",
                    description=reason.strip() if reason and reason.strip() else None,
                    from_stage=stage,
                    to_stage=stage,
                    sub_status=sub_status,
                    meta={
                        "previous_sub_status": (
                            candidate.sub_status.value if candidate.sub_status else None
                        )
                    },
                    created_by=actor_id,
                    event_date=now,
                )
                try:
                    saved = self.store.save(updated, [changed])
                except StoreConflictError:
                    self._record_sub_status("conflict")
                    if attempt >= self.conflict_max_retries:
                        raise
                    logger.warning(
                        "sub_status_conflict_retry candidate_id=%s attempt=%s",
                        candidate_id,
                        attempt,
                    )
                    continue

                self._record_sub_status("applied")
                logger.info(
                    "sub_status_updated candidate_id=%s stage=%s sub_status=%s actor=%s",
                    candidate_id,
                    stage.value,
                    sub_status.value,
                    actor_id,
                )
                return saved

    def add_note(
        self,
        candidate_id: str,
        request: TimelineNoteRequest,
        *,
        actor_id: Optional[str] = None,
    ) -> TimelineEventRecord:
        if request.event_type in ENGINE_EVENT_TYPES:
            raise ReservedEventTypeError(
                f"{request.event_type.value} events are recorded by lifecycle operations only"
            )
        with self._lock_for(candidate_id):
            candidate = self.store.load(candidate_id)
            return self.recorder.append(
                candidate_id,
                build_event(
                    candidate_id=candidate_id,
                    event_type=request.event_type,
                    title=request.title.strip(),
                    description=request.description,
                    sub_status=candidate.sub_status,
                    sub_type=request.sub_type,
                    meta=request.meta,
                    created_by=actor_id,
                    event_date=request.event_date,
                ),
            )

    def _apply_transition(
        self, candidate: CandidateRecord, request: TransitionRequest, *, now: datetime
    ) -> CandidateRecord:
        from_stage = candidate.stage
        to_stage = request.to_stage
        update: dict[str, Any] = {}

        if is_active_flow(from_stage) and is_branch(to_stage):
            update["last_active_stage"] = from_stage
        elif is_branch(from_stage) and is_active_flow(to_stage):
            update["last_active_stage"] = None

        sub_status = request.to_sub_status or default_sub_status(to_stage)
        update["stage"] = to_stage
        update["sub_status"] = sub_status
        update["stage_updated_at_utc"] = now
        update["resume_ready"] = _resume_ready(to_stage, sub_status, candidate.resume_ready)

        if request.hold_reason is not None:
            update["hold_reason"] = request.hold_reason.strip()
        if request.next_follow_up_at is not None:
            update["next_follow_up_at"] = request.next_follow_up_at
        if to_stage == CandidateStage.ELIMINATED:
            update["close_reason"] = parse_close_reason(request.close_reason)
        if request.withdraw_reason is not None:
            update["withdraw_reason"] = request.withdraw_reason.strip()
        if request.reactivate_reason is not None:
            update["reactivate_reason"] = request.reactivate_reason.strip()
        if to_stage == CandidateStage.OFFERED:
            update["offer_type"] = parse_offer_type(request.offer_type)
        if request.offer_date is not None:
            update["offer_date"] = request.offer_date
        if request.start_date is not None:
            update["start_date"] = request.start_date
        if to_stage == CandidateStage.ELIMINATED and request.reason and request.reason.strip():
            update["close_reason_note"] = request.reason.strip()

        return candidate.model_copy(update=update)

    def _transition_events(
        self,
        before: CandidateRecord,
        after: CandidateRecord,
        request: TransitionRequest,
        *,
        now: datetime,
        actor_id: Optional[str],
    ) -> list[TimelineEventRecord]:
        reason = effective_reason(request)
        common = {
            "candidate_id": after.id,
            "from_stage": before.stage,
            "to_stage": after.stage,
            "sub_status": after.sub_status,
            "close_reason": after.close_reason
            if after.stage == CandidateStage.ELIMINATED
            else None,
            "created_by": actor_id,
            "event_date": now,
        }
        events = [
            build_event(
                event_type=TimelineEventType.STAGE_CHANGED,
                title=f"Moved to {after.stage.value}",
                description=reason,
                **common,
            )
        ]
        marker = _MARKER_EVENTS.get(after.stage)
        if marker:
            event_type, title = marker
            events.append(
                build_event(
                    event_type=event_type,
                    title=title,
                    description=_marker_description(request),
                    **common,
                )
            )
        elif before.stage in {CandidateStage.ELIMINATED, CandidateStage.WITHDRAWN}:
            events.append(
                build_event(
                    event_type=TimelineEventType.REACTIVATED,
                    title="Reactivated",
                    description=request.reactivate_reason.strip(),
                    **common,
                )
            )
        return events

    def _lock_for(self, candidate_id: str) -> Lock:
        # Candidates are never deleted, so the registry stays bounded by the store.
        if not self.store.exists(candidate_id):
            raise StoreNotFoundError(f"candidate not found: {candidate_id}")
        return self._locks.for_candidate(candidate_id)

    def _record_transition(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_transition(outcome)

    def _record_sub_status(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_sub_status_update(outcome)
