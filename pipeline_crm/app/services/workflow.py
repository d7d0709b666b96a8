from __future__ import annotations

from typing import Optional

from pipeline_crm.app.models import CandidateStage, CandidateSubStatus

ACTIVE_FLOW_STAGES: tuple[CandidateStage, ...] = (
    CandidateStage.SOURCING,
    CandidateStage.TRAINING,
    CandidateStage.RESUME,
    CandidateStage.MOCKING,
    CandidateStage.MARKETING,
    CandidateStage.OFFERED,
    CandidateStage.PLACED,
)

BRANCH_STAGES = frozenset(
    {CandidateStage.ON_HOLD, CandidateStage.ELIMINATED, CandidateStage.WITHDRAWN}
)

# PLACED is not a reactivation target.
_REENTRY_STAGES = frozenset(
    {
        CandidateStage.SOURCING,
        CandidateStage.TRAINING,
        CandidateStage.RESUME,
        CandidateStage.MOCKING,
        CandidateStage.MARKETING,
        CandidateStage.OFFERED,
    }
)

ALLOWED_TRANSITIONS: dict[CandidateStage, frozenset[CandidateStage]] = {
    CandidateStage.SOURCING: frozenset(
        {
            CandidateStage.TRAINING,
            CandidateStage.MARKETING,
            CandidateStage.ELIMINATED,
            CandidateStage.WITHDRAWN,
            CandidateStage.ON_HOLD,
        }
    ),
    CandidateStage.TRAINING: frozenset(
        {
            CandidateStage.RESUME,
            CandidateStage.ELIMINATED,
            CandidateStage.WITHDRAWN,
            CandidateStage.ON_HOLD,
        }
    ),
    CandidateStage.RESUME: frozenset(
        {
            CandidateStage.MOCKING,
            CandidateStage.ELIMINATED,
            CandidateStage.WITHDRAWN,
            CandidateStage.ON_HOLD,
        }
    ),
    CandidateStage.MOCKING: frozenset(
        {
            CandidateStage.MARKETING,
            CandidateStage.ELIMINATED,
            CandidateStage.WITHDRAWN,
            CandidateStage.ON_HOLD,
        }
    ),
    CandidateStage.MARKETING: frozenset(
        {
            CandidateStage.OFFERED,
            CandidateStage.ELIMINATED,
            CandidateStage.WITHDRAWN,
            CandidateStage.ON_HOLD,
        }
    ),
    CandidateStage.OFFERED: frozenset(
        {
            CandidateStage.PLACED,
            CandidateStage.MARKETING,
            CandidateStage.ELIMINATED,
            CandidateStage.WITHDRAWN,
            CandidateStage.ON_HOLD,
        }
    ),
    CandidateStage.PLACED: frozenset(
        {CandidateStage.MARKETING, CandidateStage.ELIMINATED, CandidateStage.WITHDRAWN}
    ),
    CandidateStage.ELIMINATED: _REENTRY_STAGES,
    CandidateStage.WITHDRAWN: _REENTRY_STAGES,
    CandidateStage.ON_HOLD: _REENTRY_STAGES,
}

SUB_STATUSES_BY_STAGE: dict[CandidateStage, tuple[CandidateSubStatus, ...]] = {
    CandidateStage.SOURCING: (
        CandidateSubStatus.SOURCED,
        CandidateSubStatus.CONTACTED,
        CandidateSubStatus.SCREENING_SCHEDULED,
        CandidateSubStatus.SCREENING_PASSED,
        CandidateSubStatus.TRAINING_CONTRACT_SENT,
        CandidateSubStatus.TRAINING_CONTRACT_SIGNED,
        CandidateSubStatus.BATCH_ASSIGNED,
        CandidateSubStatus.SCREENING_FAILED,
        CandidateSubStatus.DIRECT_MARKETING_READY,
    ),
    CandidateStage.TRAINING: (CandidateSubStatus.IN_TRAINING,),
    CandidateStage.RESUME: (
        CandidateSubStatus.RESUME_PREPARING,
        CandidateSubStatus.RESUME_READY,
    ),
    CandidateStage.MOCKING: (
        CandidateSubStatus.MOCK_THEORY_READY,
        CandidateSubStatus.MOCK_THEORY_SCHEDULED,
        CandidateSubStatus.MOCK_THEORY_PASSED,
        CandidateSubStatus.MOCK_THEORY_FAILED,
        CandidateSubStatus.MOCK_REAL_SCHEDULED,
        CandidateSubStatus.MOCK_REAL_PASSED,
        CandidateSubStatus.MOCK_REAL_FAILED,
    ),
    # Progress in MARKETING is driven by submission activity, not sub-statuses.
    CandidateStage.MARKETING: (),
    CandidateStage.OFFERED: (
        CandidateSubStatus.OFFER_PENDING,
        CandidateSubStatus.OFFER_ACCEPTED,
        CandidateSubStatus.OFFER_DECLINED,
    ),
    CandidateStage.PLACED: (CandidateSubStatus.PLACED_CONFIRMED,),
    CandidateStage.ON_HOLD: (
        CandidateSubStatus.WAITING_DOCS,
        CandidateSubStatus.PERSONAL_PAUSE,
        CandidateSubStatus.VISA_ISSUE,
        CandidateSubStatus.OTHER,
    ),
    CandidateStage.ELIMINATED: (CandidateSubStatus.CLOSED,),
    CandidateStage.WITHDRAWN: (CandidateSubStatus.SELF_WITHDRAWN,),
}

_STAGE_BY_SUB_STATUS: dict[CandidateSubStatus, CandidateStage] = {
    sub_status: stage
    for stage, sub_statuses in SUB_STATUSES_BY_STAGE.items()
    for sub_status in sub_statuses
}


def allowed_next(stage: CandidateStage) -> frozenset[CandidateStage]:
    return ALLOWED_TRANSITIONS.get(stage, frozenset())


def sub_statuses_for(stage: CandidateStage) -> tuple[CandidateSubStatus, ...]:
    return SUB_STATUSES_BY_STAGE.get(stage, ())


def default_sub_status(stage: CandidateStage) -> Optional[CandidateSubStatus]:
    sub_statuses = sub_statuses_for(stage)
    return sub_statuses[0] if sub_statuses else None


def is_sub_status_allowed(
    stage: CandidateStage, sub_status: Optional[CandidateSubStatus]
) -> bool:
    if sub_status is None:
        return not sub_statuses_for(stage)
    return sub_status in sub_statuses_for(stage)


def stage_of(sub_status: CandidateSubStatus) -> CandidateStage:
    return _STAGE_BY_SUB_STATUS[sub_status]


def is_active_flow(stage: CandidateStage) -> bool:
    return stage in ACTIVE_FLOW_STAGES


def is_branch(stage: CandidateStage) -> bool:
    return stage in BRANCH_STAGES


def describe_graph() -> dict:
    return {
        "active_flow_stages": list(ACTIVE_FLOW_STAGES),
        "branch_stages": [stage for stage in CandidateStage if stage in BRANCH_STAGES],
        "stages": [
            {
                "stage": stage,
                "active_flow": is_active_flow(stage),
                "allowed_next": [
                    target for target in CandidateStage if target in allowed_next(stage)
                ],
                "sub_statuses": list(sub_statuses_for(stage)),
            }
            for stage in CandidateStage
        ],
    }
