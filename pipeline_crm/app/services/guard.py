from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Optional

from pipeline_crm.app.models import (
    CandidateRecord,
    CandidateStage,
    CloseReason,
    OfferType,
    TransitionRequest,
)
from pipeline_crm.app.services.workflow import (
    allowed_next,
    is_active_flow,
    sub_statuses_for,
)


class GuardFailureKind(str, Enum):
    invalid_transition = "invalid_transition"
    missing_field = "missing_field"
    invalid_enum = "invalid_enum"
    invalid_value = "invalid_value"
    invalid_sub_status = "invalid_sub_status"


@dataclass(frozen=True)
class GuardFailure:
    kind: GuardFailureKind
    field: Optional[str]
    message: str
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.kind.value,
            "field": self.field,
            "message": self.message,
        }


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def _missing(field: str, message: str) -> GuardFailure:
    return GuardFailure(kind=GuardFailureKind.missing_field, field=field, message=message)


def _parse_enum(enum_cls: type[Enum], field: str, raw: str) -> Optional[GuardFailure]:
    allowed = [member.value for member in enum_cls]
    if raw.strip().upper() not in allowed:
        return GuardFailure(
            kind=GuardFailureKind.invalid_enum,
            field=field,
            message=f"{field} must be one of {allowed}",
            value=raw,
        )
    return None


def parse_close_reason(raw: Optional[str]) -> Optional[CloseReason]:
    if _is_blank(raw):
        return None
    return CloseReason(raw.strip().upper())


def parse_offer_type(raw: Optional[str]) -> Optional[OfferType]:
    if _is_blank(raw):
        return None
    return OfferType(raw.strip().upper())


def default_reason(to_stage: CandidateStage) -> str:
    return f"Moved to {to_stage.value}"


def effective_reason(request: TransitionRequest) -> str:
    if _is_blank(request.reason):
        return default_reason(request.to_stage)
    return request.reason.strip()


def check_transition(
    candidate: CandidateRecord,
    request: TransitionRequest,
    *,
    today: date,
) -> Optional[GuardFailure]:
    """Return the first failing rule for the requested transition, or None.

    Rules run in a fixed order: edge membership first, then the extras demanded
    by the target stage, then the justifications demanded by the source stage.
    """
    from_stage = candidate.stage
    to_stage = request.to_stage

    if to_stage not in allowed_next(from_stage):
        return GuardFailure(
            kind=GuardFailureKind.invalid_transition,
            field="to_stage",
            message=f"Transition from {from_stage.value} to {to_stage.value} is not allowed",
            value=to_stage.value,
        )

    if to_stage == CandidateStage.ELIMINATED:
        if _is_blank(request.close_reason):
            return _missing("close_reason", "close_reason is required for ELIMINATED")
        failure = _parse_enum(CloseReason, "close_reason", request.close_reason)
        if failure:
            return failure

    if to_stage == CandidateStage.WITHDRAWN and _is_blank(request.withdraw_reason):
        return _missing("withdraw_reason", "withdraw_reason is required for WITHDRAWN")

    if to_stage == CandidateStage.ON_HOLD:
        if _is_blank(request.hold_reason):
            return _missing("hold_reason", "hold_reason is required for ON_HOLD")
        if request.next_follow_up_at is None:
            return _missing("next_follow_up_at", "next_follow_up_at is required for ON_HOLD")
        if request.next_follow_up_at.date() < today:
            return GuardFailure(
                kind=GuardFailureKind.invalid_value,
                field="next_follow_up_at",
                message="next_follow_up_at cannot be in the past",
                value=request.next_follow_up_at.isoformat(),
            )

    if to_stage == CandidateStage.PLACED and request.start_date is None:
        return _missing("start_date", "start_date is required for PLACED")

    if to_stage == CandidateStage.OFFERED:
        if _is_blank(request.offer_type):
            return _missing("offer_type", "offer_type is required for OFFERED")
        failure = _parse_enum(OfferType, "offer_type", request.offer_type)
        if failure:
            return failure

    if (
        from_stage in {CandidateStage.ELIMINATED, CandidateStage.WITHDRAWN}
        and is_active_flow(to_stage)
        and _is_blank(request.reactivate_reason)
    ):
        return _missing(
            "reactivate_reason", "reactivate_reason is required to reactivate a candidate"
        )

    if (
        from_stage == CandidateStage.ON_HOLD
        and to_stage != candidate.last_active_stage
        and _is_blank(request.reason)
    ):
        return _missing("reason", "reason is required to jump from ON_HOLD to a new stage")

    if (
        from_stage in {CandidateStage.OFFERED, CandidateStage.PLACED}
        and to_stage == CandidateStage.MARKETING
        and _is_blank(request.reason)
    ):
        return _missing("reason", "reason is required to return to MARKETING")

    if request.to_sub_status is not None and request.to_sub_status not in sub_statuses_for(
        to_stage
    ):
        return GuardFailure(
            kind=GuardFailureKind.invalid_sub_status,
            field="to_sub_status",
            message=(
                f"SubStatus {request.to_sub_status.value} is not allowed "
                f"for stage {to_stage.value}"
            ),
            value=request.to_sub_status.value,
        )

    return None
