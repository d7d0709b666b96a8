from __future__ import annotations

import pytest

from pipeline_crm.app.models import CandidateStage, CandidateSubStatus
from pipeline_crm.app.services.workflow import (
    ACTIVE_FLOW_STAGES,
    BRANCH_STAGES,
    allowed_next,
    default_sub_status,
    describe_graph,
    is_sub_status_allowed,
    stage_of,
    sub_statuses_for,
)


def test_every_stage_has_an_edge_entry() -> None:
    for stage in CandidateStage:
        assert isinstance(allowed_next(stage), frozenset)


def test_placed_cannot_go_on_hold() -> None:
    assert CandidateStage.ON_HOLD not in allowed_next(CandidateStage.PLACED)
    assert allowed_next(CandidateStage.PLACED) == {
        CandidateStage.MARKETING,
        CandidateStage.ELIMINATED,
        CandidateStage.WITHDRAWN,
    }


@pytest.mark.parametrize("branch", sorted(BRANCH_STAGES))
def test_branch_stages_reenter_active_flow_only(branch: CandidateStage) -> None:
    targets = allowed_next(branch)
    assert targets.isdisjoint(BRANCH_STAGES)
    assert CandidateStage.PLACED not in targets
    assert CandidateStage.SOURCING in targets
    assert CandidateStage.OFFERED in targets


def test_marketing_has_no_sub_statuses() -> None:
    assert sub_statuses_for(CandidateStage.MARKETING) == ()
    assert default_sub_status(CandidateStage.MARKETING) is None
    assert is_sub_status_allowed(CandidateStage.MARKETING, None)
    assert not is_sub_status_allowed(CandidateStage.SOURCING, None)


def test_default_sub_status_is_first_entry() -> None:
    assert default_sub_status(CandidateStage.SOURCING) == CandidateSubStatus.SOURCED
    assert default_sub_status(CandidateStage.MOCKING) == CandidateSubStatus.MOCK_THEORY_READY
    assert default_sub_status(CandidateStage.ON_HOLD) == CandidateSubStatus.WAITING_DOCS


def test_each_sub_status_belongs_to_exactly_one_stage() -> None:
    seen: list[CandidateSubStatus] = []
    for stage in CandidateStage:
        seen.extend(sub_statuses_for(stage))
    assert sorted(seen) == sorted(CandidateSubStatus)
    assert stage_of(CandidateSubStatus.SCREENING_PASSED) == CandidateStage.SOURCING


def test_describe_graph_matches_tables() -> None:
    graph = describe_graph()
    assert graph["active_flow_stages"] == list(ACTIVE_FLOW_STAGES)
    entries = {entry["stage"]: entry for entry in graph["stages"]}
    assert set(entries) == set(CandidateStage)
    assert set(entries[CandidateStage.OFFERED]["allowed_next"]) == allowed_next(
        CandidateStage.OFFERED
    )
    assert entries[CandidateStage.MARKETING]["sub_statuses"] == []
