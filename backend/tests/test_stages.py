"""
Ops Desk - Stage Transition Guard Tests
=======================================

Pure evaluation of pipeline stage moves.
"""

import pytest

from opsdesk.core.models import EscalationCategory, EscalationLevel, ProjectStage
from opsdesk.core.policy.stages import (
    PIPELINE_STAGES,
    TransitionVerdict,
    evaluate_transition,
    next_stage,
    skipped_stages,
)


class TestPipelineOrder:
    """Stage sequence helpers."""

    def test_pipeline_has_nine_stages_in_order(self):
        assert PIPELINE_STAGES[0] == ProjectStage.LEAD
        assert PIPELINE_STAGES[-1] == ProjectStage.COMPLETE
        assert len(PIPELINE_STAGES) == 9

    def test_next_stage(self):
        assert next_stage(ProjectStage.LEAD) == ProjectStage.QUALIFIED
        assert next_stage(ProjectStage.PROPOSAL) == ProjectStage.CLOSED
        assert next_stage(ProjectStage.COMPLETE) is None

    def test_skipped_stages(self):
        assert skipped_stages(ProjectStage.LEAD, ProjectStage.FIT_DECISION) == [
            ProjectStage.QUALIFIED,
            ProjectStage.DISCOVERY,
        ]
        assert skipped_stages(ProjectStage.LEAD, ProjectStage.QUALIFIED) == []


class TestForwardMoves:
    """Sequential and skipping moves."""

    @pytest.mark.parametrize(
        "current",
        [s for s in PIPELINE_STAGES[:-1] if s != ProjectStage.FIT_DECISION],
    )
    def test_next_stage_is_allowed(self, current: ProjectStage):
        decision = evaluate_transition(current, next_stage(current))
        assert decision.verdict == TransitionVerdict.ALLOWED
        assert decision.escalation is None

    def test_same_stage_is_noop(self):
        decision = evaluate_transition(ProjectStage.DISCOVERY, ProjectStage.DISCOVERY)
        assert decision.verdict == TransitionVerdict.ALLOWED

    def test_skip_without_override_is_blocked(self):
        decision = evaluate_transition(ProjectStage.LEAD, ProjectStage.DISCOVERY)
        assert decision.verdict == TransitionVerdict.BLOCKED
        assert not decision.allowed
        assert "QUALIFIED" in decision.reason

    def test_skip_with_override_carries_l2_scope_escalation(self):
        decision = evaluate_transition(
            ProjectStage.LEAD, ProjectStage.FIT_DECISION, override=True
        )
        assert decision.verdict == TransitionVerdict.ALLOWED_WITH_ESCALATION
        assert decision.allowed
        draft = decision.escalation
        assert draft.level == EscalationLevel.L2
        assert draft.category == EscalationCategory.SCOPE
        assert draft.title == "Stage skip: LEAD to FIT_DECISION"
        assert "QUALIFIED, DISCOVERY" in draft.description


class TestFitDecisionCheckpoint:
    """FIT_DECISION -> PROPOSAL needs a written rationale."""

    def test_missing_rationale_is_rejected(self):
        decision = evaluate_transition(ProjectStage.FIT_DECISION, ProjectStage.PROPOSAL)
        assert decision.verdict == TransitionVerdict.REJECTED_CHECKPOINT
        assert "rationale" in decision.reason

    def test_blank_rationale_is_rejected(self):
        decision = evaluate_transition(
            ProjectStage.FIT_DECISION, ProjectStage.PROPOSAL, rationale="   "
        )
        assert decision.verdict == TransitionVerdict.REJECTED_CHECKPOINT

    def test_override_does_not_bypass_rationale(self):
        decision = evaluate_transition(
            ProjectStage.FIT_DECISION, ProjectStage.PROPOSAL, override=True
        )
        assert decision.verdict == TransitionVerdict.REJECTED_CHECKPOINT

    def test_rationale_allows_move(self):
        decision = evaluate_transition(
            ProjectStage.FIT_DECISION,
            ProjectStage.PROPOSAL,
            rationale="Budget and timeline match Tier 2",
        )
        assert decision.verdict == TransitionVerdict.ALLOWED


class TestBackwardMoves:
    """Regressions."""

    def test_backward_without_override_is_blocked(self):
        decision = evaluate_transition(ProjectStage.PROPOSAL, ProjectStage.DISCOVERY)
        assert decision.verdict == TransitionVerdict.BLOCKED
        assert "backward" in decision.reason

    def test_backward_with_override_is_allowed_without_escalation(self):
        decision = evaluate_transition(
            ProjectStage.PROPOSAL, ProjectStage.DISCOVERY, override=True
        )
        assert decision.verdict == TransitionVerdict.ALLOWED
        assert decision.escalation is None
