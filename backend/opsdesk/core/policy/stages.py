"""
Stage Transition Guard - structural legality of pipeline stage moves.

Pure functions only. The guard never touches the database; callers apply
the verdict (and persist any escalation draft) themselves.

Pipeline:
LEAD -> QUALIFIED -> DISCOVERY -> FIT_DECISION -> PROPOSAL -> CLOSED
-> ONBOARDING -> DELIVERY -> COMPLETE
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from opsdesk.core.models import EscalationCategory, EscalationLevel, ProjectStage


PIPELINE_STAGES: list[ProjectStage] = list(ProjectStage)

# Button label for advancing out of each stage
STAGE_ACTIONS: dict[ProjectStage, str] = {
    ProjectStage.LEAD: "Qualify Lead",
    ProjectStage.QUALIFIED: "Start Discovery",
    ProjectStage.DISCOVERY: "Move to Fit Decision",
    ProjectStage.FIT_DECISION: "Create Proposal",
    ProjectStage.PROPOSAL: "Close Deal",
    ProjectStage.CLOSED: "Start Onboarding",
    ProjectStage.ONBOARDING: "Begin Delivery",
    ProjectStage.DELIVERY: "Mark Complete",
}

STAGE_DISPLAY_NAMES: dict[ProjectStage, str] = {
    ProjectStage.LEAD: "Lead Captured",
    ProjectStage.QUALIFIED: "Qualified",
    ProjectStage.DISCOVERY: "Discovery",
    ProjectStage.FIT_DECISION: "Internal Review",
    ProjectStage.PROPOSAL: "Proposal",
    ProjectStage.CLOSED: "Closed Won",
    ProjectStage.ONBOARDING: "Onboarding",
    ProjectStage.DELIVERY: "Active Delivery",
    ProjectStage.COMPLETE: "Complete / Transition",
}

# Agents that may be triggered while a project sits in each stage
STAGE_AGENT_MAP: dict[ProjectStage, list[str]] = {
    ProjectStage.LEAD: ["leadIntake"],
    ProjectStage.QUALIFIED: ["leadIntake"],
    ProjectStage.DISCOVERY: ["discovery"],
    ProjectStage.FIT_DECISION: ["discovery"],
    ProjectStage.PROPOSAL: ["proposal"],
    ProjectStage.CLOSED: [],
    ProjectStage.ONBOARDING: ["onboarding"],
    ProjectStage.DELIVERY: ["tierExecution", "customerSupport", "qualityCompliance"],
    ProjectStage.COMPLETE: ["qualityCompliance"],
}


class TransitionVerdict(str, Enum):
    ALLOWED = "ALLOWED"
    BLOCKED = "BLOCKED"
    ALLOWED_WITH_ESCALATION = "ALLOWED_WITH_ESCALATION"
    REJECTED_CHECKPOINT = "REJECTED_CHECKPOINT"


@dataclass(frozen=True)
class EscalationDraft:
    """An escalation the caller must persist."""
    level: EscalationLevel
    category: EscalationCategory
    title: str
    description: str


@dataclass(frozen=True)
class TransitionDecision:
    verdict: TransitionVerdict
    reason: Optional[str] = None
    escalation: Optional[EscalationDraft] = None

    @property
    def allowed(self) -> bool:
        return self.verdict in (
            TransitionVerdict.ALLOWED,
            TransitionVerdict.ALLOWED_WITH_ESCALATION,
        )


def stage_index(stage: ProjectStage) -> int:
    return PIPELINE_STAGES.index(stage)


def next_stage(stage: ProjectStage) -> Optional[ProjectStage]:
    """Next stage in sequence, or None at COMPLETE."""
    index = stage_index(stage)
    if index + 1 >= len(PIPELINE_STAGES):
        return None
    return PIPELINE_STAGES[index + 1]


def skipped_stages(current: ProjectStage, requested: ProjectStage) -> list[ProjectStage]:
    """Stages strictly between current and requested on a forward move."""
    return PIPELINE_STAGES[stage_index(current) + 1:stage_index(requested)]


def stage_name(stage: ProjectStage) -> str:
    return STAGE_DISPLAY_NAMES.get(stage, stage.value.replace("_", " "))


def evaluate_transition(
    current: ProjectStage,
    requested: ProjectStage,
    override: bool = False,
    rationale: Optional[str] = None,
) -> TransitionDecision:
    """
    Decide whether ``current -> requested`` is a legal stage move.

    Args:
        current: Project's stage now
        requested: Target stage
        override: Caller explicitly forces a skip or a regression
        rationale: Fit decision rationale, required for FIT_DECISION -> PROPOSAL

    Returns:
        TransitionDecision; a forced forward skip carries an L2/SCOPE draft
    """
    if requested == current:
        return TransitionDecision(TransitionVerdict.ALLOWED)

    # Mandatory human checkpoint, not a skip: override does not bypass it
    if current == ProjectStage.FIT_DECISION and requested == ProjectStage.PROPOSAL:
        if not rationale or not rationale.strip():
            return TransitionDecision(
                TransitionVerdict.REJECTED_CHECKPOINT,
                reason="A fit decision rationale is required to move from FIT_DECISION to PROPOSAL",
            )

    if requested == next_stage(current):
        return TransitionDecision(TransitionVerdict.ALLOWED)

    if stage_index(requested) > stage_index(current):
        skipped = skipped_stages(current, requested)
        if not override:
            return TransitionDecision(
                TransitionVerdict.BLOCKED,
                reason=(
                    f"Cannot skip from {current.value} to {requested.value}; "
                    f"next stage is {next_stage(current).value}. Use override to force."
                ),
            )
        skipped_names = ", ".join(s.value for s in skipped)
        return TransitionDecision(
            TransitionVerdict.ALLOWED_WITH_ESCALATION,
            escalation=EscalationDraft(
                level=EscalationLevel.L2,
                category=EscalationCategory.SCOPE,
                title=f"Stage skip: {current.value} to {requested.value}",
                description=(
                    f"Project moved from {current.value} to {requested.value} by override, "
                    f"skipping {skipped_names}."
                ),
            ),
        )

    # Regression
    if not override:
        return TransitionDecision(
            TransitionVerdict.BLOCKED,
            reason=(
                f"Cannot move backward from {current.value} to {requested.value} "
                "without override"
            ),
        )
    return TransitionDecision(TransitionVerdict.ALLOWED)
