"""
Ops Desk Policy Core
====================

The state machine that governs projects, approvals and escalations.

Components:
- evaluate_transition: Stage Transition Guard (pure)
- ApprovalPolicyEngine: approve/reject/edit rules and auto-escalation signals
- ApprovalDecisionService: applies policy verdicts transactionally
- EscalationCascade: L3 pause/unpause and resolution-notes enforcement
- ProjectService: stage/status changes through the guard
- WebhookIntakeService: inbound agent deliveries
- AgentTriggerService: outbound agent triggers
- SopService: delivery SOP progress, client responsiveness and the delivery board
"""

from opsdesk.core.policy.approvals import (
    ApprovalDecisionService,
    ApprovalPolicyEngine,
    DecisionRequest,
    PolicyConfig,
    PolicyResult,
)
from opsdesk.core.policy.escalation import EscalationCascade
from opsdesk.core.policy.intake import WebhookIntakeService
from opsdesk.core.policy.projects import ProjectService
from opsdesk.core.policy.sop import SopService
from opsdesk.core.policy.stages import (
    EscalationDraft,
    TransitionDecision,
    TransitionVerdict,
    evaluate_transition,
)
from opsdesk.core.policy.triggers import AgentTriggerService

__all__ = [
    "AgentTriggerService",
    "ApprovalDecisionService",
    "ApprovalPolicyEngine",
    "DecisionRequest",
    "EscalationCascade",
    "EscalationDraft",
    "PolicyConfig",
    "PolicyResult",
    "ProjectService",
    "SopService",
    "TransitionDecision",
    "TransitionVerdict",
    "WebhookIntakeService",
    "evaluate_transition",
]
