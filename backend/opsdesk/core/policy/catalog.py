"""
Agent and tier catalog.

Static mappings between outbound agent keys, the checkpoint each agent's
output represents and the stage it suggests. Suggestions are never applied
automatically; stage changes stay human-gated.
"""

from typing import Any, Optional

from opsdesk.core.models import CheckpointType, ProjectStage, ProjectTier


AGENT_DISPLAY_NAMES: dict[str, str] = {
    "leadIntake": "Lead Intake & Qualification",
    "discovery": "Discovery Support",
    "proposal": "Proposal Drafting",
    "onboarding": "Client Onboarding",
    "tierExecution": "Tier Execution Support",
    "customerSupport": "Customer Support & Escalation",
    "qualityCompliance": "Quality & Compliance",
}

AGENT_CATEGORIES: dict[str, str] = {
    "leadIntake": "sales",
    "discovery": "sales",
    "proposal": "sales",
    "onboarding": "delivery",
    "tierExecution": "delivery",
    "customerSupport": "support",
    "qualityCompliance": "quality",
}

AGENT_CHECKPOINTS: dict[str, CheckpointType] = {
    "leadIntake": CheckpointType.DISCOVERY_SUMMARY,
    "discovery": CheckpointType.DISCOVERY_SUMMARY,
    "proposal": CheckpointType.PROPOSAL_REVIEW,
    "onboarding": CheckpointType.DISCOVERY_SUMMARY,
    "tierExecution": CheckpointType.TIER_EXECUTION,
    "customerSupport": CheckpointType.DISCOVERY_SUMMARY,
    "qualityCompliance": CheckpointType.QUALITY_CHECK,
}

AGENT_STAGE_MAP: dict[str, ProjectStage] = {
    "leadIntake": ProjectStage.LEAD,
    "discovery": ProjectStage.DISCOVERY,
    "proposal": ProjectStage.PROPOSAL,
    "onboarding": ProjectStage.ONBOARDING,
    "tierExecution": ProjectStage.DELIVERY,
    "customerSupport": ProjectStage.DELIVERY,
    "qualityCompliance": ProjectStage.DELIVERY,
}

TIER_LABELS: dict[ProjectTier, str] = {
    ProjectTier.TIER_1: "Launch",
    ProjectTier.TIER_2: "Growth",
    ProjectTier.TIER_3: "Scale",
}

_TIER_ALIASES: dict[str, ProjectTier] = {
    "launch": ProjectTier.TIER_1,
    "growth": ProjectTier.TIER_2,
    "scale": ProjectTier.TIER_3,
    "tier_1": ProjectTier.TIER_1,
    "tier_2": ProjectTier.TIER_2,
    "tier_3": ProjectTier.TIER_3,
}


def is_known_agent(agent_key: str) -> bool:
    return agent_key in AGENT_DISPLAY_NAMES


def checkpoint_for_agent(agent_key: str) -> CheckpointType:
    return AGENT_CHECKPOINTS.get(agent_key, CheckpointType.DISCOVERY_SUMMARY)


def suggest_stage_for_agent(agent_key: str) -> ProjectStage:
    return AGENT_STAGE_MAP.get(agent_key, ProjectStage.LEAD)


def parse_tier(value: Optional[str]) -> Optional[ProjectTier]:
    """Map "Launch"/"growth"/"TIER_3" style strings to a tier, None if unknown."""
    if not value:
        return None
    return _TIER_ALIASES.get(str(value).strip().lower())


def tier_from_response(response: Any, default: ProjectTier = ProjectTier.TIER_1) -> ProjectTier:
    """Tier recommended by an agent response, falling back to ``default``."""
    if isinstance(response, dict):
        for key in ("tier", "recommended_tier", "tier_hint"):
            tier = parse_tier(response.get(key))
            if tier is not None:
                return tier
    return default


def tier_for_approval(agent_response: Any, agent_payload: Any) -> ProjectTier:
    """Tier from the agent response, else the webhook's tier hint, else TIER_1."""
    hint = agent_payload.get("tier_hint") if isinstance(agent_payload, dict) else None
    return tier_from_response(agent_response, default=parse_tier(hint) or ProjectTier.TIER_1)
