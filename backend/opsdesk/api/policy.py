"""
Ops Desk - Policy API
=====================

Read-only view of the pipeline and approval policy configuration.
"""

from fastapi import APIRouter

from opsdesk.api.deps import CurrentUser
from opsdesk.core.config import settings
from opsdesk.core.policy import PolicyConfig
from opsdesk.core.policy.stages import (
    PIPELINE_STAGES,
    STAGE_ACTIONS,
    STAGE_AGENT_MAP,
    STAGE_DISPLAY_NAMES,
)
from opsdesk.core.schemas import PolicyConfigResponse

router = APIRouter(prefix="/policy", tags=["Policy"])


@router.get(
    "",
    response_model=PolicyConfigResponse,
    summary="Current policy configuration",
)
async def get_policy(current_user: CurrentUser) -> PolicyConfigResponse:
    config = PolicyConfig.from_settings(settings)
    return PolicyConfigResponse(
        stages=PIPELINE_STAGES,
        stage_actions={stage.value: label for stage, label in STAGE_ACTIONS.items()},
        stage_display_names={stage.value: name for stage, name in STAGE_DISPLAY_NAMES.items()},
        stage_agents={stage.value: agents for stage, agents in STAGE_AGENT_MAP.items()},
        repeated_rejection_threshold=config.repeated_rejection_threshold,
        rationale_required_checkpoints=sorted(
            config.rationale_required_checkpoints, key=lambda c: c.value
        ),
        legal_brand_keywords=list(config.legal_brand_keywords),
        tier_pricing={
            tier.value: {"floor": floor, "ceiling": ceiling}
            for tier, (floor, ceiling) in config.tier_pricing.items()
        },
    )
