"""
Ops Desk - Agent Registry API
=============================

Registered outbound agents. Catalog agents are registered on first
webhook, first trigger or first configuration change.
"""

from fastapi import APIRouter
from sqlalchemy import select

from opsdesk.api.deps import CurrentUser, DbSession, MetricsUser
from opsdesk.core.exceptions import NotFoundError
from opsdesk.core.models import Agent
from opsdesk.core.policy.catalog import is_known_agent
from opsdesk.core.policy.intake import get_or_register_agent
from opsdesk.core.schemas import AgentResponse, AgentUpdate

router = APIRouter(prefix="/agents", tags=["Agents"])


@router.get(
    "",
    response_model=list[AgentResponse],
    summary="List registered agents",
)
async def list_agents(
    current_user: CurrentUser,
    db: DbSession,
) -> list[AgentResponse]:
    result = await db.execute(select(Agent).order_by(Agent.agent_key.asc()))
    return [AgentResponse.model_validate(a) for a in result.scalars().all()]


@router.patch(
    "/{agent_key}",
    response_model=AgentResponse,
    summary="Configure an agent",
    responses={
        403: {"description": "Founder or AI operator access required"},
        404: {"description": "Agent not found"},
    },
)
async def update_agent(
    agent_key: str,
    data: AgentUpdate,
    current_user: MetricsUser,
    db: DbSession,
) -> AgentResponse:
    """Toggle an agent, change its category or set its trigger webhook URL."""
    if is_known_agent(agent_key):
        agent = await get_or_register_agent(db, agent_key)
    else:
        result = await db.execute(select(Agent).where(Agent.agent_key == agent_key))
        agent = result.scalar_one_or_none()
    if agent is None:
        raise NotFoundError("Agent", agent_key)

    for field, value in data.model_dump(exclude_unset=True).items():
        # Only webhook_url may be cleared
        if value is None and field != "webhook_url":
            continue
        setattr(agent, field, value)

    await db.commit()
    await db.refresh(agent)
    return AgentResponse.model_validate(agent)
