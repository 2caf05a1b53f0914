"""
Webhook Intake - turns an inbound agent delivery into a pending approval.

A delivery may refresh descriptive fields on the client's existing projects
(name, ICP level, SOP pointer) but never their stage or status.
"""

from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.core.events import EventBus, EventType
from opsdesk.core.exceptions import ValidationError
from opsdesk.core.models import (
    Agent,
    Approval,
    ApprovalStatus,
    IcpLevel,
    Project,
    WebhookEvent,
)
from opsdesk.core.policy.catalog import (
    AGENT_CATEGORIES,
    AGENT_DISPLAY_NAMES,
    checkpoint_for_agent,
    is_known_agent,
    suggest_stage_for_agent,
)

logger = structlog.get_logger()


async def get_or_register_agent(db: AsyncSession, agent_key: str) -> Agent:
    """Registry row for a catalog agent, created on first use."""
    result = await db.execute(select(Agent).where(Agent.agent_key == agent_key))
    agent = result.scalar_one_or_none()
    if agent is None:
        agent = Agent(
            agent_key=agent_key,
            display_name=AGENT_DISPLAY_NAMES[agent_key],
            category=AGENT_CATEGORIES.get(agent_key, "general"),
            is_active=True,
            total_events=0,
        )
        db.add(agent)
        await db.flush()
    return agent


def _icp_from_response(response: Any) -> Optional[IcpLevel]:
    if not isinstance(response, dict):
        return None
    value = response.get("icp_level") or response.get("icp")
    if not value:
        return None
    try:
        return IcpLevel(str(value).strip().upper())
    except ValueError:
        return None


class WebhookIntakeService:
    """Records agent deliveries and creates approvals from them."""

    def __init__(self, db: AsyncSession, bus: EventBus):
        self.db = db
        self.bus = bus

    async def receive(
        self,
        agent_key: str,
        email: str,
        payload: Optional[dict[str, Any]],
        response: Any,
        tier_hint: Optional[str] = None,
    ) -> Approval:
        """
        Log the delivery and create a pending approval.

        Raises:
            ValidationError: Unknown agent key or missing email/response
        """
        if not is_known_agent(agent_key):
            raise ValidationError(f"Invalid agent key: {agent_key}")
        if not email or not email.strip() or response is None:
            raise ValidationError("Missing required fields: email, response")

        client_email = email.strip().lower()
        now = datetime.now(timezone.utc)

        self.db.add(WebhookEvent(
            agent_key=agent_key,
            client_email=client_email,
            payload={
                "email": client_email,
                "payload": payload,
                "response": response,
                "tier_hint": tier_hint,
            },
            response_status=200,
        ))

        agent = await get_or_register_agent(self.db, agent_key)
        agent.total_events += 1
        agent.last_event_at = now

        agent_payload = dict(payload or {})
        if tier_hint:
            agent_payload.setdefault("tier_hint", tier_hint)

        approval = Approval(
            client_email=client_email,
            agent_key=agent_key,
            stage_name=AGENT_DISPLAY_NAMES[agent_key],
            checkpoint_type=checkpoint_for_agent(agent_key),
            agent_payload=agent_payload,
            agent_response=response,
            status=ApprovalStatus.PENDING,
            recommended_stage=suggest_stage_for_agent(agent_key),
        )
        self.db.add(approval)

        refreshed = await self._refresh_projects(client_email, response)

        await self.db.commit()

        self.bus.emit(
            EventType.NEW_APPROVAL,
            id=str(approval.id),
            client_email=approval.client_email,
            agent_key=approval.agent_key,
            stage_name=approval.stage_name,
            checkpoint_type=approval.checkpoint_type.value,
            status=approval.status.value,
        )
        self.bus.emit(
            EventType.AGENT_EVENT,
            agent_key=agent_key,
            client_email=client_email,
            total_events=agent.total_events,
        )
        for project, sop_changed in refreshed:
            self.bus.emit(
                EventType.PROJECT_UPDATED,
                id=str(project.id),
                client_email=project.client_email,
                stage=project.stage.value,
                status=project.status.value,
            )
            if sop_changed:
                self.bus.emit(
                    EventType.SOP_UPDATED,
                    project_id=str(project.id),
                    sop_step_key=project.sop_step_key,
                )

        logger.info(
            "webhook_received",
            agent_key=agent_key,
            client_email=client_email,
            approval_id=str(approval.id),
        )
        return approval

    async def record_failure(
        self,
        agent_key: str,
        body: Any,
        response_status: int,
        error_message: str,
    ) -> WebhookEvent:
        """Log a rejected delivery so it still shows up in the activity feed."""
        client_email = body.get("email") if isinstance(body, dict) else None
        event = WebhookEvent(
            agent_key=agent_key,
            client_email=client_email,
            payload=body,
            response_status=response_status,
            error_message=error_message,
        )
        self.db.add(event)
        await self.db.commit()
        logger.warning(
            "webhook_rejected",
            agent_key=agent_key,
            response_status=response_status,
            error=error_message,
        )
        return event

    async def _refresh_projects(
        self, client_email: str, response: Any
    ) -> list[tuple[Project, bool]]:
        """Copy descriptive fields from the response onto the client's projects."""
        if not isinstance(response, dict):
            return []

        client_name = response.get("name") or response.get("client_name")
        icp_level = _icp_from_response(response)
        sop_step_key = response.get("sop_step_key")

        result = await self.db.execute(select(Project).where(Project.client_email == client_email))
        refreshed = []
        for project in result.scalars().all():
            changed = False
            sop_changed = False
            if client_name and project.client_name != client_name:
                project.client_name = client_name
                changed = True
            if icp_level and project.icp_level != icp_level:
                project.icp_level = icp_level
                changed = True
            if sop_step_key and project.sop_step_key != sop_step_key:
                project.sop_step_key = sop_step_key
                changed = sop_changed = True
            if changed:
                refreshed.append((project, sop_changed))
        return refreshed
