"""
Agent Trigger Service - outbound requests that start an agent for a project.

One attempt, bounded timeout, no retries. A failed delivery is recorded on
the trigger row and never undoes anything else.
"""

from typing import Any, Optional
from uuid import UUID

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.core.config import settings
from opsdesk.core.events import EventBus, EventType
from opsdesk.core.exceptions import NotFoundError, TransportError
from opsdesk.core.models import (
    Agent,
    AgentTrigger,
    NoteType,
    Project,
    ProjectNote,
    TriggerStatus,
)
from opsdesk.core.policy.catalog import AGENT_DISPLAY_NAMES, is_known_agent
from opsdesk.core.policy.escalation import SYSTEM_AUTHOR
from opsdesk.core.policy.intake import get_or_register_agent

logger = structlog.get_logger()


def build_trigger_payload(project: Project, extra: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "project_id": str(project.id),
        "client_email": project.client_email,
        "client_name": project.client_name,
        "tier": project.tier.value,
        "stage": project.stage.value,
    }
    if isinstance(extra, dict):
        payload.update(extra)
    return payload


class AgentTriggerService:
    """
    Records and delivers agent triggers.

    Usage:
        service = AgentTriggerService(db, bus, http_client=client)
        trigger = await service.trigger(project_id, "discovery", {}, "jane")
    """

    def __init__(
        self,
        db: AsyncSession,
        bus: EventBus,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.db = db
        self.bus = bus
        self.http_client = http_client
        self.timeout = timeout if timeout is not None else settings.AGENT_TRIGGER_TIMEOUT_SECONDS

    async def trigger(
        self,
        project_id: UUID,
        agent_key: str,
        extra: Optional[dict[str, Any]],
        triggered_by: str,
    ) -> AgentTrigger:
        """
        Trigger an agent for a project.

        Raises:
            NotFoundError: Unknown project or agent
        """
        project = await self.db.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project", project_id)

        if is_known_agent(agent_key):
            agent = await get_or_register_agent(self.db, agent_key)
        else:
            result = await self.db.execute(select(Agent).where(Agent.agent_key == agent_key))
            agent = result.scalar_one_or_none()
        if agent is None:
            raise NotFoundError("Agent", agent_key)

        payload = build_trigger_payload(project, extra)
        trigger = AgentTrigger(
            project_id=project.id,
            agent_key=agent_key,
            trigger_payload=payload,
            status=TriggerStatus.PENDING,
            triggered_by=triggered_by,
        )
        self.db.add(trigger)
        await self.db.commit()

        if agent.webhook_url:
            try:
                trigger.response_status = await self.deliver(agent.webhook_url, payload)
                trigger.status = TriggerStatus.SENT
            except TransportError as e:
                trigger.status = TriggerStatus.FAILED
                trigger.response_status = e.status_code
                trigger.error_message = e.message
                logger.warning(
                    "agent_trigger_failed",
                    trigger_id=str(trigger.id),
                    agent_key=agent_key,
                    error=e.message,
                )

        agent_name = AGENT_DISPLAY_NAMES.get(agent_key, agent.display_name)
        suffix = "webhook sent" if agent.webhook_url else "data prepared"
        self.db.add(ProjectNote(
            project_id=project.id,
            author=SYSTEM_AUTHOR,
            content=f'Agent "{agent_name}" triggered ({suffix})',
            note_type=NoteType.AGENT_TRIGGER,
        ))
        await self.db.commit()

        self.bus.emit(
            EventType.AGENT_TRIGGERED,
            project_id=str(project.id),
            agent_key=agent_key,
            trigger_id=str(trigger.id),
            status=trigger.status.value,
        )
        self.bus.emit(EventType.PROJECT_NOTE_ADDED, project_id=str(project.id))

        logger.info(
            "agent_triggered",
            trigger_id=str(trigger.id),
            agent_key=agent_key,
            status=trigger.status.value,
        )
        return trigger

    async def deliver(self, url: str, payload: dict[str, Any]) -> int:
        """
        POST the payload to an agent webhook.

        Returns:
            HTTP status code on 2xx

        Raises:
            TransportError: Non-2xx response, timeout or network failure
        """
        client = self.http_client or httpx.AsyncClient()
        try:
            response = await client.post(url, json=payload, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise TransportError(f"Timed out after {self.timeout:g}s") from e
        except httpx.HTTPError as e:
            raise TransportError(str(e) or e.__class__.__name__) from e
        finally:
            if self.http_client is None:
                await client.aclose()

        if not response.is_success:
            raise TransportError(f"HTTP {response.status_code}", status_code=response.status_code)
        return response.status_code
