"""
Ops Desk - Agent Webhook Tests
==============================

Inbound agent deliveries: approval creation, project refresh and logging.
"""

from uuid import UUID

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.core.config import settings
from opsdesk.core.events import EventType
from opsdesk.core.models import (
    Agent,
    Approval,
    ApprovalStatus,
    CheckpointType,
    IcpLevel,
    ProjectStage,
    WebhookEvent,
)
from tests.conftest import RecordingSubscriber, make_project


async def webhook_events(db: AsyncSession) -> list[WebhookEvent]:
    result = await db.execute(select(WebhookEvent))
    return list(result.scalars().all())


class TestReceiveWebhook:
    """POST /webhooks/{agent_key}."""

    async def test_creates_pending_approval(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        recorder: RecordingSubscriber,
    ):
        response = await client.post(
            "/api/v1/webhooks/proposal",
            json={
                "email": "Buyer@Maple.com",
                "payload": {"budget": 9000},
                "response": {"price": 9000, "tier": "Growth"},
                "tier_hint": "growth",
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True

        approval = await db_session.get(Approval, UUID(data["approval_id"]))
        assert approval.client_email == "buyer@maple.com"
        assert approval.status == ApprovalStatus.PENDING
        assert approval.checkpoint_type == CheckpointType.PROPOSAL_REVIEW
        assert approval.recommended_stage == ProjectStage.PROPOSAL
        assert approval.agent_payload == {"budget": 9000, "tier_hint": "growth"}

        assert recorder.types == [EventType.NEW_APPROVAL, EventType.AGENT_EVENT]
        assert recorder.events[0].data["checkpoint_type"] == "proposal_review"

    async def test_registers_agent_and_counts_events(
        self, client: AsyncClient, db_session: AsyncSession
    ):
        body = {"email": "a@b.com", "response": {"summary": "ok"}}
        await client.post("/api/v1/webhooks/discovery", json=body)
        await client.post("/api/v1/webhooks/discovery", json=body)

        result = await db_session.execute(select(Agent).where(Agent.agent_key == "discovery"))
        agent = result.scalar_one()
        assert agent.display_name == "Discovery Support"
        assert agent.total_events == 2
        assert agent.last_event_at is not None
        assert len(await webhook_events(db_session)) == 2

    async def test_refreshes_project_but_never_moves_stage(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        recorder: RecordingSubscriber,
    ):
        project = await make_project(db_session, stage=ProjectStage.LEAD)

        response = await client.post(
            "/api/v1/webhooks/proposal",
            json={
                "email": project.client_email,
                "response": {"name": "Maple Goods", "icp_level": "a", "sop_step_key": "sop-4"},
            },
        )

        assert response.status_code == 200
        await db_session.refresh(project)
        assert project.client_name == "Maple Goods"
        assert project.icp_level == IcpLevel.A
        assert project.sop_step_key == "sop-4"
        assert project.stage == ProjectStage.LEAD
        assert EventType.PROJECT_UPDATED in recorder.types
        assert EventType.SOP_UPDATED in recorder.types

    async def test_unknown_agent_is_logged_and_rejected(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        recorder: RecordingSubscriber,
    ):
        response = await client.post(
            "/api/v1/webhooks/mystery",
            json={"email": "a@b.com", "response": {"summary": "ok"}},
        )

        assert response.status_code == 422
        assert response.json()["detail"] == "Invalid agent key: mystery"

        events = await webhook_events(db_session)
        assert len(events) == 1
        assert events[0].response_status == 422
        assert events[0].client_email == "a@b.com"
        assert recorder.events == []

        approvals = await db_session.execute(select(Approval))
        assert approvals.scalars().all() == []

    @pytest.mark.parametrize(
        "body",
        [
            {"response": {"summary": "ok"}},
            {"email": "not-an-email", "response": {"summary": "ok"}},
            {"email": "a@b.com"},
            {"email": "a@b.com", "response": {}},
        ],
    )
    async def test_malformed_body(self, client: AsyncClient, body: dict):
        response = await client.post("/api/v1/webhooks/proposal", json=body)
        assert response.status_code == 422


class TestWebhookSecret:
    """X-Webhook-Secret handling."""

    async def test_secret_required_when_configured(
        self, client: AsyncClient, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setattr(settings, "AGENT_WEBHOOK_SECRET", "hook-secret")
        body = {"email": "a@b.com", "response": {"summary": "ok"}}

        missing = await client.post("/api/v1/webhooks/discovery", json=body)
        wrong = await client.post(
            "/api/v1/webhooks/discovery", json=body, headers={"X-Webhook-Secret": "nope"}
        )
        right = await client.post(
            "/api/v1/webhooks/discovery", json=body, headers={"X-Webhook-Secret": "hook-secret"}
        )

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert right.status_code == 200
