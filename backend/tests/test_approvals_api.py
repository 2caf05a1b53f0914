"""
Ops Desk - Approvals API Tests
==============================
"""

from uuid import UUID, uuid4

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.core.events import EventType
from opsdesk.core.models import (
    ApprovalStatus,
    Escalation,
    EscalationLevel,
    ProjectStatus,
)
from tests.conftest import RecordingSubscriber, make_approval, make_project


class TestListApprovals:
    """GET /approvals."""

    async def test_list_filters_by_status_and_email(
        self, client: AsyncClient, db_session: AsyncSession, founder_headers: dict
    ):
        pending = await make_approval(db_session)
        await make_approval(db_session, status=ApprovalStatus.APPROVED)

        response = await client.get(
            "/api/v1/approvals", headers=founder_headers, params={"status": "pending"}
        )
        assert [a["id"] for a in response.json()] == [str(pending.id)]

        response = await client.get(
            "/api/v1/approvals",
            headers=founder_headers,
            params={"email": pending.client_email.upper()},
        )
        assert [a["id"] for a in response.json()] == [str(pending.id)]

    async def test_get_approval(
        self, client: AsyncClient, db_session: AsyncSession, founder_headers: dict
    ):
        approval = await make_approval(db_session, agent_key="discovery")

        response = await client.get(f"/api/v1/approvals/{approval.id}", headers=founder_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["checkpoint_type"] == "discovery_summary"
        assert data["recommended_stage"] == "DISCOVERY"
        assert data["agent_response"] == {"summary": "Draft output"}

    async def test_get_unknown_approval(self, client: AsyncClient, founder_headers: dict):
        response = await client.get(f"/api/v1/approvals/{uuid4()}", headers=founder_headers)
        assert response.status_code == 404


class TestDecideApproval:
    """PATCH /approvals/{id} through the policy engine."""

    async def test_approve(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        founder_headers: dict,
        recorder: RecordingSubscriber,
    ):
        approval = await make_approval(db_session)

        response = await client.patch(
            f"/api/v1/approvals/{approval.id}",
            headers=founder_headers,
            json={"status": "approved", "admin_comments": "Looks good"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["approval"]["status"] == "approved"
        assert data["approval"]["reviewed_by"] == "Founder User"
        assert data["escalation_id"] is None
        assert recorder.types == [EventType.APPROVAL_DECIDED]

    async def test_pending_is_not_a_decision(
        self, client: AsyncClient, db_session: AsyncSession, founder_headers: dict
    ):
        approval = await make_approval(db_session)

        response = await client.patch(
            f"/api/v1/approvals/{approval.id}",
            headers=founder_headers,
            json={"status": "pending"},
        )
        assert response.status_code == 422

    async def test_rejection_without_rationale_is_blocked(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        founder_headers: dict,
        recorder: RecordingSubscriber,
    ):
        project = await make_project(db_session)
        approval = await make_approval(db_session, client_email=project.client_email)

        response = await client.patch(
            f"/api/v1/approvals/{approval.id}",
            headers=founder_headers,
            json={"status": "rejected"},
        )

        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "POLICY_BLOCKED"
        assert body["detail"].startswith("A rejection rationale is mandatory")
        assert body["escalation_id"] is not None

        escalation = await db_session.get(Escalation, UUID(body["escalation_id"]))
        assert escalation.level == EscalationLevel.L1
        assert EventType.APPROVAL_POLICY_BLOCKED in recorder.types

        audit = await client.get(f"/api/v1/approvals/{approval.id}/audit", headers=founder_headers)
        entries = audit.json()
        assert len(entries) == 1
        assert entries[0]["policy_action"] == "blocked"
        assert entries[0]["escalation_id"] == body["escalation_id"]

        detail = await client.get(f"/api/v1/approvals/{approval.id}", headers=founder_headers)
        assert detail.json()["status"] == "pending"

    async def test_legal_keyword_pauses_project(
        self, client: AsyncClient, db_session: AsyncSession, founder_headers: dict
    ):
        project = await make_project(db_session)
        approval = await make_approval(
            db_session,
            client_email=project.client_email,
            response={"copy": "Avoid any trademark conflict with the old logo"},
        )

        response = await client.patch(
            f"/api/v1/approvals/{approval.id}",
            headers=founder_headers,
            json={"status": "approved"},
        )

        assert response.status_code == 200
        escalation_id = response.json()["escalation_id"]
        assert escalation_id is not None

        await db_session.refresh(project)
        assert project.status == ProjectStatus.PAUSED

        audit = await client.get(f"/api/v1/approvals/{approval.id}/audit", headers=founder_headers)
        assert audit.json()[0]["policy_action"] == "auto_escalated"

    async def test_second_decision_is_blocked(
        self, client: AsyncClient, db_session: AsyncSession, founder_headers: dict
    ):
        approval = await make_approval(db_session, status=ApprovalStatus.APPROVED)

        response = await client.patch(
            f"/api/v1/approvals/{approval.id}",
            headers=founder_headers,
            json={"status": "rejected", "admin_comments": "Changed my mind"},
        )

        assert response.status_code == 409
        assert response.json()["detail"] == "Approval is already resolved (status: approved)"
        assert response.json()["escalation_id"] is None

    async def test_edit_stores_edited_response(
        self, client: AsyncClient, db_session: AsyncSession, founder_headers: dict
    ):
        approval = await make_approval(db_session, agent_key="discovery")

        response = await client.patch(
            f"/api/v1/approvals/{approval.id}",
            headers=founder_headers,
            json={"status": "edited", "edited_response": {"summary": "Tightened copy"}},
        )

        assert response.status_code == 200
        data = response.json()["approval"]
        assert data["status"] == "edited"
        assert data["edited_response"] == {"summary": "Tightened copy"}
        assert data["agent_response"] == {"summary": "Draft output"}


class TestMarkSent:
    """POST /approvals/{id}/sent."""

    async def test_mark_sent(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        founder_headers: dict,
        recorder: RecordingSubscriber,
    ):
        approval = await make_approval(db_session, status=ApprovalStatus.EDITED)

        response = await client.post(f"/api/v1/approvals/{approval.id}/sent", headers=founder_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["sent_at"] is not None
        assert data["status"] == "edited"
        assert recorder.types == [EventType.APPROVAL_SENT]

    async def test_second_send_keeps_first_timestamp(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        founder_headers: dict,
        recorder: RecordingSubscriber,
    ):
        approval = await make_approval(db_session, status=ApprovalStatus.APPROVED)
        first = await client.post(f"/api/v1/approvals/{approval.id}/sent", headers=founder_headers)

        second = await client.post(f"/api/v1/approvals/{approval.id}/sent", headers=founder_headers)

        assert second.status_code == 409
        assert second.json()["detail"] == "Approval was already marked as sent"
        assert recorder.types == [EventType.APPROVAL_SENT]

        stored = await client.get(f"/api/v1/approvals/{approval.id}", headers=founder_headers)
        assert stored.json()["sent_at"] == first.json()["sent_at"]

    async def test_pending_cannot_be_sent(
        self, client: AsyncClient, db_session: AsyncSession, founder_headers: dict
    ):
        approval = await make_approval(db_session)

        response = await client.post(f"/api/v1/approvals/{approval.id}/sent", headers=founder_headers)
        assert response.status_code == 422

    async def test_sent_without_project_leaves_no_project(
        self, client: AsyncClient, db_session: AsyncSession, founder_headers: dict
    ):
        approval = await make_approval(db_session, status=ApprovalStatus.APPROVED)

        await client.post(f"/api/v1/approvals/{approval.id}/sent", headers=founder_headers)

        projects = await client.get(
            "/api/v1/projects", headers=founder_headers, params={"email": approval.client_email}
        )
        assert projects.json()["total"] == 0
