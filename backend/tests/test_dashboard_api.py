"""
Ops Desk - Dashboard, Policy and Agent Registry Tests
=====================================================
"""

from datetime import datetime, timedelta, timezone

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.core.models import (
    Agent,
    AgentTrigger,
    ApprovalStatus,
    Escalation,
    EscalationCategory,
    EscalationLevel,
    EscalationStatus,
    IcpLevel,
    PolicyAction,
    PolicyAuditEntry,
    ProjectStage,
    ProjectStatus,
    TriggerStatus,
    WebhookEvent,
)
from tests.conftest import make_approval, make_project


def minutes_ago(minutes: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=minutes)


async def make_escalation(
    db: AsyncSession,
    project_id,
    level: EscalationLevel,
    created_at: datetime,
    status: EscalationStatus = EscalationStatus.OPEN,
    category: EscalationCategory = EscalationCategory.OTHER,
) -> Escalation:
    escalation = Escalation(
        project_id=project_id,
        level=level,
        category=category,
        status=status,
        title=f"{level.value} issue",
        created_at=created_at,
    )
    db.add(escalation)
    await db.commit()
    return escalation


# ==========================================================================
# Decision Queue Tests
# ==========================================================================

class TestDecisionQueue:
    """GET /dashboard/decisions."""

    async def test_escalations_by_urgency_then_age(
        self, client: AsyncClient, db_session: AsyncSession, founder_headers: dict
    ):
        project = await make_project(db_session)
        old_l1 = await make_escalation(db_session, project.id, EscalationLevel.L1, minutes_ago(30))
        l3 = await make_escalation(db_session, project.id, EscalationLevel.L3, minutes_ago(5))
        new_l2 = await make_escalation(db_session, project.id, EscalationLevel.L2, minutes_ago(1))
        old_l2 = await make_escalation(db_session, project.id, EscalationLevel.L2, minutes_ago(20))
        await make_escalation(
            db_session, project.id, EscalationLevel.L3, minutes_ago(60),
            status=EscalationStatus.RESOLVED,
        )

        response = await client.get("/api/v1/dashboard/decisions", headers=founder_headers)

        assert response.status_code == 200
        ids = [e["id"] for e in response.json()["escalations"]]
        assert ids == [str(l3.id), str(old_l2.id), str(new_l2.id), str(old_l1.id)]

    async def test_pending_approvals_and_alerts(
        self, client: AsyncClient, db_session: AsyncSession, lead_headers: dict
    ):
        pending = await make_approval(db_session)
        await make_approval(db_session, status=ApprovalStatus.REJECTED)
        db_session.add(PolicyAuditEntry(
            approval_id=pending.id,
            policy_action=PolicyAction.BLOCKED,
            reason="A rejection rationale is mandatory",
        ))
        await db_session.commit()

        response = await client.get("/api/v1/dashboard/decisions", headers=lead_headers)

        data = response.json()
        assert [a["id"] for a in data["approvals"]] == [str(pending.id)]
        assert len(data["policy_alerts"]) == 1
        assert data["total"] == 1

    async def test_creative_cannot_view_queue(self, client: AsyncClient, creative_headers: dict):
        response = await client.get("/api/v1/dashboard/decisions", headers=creative_headers)
        assert response.status_code == 403


# ==========================================================================
# Activity Feed Tests
# ==========================================================================

class TestActivityFeed:
    """GET /dashboard/activity."""

    async def _seed(self, db: AsyncSession):
        project = await make_project(db)
        db.add_all([
            WebhookEvent(
                agent_key="discovery",
                client_email="a@b.com",
                payload={},
                response_status=200,
                created_at=minutes_ago(30),
            ),
            AgentTrigger(
                project_id=project.id,
                agent_key="proposal",
                trigger_payload={},
                status=TriggerStatus.FAILED,
                error_message="HTTP 500",
                triggered_by="Founder User",
                created_at=minutes_ago(10),
            ),
            PolicyAuditEntry(
                policy_action=PolicyAction.AUTO_ESCALATED,
                reason="Legal/brand risk detected",
                created_at=minutes_ago(20),
            ),
        ])
        await db.commit()

    async def test_merged_newest_first(
        self, client: AsyncClient, db_session: AsyncSession, creative_headers: dict
    ):
        await self._seed(db_session)

        response = await client.get("/api/v1/dashboard/activity", headers=creative_headers)

        assert response.status_code == 200
        items = response.json()
        assert [i["kind"] for i in items] == ["trigger", "policy", "webhook"]
        assert items[0]["summary"] == "Agent proposal triggered (failed): HTTP 500"
        assert items[1]["summary"] == "Policy auto_escalated: Legal/brand risk detected"
        assert items[2]["summary"] == "Webhook received from discovery for a@b.com"

    async def test_agent_filter_drops_policy_entries(
        self, client: AsyncClient, db_session: AsyncSession, founder_headers: dict
    ):
        await self._seed(db_session)

        response = await client.get(
            "/api/v1/dashboard/activity", headers=founder_headers, params={"agent": "discovery"}
        )

        assert [i["kind"] for i in response.json()] == ["webhook"]

    async def test_limit(
        self, client: AsyncClient, db_session: AsyncSession, founder_headers: dict
    ):
        await self._seed(db_session)

        response = await client.get(
            "/api/v1/dashboard/activity", headers=founder_headers, params={"limit": 2}
        )

        assert [i["kind"] for i in response.json()] == ["trigger", "policy"]


# ==========================================================================
# Metrics Tests
# ==========================================================================

class TestMetrics:
    """GET /dashboard/metrics."""

    async def test_metrics(
        self, client: AsyncClient, db_session: AsyncSession, operator_headers: dict
    ):
        project = await make_project(db_session, stage=ProjectStage.DISCOVERY, icp_level=IcpLevel.A)
        await make_project(db_session, status=ProjectStatus.PAUSED)
        await make_escalation(
            db_session, project.id, EscalationLevel.L2, minutes_ago(5),
            category=EscalationCategory.FINANCIAL,
        )
        await make_escalation(
            db_session, project.id, EscalationLevel.L1, datetime.now(timezone.utc) - timedelta(days=45)
        )
        await make_approval(db_session)
        db_session.add(Agent(
            agent_key="discovery",
            display_name="Discovery Support",
            category="sales",
            is_active=True,
            total_events=3,
        ))
        await db_session.commit()

        response = await client.get("/api/v1/dashboard/metrics", headers=operator_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["funnel"]["DISCOVERY"] == 1
        assert data["funnel"]["LEAD"] == 1
        assert data["funnel"]["CLOSED"] == 0
        assert data["icp_distribution"] == {"A": 1}
        assert data["escalations_by_level"] == {"L2": 1}
        assert data["escalations_by_category"] == {"FINANCIAL": 1}
        assert data["approvals_by_status"] == {"pending": 1}
        assert data["projects_by_status"] == {"ACTIVE": 1, "PAUSED": 1, "BLOCKED": 0, "COMPLETE": 0}
        assert data["agent_activity"][0]["agent_key"] == "discovery"
        assert data["agent_activity"][0]["total_events"] == 3

    async def test_sales_lead_cannot_view_metrics(self, client: AsyncClient, lead_headers: dict):
        response = await client.get("/api/v1/dashboard/metrics", headers=lead_headers)
        assert response.status_code == 403


# ==========================================================================
# Policy Tests
# ==========================================================================

class TestPolicyConfig:
    """GET /policy."""

    async def test_policy_config(self, client: AsyncClient, creative_headers: dict):
        response = await client.get("/api/v1/policy", headers=creative_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["stages"][0] == "LEAD"
        assert data["repeated_rejection_threshold"] == 2
        assert data["rationale_required_checkpoints"] == ["proposal_review"]
        assert "trademark" in data["legal_brand_keywords"]
        assert data["tier_pricing"]["TIER_1"] == {"floor": 4000, "ceiling": 5500}

    async def test_policy_requires_auth(self, client: AsyncClient):
        response = await client.get("/api/v1/policy")
        assert response.status_code == 401


# ==========================================================================
# Agent Registry Tests
# ==========================================================================

class TestAgentRegistry:
    """GET/PATCH /agents."""

    async def test_configure_catalog_agent_before_first_webhook(
        self, client: AsyncClient, operator_headers: dict
    ):
        response = await client.patch(
            "/api/v1/agents/proposal",
            headers=operator_headers,
            json={"webhook_url": "https://agents.example.com/proposal"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["display_name"] == "Proposal Drafting"
        assert data["webhook_url"] == "https://agents.example.com/proposal"
        assert data["total_events"] == 0

        listing = await client.get("/api/v1/agents", headers=operator_headers)
        assert [a["agent_key"] for a in listing.json()] == ["proposal"]

    async def test_clear_webhook_and_deactivate(
        self, client: AsyncClient, operator_headers: dict
    ):
        await client.patch(
            "/api/v1/agents/discovery",
            headers=operator_headers,
            json={"webhook_url": "https://agents.example.com/discovery"},
        )

        response = await client.patch(
            "/api/v1/agents/discovery",
            headers=operator_headers,
            json={"webhook_url": "", "is_active": False},
        )

        data = response.json()
        assert data["webhook_url"] is None
        assert data["is_active"] is False

    async def test_rejects_non_http_url(self, client: AsyncClient, founder_headers: dict):
        response = await client.patch(
            "/api/v1/agents/discovery",
            headers=founder_headers,
            json={"webhook_url": "ftp://agents.example.com"},
        )
        assert response.status_code == 422

    async def test_unknown_agent(self, client: AsyncClient, founder_headers: dict):
        response = await client.patch(
            "/api/v1/agents/mystery", headers=founder_headers, json={"is_active": False}
        )
        assert response.status_code == 404

    async def test_sales_lead_cannot_configure(self, client: AsyncClient, lead_headers: dict):
        response = await client.patch(
            "/api/v1/agents/discovery", headers=lead_headers, json={"is_active": False}
        )
        assert response.status_code == 403


# ==========================================================================
# Health Tests
# ==========================================================================

class TestHealth:
    """GET /health."""

    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "connected"
        assert data["event_subscribers"] == 0
