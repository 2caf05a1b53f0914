"""
Ops Desk - Dashboard API
========================

Read-only aggregate views for the operations dashboard:
- Decision queue (what is waiting on a human)
- Activity feed (agent traffic and policy actions)
- Metrics
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Query
from sqlalchemy import func, select

from opsdesk.api.deps import CurrentUser, DbSession, LeadUser, MetricsUser
from opsdesk.core.models import (
    Agent,
    AgentTrigger,
    Approval,
    ApprovalStatus,
    Escalation,
    EscalationStatus,
    PolicyAuditEntry,
    Project,
    ProjectStage,
    ProjectStatus,
    WebhookEvent,
    as_utc,
)
from opsdesk.core.schemas import (
    ActivityItem,
    ApprovalResponse,
    DecisionQueueResponse,
    EscalationResponse,
    MetricsResponse,
    PolicyAuditResponse,
)

router = APIRouter(prefix="/dashboard", tags=["Dashboard"])

POLICY_ALERT_LIMIT = 50
METRICS_WINDOW_DAYS = 30


# ==========================================================================
# Decision Queue
# ==========================================================================

@router.get(
    "/decisions",
    response_model=DecisionQueueResponse,
    summary="Unified decision queue",
    responses={403: {"description": "Role may not view the decision queue"}},
)
async def get_decision_queue(
    current_user: LeadUser,
    db: DbSession,
) -> DecisionQueueResponse:
    """
    Everything waiting on a human.

    Open escalations come first (L3, then L2, then L1, oldest first within a
    level), followed by pending approvals oldest first. Recent policy audit
    entries are returned alongside as alerts.
    """
    # Level names sort L1 < L2 < L3
    escalations_result = await db.execute(
        select(Escalation)
        .where(Escalation.status == EscalationStatus.OPEN)
        .order_by(Escalation.level.desc(), Escalation.created_at.asc())
    )
    escalations = [EscalationResponse.model_validate(e) for e in escalations_result.scalars().all()]

    approvals_result = await db.execute(
        select(Approval)
        .where(Approval.status == ApprovalStatus.PENDING)
        .order_by(Approval.created_at.asc())
    )
    approvals = [ApprovalResponse.model_validate(a) for a in approvals_result.scalars().all()]

    alerts_result = await db.execute(
        select(PolicyAuditEntry)
        .order_by(PolicyAuditEntry.created_at.desc())
        .limit(POLICY_ALERT_LIMIT)
    )
    alerts = [PolicyAuditResponse.model_validate(a) for a in alerts_result.scalars().all()]

    return DecisionQueueResponse(
        escalations=escalations,
        approvals=approvals,
        policy_alerts=alerts,
        total=len(escalations) + len(approvals),
    )


# ==========================================================================
# Activity Feed
# ==========================================================================

@router.get(
    "/activity",
    response_model=list[ActivityItem],
    summary="Merged agent and policy activity",
)
async def get_activity(
    current_user: CurrentUser,
    db: DbSession,
    agent: Optional[str] = Query(None, description="Only show traffic for this agent key"),
    limit: int = Query(100, ge=1, le=500),
) -> list[ActivityItem]:
    """
    Webhook deliveries, agent triggers and policy actions, newest first.

    Filtering by agent drops policy entries, which are not agent-scoped.
    """
    items: list[ActivityItem] = []

    webhook_query = select(WebhookEvent)
    if agent:
        webhook_query = webhook_query.where(WebhookEvent.agent_key == agent)
    webhooks = await db.execute(webhook_query.order_by(WebhookEvent.created_at.desc()).limit(limit))
    for event in webhooks.scalars().all():
        summary = f"Webhook received from {event.agent_key}"
        if event.client_email:
            summary += f" for {event.client_email}"
        items.append(ActivityItem(
            kind="webhook",
            id=event.id,
            created_at=as_utc(event.created_at),
            summary=summary,
            data={
                "agent_key": event.agent_key,
                "client_email": event.client_email,
                "response_status": event.response_status,
                "error": event.error_message,
            },
        ))

    trigger_query = select(AgentTrigger)
    if agent:
        trigger_query = trigger_query.where(AgentTrigger.agent_key == agent)
    triggers = await db.execute(trigger_query.order_by(AgentTrigger.created_at.desc()).limit(limit))
    for trigger in triggers.scalars().all():
        summary = f"Agent {trigger.agent_key} triggered ({trigger.status.value})"
        if trigger.error_message:
            summary += f": {trigger.error_message}"
        items.append(ActivityItem(
            kind="trigger",
            id=trigger.id,
            created_at=as_utc(trigger.created_at),
            summary=summary,
            data={
                "agent_key": trigger.agent_key,
                "project_id": str(trigger.project_id),
                "status": trigger.status.value,
                "triggered_by": trigger.triggered_by,
            },
        ))

    if not agent:
        audits = await db.execute(
            select(PolicyAuditEntry).order_by(PolicyAuditEntry.created_at.desc()).limit(limit)
        )
        for entry in audits.scalars().all():
            items.append(ActivityItem(
                kind="policy",
                id=entry.id,
                created_at=as_utc(entry.created_at),
                summary=f"Policy {entry.policy_action.value}: {entry.reason}",
                data={
                    "approval_id": str(entry.approval_id) if entry.approval_id else None,
                    "escalation_id": str(entry.escalation_id) if entry.escalation_id else None,
                },
            ))

    items.sort(key=lambda item: item.created_at, reverse=True)
    return items[:limit]


# ==========================================================================
# Metrics
# ==========================================================================

@router.get(
    "/metrics",
    response_model=MetricsResponse,
    summary="Pipeline and policy metrics",
    responses={403: {"description": "Role may not view metrics"}},
)
async def get_metrics(
    current_user: MetricsUser,
    db: DbSession,
) -> MetricsResponse:
    """Aggregate counts across projects, escalations, approvals and agents."""
    window_start = datetime.now(timezone.utc) - timedelta(days=METRICS_WINDOW_DAYS)

    # Conversion funnel (every stage present, even when empty)
    funnel = {stage.value: 0 for stage in ProjectStage}
    result = await db.execute(
        select(Project.stage, func.count(Project.id)).group_by(Project.stage)
    )
    for stage, count in result.all():
        funnel[stage.value] = count

    result = await db.execute(
        select(Project.icp_level, func.count(Project.id))
        .where(Project.icp_level.is_not(None))
        .group_by(Project.icp_level)
    )
    icp_distribution = {level.value: count for level, count in result.all()}

    result = await db.execute(
        select(Escalation.level, func.count(Escalation.id))
        .where(Escalation.created_at >= window_start)
        .group_by(Escalation.level)
    )
    escalations_by_level = {level.value: count for level, count in result.all()}

    result = await db.execute(
        select(Escalation.category, func.count(Escalation.id))
        .where(Escalation.created_at >= window_start)
        .group_by(Escalation.category)
    )
    escalations_by_category = {category.value: count for category, count in result.all()}

    result = await db.execute(
        select(Approval.status, func.count(Approval.id)).group_by(Approval.status)
    )
    approvals_by_status = {status.value: count for status, count in result.all()}

    projects_by_status = {status.value: 0 for status in ProjectStatus}
    result = await db.execute(
        select(Project.status, func.count(Project.id)).group_by(Project.status)
    )
    for status, count in result.all():
        projects_by_status[status.value] = count

    result = await db.execute(
        select(Agent)
        .where(Agent.is_active.is_(True))
        .order_by(Agent.total_events.desc())
    )
    agent_activity = [
        {
            "agent_key": a.agent_key,
            "display_name": a.display_name,
            "total_events": a.total_events,
            "last_event_at": as_utc(a.last_event_at).isoformat() if a.last_event_at else None,
        }
        for a in result.scalars().all()
    ]

    return MetricsResponse(
        funnel=funnel,
        icp_distribution=icp_distribution,
        escalations_by_level=escalations_by_level,
        escalations_by_category=escalations_by_category,
        approvals_by_status=approvals_by_status,
        projects_by_status=projects_by_status,
        agent_activity=agent_activity,
    )
