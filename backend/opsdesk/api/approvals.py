"""
Ops Desk - Approvals API
========================

Human review of agent outputs. Every decision passes the approval policy
engine; blocked decisions come back as 409 with the policy reason.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query
from sqlalchemy import select

from opsdesk.api.deps import Bus, CurrentUser, DbSession
from opsdesk.core.models import Approval, ApprovalStatus, PolicyAuditEntry
from opsdesk.core.policy import ApprovalDecisionService, DecisionRequest
from opsdesk.core.schemas import (
    ApprovalDecision,
    ApprovalDecisionResponse,
    ApprovalResponse,
    PolicyAuditResponse,
)

router = APIRouter(prefix="/approvals", tags=["Approvals"])


@router.get(
    "",
    response_model=list[ApprovalResponse],
    summary="List approvals",
)
async def list_approvals(
    current_user: CurrentUser,
    db: DbSession,
    status_filter: Optional[ApprovalStatus] = Query(None, alias="status", description="Filter by status"),
    email: Optional[str] = Query(None, description="Filter by client email"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> list[ApprovalResponse]:
    query = select(Approval)
    if status_filter:
        query = query.where(Approval.status == status_filter)
    if email:
        query = query.where(Approval.client_email == email.strip().lower())

    result = await db.execute(
        query.order_by(Approval.created_at.desc()).offset(offset).limit(limit)
    )
    return [ApprovalResponse.model_validate(a) for a in result.scalars().all()]


@router.get(
    "/{approval_id}",
    response_model=ApprovalResponse,
    summary="Get approval",
    responses={404: {"description": "Approval not found"}},
)
async def get_approval(
    approval_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
    bus: Bus,
) -> ApprovalResponse:
    approval = await ApprovalDecisionService(db, bus).get_approval(approval_id)
    return ApprovalResponse.model_validate(approval)


@router.patch(
    "/{approval_id}",
    response_model=ApprovalDecisionResponse,
    summary="Approve, reject or edit",
    responses={
        404: {"description": "Approval not found"},
        409: {"description": "Blocked by approval policy"},
    },
)
async def decide_approval(
    approval_id: UUID,
    data: ApprovalDecision,
    current_user: CurrentUser,
    db: DbSession,
    bus: Bus,
) -> ApprovalDecisionResponse:
    """
    Apply a decision.

    Allowed decisions may raise an auto-escalation (returned as
    ``escalation_id``); blocked decisions leave the approval pending and
    are recorded in the policy audit trail.
    """
    approval, escalation = await ApprovalDecisionService(db, bus).decide(
        approval_id,
        DecisionRequest(
            status=data.status,
            admin_comments=data.admin_comments,
            edited_response=data.edited_response,
        ),
        reviewer=current_user.display_name,
    )
    return ApprovalDecisionResponse(
        approval=ApprovalResponse.model_validate(approval),
        escalation_id=escalation.id if escalation else None,
    )


@router.post(
    "/{approval_id}/sent",
    response_model=ApprovalResponse,
    summary="Mark an approved output as sent",
    responses={
        404: {"description": "Approval not found"},
        409: {"description": "Approval was already marked as sent"},
        422: {"description": "Approval is not approved or edited"},
    },
)
async def mark_approval_sent(
    approval_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
    bus: Bus,
) -> ApprovalResponse:
    approval = await ApprovalDecisionService(db, bus).mark_sent(approval_id)
    return ApprovalResponse.model_validate(approval)


@router.get(
    "/{approval_id}/audit",
    response_model=list[PolicyAuditResponse],
    summary="Policy audit trail for an approval",
)
async def get_approval_audit(
    approval_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
    bus: Bus,
) -> list[PolicyAuditResponse]:
    await ApprovalDecisionService(db, bus).get_approval(approval_id)
    result = await db.execute(
        select(PolicyAuditEntry)
        .where(PolicyAuditEntry.approval_id == approval_id)
        .order_by(PolicyAuditEntry.created_at.asc())
    )
    return [PolicyAuditResponse.model_validate(e) for e in result.scalars().all()]
