"""
Ops Desk - Escalations API
==========================

Raise, list and resolve escalations. L3 creation pauses the linked
project; resolving L2/L3 requires decision notes.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status
from sqlalchemy import select

from opsdesk.api.deps import Bus, CurrentUser, DbSession, LeadUser
from opsdesk.core.exceptions import NotFoundError
from opsdesk.core.models import Escalation, EscalationLevel, EscalationStatus, Project
from opsdesk.core.policy import EscalationCascade
from opsdesk.core.schemas import (
    EscalationCreate,
    EscalationDetailResponse,
    EscalationResolve,
    EscalationResponse,
    ProjectResponse,
)

router = APIRouter(prefix="/escalations", tags=["Escalations"])


@router.get(
    "",
    response_model=list[EscalationResponse],
    summary="List escalations",
)
async def list_escalations(
    current_user: CurrentUser,
    db: DbSession,
    status_filter: Optional[EscalationStatus] = Query(None, alias="status", description="Filter by status"),
    level: Optional[EscalationLevel] = Query(None, description="Filter by level"),
    project_id: Optional[UUID] = Query(None, description="Filter by project"),
) -> list[EscalationResponse]:
    query = select(Escalation)
    if status_filter:
        query = query.where(Escalation.status == status_filter)
    if level:
        query = query.where(Escalation.level == level)
    if project_id:
        query = query.where(Escalation.project_id == project_id)

    result = await db.execute(query.order_by(Escalation.created_at.desc()))
    return [EscalationResponse.model_validate(e) for e in result.scalars().all()]


@router.post(
    "",
    response_model=EscalationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Raise an escalation",
    responses={404: {"description": "Project not found"}},
)
async def create_escalation(
    data: EscalationCreate,
    current_user: CurrentUser,
    db: DbSession,
    bus: Bus,
) -> EscalationResponse:
    """Raise an escalation. L3 pauses the project before this returns."""
    escalation = await EscalationCascade(db, bus).create(
        data.project_id,
        data.level,
        data.category,
        data.title,
        data.description,
    )
    return EscalationResponse.model_validate(escalation)


@router.get(
    "/{escalation_id}",
    response_model=EscalationDetailResponse,
    summary="Get escalation with its project",
    responses={404: {"description": "Escalation not found"}},
)
async def get_escalation(
    escalation_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
) -> EscalationDetailResponse:
    escalation = await db.get(Escalation, escalation_id)
    if escalation is None:
        raise NotFoundError("Escalation", escalation_id)

    project = await db.get(Project, escalation.project_id)
    return EscalationDetailResponse(
        escalation=EscalationResponse.model_validate(escalation),
        project=ProjectResponse.model_validate(project) if project else None,
    )


@router.patch(
    "/{escalation_id}",
    response_model=EscalationResponse,
    summary="Resolve or halt an escalation",
    responses={
        403: {"description": "Role may not resolve escalations"},
        404: {"description": "Escalation not found"},
        409: {"description": "Escalation is already resolved or halted"},
        422: {"description": "Invalid status or missing decision notes"},
    },
)
async def resolve_escalation(
    escalation_id: UUID,
    data: EscalationResolve,
    current_user: LeadUser,
    db: DbSession,
    bus: Bus,
) -> EscalationResponse:
    """
    Resolve or halt an OPEN escalation.

    ``unpause_project`` only has an effect for L3 escalations being
    RESOLVED; otherwise a paused project stays paused.
    """
    escalation = await EscalationCascade(db, bus).resolve(
        escalation_id,
        data.status,
        data.decision_notes,
        resolved_by=current_user.display_name,
        unpause=data.unpause_project,
    )
    return EscalationResponse.model_validate(escalation)
