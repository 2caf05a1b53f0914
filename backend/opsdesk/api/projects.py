"""
Ops Desk - Projects API
=======================

Project CRUD, guarded stage changes, notes, orphaned-approval intake and
outbound agent triggers.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status
from sqlalchemy import func, select

from opsdesk.api.deps import AgentHttpClient, Bus, CurrentUser, DbSession
from opsdesk.core.models import (
    AgentTrigger,
    Approval,
    Escalation,
    Project,
    ProjectNote,
    ProjectStatus,
    TriggerStatus,
)
from opsdesk.core.policy import AgentTriggerService, ProjectService
from opsdesk.core.policy.catalog import AGENT_DISPLAY_NAMES
from opsdesk.core.schemas import (
    AgentTriggerResponse,
    ApprovalResponse,
    EscalationResponse,
    NoteCreate,
    NoteResponse,
    PendingProjectResponse,
    ProjectCreate,
    ProjectDetailResponse,
    ProjectFromApproval,
    ProjectListResponse,
    ProjectResponse,
    ProjectUpdate,
    ProjectUpdateResponse,
    TriggerAgentRequest,
    TriggerResult,
)

router = APIRouter(prefix="/projects", tags=["Projects"])


# ==========================================================================
# Collection
# ==========================================================================

@router.get(
    "",
    response_model=ProjectListResponse,
    summary="List projects",
)
async def list_projects(
    current_user: CurrentUser,
    db: DbSession,
    status_filter: Optional[ProjectStatus] = Query(None, alias="status", description="Filter by status"),
    email: Optional[str] = Query(None, description="Filter by client email"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> ProjectListResponse:
    query = select(Project)
    if status_filter:
        query = query.where(Project.status == status_filter)
    if email:
        query = query.where(Project.client_email == email.strip().lower())

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0

    result = await db.execute(
        query.order_by(Project.updated_at.desc()).offset(offset).limit(limit)
    )
    return ProjectListResponse(
        items=[ProjectResponse.model_validate(p) for p in result.scalars().all()],
        total=total,
    )


@router.post(
    "",
    response_model=ProjectResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a project",
)
async def create_project(
    data: ProjectCreate,
    current_user: CurrentUser,
    db: DbSession,
    bus: Bus,
) -> ProjectResponse:
    project = await ProjectService(db, bus).create(
        client_email=data.client_email,
        tier=data.tier,
        stage=data.stage,
        client_name=data.client_name,
        icp_level=data.icp_level,
        sop_step_key=data.sop_step_key,
    )
    return ProjectResponse.model_validate(project)


@router.get(
    "/pending",
    response_model=list[PendingProjectResponse],
    summary="Pending approvals without a project",
)
async def list_pending_projects(
    current_user: CurrentUser,
    db: DbSession,
    bus: Bus,
) -> list[PendingProjectResponse]:
    """
    Leads where an agent has submitted data but no human has authorized
    project creation yet.
    """
    orphans = await ProjectService(db, bus).list_orphaned_approvals()
    return [PendingProjectResponse(**orphan) for orphan in orphans]


@router.post(
    "/from-approval/{approval_id}",
    response_model=ProjectResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a project from an orphaned approval",
    responses={
        404: {"description": "Approval not found"},
        409: {"description": "Client already has a project"},
    },
)
async def create_project_from_approval(
    approval_id: UUID,
    data: ProjectFromApproval,
    current_user: CurrentUser,
    db: DbSession,
    bus: Bus,
) -> ProjectResponse:
    project = await ProjectService(db, bus).create_from_approval(
        approval_id, tier=data.tier, stage=data.stage
    )
    return ProjectResponse.model_validate(project)


# ==========================================================================
# Single Project
# ==========================================================================

@router.get(
    "/{project_id}",
    response_model=ProjectDetailResponse,
    summary="Get project with linked records",
    responses={404: {"description": "Project not found"}},
)
async def get_project(
    project_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
    bus: Bus,
) -> ProjectDetailResponse:
    project = await ProjectService(db, bus).get(project_id)

    approvals = await db.execute(
        select(Approval)
        .where(Approval.client_email == project.client_email)
        .order_by(Approval.created_at.desc())
    )
    escalations = await db.execute(
        select(Escalation)
        .where(Escalation.project_id == project.id)
        .order_by(Escalation.created_at.desc())
    )
    notes = await db.execute(
        select(ProjectNote)
        .where(ProjectNote.project_id == project.id)
        .order_by(ProjectNote.created_at.desc())
    )
    triggers = await db.execute(
        select(AgentTrigger)
        .where(AgentTrigger.project_id == project.id)
        .order_by(AgentTrigger.created_at.desc())
    )

    return ProjectDetailResponse(
        project=ProjectResponse.model_validate(project),
        approvals=[ApprovalResponse.model_validate(a) for a in approvals.scalars().all()],
        escalations=[EscalationResponse.model_validate(e) for e in escalations.scalars().all()],
        notes=[NoteResponse.model_validate(n) for n in notes.scalars().all()],
        triggers=[AgentTriggerResponse.model_validate(t) for t in triggers.scalars().all()],
    )


@router.patch(
    "/{project_id}",
    response_model=ProjectUpdateResponse,
    summary="Update a project",
    responses={
        404: {"description": "Project not found"},
        409: {"description": "Stage move blocked (skip or regression without override)"},
        422: {"description": "Fit decision rationale missing"},
    },
)
async def update_project(
    project_id: UUID,
    data: ProjectUpdate,
    current_user: CurrentUser,
    db: DbSession,
    bus: Bus,
) -> ProjectUpdateResponse:
    """
    Update project fields.

    Stage moves must be the next stage unless ``override`` is set; a forced
    forward skip raises an L2/SCOPE escalation.
    """
    fields = data.model_dump(
        exclude_unset=True,
        exclude={"stage", "override", "fit_decision_rationale", "status"},
    )
    project, escalation = await ProjectService(db, bus).update(
        project_id,
        author=current_user.display_name,
        stage=data.stage,
        override=data.override,
        fit_decision_rationale=data.fit_decision_rationale,
        status=data.status,
        **fields,
    )
    return ProjectUpdateResponse(
        project=ProjectResponse.model_validate(project),
        escalation_id=escalation.id if escalation else None,
    )


# ==========================================================================
# Notes
# ==========================================================================

@router.get(
    "/{project_id}/notes",
    response_model=list[NoteResponse],
    summary="List project notes",
)
async def list_notes(
    project_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
    bus: Bus,
) -> list[NoteResponse]:
    await ProjectService(db, bus).get(project_id)
    result = await db.execute(
        select(ProjectNote)
        .where(ProjectNote.project_id == project_id)
        .order_by(ProjectNote.created_at.desc())
    )
    return [NoteResponse.model_validate(n) for n in result.scalars().all()]


@router.post(
    "/{project_id}/notes",
    response_model=NoteResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a note",
)
async def add_note(
    project_id: UUID,
    data: NoteCreate,
    current_user: CurrentUser,
    db: DbSession,
    bus: Bus,
) -> NoteResponse:
    note = await ProjectService(db, bus).add_note(
        project_id,
        author=current_user.display_name,
        content=data.content,
        note_type=data.note_type,
    )
    return NoteResponse.model_validate(note)


# ==========================================================================
# Agent Triggers
# ==========================================================================

@router.post(
    "/{project_id}/trigger-agent",
    response_model=TriggerResult,
    summary="Trigger an agent for a project",
    responses={404: {"description": "Project or agent not found"}},
)
async def trigger_agent(
    project_id: UUID,
    data: TriggerAgentRequest,
    current_user: CurrentUser,
    db: DbSession,
    bus: Bus,
    http_client: AgentHttpClient,
) -> TriggerResult:
    """
    Trigger an agent. With a webhook URL configured the payload is POSTed
    once; otherwise the trigger stays pending for manual pickup.
    """
    service = AgentTriggerService(db, bus, http_client=http_client)
    trigger = await service.trigger(
        project_id, data.agent_key, data.payload, triggered_by=current_user.display_name
    )

    agent_name = AGENT_DISPLAY_NAMES.get(data.agent_key, data.agent_key)
    if trigger.status == TriggerStatus.SENT:
        message = f"Triggered {agent_name} via webhook"
    elif trigger.status == TriggerStatus.FAILED:
        message = f"Webhook delivery to {agent_name} failed: {trigger.error_message}"
    else:
        message = f"Trigger data prepared for {agent_name} (no webhook URL configured)"

    return TriggerResult(trigger=AgentTriggerResponse.model_validate(trigger), message=message)
