"""
Ops Desk - Delivery API
=======================

Tier SOP definitions, per-project SOP progress, client requests and the
delivery board.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from opsdesk.api.deps import Bus, CurrentUser, DbSession, DeliveryUser, LeadUser
from opsdesk.core.models import ProjectStatus, ProjectTier, SopStepStatus
from opsdesk.core.policy.sop import (
    DeliveryEntry,
    Responsiveness,
    SopService,
    SopStep,
    summarize_board,
)
from opsdesk.core.schemas import (
    ClientRequestCreate,
    ClientRequestResponse,
    DeliveryProjectResponse,
    DeliveryResponse,
    DeliverySummary,
    ProjectResponse,
    ProjectSopResponse,
    ResponsivenessSummary,
    SopDefinitionResponse,
    SopStepResponse,
    SopStepUpdate,
)

router = APIRouter(tags=["Delivery"])


def _step_response(step: SopStep, now: datetime) -> SopStepResponse:
    definition, progress = step.definition, step.progress
    return SopStepResponse(
        step_key=definition.step_key,
        step_order=definition.step_order,
        step_name=definition.step_name,
        description=definition.description,
        expected_duration_hours=definition.expected_duration_hours,
        required_inputs=definition.required_inputs or [],
        status=progress.status,
        started_at=progress.started_at,
        completed_at=progress.completed_at,
        expected_completion_at=progress.expected_completion_at,
        blockers=progress.blockers or [],
        missing_inputs=progress.missing_inputs or [],
        notes=progress.notes,
        is_drifting=step.is_drifting(now),
    )


def _responsiveness_response(responsiveness: Responsiveness) -> ResponsivenessSummary:
    return ResponsivenessSummary(
        avg_response_hours=responsiveness.avg_response_hours,
        pending_requests=len(responsiveness.pending),
        total_requests=len(responsiveness.requests),
        responded_requests=len(responsiveness.responded),
    )


def _delivery_response(entry: DeliveryEntry) -> DeliveryProjectResponse:
    return DeliveryProjectResponse(
        project=ProjectResponse.model_validate(entry.project),
        total_steps=len(entry.steps),
        completed_steps=entry.count(SopStepStatus.COMPLETED),
        in_progress_steps=entry.count(SopStepStatus.IN_PROGRESS),
        blocked_steps=entry.count(SopStepStatus.BLOCKED),
        completion_percent=entry.completion_percent,
        drifting_steps=entry.drifting_steps,
        responsiveness=_responsiveness_response(entry.responsiveness),
    )


async def _project_sop(service: SopService, project_id: UUID) -> ProjectSopResponse:
    steps = await service.get_progress(project_id)
    project = await service.get_project(project_id)
    entry = DeliveryEntry(
        project=project,
        steps=steps,
        responsiveness=await service.get_responsiveness(project_id),
    )
    now = datetime.now(timezone.utc)
    return ProjectSopResponse(
        project_id=project.id,
        tier=project.tier,
        current_step_key=project.sop_step_key,
        steps=[_step_response(step, now) for step in steps],
        completion_percent=entry.completion_percent,
        responsiveness=_responsiveness_response(entry.responsiveness),
    )


# ==========================================================================
# SOP
# ==========================================================================

@router.get(
    "/sop",
    response_model=list[SopDefinitionResponse],
    summary="List SOP step definitions",
)
async def list_sop_definitions(
    current_user: CurrentUser,
    db: DbSession,
    tier: Optional[ProjectTier] = Query(None, description="Filter by tier"),
) -> list[SopDefinitionResponse]:
    definitions = await SopService(db).list_definitions(tier)
    return [SopDefinitionResponse.model_validate(d) for d in definitions]


@router.get(
    "/projects/{project_id}/sop",
    response_model=ProjectSopResponse,
    summary="Get a project's SOP progress",
    responses={404: {"description": "Project not found"}},
)
async def get_project_sop(
    project_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
) -> ProjectSopResponse:
    """Progress rows are created from the tier's steps on first read."""
    return await _project_sop(SopService(db), project_id)


@router.patch(
    "/projects/{project_id}/sop",
    response_model=ProjectSopResponse,
    summary="Update one SOP step",
    responses={
        403: {"description": "Founder or delivery lead required"},
        404: {"description": "Project or step not found"},
    },
)
async def update_project_sop(
    project_id: UUID,
    data: SopStepUpdate,
    current_user: DeliveryUser,
    db: DbSession,
    bus: Bus,
) -> ProjectSopResponse:
    """
    Change a step's status, blockers, missing inputs or notes.

    Starting a step makes it the project's current step and sets its
    expected completion.
    """
    service = SopService(db, bus)
    await service.get_progress(project_id)
    await service.update_step(
        project_id,
        data.step_key,
        status=data.status,
        blockers=data.blockers,
        missing_inputs=data.missing_inputs,
        notes=data.notes,
    )
    return await _project_sop(service, project_id)


# ==========================================================================
# Client Requests
# ==========================================================================

@router.post(
    "/projects/{project_id}/client-requests",
    response_model=ClientRequestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Log a request sent to the client",
    responses={404: {"description": "Project not found"}},
)
async def create_client_request(
    project_id: UUID,
    data: ClientRequestCreate,
    current_user: DeliveryUser,
    db: DbSession,
    bus: Bus,
) -> ClientRequestResponse:
    request = await SopService(db, bus).record_client_request(
        project_id,
        data.request_type,
        data.description,
    )
    return ClientRequestResponse.model_validate(request)


@router.post(
    "/client-requests/{request_id}/responded",
    response_model=ClientRequestResponse,
    summary="Mark a client request as answered",
    responses={404: {"description": "Client request not found"}},
)
async def mark_client_request_responded(
    request_id: UUID,
    current_user: DeliveryUser,
    db: DbSession,
    bus: Bus,
) -> ClientRequestResponse:
    request = await SopService(db, bus).mark_responded(request_id)
    return ClientRequestResponse.model_validate(request)


# ==========================================================================
# Delivery Board
# ==========================================================================

@router.get(
    "/delivery",
    response_model=DeliveryResponse,
    summary="Projects in onboarding or delivery",
)
async def get_delivery_board(
    current_user: LeadUser,
    db: DbSession,
    status_filter: Optional[ProjectStatus] = Query(None, alias="status", description="Filter by status"),
) -> DeliveryResponse:
    """Blocked projects first, then the most drifting, then the least complete."""
    entries = await SopService(db).delivery_board(status_filter)
    return DeliveryResponse(
        projects=[_delivery_response(e) for e in entries],
        summary=DeliverySummary(**summarize_board(entries)),
    )
