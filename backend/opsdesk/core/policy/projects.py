"""
Project Service - the only writer of project stage and status.

Stage changes go through the transition guard; a forced skip persists the
guard's escalation draft through the cascade. Every stage or status change
leaves a system note on the project.
"""

from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.core.events import EventBus, EventType
from opsdesk.core.exceptions import NotFoundError, PolicyBlocked, ValidationError
from opsdesk.core.models import (
    Approval,
    ApprovalStatus,
    Escalation,
    IcpLevel,
    NoteType,
    Project,
    ProjectNote,
    ProjectStage,
    ProjectStatus,
    ProjectTier,
)
from opsdesk.core.policy.catalog import tier_for_approval
from opsdesk.core.policy.escalation import SYSTEM_AUTHOR, EscalationCascade
from opsdesk.core.policy.stages import TransitionDecision, TransitionVerdict, evaluate_transition

logger = structlog.get_logger()

# Plain fields a PATCH may set directly
EDITABLE_FIELDS = (
    "client_name",
    "icp_level",
    "sop_step_key",
    "blockers",
    "decision_maker",
    "trust_score",
    "assigned_sales_lead",
    "assigned_delivery_lead",
)


def _label(stage: ProjectStage) -> str:
    return stage.value.replace("_", " ")


def _client_name_from_response(response: Any) -> Optional[str]:
    if isinstance(response, dict):
        return response.get("name") or response.get("client_name")
    return None


class ProjectService:
    """Create and mutate projects, publishing events after each commit."""

    def __init__(self, db: AsyncSession, bus: EventBus):
        self.db = db
        self.bus = bus

    async def get(self, project_id: UUID) -> Project:
        project = await self.db.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        return project

    async def create(
        self,
        client_email: str,
        tier: ProjectTier,
        stage: ProjectStage = ProjectStage.LEAD,
        client_name: Optional[str] = None,
        icp_level: Optional[IcpLevel] = None,
        sop_step_key: Optional[str] = None,
    ) -> Project:
        project = Project(
            client_email=client_email.strip().lower(),
            tier=tier,
            stage=stage,
            status=ProjectStatus.ACTIVE,
            client_name=client_name,
            icp_level=icp_level,
            sop_step_key=sop_step_key,
            blockers=[],
        )
        self.db.add(project)
        await self.db.commit()
        await self.db.refresh(project)

        self.bus.emit(
            EventType.PROJECT_CREATED,
            id=str(project.id),
            client_email=project.client_email,
            tier=project.tier.value,
            stage=project.stage.value,
            status=project.status.value,
        )
        logger.info("project_created", project_id=str(project.id), client_email=project.client_email)
        return project

    async def update(
        self,
        project_id: UUID,
        author: str,
        stage: Optional[ProjectStage] = None,
        override: bool = False,
        fit_decision_rationale: Optional[str] = None,
        status: Optional[ProjectStatus] = None,
        **fields: Any,
    ) -> tuple[Project, Optional[Escalation]]:
        """
        Apply a field/stage/status update.

        The transition guard runs before anything is written, so a rejected
        stage move leaves the project untouched.

        Raises:
            NotFoundError: Unknown project
            ValidationError: Checkpoint rationale missing or unknown field
            PolicyBlocked: Skip or regression without override
        """
        project = await self.get(project_id)

        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        decision = None
        if stage is not None and stage != project.stage:
            decision = evaluate_transition(project.stage, stage, override, fit_decision_rationale)
            if not decision.allowed:
                self._report_refused_transition(project, stage, decision)
            if decision.verdict == TransitionVerdict.REJECTED_CHECKPOINT:
                raise ValidationError(decision.reason)
            if decision.verdict == TransitionVerdict.BLOCKED:
                raise PolicyBlocked(decision.reason)

        for name, value in fields.items():
            setattr(project, name, value)

        notes_added = 0
        escalation = None
        cascade = EscalationCascade(self.db, self.bus)

        if decision is not None:
            old_stage = project.stage
            project.stage = stage
            self.db.add(ProjectNote(
                project_id=project.id,
                author=SYSTEM_AUTHOR,
                content=f"Stage changed from {_label(old_stage)} to {_label(stage)}",
                note_type=NoteType.STAGE_CHANGE,
            ))
            notes_added += 1

            if fit_decision_rationale and fit_decision_rationale.strip():
                self.db.add(ProjectNote(
                    project_id=project.id,
                    author=author,
                    content=f"Fit decision rationale: {fit_decision_rationale.strip()}",
                    note_type=NoteType.NOTE,
                ))
                notes_added += 1

            if decision.escalation is not None:
                escalation = await cascade.synthesize_stage_skip(
                    project, decision.escalation, commit=False
                )

            logger.info(
                "project_stage_changed",
                project_id=str(project.id),
                from_stage=old_stage.value,
                to_stage=stage.value,
                override=override,
                escalation_id=str(escalation.id) if escalation else None,
            )

        if status is not None and status != project.status:
            old_status = project.status
            project.status = status
            self.db.add(ProjectNote(
                project_id=project.id,
                author=SYSTEM_AUTHOR,
                content=f"Status changed from {old_status.value} to {status.value}",
                note_type=NoteType.STATUS_CHANGE,
            ))
            notes_added += 1

        await self.db.commit()
        await self.db.refresh(project)
        cascade.publish_pending()

        self.bus.emit(
            EventType.PROJECT_UPDATED,
            id=str(project.id),
            client_email=project.client_email,
            stage=project.stage.value,
            status=project.status.value,
        )
        if notes_added:
            self.bus.emit(EventType.PROJECT_NOTE_ADDED, project_id=str(project.id))

        return project, escalation

    def _report_refused_transition(
        self,
        project: Project,
        to_stage: ProjectStage,
        decision: TransitionDecision,
    ) -> None:
        """Nothing was written, so the event goes out immediately."""
        self.bus.emit(
            EventType.PROJECT_TRANSITION_BLOCKED,
            id=str(project.id),
            from_stage=project.stage.value,
            to_stage=to_stage.value,
            verdict=decision.verdict.value,
            reason=decision.reason,
        )
        logger.info(
            "project_transition_refused",
            project_id=str(project.id),
            from_stage=project.stage.value,
            to_stage=to_stage.value,
            verdict=decision.verdict.value,
        )

    async def add_note(
        self,
        project_id: UUID,
        author: str,
        content: str,
        note_type: NoteType = NoteType.NOTE,
    ) -> ProjectNote:
        project = await self.get(project_id)
        if not content or not content.strip():
            raise ValidationError("Note content is required")

        note = ProjectNote(
            project_id=project.id,
            author=author,
            content=content.strip(),
            note_type=note_type,
        )
        self.db.add(note)
        await self.db.commit()

        self.bus.emit(EventType.PROJECT_NOTE_ADDED, project_id=str(project.id), note_id=str(note.id))
        return note

    # ==========================================================================
    # Orphaned Approvals
    # ==========================================================================

    async def list_orphaned_approvals(self) -> list[dict[str, Any]]:
        """Pending approvals whose client has no project yet."""
        has_project = select(Project.id).where(Project.client_email == Approval.client_email).exists()
        result = await self.db.execute(
            select(Approval)
            .where(Approval.status == ApprovalStatus.PENDING, ~has_project)
            .order_by(Approval.created_at.asc())
        )
        return [
            {
                "approval_id": approval.id,
                "client_email": approval.client_email,
                "agent_key": approval.agent_key,
                "stage_name": approval.stage_name,
                "recommended_stage": approval.recommended_stage,
                "tier": tier_for_approval(approval.agent_response, approval.agent_payload),
                "client_name": _client_name_from_response(approval.agent_response),
                "created_at": approval.created_at,
            }
            for approval in result.scalars().all()
        ]

    async def create_from_approval(
        self,
        approval_id: UUID,
        tier: Optional[ProjectTier] = None,
        stage: ProjectStage = ProjectStage.LEAD,
    ) -> Project:
        """Human-authorized project creation for an orphaned approval's client."""
        approval = await self.db.get(Approval, approval_id)
        if approval is None:
            raise NotFoundError("Approval", approval_id)

        existing = await self.db.execute(
            select(Project.id).where(Project.client_email == approval.client_email).limit(1)
        )
        if existing.scalar_one_or_none() is not None:
            raise PolicyBlocked(f"A project already exists for {approval.client_email}")

        return await self.create(
            client_email=approval.client_email,
            tier=tier or tier_for_approval(approval.agent_response, approval.agent_payload),
            stage=stage,
            client_name=_client_name_from_response(approval.agent_response),
        )
