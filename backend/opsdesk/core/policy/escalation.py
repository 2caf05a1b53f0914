"""
Escalation Cascade - side effects of escalation lifecycle events.

State machine:
    OPEN -> RESOLVED
    OPEN -> HALTED

Cascades:
- L3 creation pauses the linked project (idempotent)
- L3 resolution with unpause reactivates the project
- L2/L3 cannot leave OPEN without decision notes

Events are queued while the unit of work is open and published only after
commit, so a rolled-back change never reaches a subscriber.
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.core.events import DomainEvent, EventBus, EventType
from opsdesk.core.exceptions import NotFoundError, PolicyBlocked, ValidationError
from opsdesk.core.models import (
    Escalation,
    EscalationCategory,
    EscalationLevel,
    EscalationStatus,
    NoteType,
    Project,
    ProjectNote,
    ProjectStatus,
)
from opsdesk.core.policy.stages import EscalationDraft

logger = structlog.get_logger()

SYSTEM_AUTHOR = "System"
L3_PAUSE_REASON = "L3 escalation auto-pause"
L3_UNPAUSE_REASON = "L3 escalation resolved, project unpaused"


class EscalationCascade:
    """
    Creates and resolves escalations together with their project side effects.

    Usage:
        cascade = EscalationCascade(db, bus)
        escalation = await cascade.create(project.id, EscalationLevel.L3, ...)
    """

    def __init__(self, db: AsyncSession, bus: EventBus):
        self.db = db
        self.bus = bus
        self._pending: list[DomainEvent] = []

    # ==========================================================================
    # Event Queue
    # ==========================================================================

    def _queue(self, event_type: EventType, **data: Any) -> None:
        self._pending.append(DomainEvent(type=event_type, data=data))

    def publish_pending(self) -> int:
        """Publish queued events. Call only after the transaction committed."""
        events, self._pending = self._pending, []
        for event in events:
            self.bus.publish(event)
        return len(events)

    def discard_pending(self) -> None:
        self._pending = []

    # ==========================================================================
    # Creation
    # ==========================================================================

    async def create(
        self,
        project_id: UUID,
        level: EscalationLevel,
        category: EscalationCategory,
        title: str,
        description: Optional[str] = None,
        commit: bool = True,
    ) -> Escalation:
        """
        Create an OPEN escalation; L3 pauses the project before returning.

        With ``commit=False`` the caller owns the transaction and must call
        ``publish_pending()`` after committing.

        Raises:
            NotFoundError: If the project does not exist
        """
        project = await self.db.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project", project_id)

        escalation = Escalation(
            project_id=project.id,
            level=level,
            category=category,
            status=EscalationStatus.OPEN,
            title=title,
            description=description,
        )
        self.db.add(escalation)
        await self.db.flush()

        self._queue(
            EventType.ESCALATION_CREATED,
            id=str(escalation.id),
            project_id=str(project.id),
            level=level.value,
            category=category.value,
            title=title,
        )

        if level == EscalationLevel.L3:
            await self._set_project_status(
                project,
                ProjectStatus.PAUSED,
                reason=L3_PAUSE_REASON,
                only_from=None,
            )

        logger.info(
            "escalation_created",
            escalation_id=str(escalation.id),
            project_id=str(project.id),
            level=level.value,
            category=category.value,
        )

        if commit:
            await self.db.commit()
            self.publish_pending()

        return escalation

    async def synthesize_stage_skip(
        self,
        project: Project,
        draft: EscalationDraft,
        commit: bool = True,
    ) -> Escalation:
        """Persist the guard's stage-skip draft as an OPEN escalation."""
        return await self.create(
            project.id,
            draft.level,
            draft.category,
            draft.title,
            draft.description,
            commit=commit,
        )

    # ==========================================================================
    # Resolution
    # ==========================================================================

    async def resolve(
        self,
        escalation_id: UUID,
        status: EscalationStatus,
        decision_notes: Optional[str],
        resolved_by: str,
        unpause: bool = False,
    ) -> Escalation:
        """
        Move an OPEN escalation to RESOLVED or HALTED.

        All validation happens before any write; a rejected request changes
        nothing and publishes nothing.

        Raises:
            ValidationError: Bad target status or missing L2/L3 notes
            PolicyBlocked: Escalation is no longer OPEN
            NotFoundError: Unknown escalation
        """
        if status not in (EscalationStatus.RESOLVED, EscalationStatus.HALTED):
            raise ValidationError("Invalid status. Must be RESOLVED or HALTED")

        escalation = await self.db.get(Escalation, escalation_id, populate_existing=True)
        if escalation is None:
            raise NotFoundError("Escalation", escalation_id)

        if escalation.status != EscalationStatus.OPEN:
            raise PolicyBlocked("Escalation is already resolved or halted")

        notes = decision_notes.strip() if decision_notes else None
        if escalation.level.requires_notes and not notes:
            raise ValidationError("Decision notes are required when resolving L2/L3 escalations")

        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(Escalation)
            .where(
                Escalation.id == escalation.id,
                Escalation.status == EscalationStatus.OPEN,
            )
            .values(
                status=status,
                decision_notes=notes,
                resolved_by=resolved_by,
                resolved_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # A concurrent resolve won between our read and the update
            raise PolicyBlocked("Escalation is already resolved or halted")

        await self.db.refresh(escalation)

        if (
            unpause
            and escalation.level == EscalationLevel.L3
            and status == EscalationStatus.RESOLVED
        ):
            project = await self.db.get(Project, escalation.project_id)
            if project is not None:
                await self._set_project_status(
                    project,
                    ProjectStatus.ACTIVE,
                    reason=L3_UNPAUSE_REASON,
                    only_from=ProjectStatus.PAUSED,
                )

        self._queue(
            EventType.ESCALATION_RESOLVED,
            id=str(escalation.id),
            project_id=str(escalation.project_id),
            level=escalation.level.value,
            status=escalation.status.value,
        )

        await self.db.commit()
        self.publish_pending()

        logger.info(
            "escalation_resolved",
            escalation_id=str(escalation.id),
            status=status.value,
            resolved_by=resolved_by,
            unpause=unpause,
        )
        return escalation

    # ==========================================================================
    # Project Side Effects
    # ==========================================================================

    async def _set_project_status(
        self,
        project: Project,
        new_status: ProjectStatus,
        reason: str,
        only_from: Optional[ProjectStatus],
    ) -> bool:
        """
        Compare-and-swap the project status.

        Returns False (and emits nothing) when the project is already in
        ``new_status`` or, with ``only_from``, is not in that status.
        """
        # Pending ORM changes on the project would be lost by the refresh below
        await self.db.flush()

        conditions = [Project.id == project.id, Project.status != new_status]
        if only_from is not None:
            conditions.append(Project.status == only_from)

        result = await self.db.execute(
            update(Project)
            .where(*conditions)
            .values(status=new_status, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False

        old_status = project.status
        await self.db.refresh(project)

        self.db.add(ProjectNote(
            project_id=project.id,
            author=SYSTEM_AUTHOR,
            content=f"Status changed from {old_status.value} to {new_status.value} ({reason})",
            note_type=NoteType.STATUS_CHANGE,
        ))
        self._queue(
            EventType.PROJECT_UPDATED,
            id=str(project.id),
            status=new_status.value,
            reason=reason,
        )
        logger.info(
            "project_status_cascade",
            project_id=str(project.id),
            old_status=old_status.value,
            new_status=new_status.value,
            reason=reason,
        )
        return True
