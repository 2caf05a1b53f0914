"""
Ops Desk - Database Models
==========================

SQLAlchemy models for all entities.

Project state (stage/status) is owned by the Project row; approvals and
escalations reference a client or project but never mutate it directly.
All project state changes go through the guard and cascade in
``opsdesk.core.policy``.
"""

import enum
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from opsdesk.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ==========================================================================
# Enums
# ==========================================================================

class UserRole(str, enum.Enum):
    """Human roles with distinct permissions."""
    FOUNDER = "FOUNDER"
    SALES_LEAD = "SALES_LEAD"
    DELIVERY_LEAD = "DELIVERY_LEAD"
    CREATIVE_SPECIALIST = "CREATIVE_SPECIALIST"
    AI_OPERATOR = "AI_OPERATOR"


class ProjectTier(str, enum.Enum):
    """Service tiers (Launch / Growth / Scale)."""
    TIER_1 = "TIER_1"
    TIER_2 = "TIER_2"
    TIER_3 = "TIER_3"


class ProjectStage(str, enum.Enum):
    """Pipeline stages, in order."""
    LEAD = "LEAD"
    QUALIFIED = "QUALIFIED"
    DISCOVERY = "DISCOVERY"
    FIT_DECISION = "FIT_DECISION"
    PROPOSAL = "PROPOSAL"
    CLOSED = "CLOSED"
    ONBOARDING = "ONBOARDING"
    DELIVERY = "DELIVERY"
    COMPLETE = "COMPLETE"


class ProjectStatus(str, enum.Enum):
    """Operational status of a project, independent of stage."""
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    BLOCKED = "BLOCKED"
    COMPLETE = "COMPLETE"


class IcpLevel(str, enum.Enum):
    A = "A"
    B = "B"
    C = "C"


class CheckpointType(str, enum.Enum):
    """Category of human decision an approval represents."""
    PROPOSAL_REVIEW = "proposal_review"
    DISCOVERY_SUMMARY = "discovery_summary"
    TIER_EXECUTION = "tier_execution"
    QUALITY_CHECK = "quality_check"


class ApprovalStatus(str, enum.Enum):
    """Approval lifecycle. Only PENDING is non-terminal."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EDITED = "edited"


class EscalationLevel(str, enum.Enum):
    """Escalation severity, L1 < L2 < L3."""
    L1 = "L1"  # Informational
    L2 = "L2"  # Requires justified resolution
    L3 = "L3"  # Justified resolution + project auto-pause

    @property
    def rank(self) -> int:
        return int(self.value[1])

    @property
    def requires_notes(self) -> bool:
        return self in (EscalationLevel.L2, EscalationLevel.L3)


class EscalationCategory(str, enum.Enum):
    FINANCIAL = "FINANCIAL"
    SCOPE = "SCOPE"
    LEGAL_BRAND = "LEGAL_BRAND"
    RELATIONSHIP = "RELATIONSHIP"
    SYSTEM_CONFLICT = "SYSTEM_CONFLICT"
    OTHER = "OTHER"


class EscalationStatus(str, enum.Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"
    HALTED = "HALTED"


class PolicyAction(str, enum.Enum):
    BLOCKED = "blocked"
    AUTO_ESCALATED = "auto_escalated"


class NoteType(str, enum.Enum):
    NOTE = "note"
    INSTRUCTION = "instruction"
    STAGE_CHANGE = "stage_change"
    STATUS_CHANGE = "status_change"
    AGENT_TRIGGER = "agent_trigger"
    SYSTEM = "system"


class TriggerStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class SopStepStatus(str, enum.Enum):
    """Progress of one delivery SOP step on a project."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    SKIPPED = "skipped"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )


# ==========================================================================
# Models
# ==========================================================================

class User(Base, TimestampMixin):
    """Dashboard operator account."""

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    username: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        index=True,
        nullable=False,
    )
    display_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole),
        default=UserRole.CREATIVE_SPECIALIST,
        nullable=False,
    )
    password_hash: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    last_login: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<User {self.username} ({self.role.value})>"


class Project(Base, TimestampMixin):
    """
    A client engagement moving through the fixed pipeline.

    Never hard-deleted. Webhook refreshes may only touch client_name,
    icp_level and sop_step_key.
    """

    __tablename__ = "projects"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    client_email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    client_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    tier: Mapped[ProjectTier] = mapped_column(
        Enum(ProjectTier),
        nullable=False,
    )
    stage: Mapped[ProjectStage] = mapped_column(
        Enum(ProjectStage),
        default=ProjectStage.LEAD,
        nullable=False,
        index=True,
    )
    status: Mapped[ProjectStatus] = mapped_column(
        Enum(ProjectStatus),
        default=ProjectStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    icp_level: Mapped[Optional[IcpLevel]] = mapped_column(
        Enum(IcpLevel),
        nullable=True,
    )
    sop_step_key: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    blockers: Mapped[list[str]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )

    # Client record
    decision_maker: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    trust_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    assigned_sales_lead: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    assigned_delivery_lead: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<Project {self.client_email} {self.stage.value}/{self.status.value}>"


class Approval(Base, TimestampMixin):
    """
    Agent output waiting for (or having received) a human decision.

    Status moves pending -> approved/rejected/edited exactly once.
    """

    __tablename__ = "approvals"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    client_email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    agent_key: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    stage_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    checkpoint_type: Mapped[CheckpointType] = mapped_column(
        Enum(CheckpointType),
        nullable=False,
    )
    agent_payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    agent_response: Mapped[Any] = mapped_column(
        JSON,
        nullable=False,
    )
    status: Mapped[ApprovalStatus] = mapped_column(
        Enum(ApprovalStatus),
        default=ApprovalStatus.PENDING,
        nullable=False,
        index=True,
    )
    recommended_stage: Mapped[Optional[ProjectStage]] = mapped_column(
        Enum(ProjectStage),
        nullable=True,
    )  # Suggestion only, advancing still needs a human

    # Review
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    admin_comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    edited_response: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Approval {self.agent_key} {self.client_email} [{self.status.value}]>"


class Escalation(Base, TimestampMixin):
    """Issue flagged for human judgment, linked to a project."""

    __tablename__ = "escalations"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id"),
        nullable=False,
        index=True,
    )
    level: Mapped[EscalationLevel] = mapped_column(
        Enum(EscalationLevel),
        nullable=False,
        index=True,
    )
    category: Mapped[EscalationCategory] = mapped_column(
        Enum(EscalationCategory),
        nullable=False,
    )
    status: Mapped[EscalationStatus] = mapped_column(
        Enum(EscalationStatus),
        default=EscalationStatus.OPEN,
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    decision_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Escalation {self.level.value}/{self.category.value} [{self.status.value}]>"


class PolicyAuditEntry(Base):
    """
    Immutable record of a policy block or auto-escalation.

    Append-only: no update path exists anywhere in the codebase.
    """

    __tablename__ = "approval_policy_audit"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    approval_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("approvals.id"),
        nullable=True,
        index=True,
    )
    escalation_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("escalations.id"),
        nullable=True,
    )
    policy_action: Mapped[PolicyAction] = mapped_column(
        Enum(PolicyAction),
        nullable=False,
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<PolicyAuditEntry {self.policy_action.value}: {self.reason[:40]}>"


class ProjectNote(Base):
    """Append-only narrative entry on a project (activity feed)."""

    __tablename__ = "project_notes"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id"),
        nullable=False,
        index=True,
    )
    author: Mapped[str] = mapped_column(String(100), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    note_type: Mapped[NoteType] = mapped_column(
        Enum(NoteType),
        default=NoteType.NOTE,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class Agent(Base, TimestampMixin):
    """Registered outbound workflow agent."""

    __tablename__ = "agents"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    agent_key: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        index=True,
        nullable=False,
    )
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    webhook_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    last_event_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    total_events: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class AgentTrigger(Base):
    """Outbound request to start an agent for a project."""

    __tablename__ = "agent_triggers"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id"),
        nullable=False,
        index=True,
    )
    agent_key: Mapped[str] = mapped_column(String(100), nullable=False)
    trigger_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[TriggerStatus] = mapped_column(
        Enum(TriggerStatus),
        default=TriggerStatus.PENDING,
        nullable=False,
    )
    response_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    triggered_by: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class WebhookEvent(Base):
    """Raw log of every inbound agent webhook delivery."""

    __tablename__ = "webhook_events"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    agent_key: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    client_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payload: Mapped[Any] = mapped_column(JSON, nullable=False)
    response_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class SopDefinition(Base):
    """One step of a tier's standard delivery procedure."""

    __tablename__ = "sop_definitions"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    tier: Mapped[ProjectTier] = mapped_column(
        Enum(ProjectTier),
        nullable=False,
        index=True,
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    step_key: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        index=True,
        nullable=False,
    )
    step_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expected_duration_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    required_inputs: Mapped[list[str]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<SopDefinition {self.tier.value} #{self.step_order} {self.step_key}>"


class SopProgress(Base):
    """A project's progress on one SOP step."""

    __tablename__ = "sop_progress"
    __table_args__ = (UniqueConstraint("project_id", "step_key"),)

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id"),
        nullable=False,
        index=True,
    )
    step_key: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("sop_definitions.step_key"),
        nullable=False,
    )
    status: Mapped[SopStepStatus] = mapped_column(
        Enum(SopStepStatus),
        default=SopStepStatus.PENDING,
        nullable=False,
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expected_completion_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    blockers: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    missing_inputs: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class ClientRequest(Base):
    """
    Something the delivery team asked the client for.

    Unanswered while responded_at is NULL; feeds the responsiveness score.
    """

    __tablename__ = "client_requests"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id"),
        nullable=False,
        index=True,
    )
    request_type: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
