"""
Ops Desk - Pydantic Schemas
===========================

Request and response schemas for API validation.
"""

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from opsdesk.core.models import (
    ApprovalStatus,
    CheckpointType,
    EscalationCategory,
    EscalationLevel,
    EscalationStatus,
    IcpLevel,
    NoteType,
    PolicyAction,
    ProjectStage,
    ProjectStatus,
    ProjectTier,
    SopStepStatus,
    TriggerStatus,
    UserRole,
)


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class TimestampSchema(BaseSchema):
    """Schema with timestamp fields."""

    created_at: datetime
    updated_at: datetime


# ==========================================================================
# Auth Schemas
# ==========================================================================

class UserLogin(BaseSchema):
    """Schema for user login."""

    username: str = Field(min_length=1, max_length=100)
    password: str


class UserCreate(BaseSchema):
    """Schema for creating a dashboard user (founder only)."""

    username: str = Field(min_length=3, max_length=100)
    display_name: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=8, max_length=100)
    role: UserRole = UserRole.CREATIVE_SPECIALIST

    @field_validator("username")
    @classmethod
    def normalize_username(cls, v: str) -> str:
        return v.lower()


class UserSignup(BaseSchema):
    """
    Self-service signup. The account starts inactive until a founder
    approves it.
    """

    username: str = Field(pattern=r"^[a-z0-9._]{3,30}$")
    display_name: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=8, max_length=100)
    role: UserRole


class SignupResponse(BaseSchema):
    """Schema for accepted signup."""

    id: UUID
    username: str
    message: str = "Account created. Awaiting admin approval."


class UserApprove(BaseSchema):
    """Schema for approving a pending account, optionally with another role."""

    role: Optional[UserRole] = None


class UserUpdate(BaseSchema):
    """Schema for updating a user (founder only)."""

    display_name: Optional[str] = Field(None, min_length=1, max_length=255)
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None


class UserResponse(TimestampSchema):
    """Schema for user in responses (no password)."""

    id: UUID
    username: str
    display_name: str
    role: UserRole
    is_active: bool
    last_login: Optional[datetime] = None


class TokenResponse(BaseSchema):
    """Schema for authentication tokens."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds until access token expires


# ==========================================================================
# Project Schemas
# ==========================================================================

class ProjectCreate(BaseSchema):
    """Schema for creating a project."""

    client_email: EmailStr
    tier: ProjectTier
    stage: ProjectStage = ProjectStage.LEAD
    client_name: Optional[str] = Field(None, max_length=255)
    icp_level: Optional[IcpLevel] = None
    sop_step_key: Optional[str] = Field(None, max_length=100)


class ProjectUpdate(BaseSchema):
    """
    Schema for updating a project.

    ``stage`` goes through the transition guard: skips and regressions need
    ``override``; FIT_DECISION -> PROPOSAL needs ``fit_decision_rationale``.
    """

    stage: Optional[ProjectStage] = None
    override: bool = False
    fit_decision_rationale: Optional[str] = None
    status: Optional[ProjectStatus] = None
    client_name: Optional[str] = Field(None, max_length=255)
    icp_level: Optional[IcpLevel] = None
    sop_step_key: Optional[str] = Field(None, max_length=100)
    blockers: Optional[list[str]] = None
    decision_maker: Optional[str] = Field(None, max_length=255)
    trust_score: Optional[int] = Field(None, ge=0, le=100)
    assigned_sales_lead: Optional[str] = Field(None, max_length=100)
    assigned_delivery_lead: Optional[str] = Field(None, max_length=100)


class ProjectResponse(TimestampSchema):
    """Schema for project in responses."""

    id: UUID
    client_email: str
    client_name: Optional[str] = None
    tier: ProjectTier
    stage: ProjectStage
    status: ProjectStatus
    icp_level: Optional[IcpLevel] = None
    sop_step_key: Optional[str] = None
    blockers: list[str] = []
    decision_maker: Optional[str] = None
    trust_score: Optional[int] = None
    assigned_sales_lead: Optional[str] = None
    assigned_delivery_lead: Optional[str] = None


class ProjectListResponse(BaseSchema):
    """Schema for project list."""

    items: list[ProjectResponse]
    total: int


class NoteCreate(BaseSchema):
    """Schema for adding a project note."""

    content: str = Field(min_length=1)
    note_type: NoteType = NoteType.NOTE

    @field_validator("note_type")
    @classmethod
    def human_note_types(cls, v: NoteType) -> NoteType:
        if v not in (NoteType.NOTE, NoteType.INSTRUCTION):
            raise ValueError("note_type must be note or instruction")
        return v


class NoteResponse(BaseSchema):
    """Schema for project note in responses."""

    id: UUID
    project_id: UUID
    author: str
    content: str
    note_type: NoteType
    created_at: datetime


class ProjectUpdateResponse(BaseSchema):
    """Updated project plus the stage-skip escalation, if one was raised."""

    project: ProjectResponse
    escalation_id: Optional[UUID] = None


class PendingProjectResponse(BaseSchema):
    """A pending approval whose client has no project yet."""

    approval_id: UUID
    client_email: str
    agent_key: str
    stage_name: str
    recommended_stage: Optional[ProjectStage] = None
    tier: ProjectTier
    client_name: Optional[str] = None
    created_at: datetime


class ProjectFromApproval(BaseSchema):
    """Schema for authorizing project creation from an orphaned approval."""

    tier: Optional[ProjectTier] = None
    stage: ProjectStage = ProjectStage.LEAD


# ==========================================================================
# Agent Registry Schemas
# ==========================================================================

class AgentUpdate(BaseSchema):
    """Schema for configuring a registered agent."""

    is_active: Optional[bool] = None
    category: Optional[str] = Field(None, min_length=1, max_length=100)
    webhook_url: Optional[str] = Field(None, max_length=2000)

    @field_validator("webhook_url")
    @classmethod
    def http_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("webhook_url must be an http(s) URL")
        return v


class AgentResponse(TimestampSchema):
    """Schema for agent in responses."""

    id: UUID
    agent_key: str
    display_name: str
    category: str
    is_active: bool
    webhook_url: Optional[str] = None
    last_event_at: Optional[datetime] = None
    total_events: int


# ==========================================================================
# Agent Trigger Schemas
# ==========================================================================

class TriggerAgentRequest(BaseSchema):
    """Schema for triggering an agent for a project."""

    agent_key: str = Field(min_length=1, max_length=100)
    payload: Optional[dict[str, Any]] = None


class AgentTriggerResponse(BaseSchema):
    """Schema for agent trigger in responses."""

    id: UUID
    project_id: UUID
    agent_key: str
    trigger_payload: dict[str, Any]
    status: TriggerStatus
    response_status: Optional[int] = None
    error_message: Optional[str] = None
    triggered_by: str
    created_at: datetime


class TriggerResult(BaseSchema):
    """Trigger outcome with a human-readable message."""

    trigger: AgentTriggerResponse
    message: str


# ==========================================================================
# Approval Schemas
# ==========================================================================

class ApprovalResponse(TimestampSchema):
    """Schema for approval in responses."""

    id: UUID
    client_email: str
    agent_key: str
    stage_name: str
    checkpoint_type: CheckpointType
    agent_payload: dict[str, Any] = {}
    agent_response: Any = None
    status: ApprovalStatus
    recommended_stage: Optional[ProjectStage] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    admin_comments: Optional[str] = None
    edited_response: Any = None
    sent_at: Optional[datetime] = None


class ApprovalDecision(BaseSchema):
    """Schema for approving, rejecting or editing an approval."""

    status: ApprovalStatus
    admin_comments: Optional[str] = None
    edited_response: Any = None

    @field_validator("status")
    @classmethod
    def decision_status(cls, v: ApprovalStatus) -> ApprovalStatus:
        if v == ApprovalStatus.PENDING:
            raise ValueError("status must be approved, rejected or edited")
        return v


class ApprovalDecisionResponse(BaseSchema):
    """Decided approval plus the auto-escalation, if one was raised."""

    approval: ApprovalResponse
    escalation_id: Optional[UUID] = None


class PolicyAuditResponse(BaseSchema):
    """Schema for policy audit entry in responses."""

    id: UUID
    approval_id: Optional[UUID] = None
    escalation_id: Optional[UUID] = None
    policy_action: PolicyAction
    reason: str
    created_at: datetime


# ==========================================================================
# Escalation Schemas
# ==========================================================================

class EscalationCreate(BaseSchema):
    """Schema for raising an escalation."""

    project_id: UUID
    level: EscalationLevel
    category: EscalationCategory
    title: str = Field(min_length=1, max_length=500)
    description: Optional[str] = None


class EscalationResolve(BaseSchema):
    """Schema for resolving or halting an escalation."""

    status: EscalationStatus
    decision_notes: Optional[str] = None
    unpause_project: bool = False


class EscalationResponse(TimestampSchema):
    """Schema for escalation in responses."""

    id: UUID
    project_id: UUID
    level: EscalationLevel
    category: EscalationCategory
    status: EscalationStatus
    title: str
    description: Optional[str] = None
    decision_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None


class EscalationDetailResponse(BaseSchema):
    """Escalation with its linked project."""

    escalation: EscalationResponse
    project: Optional[ProjectResponse] = None


class ProjectDetailResponse(BaseSchema):
    """Project with everything linked to it."""

    project: ProjectResponse
    approvals: list[ApprovalResponse]
    escalations: list[EscalationResponse]
    notes: list[NoteResponse]
    triggers: list[AgentTriggerResponse]


# ==========================================================================
# Webhook Schemas
# ==========================================================================

class AgentWebhookPayload(BaseSchema):
    """Inbound delivery from an outbound workflow agent."""

    email: EmailStr
    payload: Optional[dict[str, Any]] = None
    response: Any
    tier_hint: Optional[str] = None

    @field_validator("response")
    @classmethod
    def response_required(cls, v: Any) -> Any:
        if v is None or v == "" or v == {}:
            raise ValueError("response is required")
        return v


class WebhookAccepted(BaseSchema):
    """Schema for accepted webhook delivery."""

    success: bool = True
    approval_id: UUID
    message: str = "Approval created successfully"


# ==========================================================================
# Delivery Schemas
# ==========================================================================

class SopDefinitionResponse(BaseSchema):
    """One step of a tier's delivery procedure."""

    id: UUID
    tier: ProjectTier
    step_order: int
    step_key: str
    step_name: str
    description: Optional[str] = None
    expected_duration_hours: int
    required_inputs: list[str] = []


class SopStepResponse(BaseSchema):
    """A project's progress on one step, with the step's definition."""

    step_key: str
    step_order: int
    step_name: str
    description: Optional[str] = None
    expected_duration_hours: int
    required_inputs: list[str] = []
    status: SopStepStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expected_completion_at: Optional[datetime] = None
    blockers: list[str] = []
    missing_inputs: list[str] = []
    notes: Optional[str] = None
    is_drifting: bool = False


class SopStepUpdate(BaseSchema):
    """Schema for updating one SOP step."""

    step_key: str = Field(min_length=1, max_length=100)
    status: Optional[SopStepStatus] = None
    blockers: Optional[list[str]] = None
    missing_inputs: Optional[list[str]] = None
    notes: Optional[str] = None


class ResponsivenessSummary(BaseSchema):
    """How quickly the client answers requests."""

    avg_response_hours: Optional[float] = None
    pending_requests: int = 0
    total_requests: int = 0
    responded_requests: int = 0


class ProjectSopResponse(BaseSchema):
    """A project's SOP progress."""

    project_id: UUID
    tier: ProjectTier
    current_step_key: Optional[str] = None
    steps: list[SopStepResponse]
    completion_percent: int
    responsiveness: ResponsivenessSummary


class ClientRequestCreate(BaseSchema):
    """Schema for logging a request sent to the client."""

    request_type: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None


class ClientRequestResponse(BaseSchema):
    """Schema for a client request in responses."""

    id: UUID
    project_id: UUID
    request_type: str
    description: Optional[str] = None
    requested_at: datetime
    responded_at: Optional[datetime] = None


class DeliveryProjectResponse(BaseSchema):
    """One project on the delivery board."""

    project: ProjectResponse
    total_steps: int
    completed_steps: int
    in_progress_steps: int
    blocked_steps: int
    completion_percent: int
    drifting_steps: int
    responsiveness: ResponsivenessSummary


class DeliverySummary(BaseSchema):
    """Counts across the delivery board."""

    total: int
    active: int
    blocked: int
    paused: int
    with_drift: int


class DeliveryResponse(BaseSchema):
    """Projects in onboarding or delivery."""

    projects: list[DeliveryProjectResponse]
    summary: DeliverySummary


# ==========================================================================
# Dashboard Schemas
# ==========================================================================

class DecisionQueueResponse(BaseSchema):
    """Everything waiting on a human, most urgent first."""

    escalations: list[EscalationResponse]
    approvals: list[ApprovalResponse]
    policy_alerts: list[PolicyAuditResponse]
    total: int


class ActivityItem(BaseSchema):
    """One entry in the merged activity feed."""

    kind: Literal["webhook", "trigger", "policy"]
    id: UUID
    created_at: datetime
    summary: str
    data: dict[str, Any] = {}


class MetricsResponse(BaseSchema):
    """Dashboard metrics."""

    funnel: dict[str, int]
    icp_distribution: dict[str, int]
    escalations_by_level: dict[str, int]
    escalations_by_category: dict[str, int]
    approvals_by_status: dict[str, int]
    projects_by_status: dict[str, int]
    agent_activity: list[dict[str, Any]]


class PolicyConfigResponse(BaseSchema):
    """Current policy configuration."""

    stages: list[ProjectStage]
    stage_actions: dict[str, str]
    stage_display_names: dict[str, str]
    stage_agents: dict[str, list[str]]
    repeated_rejection_threshold: int
    rationale_required_checkpoints: list[CheckpointType]
    legal_brand_keywords: list[str]
    tier_pricing: dict[str, dict[str, int]]


# ==========================================================================
# Common Response Schemas
# ==========================================================================

class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
    escalation_id: Optional[UUID] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    event_subscribers: int
