"""
Delivery SOP Service - per-tier delivery procedures and client responsiveness.

Each tier has an ordered list of SOP steps. A project's progress rows are
created lazily from its tier's definitions the first time they are read.
Starting a step stamps its expected completion from the step's duration;
an in-progress step past that time is drifting.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.core.events import EventBus, EventType
from opsdesk.core.exceptions import NotFoundError, ValidationError
from opsdesk.core.models import (
    ClientRequest,
    Project,
    ProjectStage,
    ProjectStatus,
    ProjectTier,
    SopDefinition,
    SopProgress,
    SopStepStatus,
    as_utc,
)

logger = structlog.get_logger()

DELIVERY_STAGES = (ProjectStage.ONBOARDING, ProjectStage.DELIVERY)


# ==========================================================================
# Default Procedures
# ==========================================================================

# (tier, order, step_key, name, description, expected hours, required inputs)
DEFAULT_SOP_STEPS: tuple[tuple[ProjectTier, int, str, str, str, int, tuple[str, ...]], ...] = (
    # Launch
    (ProjectTier.TIER_1, 1, "T1_KICKOFF", "Kickoff Call",
     "Initial meeting to align on goals, timeline, and deliverables",
     2, ("client_brief", "brand_assets")),
    (ProjectTier.TIER_1, 2, "T1_BRAND_SETUP", "Brand & Store Setup",
     "Configure store branding, theme, and basic settings",
     24, ("logo", "color_palette", "product_photos")),
    (ProjectTier.TIER_1, 3, "T1_PRODUCT_UPLOAD", "Product Upload",
     "Upload product catalog with descriptions, images, and pricing",
     48, ("product_spreadsheet", "product_images", "pricing_sheet")),
    (ProjectTier.TIER_1, 4, "T1_PAYMENT_SHIPPING", "Payment & Shipping",
     "Configure payment gateway and shipping rules",
     8, ("payment_credentials", "shipping_rates")),
    (ProjectTier.TIER_1, 5, "T1_QA_REVIEW", "QA Review",
     "Full quality check of store functionality, checkout flow, and mobile responsiveness",
     16, ()),
    (ProjectTier.TIER_1, 6, "T1_CLIENT_REVIEW", "Client Review",
     "Client walkthrough and feedback collection",
     48, ("client_feedback",)),
    (ProjectTier.TIER_1, 7, "T1_LAUNCH", "Launch",
     "Go live, DNS setup, launch checklist",
     4, ("domain_access", "launch_approval")),

    # Growth
    (ProjectTier.TIER_2, 1, "T2_KICKOFF", "Kickoff & Strategy",
     "Strategic alignment meeting covering goals, KPIs, and growth plan",
     4, ("client_brief", "brand_guidelines", "competitor_list")),
    (ProjectTier.TIER_2, 2, "T2_BRAND_DESIGN", "Custom Brand Design",
     "Custom theme design with brand identity integration",
     72, ("brand_assets", "design_preferences", "inspiration_links")),
    (ProjectTier.TIER_2, 3, "T2_STORE_BUILD", "Store Build & Config",
     "Full store build with custom sections and integrations",
     80, ("product_catalog", "integration_credentials")),
    (ProjectTier.TIER_2, 4, "T2_CONTENT", "Content & Copywriting",
     "Professional product descriptions, about page, and marketing copy",
     40, ("brand_voice_guide", "product_details")),
    (ProjectTier.TIER_2, 5, "T2_SEO_SETUP", "SEO & Analytics Setup",
     "SEO optimization, meta tags, Google Analytics, and tracking pixels",
     16, ("google_analytics_id", "social_pixels")),
    (ProjectTier.TIER_2, 6, "T2_EMAIL_MARKETING", "Email Marketing Setup",
     "Email platform integration, welcome flow, and abandoned cart recovery",
     24, ("email_platform_credentials",)),
    (ProjectTier.TIER_2, 7, "T2_QA_REVIEW", "QA & Performance Review",
     "Comprehensive QA, performance testing, and mobile optimization",
     24, ()),
    (ProjectTier.TIER_2, 8, "T2_CLIENT_REVIEW", "Client Review & Revisions",
     "Client walkthrough with up to 2 revision rounds",
     72, ("client_feedback",)),
    (ProjectTier.TIER_2, 9, "T2_LAUNCH", "Launch & Handoff",
     "Go live, training session, and documentation handoff",
     8, ("domain_access", "launch_approval")),

    # Scale
    (ProjectTier.TIER_3, 1, "T3_KICKOFF", "Strategic Discovery",
     "Deep-dive strategy session covering market positioning, competitive analysis, "
     "and growth roadmap",
     8, ("client_brief", "brand_guidelines", "competitor_analysis", "financial_targets")),
    (ProjectTier.TIER_3, 2, "T3_UX_DESIGN", "UX Research & Design",
     "User research, wireframing, and custom UX design system",
     120, ("brand_assets", "customer_personas", "user_research")),
    (ProjectTier.TIER_3, 3, "T3_DEVELOPMENT", "Custom Development",
     "Custom theme build, advanced integrations, and custom functionality",
     160, ("design_approved", "integration_specs", "api_credentials")),
    (ProjectTier.TIER_3, 4, "T3_CONTENT_STRATEGY", "Content Strategy & Creation",
     "Full content strategy, professional copywriting, and content calendar",
     80, ("brand_voice_guide", "product_details", "content_calendar_approval")),
    (ProjectTier.TIER_3, 5, "T3_MARKETING_STACK", "Marketing Stack Integration",
     "Full marketing automation, CRM integration, ad platform setup",
     40, ("marketing_platform_credentials", "crm_credentials", "ad_account_access")),
    (ProjectTier.TIER_3, 6, "T3_TESTING", "Testing & Optimization",
     "Load testing, A/B testing setup, conversion optimization",
     40, ()),
    (ProjectTier.TIER_3, 7, "T3_CLIENT_UAT", "Client UAT",
     "User acceptance testing with structured feedback process",
     80, ("client_testers", "test_scenarios")),
    (ProjectTier.TIER_3, 8, "T3_LAUNCH", "Launch & Go-Live",
     "Phased launch, monitoring, and immediate post-launch support",
     16, ("domain_access", "launch_approval", "monitoring_setup")),
    (ProjectTier.TIER_3, 9, "T3_POST_LAUNCH", "Post-Launch Optimization",
     "30-day post-launch monitoring, optimization, and training",
     120, ()),
)


# ==========================================================================
# Data Types
# ==========================================================================

@dataclass
class SopStep:
    """A progress row joined with its definition."""
    progress: SopProgress
    definition: SopDefinition

    def is_drifting(self, now: datetime) -> bool:
        expected = self.progress.expected_completion_at
        return (
            self.progress.status == SopStepStatus.IN_PROGRESS
            and expected is not None
            and as_utc(expected) < now
        )


@dataclass
class Responsiveness:
    """How quickly a client answers the delivery team's requests."""
    requests: list[ClientRequest] = field(default_factory=list)

    @property
    def pending(self) -> list[ClientRequest]:
        return [r for r in self.requests if r.responded_at is None]

    @property
    def responded(self) -> list[ClientRequest]:
        return [r for r in self.requests if r.responded_at is not None]

    @property
    def avg_response_hours(self) -> Optional[float]:
        answered = self.responded
        if not answered:
            return None
        total = sum(
            (as_utc(r.responded_at) - as_utc(r.requested_at)).total_seconds() / 3600
            for r in answered
        )
        return round(total / len(answered), 1)


@dataclass
class DeliveryEntry:
    """One project on the delivery board."""
    project: Project
    steps: list[SopStep]
    responsiveness: Responsiveness
    drifting_steps: int = 0

    def count(self, status: SopStepStatus) -> int:
        return sum(1 for step in self.steps if step.progress.status == status)

    @property
    def completion_percent(self) -> int:
        if not self.steps:
            return 0
        return round(self.count(SopStepStatus.COMPLETED) / len(self.steps) * 100)


# ==========================================================================
# Service
# ==========================================================================

class SopService:
    """
    Reads and advances delivery SOP progress.

    Usage:
        service = SopService(db, bus)
        steps = await service.get_progress(project_id)
    """

    def __init__(self, db: AsyncSession, bus: Optional[EventBus] = None):
        self.db = db
        self.bus = bus

    # ==========================================================================
    # Definitions
    # ==========================================================================

    async def seed_definitions(self) -> int:
        """Insert any default step that is missing. Returns the number added."""
        result = await self.db.execute(select(SopDefinition.step_key))
        existing = set(result.scalars().all())

        added = 0
        for tier, order, key, name, description, hours, inputs in DEFAULT_SOP_STEPS:
            if key in existing:
                continue
            self.db.add(SopDefinition(
                tier=tier,
                step_order=order,
                step_key=key,
                step_name=name,
                description=description,
                expected_duration_hours=hours,
                required_inputs=list(inputs),
            ))
            added += 1

        if added:
            await self.db.commit()
            logger.info("sop_definitions_seeded", added=added)
        return added

    async def list_definitions(self, tier: Optional[ProjectTier] = None) -> list[SopDefinition]:
        query = select(SopDefinition)
        if tier is not None:
            query = query.where(SopDefinition.tier == tier)
        result = await self.db.execute(
            query.order_by(SopDefinition.tier, SopDefinition.step_order)
        )
        return list(result.scalars().all())

    # ==========================================================================
    # Progress
    # ==========================================================================

    async def get_project(self, project_id: UUID) -> Project:
        project = await self.db.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        return project

    async def _load_steps(self, project_id: UUID) -> list[SopStep]:
        result = await self.db.execute(
            select(SopProgress, SopDefinition)
            .join(SopDefinition, SopProgress.step_key == SopDefinition.step_key)
            .where(SopProgress.project_id == project_id)
            .order_by(SopDefinition.step_order)
        )
        return [SopStep(progress=p, definition=d) for p, d in result.all()]

    async def get_progress(self, project_id: UUID) -> list[SopStep]:
        """
        Project's SOP steps in order, created from its tier's definitions on
        first read.

        Raises:
            NotFoundError: Unknown project
        """
        project = await self.get_project(project_id)
        steps = await self._load_steps(project.id)
        if steps:
            return steps

        definitions = await self.list_definitions(project.tier)
        if not definitions:
            return []

        for definition in definitions:
            self.db.add(SopProgress(
                project_id=project.id,
                step_key=definition.step_key,
                status=SopStepStatus.PENDING,
                blockers=[],
                missing_inputs=[],
            ))
        await self.db.commit()
        logger.info(
            "sop_progress_initialized",
            project_id=str(project.id),
            tier=project.tier.value,
            steps=len(definitions),
        )
        return await self._load_steps(project.id)

    async def update_step(
        self,
        project_id: UUID,
        step_key: str,
        status: Optional[SopStepStatus] = None,
        blockers: Optional[list[str]] = None,
        missing_inputs: Optional[list[str]] = None,
        notes: Optional[str] = None,
    ) -> SopStep:
        """
        Update one step.

        Starting a step stamps started_at and the expected completion (once);
        completing it stamps completed_at. The step being started becomes the
        project's current ``sop_step_key``.

        Raises:
            NotFoundError: Unknown project, or the step is not on this project
        """
        project = await self.get_project(project_id)

        result = await self.db.execute(
            select(SopProgress, SopDefinition)
            .join(SopDefinition, SopProgress.step_key == SopDefinition.step_key)
            .where(SopProgress.project_id == project.id, SopProgress.step_key == step_key)
        )
        row = result.first()
        if row is None:
            raise NotFoundError("SOP step", step_key)
        progress, definition = row

        now = datetime.now(timezone.utc)
        if status is not None:
            progress.status = status
            if status == SopStepStatus.IN_PROGRESS:
                if progress.started_at is None:
                    progress.started_at = now
                    progress.expected_completion_at = now + timedelta(
                        hours=definition.expected_duration_hours
                    )
                project.sop_step_key = step_key
            elif status == SopStepStatus.COMPLETED:
                progress.completed_at = now

        if blockers is not None:
            progress.blockers = blockers
        if missing_inputs is not None:
            progress.missing_inputs = missing_inputs
        if notes is not None:
            progress.notes = notes

        await self.db.commit()
        await self.db.refresh(progress)

        if self.bus is not None:
            self.bus.emit(
                EventType.SOP_UPDATED,
                project_id=str(project.id),
                step_key=step_key,
                status=progress.status.value,
            )
        logger.info(
            "sop_step_updated",
            project_id=str(project.id),
            step_key=step_key,
            status=progress.status.value,
        )
        return SopStep(progress=progress, definition=definition)

    # ==========================================================================
    # Client Responsiveness
    # ==========================================================================

    async def get_responsiveness(self, project_id: UUID) -> Responsiveness:
        result = await self.db.execute(
            select(ClientRequest)
            .where(ClientRequest.project_id == project_id)
            .order_by(ClientRequest.requested_at.desc())
        )
        return Responsiveness(requests=list(result.scalars().all()))

    async def record_client_request(
        self,
        project_id: UUID,
        request_type: str,
        description: Optional[str] = None,
    ) -> ClientRequest:
        project = await self.get_project(project_id)
        if not request_type or not request_type.strip():
            raise ValidationError("request_type is required")

        request = ClientRequest(
            project_id=project.id,
            request_type=request_type.strip(),
            description=description,
            requested_at=datetime.now(timezone.utc),
        )
        self.db.add(request)
        await self.db.commit()
        await self.db.refresh(request)
        self._emit_request(request)
        return request

    async def mark_responded(self, request_id: UUID) -> ClientRequest:
        """
        Stamp the client's answer. Answering twice keeps the first time.

        Raises:
            NotFoundError: Unknown request
        """
        request = await self.db.get(ClientRequest, request_id)
        if request is None:
            raise NotFoundError("Client request", request_id)

        if request.responded_at is None:
            request.responded_at = datetime.now(timezone.utc)
            await self.db.commit()
            await self.db.refresh(request)
            self._emit_request(request)
        return request

    def _emit_request(self, request: ClientRequest) -> None:
        if self.bus is None:
            return
        self.bus.emit(
            EventType.CLIENT_REQUEST_UPDATED,
            id=str(request.id),
            project_id=str(request.project_id),
            request_type=request.request_type,
            responded=request.responded_at is not None,
        )

    # ==========================================================================
    # Delivery Board
    # ==========================================================================

    async def delivery_board(self, status: Optional[ProjectStatus] = None) -> list[DeliveryEntry]:
        """
        Onboarding and delivery projects with SOP and responsiveness figures.

        Ordered blocked first, then most drifting steps, then least complete.
        """
        query = select(Project).where(Project.stage.in_(DELIVERY_STAGES))
        if status is not None:
            query = query.where(Project.status == status)
        projects = (await self.db.execute(query)).scalars().all()

        now = datetime.now(timezone.utc)
        entries: list[DeliveryEntry] = []
        for project in projects:
            steps = await self._load_steps(project.id)
            entries.append(DeliveryEntry(
                project=project,
                steps=steps,
                responsiveness=await self.get_responsiveness(project.id),
                drifting_steps=sum(1 for step in steps if step.is_drifting(now)),
            ))

        entries.sort(key=lambda e: (
            e.project.status != ProjectStatus.BLOCKED,
            -e.drifting_steps,
            e.completion_percent,
        ))
        return entries


def summarize_board(entries: list[DeliveryEntry]) -> dict[str, Any]:
    def with_status(status: ProjectStatus) -> int:
        return sum(1 for e in entries if e.project.status == status)

    return {
        "total": len(entries),
        "active": with_status(ProjectStatus.ACTIVE),
        "blocked": with_status(ProjectStatus.BLOCKED),
        "paused": with_status(ProjectStatus.PAUSED),
        "with_drift": sum(1 for e in entries if e.drifting_steps > 0),
    }
