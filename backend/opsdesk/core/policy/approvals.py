"""
Approval Policy Engine - policy-as-code enforced before every approval decision.

Two layers:
- ApprovalPolicyEngine: pure evaluation of a decision against an approval.
  Returns allowed/blocked plus an optional auto-escalation draft.
- ApprovalDecisionService: applies the verdict in one transaction
  (compare-and-swap, audit entry, escalation, then events after commit).

Every block and every auto-escalation leaves exactly one audit entry.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.core.config import Settings, settings as default_settings
from opsdesk.core.events import EventBus, EventType
from opsdesk.core.exceptions import NotFoundError, PolicyBlocked, ValidationError
from opsdesk.core.models import (
    Approval,
    ApprovalStatus,
    CheckpointType,
    Escalation,
    EscalationCategory,
    EscalationLevel,
    PolicyAction,
    PolicyAuditEntry,
    Project,
    ProjectTier,
)
from opsdesk.core.policy.catalog import parse_tier
from opsdesk.core.policy.escalation import EscalationCascade
from opsdesk.core.policy.stages import EscalationDraft

logger = structlog.get_logger()

_PRICE_PATTERN = re.compile(r"\$?(\d+(?:\.\d+)?)")


# ==========================================================================
# Data Types
# ==========================================================================

@dataclass(frozen=True)
class DecisionRequest:
    """A reviewer's requested decision."""
    status: ApprovalStatus
    admin_comments: Optional[str] = None
    edited_response: Any = None


@dataclass(frozen=True)
class PolicyResult:
    allowed: bool
    reason: Optional[str] = None
    auto_escalation: Optional[EscalationDraft] = None


@dataclass(frozen=True)
class PolicyConfig:
    """Tunable thresholds. Only the shape of the rules is fixed."""
    repeated_rejection_threshold: int = 2
    rationale_required_checkpoints: frozenset[CheckpointType] = frozenset(
        {CheckpointType.PROPOSAL_REVIEW}
    )
    legal_brand_keywords: tuple[str, ...] = ()
    tier_pricing: dict[ProjectTier, tuple[int, int]] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PolicyConfig":
        return cls(
            repeated_rejection_threshold=settings.POLICY_REPEATED_REJECTION_THRESHOLD,
            rationale_required_checkpoints=frozenset(
                CheckpointType(value) for value in settings.POLICY_RATIONALE_REQUIRED_CHECKPOINTS
            ),
            legal_brand_keywords=tuple(k.lower() for k in settings.POLICY_LEGAL_BRAND_KEYWORDS),
            tier_pricing={
                ProjectTier(tier): (int(floor), int(ceiling))
                for tier, (floor, ceiling) in settings.TIER_PRICING.items()
            },
        )


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (dict, list, tuple)):
        return len(value) == 0
    return False


def _as_mapping(value: Any) -> dict[str, Any]:
    """Agent responses arrive as dicts or JSON strings; anything else is empty."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


# ==========================================================================
# Policy Engine
# ==========================================================================

class ApprovalPolicyEngine:
    """
    Evaluates approve/reject/edit decisions.

    Rules, in order:
    1. Non-pending approval -> blocked
    2. Edit without an edited response -> blocked
    3. Reject on a rationale-required checkpoint without comments
       -> blocked + L1/SCOPE escalation
    4. Allowed; the most severe risk signal becomes the auto-escalation:
       legal/brand keyword (L3), pricing out of tier bounds (L2),
       edited scope/tier (L2), approval after repeated rejections (L2)
    """

    def __init__(self, config: Optional[PolicyConfig] = None):
        self.config = config or PolicyConfig.from_settings(default_settings)

    def evaluate(
        self,
        approval: Approval,
        decision: DecisionRequest,
        prior_rejections: int = 0,
    ) -> PolicyResult:
        if approval.status != ApprovalStatus.PENDING:
            return PolicyResult(
                allowed=False,
                reason=f"Approval is already resolved (status: {approval.status.value})",
            )

        if decision.status == ApprovalStatus.PENDING:
            return PolicyResult(
                allowed=False,
                reason="Decision must be approved, rejected or edited",
            )

        if decision.status == ApprovalStatus.EDITED and _is_blank(decision.edited_response):
            return PolicyResult(
                allowed=False,
                reason="An edited response is required when editing an approval",
            )

        if (
            decision.status == ApprovalStatus.REJECTED
            and approval.checkpoint_type in self.config.rationale_required_checkpoints
            and _is_blank(decision.admin_comments)
        ):
            return PolicyResult(
                allowed=False,
                reason=(
                    "A rejection rationale is mandatory for client-facing outputs "
                    f"({approval.checkpoint_type.value})"
                ),
                auto_escalation=EscalationDraft(
                    level=EscalationLevel.L1,
                    category=EscalationCategory.SCOPE,
                    title="Rejection attempted without rationale",
                    description=(
                        f"A {approval.checkpoint_type.value} output from {approval.agent_key} "
                        f"for {approval.client_email} was rejected without comments; "
                        "the rejection was blocked."
                    ),
                ),
            )

        signals = [
            signal
            for signal in (
                self._check_legal_brand_risk(approval, decision),
                self._check_pricing(approval, decision),
                self._check_scope_change(approval, decision),
                self._check_repeated_rejections(decision, prior_rejections),
            )
            if signal is not None
        ]
        if not signals:
            return PolicyResult(allowed=True)

        # max() keeps the first of equally severe signals
        strongest = max(signals, key=lambda draft: draft.level.rank)
        return PolicyResult(allowed=True, auto_escalation=strongest)

    # ==========================================================================
    # Risk Signals
    # ==========================================================================

    @staticmethod
    def _effective_response(approval: Approval, decision: DecisionRequest) -> Any:
        if decision.status == ApprovalStatus.EDITED:
            return decision.edited_response
        return approval.agent_response

    def _check_legal_brand_risk(
        self, approval: Approval, decision: DecisionRequest
    ) -> Optional[EscalationDraft]:
        if decision.status not in (ApprovalStatus.APPROVED, ApprovalStatus.EDITED):
            return None

        response = self._effective_response(approval, decision)
        text = (response if isinstance(response, str) else json.dumps(response, default=str)).lower()
        for keyword in self.config.legal_brand_keywords:
            if keyword in text:
                return EscalationDraft(
                    level=EscalationLevel.L3,
                    category=EscalationCategory.LEGAL_BRAND,
                    title="Legal/brand risk detected",
                    description=f'Agent response contains risk keyword: "{keyword}"',
                )
        return None

    def _check_pricing(
        self, approval: Approval, decision: DecisionRequest
    ) -> Optional[EscalationDraft]:
        if approval.checkpoint_type != CheckpointType.PROPOSAL_REVIEW:
            return None
        if decision.status not in (ApprovalStatus.APPROVED, ApprovalStatus.EDITED):
            return None

        response = _as_mapping(self._effective_response(approval, decision))
        pricing = response.get("pricing") or response.get("price")
        tier = parse_tier(response.get("tier"))
        if not pricing or tier is None or tier not in self.config.tier_pricing:
            return None

        match = _PRICE_PATTERN.search(str(pricing).replace(",", ""))
        if not match:
            return None

        price = float(match.group(1))
        floor, ceiling = self.config.tier_pricing[tier]
        if price < floor:
            return EscalationDraft(
                level=EscalationLevel.L2,
                category=EscalationCategory.FINANCIAL,
                title=f"Pricing below {tier.value} floor",
                description=f"Proposed {pricing} is below the {tier.value} floor of ${floor} CAD",
            )
        if price > ceiling:
            return EscalationDraft(
                level=EscalationLevel.L2,
                category=EscalationCategory.FINANCIAL,
                title=f"Pricing above {tier.value} ceiling",
                description=f"Proposed {pricing} exceeds the {tier.value} ceiling of ${ceiling} CAD",
            )
        return None

    @staticmethod
    def _check_scope_change(
        approval: Approval, decision: DecisionRequest
    ) -> Optional[EscalationDraft]:
        if decision.status != ApprovalStatus.EDITED:
            return None

        original = _as_mapping(approval.agent_response)
        edited = _as_mapping(decision.edited_response)

        original_deliverables = original.get("deliverables") or []
        edited_deliverables = edited.get("deliverables") or []
        if (
            isinstance(original_deliverables, list)
            and isinstance(edited_deliverables, list)
            and original_deliverables != edited_deliverables
        ):
            return EscalationDraft(
                level=EscalationLevel.L2,
                category=EscalationCategory.SCOPE,
                title="Scope change detected in edited response",
                description=(
                    f"Deliverables were modified from {len(original_deliverables)} "
                    f"to {len(edited_deliverables)} items"
                ),
            )

        if original.get("tier") and edited.get("tier") and original["tier"] != edited["tier"]:
            return EscalationDraft(
                level=EscalationLevel.L2,
                category=EscalationCategory.SCOPE,
                title="Tier change detected",
                description=f"Tier changed from {original['tier']} to {edited['tier']}",
            )
        return None

    def _check_repeated_rejections(
        self, decision: DecisionRequest, prior_rejections: int
    ) -> Optional[EscalationDraft]:
        threshold = self.config.repeated_rejection_threshold
        if decision.status != ApprovalStatus.APPROVED or prior_rejections < threshold:
            return None
        return EscalationDraft(
            level=EscalationLevel.L2,
            category=EscalationCategory.RELATIONSHIP,
            title="Approval after repeated rejections",
            description=(
                f"Client has {prior_rejections} prior rejections for this checkpoint "
                "type; approving now may indicate degrading agent output quality."
            ),
        )


# ==========================================================================
# Decision Service
# ==========================================================================

class ApprovalDecisionService:
    """Applies policy verdicts to approvals, one transaction per decision."""

    def __init__(
        self,
        db: AsyncSession,
        bus: EventBus,
        engine: Optional[ApprovalPolicyEngine] = None,
    ):
        self.db = db
        self.bus = bus
        self.engine = engine or ApprovalPolicyEngine()

    async def get_approval(self, approval_id: UUID) -> Approval:
        approval = await self.db.get(Approval, approval_id, populate_existing=True)
        if approval is None:
            raise NotFoundError("Approval", approval_id)
        return approval

    async def count_prior_rejections(self, approval: Approval) -> int:
        result = await self.db.execute(
            select(func.count(Approval.id)).where(
                Approval.client_email == approval.client_email,
                Approval.checkpoint_type == approval.checkpoint_type,
                Approval.status == ApprovalStatus.REJECTED,
                Approval.id != approval.id,
            )
        )
        return result.scalar() or 0

    async def find_project_for_client(self, client_email: str) -> Optional[Project]:
        result = await self.db.execute(
            select(Project)
            .where(Project.client_email == client_email)
            .order_by(Project.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def decide(
        self,
        approval_id: UUID,
        decision: DecisionRequest,
        reviewer: str,
    ) -> tuple[Approval, Optional[Escalation]]:
        """
        Evaluate and apply a decision.

        Returns:
            (updated approval, auto-escalation if one was created)

        Raises:
            NotFoundError: Unknown approval
            PolicyBlocked: Policy forbids the decision (audit entry written)
        """
        approval = await self.get_approval(approval_id)
        prior_rejections = await self.count_prior_rejections(approval)
        result = self.engine.evaluate(approval, decision, prior_rejections)
        cascade = EscalationCascade(self.db, self.bus)

        if not result.allowed:
            await self._block(cascade, approval, result.reason, result.auto_escalation)

        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {
            "status": decision.status,
            "reviewed_by": reviewer,
            "reviewed_at": now,
            "admin_comments": decision.admin_comments or None,
            "updated_at": now,
        }
        if decision.status == ApprovalStatus.EDITED:
            values["edited_response"] = decision.edited_response

        swapped = await self.db.execute(
            update(Approval)
            .where(Approval.id == approval.id, Approval.status == ApprovalStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if swapped.rowcount == 0:
            # Lost the race to a concurrent decision
            await self.db.refresh(approval)
            await self._block(
                cascade,
                approval,
                f"Approval is already resolved (status: {approval.status.value})",
                None,
            )

        await self.db.refresh(approval)

        escalation = None
        if result.auto_escalation is not None:
            escalation = await self._auto_escalate(cascade, approval, result.auto_escalation)
            self.db.add(PolicyAuditEntry(
                approval_id=approval.id,
                escalation_id=escalation.id if escalation else None,
                policy_action=PolicyAction.AUTO_ESCALATED,
                reason=f"{result.auto_escalation.title}: {result.auto_escalation.description}",
            ))

        await self.db.commit()
        cascade.publish_pending()
        self.bus.emit(
            EventType.APPROVAL_DECIDED,
            id=str(approval.id),
            client_email=approval.client_email,
            agent_key=approval.agent_key,
            status=approval.status.value,
            reviewed_by=reviewer,
            escalation_id=str(escalation.id) if escalation else None,
        )

        logger.info(
            "approval_decided",
            approval_id=str(approval.id),
            status=approval.status.value,
            reviewer=reviewer,
            auto_escalated=result.auto_escalation is not None,
        )
        return approval, escalation

    async def mark_sent(self, approval_id: UUID) -> Approval:
        """
        Record delivery of an approved/edited output. Status is unchanged.

        Raises:
            ValidationError: Approval is not approved or edited
            PolicyBlocked: Already marked as sent; the first delivery time stands
        """
        approval = await self.get_approval(approval_id)
        if approval.status not in (ApprovalStatus.APPROVED, ApprovalStatus.EDITED):
            raise ValidationError("Only approved or edited approvals can be marked as sent")
        if approval.sent_at is not None:
            raise PolicyBlocked("Approval was already marked as sent")

        sent_at = datetime.now(timezone.utc)
        swapped = await self.db.execute(
            update(Approval)
            .where(Approval.id == approval.id, Approval.sent_at.is_(None))
            .values(sent_at=sent_at, updated_at=sent_at)
            .execution_options(synchronize_session=False)
        )
        if swapped.rowcount == 0:
            await self.db.rollback()
            raise PolicyBlocked("Approval was already marked as sent")

        await self.db.commit()
        await self.db.refresh(approval)

        self.bus.emit(
            EventType.APPROVAL_SENT,
            id=str(approval.id),
            client_email=approval.client_email,
            sent_at=approval.sent_at.isoformat(),
        )
        return approval

    # ==========================================================================
    # Internals
    # ==========================================================================

    async def _auto_escalate(
        self,
        cascade: EscalationCascade,
        approval: Approval,
        draft: EscalationDraft,
    ) -> Optional[Escalation]:
        """Create the escalation when the client has a project; None otherwise."""
        project = await self.find_project_for_client(approval.client_email)
        if project is None:
            logger.warning(
                "auto_escalation_without_project",
                approval_id=str(approval.id),
                client_email=approval.client_email,
                level=draft.level.value,
            )
            return None
        return await cascade.create(
            project.id,
            draft.level,
            draft.category,
            draft.title,
            draft.description,
            commit=False,
        )

    async def _block(
        self,
        cascade: EscalationCascade,
        approval: Approval,
        reason: str,
        draft: Optional[EscalationDraft],
    ) -> None:
        escalation = None
        if draft is not None:
            escalation = await self._auto_escalate(cascade, approval, draft)

        self.db.add(PolicyAuditEntry(
            approval_id=approval.id,
            escalation_id=escalation.id if escalation else None,
            policy_action=PolicyAction.BLOCKED,
            reason=reason,
        ))
        await self.db.commit()
        cascade.publish_pending()

        escalation_id = str(escalation.id) if escalation else None
        self.bus.emit(
            EventType.APPROVAL_POLICY_BLOCKED,
            approval_id=str(approval.id),
            client_email=approval.client_email,
            reason=reason,
            escalation_id=escalation_id,
        )
        logger.info(
            "policy_blocked",
            approval_id=str(approval.id),
            reason=reason,
            escalation_id=escalation_id,
        )
        raise PolicyBlocked(reason, escalation_id=escalation_id)
