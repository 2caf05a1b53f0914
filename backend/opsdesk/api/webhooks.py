"""
Ops Desk - Agent Webhooks
=========================

Inbound deliveries from outbound workflow agents.

Setup (per agent workflow):
1. Payload URL: https://your-domain/api/v1/webhooks/{agent_key}
2. Content type: application/json
3. Header X-Webhook-Secret: value of AGENT_WEBHOOK_SECRET (if configured)

Body: {"email": ..., "payload": {...}, "response": {...}, "tier_hint": ...}
"""

import hmac
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, status

from opsdesk.api.deps import Bus, DbSession
from opsdesk.core.config import settings
from opsdesk.core.exceptions import ValidationError
from opsdesk.core.policy import WebhookIntakeService
from opsdesk.core.schemas import AgentWebhookPayload, WebhookAccepted

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def verify_secret(provided: Optional[str]) -> bool:
    """Constant-time check of X-Webhook-Secret; always passes when unset."""
    expected = settings.AGENT_WEBHOOK_SECRET
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(expected.encode(), provided.encode())


@router.post(
    "/{agent_key}",
    response_model=WebhookAccepted,
    summary="Receive an agent delivery",
    responses={
        200: {"description": "Approval created"},
        401: {"description": "Invalid webhook secret"},
        422: {"description": "Unknown agent key or malformed body"},
    },
)
async def receive_agent_webhook(
    agent_key: str,
    data: AgentWebhookPayload,
    db: DbSession,
    bus: Bus,
    x_webhook_secret: Optional[str] = Header(None),
) -> WebhookAccepted:
    """
    Log the delivery and create a pending approval for human review.

    Existing projects for the client get their name/ICP/SOP pointer
    refreshed; their stage is never touched.
    """
    if not verify_secret(x_webhook_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret",
        )

    intake = WebhookIntakeService(db, bus)
    try:
        approval = await intake.receive(
            agent_key,
            email=data.email,
            payload=data.payload,
            response=data.response,
            tier_hint=data.tier_hint,
        )
    except ValidationError as e:
        await intake.record_failure(
            agent_key,
            data.model_dump(mode="json"),
            response_status=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_message=e.message,
        )
        raise

    return WebhookAccepted(approval_id=approval.id)
