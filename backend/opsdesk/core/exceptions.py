"""
Ops Desk - Core Exceptions
==========================

Error kinds raised by the policy core. The API layer maps them onto HTTP
responses; nothing in ``opsdesk.core`` builds a response itself.
"""

from typing import Optional


class OpsDeskError(Exception):
    """Base class for all domain errors."""

    code: str = "OPS_DESK_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(OpsDeskError):
    """Malformed or missing input to a core operation."""

    code = "VALIDATION_ERROR"


class PolicyBlocked(OpsDeskError):
    """A well-formed request that business policy forbids."""

    code = "POLICY_BLOCKED"

    def __init__(self, message: str, escalation_id: Optional[str] = None):
        super().__init__(message)
        self.escalation_id = escalation_id


class NotFoundError(OpsDeskError):
    """A referenced project, approval or escalation does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: object):
        super().__init__(f"{entity} not found")
        self.entity = entity
        self.entity_id = entity_id


class TransportError(OpsDeskError):
    """Outbound agent webhook failed (timeout, non-2xx or network error)."""

    code = "TRANSPORT_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
