"""Public schema exports shared across API route modules."""

from app.schemas.consent import (
    ConsentProposalCreate,
    ConsentProposalRead,
    CooldownRead,
    DeclinePayload,
    DisputePayload,
    ModifyPayload,
    ProposalChainRead,
)
from app.schemas.errors import ErrorResponse
from app.schemas.health import HealthStatusResponse

__all__ = [
    "ConsentProposalCreate",
    "ConsentProposalRead",
    "CooldownRead",
    "DeclinePayload",
    "DisputePayload",
    "ErrorResponse",
    "HealthStatusResponse",
    "ModifyPayload",
    "ProposalChainRead",
]
