"""Model exports for SQLAlchemy/SQLModel metadata discovery."""

from app.models.audit_entries import AuditEntry
from app.models.consent_proposals import ConsentProposal
from app.models.family_guardians import FamilyGuardian

__all__ = [
    "AuditEntry",
    "ConsentProposal",
    "FamilyGuardian",
]
