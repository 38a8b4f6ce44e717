"""Time-gated, multi-party consent workflow."""

from app.services.consent.engine import ConsentEngine, is_in_effect
from app.services.consent.expiry_scanner import ExpiryScanner, ScanResult
from app.services.consent.restrictiveness import Restrictiveness, classify

__all__ = [
    "ConsentEngine",
    "ExpiryScanner",
    "Restrictiveness",
    "ScanResult",
    "classify",
    "is_in_effect",
]
