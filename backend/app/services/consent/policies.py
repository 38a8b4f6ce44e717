"""Per-subject-type deadline and approval rules for consent proposals."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from app.core.config import settings

if TYPE_CHECKING:
    from collections.abc import Mapping

    from app.core.config import Settings

SAFETY_SETTING = "safety_setting"
AGREEMENT_CHANGE = "agreement_change"
DISSOLUTION = "dissolution"
SUBJECT_TYPES = frozenset({SAFETY_SETTING, AGREEMENT_CHANGE, DISSOLUTION})

PENDING_APPROVAL = "pending_approval"
PENDING_ACKNOWLEDGMENT = "pending_acknowledgment"
APPROVED = "approved"
DECLINED = "declined"
EXPIRED = "expired"
CANCELLED = "cancelled"
COOLING_PERIOD = "cooling_period"
COMPLETED = "completed"
WITHDRAWN = "withdrawn"
MODIFIED = "modified"

PENDING_STATUSES = frozenset({PENDING_APPROVAL, PENDING_ACKNOWLEDGMENT})
ACTIVE_STATUSES = PENDING_STATUSES | {COOLING_PERIOD}
TERMINAL_STATUSES = frozenset(
    {APPROVED, DECLINED, EXPIRED, CANCELLED, COMPLETED, WITHDRAWN, MODIFIED}
)

SAFETY_SETTING_KEYS = frozenset(
    {
        "monitoring_interval",
        "retention_period",
        "age_restriction",
        "screen_time_daily",
        "screen_time_per_app",
        "time_limits",
        "bedtime_start",
        "bedtime_end",
        "crisis_allowlist",
    },
)
AGREEMENT_CHANGE_KEYS = frozenset(
    {
        "terms",
        "monitoring_rules",
        "screen_time",
        "bedtime_schedule",
        "app_restrictions",
        "content_filters",
        "consequences",
        "rewards",
    },
)
DISSOLUTION_KEY = "family_dissolution"
DATA_HANDLING_OPTIONS = frozenset({"delete_all", "export_first", "retain_90_days"})
EXTENDED_RETENTION_OPTION = "retain_90_days"

# Identity recorded as the outcome actor for scanner-driven transitions.
SYSTEM_ACTOR_ID = "system:expiry-scanner"

MAX_ID_LENGTH = 128
MAX_REASON_LENGTH = 500


@dataclass(frozen=True)
class SubjectPolicy:
    """Deadlines and approval cardinality for one subject type."""

    subject_type: str
    subject_keys: frozenset[str]
    response_window: timedelta | None
    emergency_review: timedelta | None
    cooling_period: timedelta
    decline_cooldown: timedelta
    uses_acknowledgment: bool = False
    extended_cooling_period: timedelta | None = None

    def cooling_period_for(self, payload: Mapping[str, object]) -> timedelta:
        if (
            self.extended_cooling_period is not None
            and payload.get("data_handling_option") == EXTENDED_RETENTION_OPTION
        ):
            return self.extended_cooling_period
        return self.cooling_period


def build_policies(cfg: Settings = settings) -> dict[str, SubjectPolicy]:
    """Build the policy table from runtime settings."""
    emergency_review = timedelta(hours=cfg.emergency_review_hours)
    reduction_cooling = timedelta(hours=cfg.reduction_cooling_period_hours)
    decline_cooldown = timedelta(days=cfg.decline_cooldown_days)
    return {
        SAFETY_SETTING: SubjectPolicy(
            subject_type=SAFETY_SETTING,
            subject_keys=SAFETY_SETTING_KEYS,
            response_window=timedelta(hours=cfg.safety_response_window_hours),
            emergency_review=emergency_review,
            cooling_period=reduction_cooling,
            decline_cooldown=decline_cooldown,
        ),
        AGREEMENT_CHANGE: SubjectPolicy(
            subject_type=AGREEMENT_CHANGE,
            subject_keys=AGREEMENT_CHANGE_KEYS,
            response_window=timedelta(days=cfg.agreement_response_window_days),
            emergency_review=emergency_review,
            cooling_period=reduction_cooling,
            decline_cooldown=decline_cooldown,
        ),
        DISSOLUTION: SubjectPolicy(
            subject_type=DISSOLUTION,
            subject_keys=frozenset({DISSOLUTION_KEY}),
            response_window=None,
            emergency_review=None,
            cooling_period=timedelta(days=cfg.dissolution_cooling_days),
            decline_cooldown=decline_cooldown,
            uses_acknowledgment=True,
            extended_cooling_period=timedelta(days=cfg.dissolution_extended_retention_days),
        ),
    }
