"""Pure classification of a proposed value change as stricter or looser protection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from app.services.consent.policies import AGREEMENT_CHANGE, DISSOLUTION, SAFETY_SETTING

if TYPE_CHECKING:
    from collections.abc import Mapping

_LOWER_IS_STRICTER = frozenset(
    {
        (SAFETY_SETTING, "monitoring_interval"),
        (SAFETY_SETTING, "retention_period"),
        (SAFETY_SETTING, "screen_time_daily"),
        (SAFETY_SETTING, "screen_time_per_app"),
        (SAFETY_SETTING, "time_limits"),
        (SAFETY_SETTING, "bedtime_start"),
        (AGREEMENT_CHANGE, "screen_time"),
        (AGREEMENT_CHANGE, "monitoring_rules"),
    },
)
_HIGHER_IS_STRICTER = frozenset(
    {
        (SAFETY_SETTING, "age_restriction"),
        (SAFETY_SETTING, "bedtime_end"),
        (AGREEMENT_CHANGE, "content_filters"),
    },
)
_ALWAYS_STRICTER = frozenset({(SAFETY_SETTING, "crisis_allowlist")})


@dataclass(frozen=True)
class Restrictiveness:
    """Outcome of a classification. Both flags are false for a neutral change."""

    more_restrictive: bool
    protection_reduction: bool


NEUTRAL = Restrictiveness(more_restrictive=False, protection_reduction=False)
STRICTER = Restrictiveness(more_restrictive=True, protection_reduction=False)
LOOSER = Restrictiveness(more_restrictive=False, protection_reduction=True)


def _as_number(value: object) -> float | None:
    # bool is an int subclass but never an ordinal setting value.
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


def classify(
    subject_type: str,
    subject_key: str,
    current_value: object,
    proposed_value: object,
) -> Restrictiveness:
    """Decide whether moving from ``current_value`` to ``proposed_value`` tightens protection."""
    if subject_type == DISSOLUTION:
        return LOOSER
    axis = (subject_type, subject_key)
    if axis in _ALWAYS_STRICTER:
        return STRICTER

    current = _as_number(current_value)
    proposed = _as_number(proposed_value)
    if current is None or proposed is None or current == proposed:
        return NEUTRAL
    if axis in _LOWER_IS_STRICTER:
        return STRICTER if proposed < current else LOOSER
    if axis in _HIGHER_IS_STRICTER:
        return STRICTER if proposed > current else LOOSER
    return NEUTRAL


def classify_payload(
    subject_type: str,
    subject_key: str,
    payload: Mapping[str, object],
) -> Restrictiveness:
    return classify(
        subject_type,
        subject_key,
        payload.get("current_value"),
        payload.get("proposed_value"),
    )
