"""Payload validation for proposals, one pydantic shape per subject type."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.services.consent.errors import ConsentValidationError
from app.services.consent.policies import (
    AGREEMENT_CHANGE,
    DISSOLUTION,
    MAX_ID_LENGTH,
    MAX_REASON_LENGTH,
    SAFETY_SETTING,
    SubjectPolicy,
)

SettingValue = bool | Annotated[int, Field(ge=0)] | Annotated[str, Field(max_length=256)]
AgreementValue = bool | int | float | str | list[str] | dict[str, Any]


class _PayloadModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SafetySettingPayload(_PayloadModel):
    current_value: SettingValue
    proposed_value: SettingValue


class AgreementChangePayload(_PayloadModel):
    current_value: AgreementValue | None = None
    proposed_value: AgreementValue
    description: str | None = Field(default=None, max_length=MAX_REASON_LENGTH)


class DissolutionPayload(_PayloadModel):
    data_handling_option: Literal["delete_all", "export_first", "retain_90_days"]


_PAYLOAD_MODELS: dict[str, type[_PayloadModel]] = {
    SAFETY_SETTING: SafetySettingPayload,
    AGREEMENT_CHANGE: AgreementChangePayload,
    DISSOLUTION: DissolutionPayload,
}


def _first_error(exc: ValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error.get("loc", ()) if not isinstance(part, int))
    return f"Invalid payload field {location or 'payload'}: {error.get('msg', 'invalid value')}"


def validate_identifier(value: str | None, *, field_name: str) -> str:
    if not value or not value.strip():
        raise ConsentValidationError(f"{field_name} is required.")
    if len(value) > MAX_ID_LENGTH:
        raise ConsentValidationError(f"{field_name} must be at most {MAX_ID_LENGTH} characters.")
    return value


def validate_reason(value: str | None, *, field_name: str) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if len(value) > MAX_REASON_LENGTH:
        raise ConsentValidationError(
            f"{field_name} must be at most {MAX_REASON_LENGTH} characters."
        )
    return value or None


def validate_payload(
    policy: SubjectPolicy,
    subject_key: str,
    payload: object,
) -> dict[str, Any]:
    """Check the subject key and payload shape; return the normalized payload."""
    if subject_key not in policy.subject_keys:
        raise ConsentValidationError(
            f"Invalid subject_key for {policy.subject_type}. "
            f"Must be one of: {', '.join(sorted(policy.subject_keys))}",
        )
    if not isinstance(payload, dict):
        raise ConsentValidationError("payload must be an object.")
    try:
        parsed = _PAYLOAD_MODELS[policy.subject_type].model_validate(payload)
    except ValidationError as exc:
        raise ConsentValidationError(_first_error(exc)) from exc

    normalized = parsed.model_dump(exclude_none=True)
    if (
        policy.subject_type != DISSOLUTION
        and "current_value" in normalized
        and normalized["current_value"] == normalized["proposed_value"]
        and type(normalized["current_value"]) is type(normalized["proposed_value"])
    ):
        raise ConsentValidationError("Proposed value must differ from the current value.")
    return normalized
