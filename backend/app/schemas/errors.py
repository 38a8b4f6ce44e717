"""Structured error payload schemas used by API responses."""

from __future__ import annotations

from pydantic import Field
from sqlmodel import SQLModel


class ErrorResponse(SQLModel):
    """Error envelope returned by every consent endpoint."""

    detail: str | dict[str, object] | list[object] = Field(
        description=(
            "Error payload. Clients should rely on `code` when present and show "
            "`message` for display."
        ),
        examples=[
            {"code": "invalid_state", "message": "Someone already responded to this proposal."},
            {
                "code": "cooldown_active",
                "message": "This change was recently declined. Please wait before proposing it again.",
                "cooldown_ends_at": "2026-10-25T09:00:00",
            },
        ],
    )
    request_id: str | None = Field(
        default=None,
        description="Request correlation identifier injected by middleware.",
    )
    code: str | None = Field(
        default=None,
        description="Machine-readable error code.",
        examples=["not_found", "store_unavailable"],
    )
    retryable: bool | None = Field(
        default=None,
        description="Whether the client should retry the call later.",
    )
