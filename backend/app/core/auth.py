"""Caller authentication for the consent API.

The service sits behind the family web tier, which authenticates end users and
forwards requests with a shared bearer token plus the acting guardian's id.
"""

from __future__ import annotations

from dataclasses import dataclass
from hmac import compare_digest
from typing import Literal

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)
SECURITY_DEP = Depends(security)
GUARDIAN_ID_HEADER = "X-Guardian-Id"
MAX_GUARDIAN_ID_LENGTH = 128


@dataclass
class AuthContext:
    """Authenticated caller context resolved from inbound auth headers."""

    actor_type: Literal["guardian"]
    guardian_id: str


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    value = authorization.strip()
    if not value:
        return None
    if not value.lower().startswith("bearer "):
        return None
    token = value.split(" ", maxsplit=1)[1].strip()
    return token or None


def _non_empty_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _token_matches(token: str | None) -> bool:
    expected = settings.local_auth_token.strip()
    return bool(token and expected and compare_digest(token, expected))


async def get_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = SECURITY_DEP,
) -> AuthContext:
    """Require the shared token and a guardian id header."""
    token = credentials.credentials if credentials is not None else None
    if token is None:
        token = _extract_bearer_token(request.headers.get("Authorization"))
    if not _token_matches(token):
        logger.info("auth.token.rejected", extra={"path": request.url.path})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)

    guardian_id = _non_empty_str(request.headers.get(GUARDIAN_ID_HEADER))
    if guardian_id is None or len(guardian_id) > MAX_GUARDIAN_ID_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing or invalid {GUARDIAN_ID_HEADER} header.",
        )
    return AuthContext(actor_type="guardian", guardian_id=guardian_id)
