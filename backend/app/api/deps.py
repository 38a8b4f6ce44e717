"""Reusable FastAPI dependencies for the consent API.

Routes get the acting guardian from ``AUTH_DEP`` and the engine from
``ENGINE_DEP``. Tests override ``get_consent_engine`` to run the API against
an isolated database and a controllable clock.
"""

from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from app.core.auth import AuthContext, get_auth_context
from app.services.consent.engine import ConsentEngine
from app.services.consent.factory import build_engine


@lru_cache(maxsize=1)
def get_consent_engine() -> ConsentEngine:
    """Process-wide engine; it holds no per-request state."""
    return build_engine()


AUTH_DEP = Depends(get_auth_context)
ENGINE_DEP = Depends(get_consent_engine)


def require_guardian_id(auth: AuthContext = AUTH_DEP) -> str:
    return auth.guardian_id


GUARDIAN_DEP = Depends(require_guardian_id)
