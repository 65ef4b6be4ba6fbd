"""
Request bodies and result-to-HTTP translation for the API routes.
"""

from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from pydantic import BaseModel, Field

from stack_orchestration.core.errors import Corrupt, ErrorKind, Invalid, NotFound, Ok
from stack_orchestration.state.models import FallbackStrategy

# Invalid problem codes that are not the caller's fault
CONFLICT_CODES = {"stale_revision", "fallback_active"}
FORBIDDEN_CODES = {"read_only"}


class ProfileChangeRequest(BaseModel):
    """Validate adding or removing one profile."""
    profile: str = Field(..., description="Profile id")
    current: Optional[List[str]] = Field(
        default=None, description="Installed profile ids; defaults to the recorded installation"
    )


class SelectionRequest(BaseModel):
    profiles: List[str] = Field(..., description="Profile ids")


class InstallationRequest(BaseModel):
    profiles: List[str] = Field(..., description="Profile ids to record as installed")
    configuration: Dict[str, Any] = Field(default_factory=dict)


class OperatorBusyRequest(BaseModel):
    busy: bool


class FallbackDecisionRequest(BaseModel):
    service: str = Field(..., description="Failed service name")
    strategy: FallbackStrategy


class DecodeRequest(BaseModel):
    url: str = Field(..., description="URL or query string carrying a launch context")


def unwrap(result):
    """Return the value of an Ok result or raise the matching HTTPException."""
    if isinstance(result, Ok):
        value = result.value
        if hasattr(value, "to_document"):
            return value.to_document()
        if hasattr(value, "to_dict"):
            return value.to_dict()
        return value
    if isinstance(result, NotFound):
        raise HTTPException(status_code=404, detail=result.message)
    if isinstance(result, Corrupt):
        raise HTTPException(status_code=500, detail=[p.to_dict() for p in result.problems])
    if isinstance(result, Invalid):
        codes = {p.code for p in result.problems}
        if codes & FORBIDDEN_CODES:
            status = 403
        elif codes & CONFLICT_CODES:
            status = 409
        elif any(p.kind == ErrorKind.NOT_FOUND for p in result.problems):
            status = 404
        elif any(p.kind == ErrorKind.CONNECTIVITY for p in result.problems):
            status = 503
        else:
            status = 400
        raise HTTPException(status_code=status, detail=[p.to_dict() for p in result.problems])
    raise TypeError(f"Unexpected result {result!r}")
