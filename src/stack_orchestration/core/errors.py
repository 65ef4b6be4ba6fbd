"""
Result and problem types shared by the orchestration core.

Expected conditions (missing state file, unknown profile, unreachable endpoint)
are returned as values instead of raised, so callers decide whether to retry,
degrade or ask the operator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, TypeVar, Union

from pydantic import ValidationError

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Error taxonomy."""
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONNECTIVITY = "connectivity"
    FATAL = "fatal"


@dataclass(frozen=True)
class Problem:
    """A single structured problem report."""
    kind: ErrorKind
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class NotFound:
    message: str = "not found"

    @property
    def problems(self) -> List[Problem]:
        return [Problem(ErrorKind.NOT_FOUND, "not_found", self.message)]


@dataclass(frozen=True)
class Corrupt:
    """Content exists but cannot be parsed or fails schema validation."""
    problems: List[Problem]


@dataclass(frozen=True)
class Invalid:
    """Request rejected before any side effect took place."""
    problems: List[Problem]


Result = Union[Ok[T], NotFound, Corrupt, Invalid]


def is_ok(result: Any) -> bool:
    return isinstance(result, Ok)


def problems_from_validation_error(exc: ValidationError, kind: ErrorKind = ErrorKind.VALIDATION) -> List[Problem]:
    """Flatten a pydantic ValidationError into one problem per failing field."""
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()))
        problems.append(Problem(
            kind=kind,
            code=err.get("type", "invalid"),
            message=f"{location}: {err.get('msg', 'invalid value')}" if location else err.get("msg", "invalid value"),
            details={"field": location} if location else {},
        ))
    return problems
