"""
Persisted installation record.

The JSON document uses camelCase keys so both the installer and the monitoring
console read the same file. Optional fields always have defaults so older
records keep validating as the schema grows.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SCHEMA_VERSION = "1.0.0"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class Phase(str, Enum):
    """Installation lifecycle phase."""
    PENDING = "pending"
    INSTALLING = "installing"
    COMPLETE = "complete"
    ERROR = "error"


class FallbackStrategy(str, Enum):
    """Recovery options offered when a foundational service fails."""
    CONTINUE_PUBLIC = "continue-public"
    TROUBLESHOOT = "troubleshoot"
    RETRY = "retry"
    SKIP = "skip-node"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ProfileSelection(_CamelModel):
    selected: List[str] = Field(default_factory=list, description="Selected profile ids")
    count: int = Field(default=0, ge=0, description="Number of selected profiles")

    @model_validator(mode="after")
    def count_matches(self):
        if self.count != len(self.selected):
            raise ValueError(f"profiles.count is {self.count} but {len(self.selected)} profiles are selected")
        return self

    @classmethod
    def of(cls, profile_ids: List[str]) -> "ProfileSelection":
        ids = list(dict.fromkeys(profile_ids))
        return cls(selected=ids, count=len(ids))


class ServiceEntry(_CamelModel):
    name: str
    profile: str
    running: bool = False
    exists: bool = False
    container_name: Optional[str] = Field(default=None, alias="containerName")
    ports: List[int] = Field(default_factory=list)


class ServiceSummary(_CamelModel):
    total: int = Field(default=0, ge=0)
    running: int = Field(default=0, ge=0)
    stopped: int = Field(default=0, ge=0)
    missing: int = Field(default=0, ge=0)

    @classmethod
    def from_services(cls, services: List[ServiceEntry]) -> "ServiceSummary":
        return cls(
            total=len(services),
            running=sum(1 for s in services if s.exists and s.running),
            stopped=sum(1 for s in services if s.exists and not s.running),
            missing=sum(1 for s in services if not s.exists),
        )


class FallbackRecord(_CamelModel):
    """Active redirection of dependents away from a failed local service."""
    failed_service: str = Field(..., alias="failedService")
    strategy: FallbackStrategy
    reason: Optional[str] = None
    redirected_services: List[str] = Field(default_factory=list, alias="redirectedServices")
    endpoints: Dict[str, str] = Field(default_factory=dict, description="Configuration key to alternate endpoint")
    previous_configuration: Dict[str, Any] = Field(
        default_factory=dict, alias="previousConfiguration",
        description="Values replaced by the fallback, restored on revert",
    )
    activated_at: str = Field(default_factory=utc_now_iso, alias="activatedAt")


class InstallationState(_CamelModel):
    """The single persisted record of what is installed."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    version: str
    installed_at: str = Field(..., alias="installedAt")
    last_modified: str = Field(..., alias="lastModified")
    phase: Phase
    profiles: ProfileSelection
    configuration: Dict[str, Any]
    services: List[ServiceEntry]
    summary: ServiceSummary
    operator_busy: bool = Field(default=False, alias="operatorBusy")
    revision: int = Field(default=0, ge=0, description="Incremented on every write")
    fallback: Optional[FallbackRecord] = None

    @field_validator("version")
    @classmethod
    def version_not_empty(cls, v):
        if not v:
            raise ValueError("version must not be empty")
        return v

    @model_validator(mode="after")
    def check_consistency(self):
        """Service entries belong to selected profiles and the summary matches them."""
        selected = set(self.profiles.selected)
        orphans = [s.name for s in self.services if s.profile not in selected]
        if orphans:
            raise ValueError(f"services reference unselected profiles: {', '.join(orphans)}")
        expected = ServiceSummary.from_services(self.services)
        if self.summary != expected:
            raise ValueError(
                f"summary {self.summary.model_dump()} does not match services {expected.model_dump()}"
            )
        return self

    @classmethod
    def create(
        cls,
        profile_ids: List[str],
        services: Optional[List[ServiceEntry]] = None,
        configuration: Optional[Dict[str, Any]] = None,
        phase: Phase = Phase.COMPLETE,
    ) -> "InstallationState":
        """Build a fresh record with timestamps and a computed summary."""
        now = utc_now_iso()
        services = list(services or [])
        return cls(
            version=SCHEMA_VERSION,
            installed_at=now,
            last_modified=now,
            phase=phase,
            profiles=ProfileSelection.of(profile_ids),
            configuration=dict(configuration or {}),
            services=services,
            summary=ServiceSummary.from_services(services),
        )

    def to_document(self) -> Dict[str, Any]:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
