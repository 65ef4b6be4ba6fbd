"""
Profile catalog models with Pydantic schema validation.

A profile is an installable bundle of containerized services. Profiles and
their services are loaded from the static catalog and never change at runtime.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ProfileCategory(str, Enum):
    """Catalog groupings."""
    NODE = "node"
    APPLICATION = "application"
    INDEXER = "indexer"
    MINING = "mining"
    MANAGEMENT = "management"


class HealthCheckType(str, Enum):
    """How a service reports its health."""
    HTTP = "http"
    RPC = "rpc"
    TCP = "tcp"
    POSTGRES = "postgres"
    CONTAINER = "container"


class HealthCheckSpec(BaseModel):
    """Health check declared by a service."""
    model_config = ConfigDict(frozen=True)

    type: HealthCheckType = Field(default=HealthCheckType.CONTAINER, description="Check type")
    host: str = Field(default="localhost", description="Host the check connects to")
    port: Optional[int] = Field(default=None, ge=1, le=65535, description="Port to check")
    path: str = Field(default="/health", description="HTTP path for http checks")
    interval: int = Field(default=10, ge=1, description="Seconds between checks")
    timeout: int = Field(default=5, ge=1, description="Seconds before a check is abandoned")
    retries: int = Field(default=3, ge=1, description="Attempts before a failure is reported")

    @model_validator(mode="after")
    def validate_port(self):
        """Network checks need a port."""
        if self.type in (HealthCheckType.HTTP, HealthCheckType.RPC, HealthCheckType.TCP) and self.port is None:
            raise ValueError(f"{self.type.value} health check requires a port")
        return self

    @property
    def url(self) -> Optional[str]:
        if self.type == HealthCheckType.HTTP:
            return f"http://{self.host}:{self.port}{self.path}"
        if self.type == HealthCheckType.RPC:
            return f"http://{self.host}:{self.port}"
        return None


class ServiceDescriptor(BaseModel):
    """A single containerized service belonging to a profile."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Service name")
    profile: str = Field(default="", description="Owning profile id (filled in by the catalog)")
    container_name: Optional[str] = Field(default=None, description="Docker container name")
    health_check: Optional[HealthCheckSpec] = Field(default=None, description="Declared health check")
    depends_on: List[str] = Field(default_factory=list, description="Service names this one requires")
    provides: List[str] = Field(default_factory=list, description="Service names this one can stand in for")
    critical: bool = Field(default=False, description="Whether other services rely on this one")
    required: bool = Field(default=True, description="Whether the profile is unusable without it")
    startup_order: int = Field(default=0, ge=0, description="Relative startup order inside the profile")
    data_paths: List[str] = Field(default_factory=list, description="Declared data locations")

    @property
    def container(self) -> str:
        return self.container_name or self.name

    def satisfies(self, service_name: str) -> bool:
        return service_name == self.name or service_name in self.provides


class ResourceRequirements(BaseModel):
    """Host resources a profile needs."""
    model_config = ConfigDict(frozen=True)

    min_memory: float = Field(default=1, ge=0, description="Minimum memory in GB")
    min_cpu: int = Field(default=1, ge=0, description="Minimum CPU cores")
    min_disk: float = Field(default=10, ge=0, description="Minimum disk in GB")
    recommended_memory: Optional[float] = Field(default=None, ge=0)
    recommended_cpu: Optional[int] = Field(default=None, ge=0)
    recommended_disk: Optional[float] = Field(default=None, ge=0)


class Profile(BaseModel):
    """Installable profile."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Profile identifier")
    name: str = Field(..., description="Display name")
    description: str = Field(default="", description="Human-readable description")
    category: ProfileCategory = Field(..., description="Catalog grouping")
    services: List[ServiceDescriptor] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list, description="Hard dependencies (all required)")
    prerequisites: List[str] = Field(default_factory=list, description="Alternatives, at least one required")
    conflicts: List[str] = Field(default_factory=list, description="Profiles that cannot coexist")
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    ports: List[int] = Field(default_factory=list, description="Host ports bound by the profile")
    requires_synced_node: bool = Field(default=False, description="Relies on a fully synced local node")
    configuration: Dict[str, Any] = Field(default_factory=dict, description="Default configuration values")

    @field_validator("dependencies", "prerequisites", "conflicts")
    @classmethod
    def no_duplicates(cls, v):
        if len(set(v)) != len(v):
            raise ValueError("profile references must not repeat")
        return v

    @model_validator(mode="before")
    @classmethod
    def attach_profile_to_services(cls, data):
        """Services inherit the owning profile id when the catalog omits it."""
        if isinstance(data, dict) and data.get("id"):
            services = []
            for service in data.get("services") or []:
                if isinstance(service, dict) and not service.get("profile"):
                    service = {**service, "profile": data["id"]}
                services.append(service)
            data = {**data, "services": services}
        return data

    @property
    def service_names(self) -> List[str]:
        return [s.name for s in self.services]

    def to_api_response(self) -> Dict[str, Any]:
        """Convert to simplified API response format."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category.value,
            "services": self.service_names,
            "dependencies": list(self.dependencies),
            "prerequisites": list(self.prerequisites),
            "conflicts": list(self.conflicts),
            "ports": list(self.ports),
            "resources": self.resources.model_dump(exclude_none=True),
        }
