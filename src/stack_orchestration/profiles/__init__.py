"""
Profile catalog and dependency resolution.
"""

from .models import (
    HealthCheckSpec,
    HealthCheckType,
    Profile,
    ProfileCategory,
    ResourceRequirements,
    ServiceDescriptor,
)
from .loader import DEFAULT_CATALOG_PATH, ProfileCatalog, ProfileCatalogLoader
from .resolver import (
    AdditionResult,
    DependencyGraph,
    DependencyResolver,
    HostResources,
    RemovalImpact,
    RemovalResult,
)

__all__ = [
    "HealthCheckSpec",
    "HealthCheckType",
    "Profile",
    "ProfileCategory",
    "ResourceRequirements",
    "ServiceDescriptor",
    "DEFAULT_CATALOG_PATH",
    "ProfileCatalog",
    "ProfileCatalogLoader",
    "AdditionResult",
    "DependencyGraph",
    "DependencyResolver",
    "HostResources",
    "RemovalImpact",
    "RemovalResult",
]
