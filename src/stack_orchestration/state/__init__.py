"""
Shared installation state.
"""

from .models import (
    FallbackRecord,
    FallbackStrategy,
    InstallationState,
    Phase,
    ProfileSelection,
    ServiceEntry,
    ServiceSummary,
)
from .store import SharedStateStore

__all__ = [
    "FallbackRecord",
    "FallbackStrategy",
    "InstallationState",
    "Phase",
    "ProfileSelection",
    "ServiceEntry",
    "ServiceSummary",
    "SharedStateStore",
]
