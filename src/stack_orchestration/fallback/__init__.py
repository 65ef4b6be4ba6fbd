"""
Failure handling and public endpoint fallback.
"""

from stack_orchestration.state.models import FallbackStrategy
from .endpoints import NODE_FALLBACK_FLAGS, PUBLIC_ENDPOINTS, endpoints_for
from .engine import (
    STRATEGY_OPTIONS,
    FallbackEngine,
    FallbackState,
    ServiceTracker,
    StrategyOption,
    restore_configuration,
    troubleshooting_steps,
)

__all__ = [
    "FallbackStrategy",
    "NODE_FALLBACK_FLAGS",
    "PUBLIC_ENDPOINTS",
    "endpoints_for",
    "STRATEGY_OPTIONS",
    "FallbackEngine",
    "FallbackState",
    "ServiceTracker",
    "StrategyOption",
    "restore_configuration",
    "troubleshooting_steps",
]
