"""
Container and node health monitoring.
"""

from .docker_client import ContainerInfo, DockerClient, parse_health
from .monitor import FailureReason, HealthMonitor, HealthStatus, HealthVerdict, SubCheck

__all__ = [
    "ContainerInfo",
    "DockerClient",
    "parse_health",
    "FailureReason",
    "HealthMonitor",
    "HealthStatus",
    "HealthVerdict",
    "SubCheck",
]
