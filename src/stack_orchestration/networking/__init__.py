"""
Endpoint probing and cross-launch context.
"""

from .prober import (
    ConnectionResult,
    EndpointProber,
    NodeRpcProber,
    ProbeAttempt,
    ProbeOutcome,
    StatusPoller,
    build_port_chain,
)
from .cross_launch import CrossLaunchContext, CrossLaunchNavigator, LaunchAction, decode_context, strip_context

__all__ = [
    "ConnectionResult",
    "EndpointProber",
    "NodeRpcProber",
    "ProbeAttempt",
    "ProbeOutcome",
    "StatusPoller",
    "build_port_chain",
    "CrossLaunchContext",
    "CrossLaunchNavigator",
    "LaunchAction",
    "decode_context",
    "strip_context",
]
