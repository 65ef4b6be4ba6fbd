"""
Deployment orchestration core for the Kaspa all-in-one node stack.

Subpackages:
- profiles: profile catalog and dependency resolution
- state: shared installation state store
- networking: endpoint fallback probing and cross-launch context
- health: container and node health monitoring
- fallback: failure handling state machine
- broadcast: real-time event fan-out and log stream multiplexing
- api: FastAPI application
"""

__version__ = "0.1.0"
