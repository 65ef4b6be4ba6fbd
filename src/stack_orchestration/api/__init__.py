"""FastAPI layer over StackOrchestrator."""

from .app import create_app

__all__ = ["create_app"]
