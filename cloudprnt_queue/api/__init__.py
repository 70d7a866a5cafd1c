"""
HTTP API for the CloudPRNT print queue
"""

from .app import create_app, get_orchestrator

__all__ = [
    "create_app",
    "get_orchestrator"
]
