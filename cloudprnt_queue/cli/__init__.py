"""
Command-line interface for the CloudPRNT print queue
"""

from .main import cli, main

__all__ = ["cli", "main"]
