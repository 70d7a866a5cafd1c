"""
Utilities package for the CloudPRNT print queue

Logging setup and configuration loading.
"""

from .logger import setup_logger, get_logger, set_log_context, LoggerContext
from .config import Settings, load_settings

__all__ = [
    "setup_logger",
    "get_logger",
    "set_log_context",
    "LoggerContext",
    "Settings",
    "load_settings"
]
