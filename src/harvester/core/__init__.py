"""
Core module containing configuration, logging, errors and clock helpers.
"""

from harvester.core.config import get_settings, Settings
from harvester.core.logging import get_logger, setup_logging

__all__ = ["get_settings", "Settings", "get_logger", "setup_logging"]
