"""
Logging module for the supervisor.
This module provides functionality to set up console, file and Loki logging.
"""

from .setup import setup_logging

__all__ = ["setup_logging"]
