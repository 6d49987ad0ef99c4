"""
Core utilities and configuration for the A2S engine.

This package provides engine settings and logging configuration shared by
every component.
"""

from a2s_engine.core.config import EngineSettings, get_settings
from a2s_engine.core.logging_config import get_logger, setup_logging

__all__ = ["EngineSettings", "get_logger", "get_settings", "setup_logging"]
