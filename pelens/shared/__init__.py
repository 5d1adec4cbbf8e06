"""
pelens Shared Module
=====================

Configuration loading and the structured logger used across pelens.
"""

from pelens.shared.config import LensConfig, get_config
from pelens.shared.logger import LensLogger

__all__ = ["LensConfig", "LensLogger", "get_config"]
