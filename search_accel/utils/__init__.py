"""Utility modules for search_accel."""
from search_accel.utils.logger import get_logger

__all__ = ["get_logger"]
