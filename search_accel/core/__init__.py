"""Core configuration for search_accel."""
from search_accel.core.config import AccelConfig, get_config, set_config

__all__ = ["AccelConfig", "get_config", "set_config"]
