"""Configuration module for habitclock."""

from habitclock.config.loader import get_config_path, load_config
from habitclock.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
