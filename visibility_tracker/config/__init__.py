"""Configuration loading and validation for the visibility tracker."""

from .loader import load_config, load_settings
from .schema import RuntimeConfig, RuntimeProvider, TrackerConfig

__all__ = ["RuntimeConfig", "RuntimeProvider", "TrackerConfig", "load_config", "load_settings"]
