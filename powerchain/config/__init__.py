"""Configuration module."""
from powerchain.config.settings import Settings, settings

__all__ = ["Settings", "settings"]
