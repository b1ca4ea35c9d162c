"""Configuration package for the reconciliation service."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
