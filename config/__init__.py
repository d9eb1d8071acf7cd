"""
Configuration package
"""
from .settings import Settings, Environment, settings

__all__ = ["Settings", "Environment", "settings"]
