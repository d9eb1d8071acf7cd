"""
Models package
"""
from .database import Base, AutomationSession, SessionStep, BrowserAction, generate_uuid

__all__ = ["Base", "AutomationSession", "SessionStep", "BrowserAction", "generate_uuid"]
