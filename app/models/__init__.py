"""Database models for MatchFlow."""

from app.models.base import Base, async_session_factory, engine, get_db
from app.models.domain import (
    AutomationConfig,
    AutomationLog,
    AutomationLogFixture,
    Fixture,
    League,
    MatchAnalysis,
    Prediction,
    Team,
    Venue,
)

__all__ = [
    # Base
    "Base",
    "engine",
    "async_session_factory",
    "get_db",
    # Domain models
    "League",
    "Venue",
    "Team",
    "Fixture",
    "Prediction",
    "MatchAnalysis",
    "AutomationConfig",
    "AutomationLog",
    "AutomationLogFixture",
]
