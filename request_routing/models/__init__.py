"""SQLAlchemy ORM Models for request routing."""

from .base import Base, StringIDMixin, TimestampMixin
from .models import (
    # Enums
    BackupStrategy,
    EscalationLevelType,
    HandlerType,
    PresenceStatus,
    UrgencyLevel,
    # Tables
    ExpertiseProfile,
    RoutingDecision,
    RoutingRule,
)

__all__ = [
    # Base
    "Base",
    "StringIDMixin",
    "TimestampMixin",
    # Enums
    "BackupStrategy",
    "EscalationLevelType",
    "HandlerType",
    "PresenceStatus",
    "UrgencyLevel",
    # Tables
    "ExpertiseProfile",
    "RoutingDecision",
    "RoutingRule",
]
