"""SQLAlchemy ORM Models for request routing.

Three tables back the routing engine:
- routing_rules: organization-defined routing rules (criteria/handler/schedule as JSON)
- routing_decisions: append-only record of every routing outcome
- expertise_profiles: default store for the expertise graph, availability and workload signals
"""

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType, StringIDMixin, TimestampMixin, utcnow


# =============================================================================
# ENUMS
# =============================================================================


class UrgencyLevel(str, PyEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _URGENCY_RANK[self]

    def at_least(self, other: "UrgencyLevel") -> bool:
        return self.rank >= other.rank

    @property
    def is_urgent(self) -> bool:
        return self.rank >= _URGENCY_RANK[UrgencyLevel.HIGH]


_URGENCY_RANK = {
    UrgencyLevel.LOW: 0,
    UrgencyLevel.NORMAL: 1,
    UrgencyLevel.HIGH: 2,
    UrgencyLevel.CRITICAL: 3,
}


class HandlerType(str, PyEnum):
    PERSON = "person"
    TEAM = "team"
    QUEUE = "queue"
    AUTO = "auto"  # Rule defers to expertise matching


class EscalationLevelType(str, PyEnum):
    MANAGER = "manager"
    ROLE = "role"
    PERSON = "person"
    TEAM = "team"
    QUEUE = "queue"


class BackupStrategy(str, PyEnum):
    DESIGNATED = "designated"
    TEAM = "team"
    SKILL = "skill"
    LOWEST_WORKLOAD = "lowest_workload"


class PresenceStatus(str, PyEnum):
    AVAILABLE = "available"
    BUSY = "busy"  # Reachable, but at reduced availability
    AWAY = "away"
    OFFLINE = "offline"


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


# =============================================================================
# ROUTING RULES
# =============================================================================


class RoutingRule(Base, StringIDMixin, TimestampMixin):
    """Organization-defined routing rule.

    Inactive rules are kept, never deleted by the matcher; they are skipped
    during evaluation.
    """

    __tablename__ = "routing_rules"

    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    priority: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Per-organization creation order; breaks priority ties
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    # {"categories": [...], "keywords": [...], "sender_domains": [...], "urgency_level": "high"}
    criteria: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    # {"type": "person", "target_id": ..., "fallback_target_id": ..., "escalation_path": [...]}
    handler: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    # {"timezone": "Europe/Vienna", "active_hours": {"start": "08:00", "end": "17:00"}, "active_days": [1, 2]}
    schedule: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    __table_args__ = (
        CheckConstraint("priority >= 0 AND priority <= 1000", name="priority_range"),
        UniqueConstraint("organization_id", "sequence", name="uq_routing_rules_org_sequence"),
        Index("idx_routing_rules_org_active", "organization_id", "is_active"),
    )


# =============================================================================
# ROUTING DECISIONS (append-only)
# =============================================================================


class RoutingDecision(Base, StringIDMixin):
    """One routing outcome.

    Rows are inserted exactly once per routed request. The only later
    mutation is attaching outcome feedback.
    """

    __tablename__ = "routing_decisions"

    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    request_id: Mapped[str] = mapped_column(String(128), nullable=False)
    request_type: Mapped[str] = mapped_column(String(50), default="general")
    categories: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    urgency_level: Mapped[UrgencyLevel] = mapped_column(
        Enum(
            UrgencyLevel,
            name="urgency_level",
            values_callable=_enum_values,
            native_enum=False,
        ),
        default=UrgencyLevel.NORMAL,
        nullable=False,
    )

    handler_id: Mapped[str] = mapped_column(String(128), nullable=False)
    handler_type: Mapped[HandlerType] = mapped_column(
        Enum(
            HandlerType,
            name="handler_type",
            values_callable=_enum_values,
            native_enum=False,
        ),
        nullable=False,
    )
    handler_name: Mapped[str | None] = mapped_column(String(255))
    matched_rule_id: Mapped[str | None] = mapped_column(String(36))
    matched_rule_name: Mapped[str | None] = mapped_column(String(255))

    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    reasoning: Mapped[str] = mapped_column(Text, default="")
    was_escalated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    was_rerouted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    escalation_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    alternative_handlers: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    # Outcome feedback
    was_successful: Mapped[bool | None] = mapped_column(Boolean)
    feedback_score: Mapped[int | None] = mapped_column(Integer)
    feedback_text: Mapped[str | None] = mapped_column(Text)
    resolution_time_ms: Mapped[int | None] = mapped_column(Integer)
    outcome_recorded_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="confidence_range"),
        CheckConstraint(
            "feedback_score IS NULL OR (feedback_score >= 1 AND feedback_score <= 5)",
            name="feedback_score_range",
        ),
        Index("idx_routing_decisions_org_created", "organization_id", "created_at"),
        Index("idx_routing_decisions_handler", "organization_id", "handler_id"),
    )


# =============================================================================
# EXPERTISE PROFILES
# =============================================================================


class ExpertiseProfile(Base, StringIDMixin):
    """A person's expertise, reporting line and live workload signals."""

    __tablename__ = "expertise_profiles"

    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    person_id: Mapped[str] = mapped_column(String(128), nullable=False)
    person_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255))
    department: Mapped[str | None] = mapped_column(String(255))
    team: Mapped[str | None] = mapped_column(String(255))

    # Reporting line and continuity
    manager_id: Mapped[str | None] = mapped_column(String(128))
    backup_person_id: Mapped[str | None] = mapped_column(String(128))
    roles: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)

    # [{"name": "SQL", "level": 3, "confidence": 0.9}]
    skills: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)

    status: Mapped[PresenceStatus] = mapped_column(
        Enum(
            PresenceStatus,
            name="presence_status",
            values_callable=_enum_values,
            native_enum=False,
        ),
        default=PresenceStatus.AVAILABLE,
        nullable=False,
    )
    current_workload: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("organization_id", "person_id"),
        CheckConstraint(
            "current_workload >= 0 AND current_workload <= 100",
            name="workload_range",
        ),
        Index("idx_expertise_profiles_org_team", "organization_id", "team"),
    )
