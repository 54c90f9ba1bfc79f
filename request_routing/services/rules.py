"""Typed views of routing rules.

Rules are stored with JSON ``criteria``, ``handler`` and ``schedule`` columns;
the engine only works with the dataclasses below. Unknown keys in stored JSON
are ignored.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..models import HandlerType, RoutingRule, UrgencyLevel
from .escalation import EscalationLevel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchContext:
    """Request facts a rule can test, besides its categories."""
    content: str = ""
    subject: str | None = None
    sender_email: str | None = None
    urgency_level: UrgencyLevel = UrgencyLevel.NORMAL
    request_type: str | None = None
    now: datetime | None = None  # evaluation time, defaults to current UTC time


# =============================================================================
# CRITERIA
# =============================================================================


@dataclass(frozen=True)
class RuleCriteria:
    """All non-empty fields must match. An empty criteria matches everything."""
    categories: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()
    sender_domains: tuple[str, ...] = ()
    urgency_level: UrgencyLevel | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "RuleCriteria":
        data = data or {}
        urgency = data.get("urgency_level")
        return cls(
            categories=tuple(c.strip().lower() for c in data.get("categories") or () if c),
            keywords=tuple(k for k in data.get("keywords") or () if k),
            sender_domains=tuple(
                d.strip().lower().lstrip("@") for d in data.get("sender_domains") or () if d
            ),
            urgency_level=UrgencyLevel(urgency) if urgency else None,
        )

    def to_dict(self) -> dict:
        data: dict = {}
        if self.categories:
            data["categories"] = list(self.categories)
        if self.keywords:
            data["keywords"] = list(self.keywords)
        if self.sender_domains:
            data["sender_domains"] = list(self.sender_domains)
        if self.urgency_level is not None:
            data["urgency_level"] = self.urgency_level.value
        return data

    def matches(self, categories: Sequence[str], context: MatchContext) -> bool:
        if self.categories:
            wanted = set(self.categories)
            if not any(c.lower() in wanted for c in categories):
                return False

        if self.keywords:
            text = f"{context.subject or ''}\n{context.content or ''}".lower()
            if not any(k.lower() in text for k in self.keywords):
                return False

        if self.sender_domains:
            domain = _sender_domain(context.sender_email)
            if domain is None or not any(
                domain == d or domain.endswith(f".{d}") for d in self.sender_domains
            ):
                return False

        if self.urgency_level is not None:
            if not context.urgency_level.at_least(self.urgency_level):
                return False

        return True


def _sender_domain(email: str | None) -> str | None:
    if not email or "@" not in email:
        return None
    return email.rsplit("@", 1)[1].strip().lower() or None


# =============================================================================
# SCHEDULE
# =============================================================================


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":", 1)
    return time(int(hours), int(minutes))


@dataclass(frozen=True)
class ActiveHours:
    start: time
    end: time

    @classmethod
    def from_dict(cls, data: dict) -> "ActiveHours":
        return cls(start=_parse_hhmm(data["start"]), end=_parse_hhmm(data["end"]))

    def to_dict(self) -> dict:
        return {"start": self.start.strftime("%H:%M"), "end": self.end.strftime("%H:%M")}

    def contains(self, moment: time) -> bool:
        if self.start <= self.end:
            return self.start <= moment < self.end
        # Window wraps past midnight, e.g. 22:00-06:00
        return moment >= self.start or moment < self.end


@dataclass(frozen=True)
class RuleSchedule:
    """When a rule is eligible. Days: 0 = Sunday ... 6 = Saturday."""
    timezone: str = "UTC"
    active_hours: ActiveHours | None = None
    active_days: frozenset[int] = frozenset()

    @classmethod
    def from_dict(cls, data: dict | None) -> "RuleSchedule":
        data = data or {}
        hours = data.get("active_hours")
        return cls(
            timezone=data.get("timezone") or "UTC",
            active_hours=ActiveHours.from_dict(hours) if hours else None,
            active_days=frozenset(int(d) for d in data.get("active_days") or ()),
        )

    def to_dict(self) -> dict:
        data: dict = {}
        if self.timezone != "UTC":
            data["timezone"] = self.timezone
        if self.active_hours is not None:
            data["active_hours"] = self.active_hours.to_dict()
        if self.active_days:
            data["active_days"] = sorted(self.active_days)
        return data

    @property
    def zone(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown rule timezone '{self.timezone}', using UTC")
            return ZoneInfo("UTC")

    def is_active_at(self, moment: datetime) -> bool:
        if self.active_hours is None and not self.active_days:
            return True

        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        local = moment.astimezone(self.zone)

        # Python weekday(): Monday = 0; rules use Sunday = 0
        if self.active_days and (local.weekday() + 1) % 7 not in self.active_days:
            return False

        if self.active_hours is not None and not self.active_hours.contains(local.time()):
            return False

        return True


# =============================================================================
# HANDLER
# =============================================================================


@dataclass(frozen=True)
class RuleHandler:
    type: HandlerType
    target_id: str | None = None
    fallback_target_id: str | None = None
    pool_ids: tuple[str, ...] = ()  # round-robin members for person rules
    escalation_path: tuple[EscalationLevel, ...] = ()

    @classmethod
    def from_dict(cls, data: dict | None) -> "RuleHandler":
        data = data or {}
        return cls(
            type=HandlerType(data.get("type", HandlerType.AUTO.value)),
            target_id=data.get("target_id"),
            fallback_target_id=data.get("fallback_target_id"),
            pool_ids=tuple(data.get("pool_ids") or ()),
            escalation_path=tuple(
                EscalationLevel.from_dict(lvl) for lvl in data.get("escalation_path") or ()
            ),
        )

    def to_dict(self) -> dict:
        data: dict = {"type": self.type.value}
        if self.target_id:
            data["target_id"] = self.target_id
        if self.fallback_target_id:
            data["fallback_target_id"] = self.fallback_target_id
        if self.pool_ids:
            data["pool_ids"] = list(self.pool_ids)
        if self.escalation_path:
            data["escalation_path"] = [lvl.to_dict() for lvl in self.escalation_path]
        return data


# =============================================================================
# RULE
# =============================================================================


@dataclass(frozen=True)
class RuleDefinition:
    id: str
    organization_id: str
    name: str
    priority: int
    handler: RuleHandler
    criteria: RuleCriteria = field(default_factory=RuleCriteria)
    schedule: RuleSchedule = field(default_factory=RuleSchedule)
    is_active: bool = True
    description: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, rule: RoutingRule) -> "RuleDefinition":
        return cls(
            id=rule.id,
            organization_id=rule.organization_id,
            name=rule.name,
            description=rule.description,
            priority=rule.priority,
            is_active=rule.is_active,
            criteria=RuleCriteria.from_dict(rule.criteria),
            handler=RuleHandler.from_dict(rule.handler),
            schedule=RuleSchedule.from_dict(rule.schedule),
            created_at=rule.created_at,
        )

    def applies_to(
        self, categories: Sequence[str], context: MatchContext, moment: datetime
    ) -> bool:
        return (
            self.is_active
            and self.schedule.is_active_at(moment)
            and self.criteria.matches(categories, context)
        )
