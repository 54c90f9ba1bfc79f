"""Pydantic schemas for routing, rules and routing decisions."""

import re
from datetime import datetime

from pydantic import Field, field_validator, model_validator

from ..models import EscalationLevelType, HandlerType, UrgencyLevel
from .base import RoutingBaseModel

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _normalize_tags(values: list[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        tag = value.strip().lower()
        if tag:
            seen.setdefault(tag, None)
    return list(seen)


# =============================================================================
# RULE STRUCTURE (JSON columns)
# =============================================================================


class EscalationLevelSchema(RoutingBaseModel):
    """One step of an escalation path."""

    level: int = Field(..., ge=1)
    type: EscalationLevelType
    target_id: str | None = None
    target_role: str | None = None
    wait_minutes: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_target(self) -> "EscalationLevelSchema":
        if self.type == EscalationLevelType.ROLE and not self.target_role:
            raise ValueError("role escalation levels need a target_role")
        return self


class RuleCriteriaSchema(RoutingBaseModel):
    """Conditions a request must meet. Omitted fields are not checked."""

    categories: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    sender_domains: list[str] = Field(default_factory=list)
    urgency_level: UrgencyLevel | None = None

    @field_validator("categories", "sender_domains")
    @classmethod
    def normalize(cls, v: list[str]) -> list[str]:
        return _normalize_tags(v)


class RuleHandlerSchema(RoutingBaseModel):
    """Who gets requests matched by the rule."""

    type: HandlerType
    target_id: str | None = None
    fallback_target_id: str | None = None
    pool_ids: list[str] = Field(
        default_factory=list,
        description="Person handlers only: pick the least-loaded pool member",
    )
    escalation_path: list[EscalationLevelSchema] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_target(self) -> "RuleHandlerSchema":
        if self.type in (HandlerType.TEAM, HandlerType.QUEUE) and not self.target_id:
            raise ValueError(f"{self.type} handlers need a target_id")
        if self.type == HandlerType.PERSON and not (self.target_id or self.pool_ids):
            raise ValueError("person handlers need a target_id or pool_ids")

        levels = [lvl.level for lvl in self.escalation_path]
        if levels != sorted(set(levels)):
            raise ValueError("escalation levels must be strictly increasing")
        return self


class ActiveHoursSchema(RoutingBaseModel):
    start: str = Field(..., description="HH:MM in the rule timezone")
    end: str = Field(..., description="HH:MM; before start wraps past midnight")

    @field_validator("start", "end")
    @classmethod
    def validate_hhmm(cls, v: str) -> str:
        if not _HHMM.match(v):
            raise ValueError("expected HH:MM")
        return v


class RuleScheduleSchema(RoutingBaseModel):
    timezone: str = "UTC"
    active_hours: ActiveHoursSchema | None = None
    active_days: list[int] = Field(
        default_factory=list,
        description="0 = Sunday ... 6 = Saturday",
    )

    @field_validator("active_days")
    @classmethod
    def validate_days(cls, v: list[int]) -> list[int]:
        if any(day < 0 or day > 6 for day in v):
            raise ValueError("active_days must be between 0 and 6")
        return sorted(set(v))


# =============================================================================
# RULE SCHEMAS
# =============================================================================


class RuleCreate(RoutingBaseModel):
    """Schema for creating a routing rule."""

    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    priority: int = Field(default=100, ge=0, le=1000)
    is_active: bool = True
    criteria: RuleCriteriaSchema = Field(default_factory=RuleCriteriaSchema)
    handler: RuleHandlerSchema
    schedule: RuleScheduleSchema = Field(default_factory=RuleScheduleSchema)


class RuleUpdate(RoutingBaseModel):
    """Schema for a partial rule update."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    priority: int | None = Field(default=None, ge=0, le=1000)
    is_active: bool | None = None
    criteria: RuleCriteriaSchema | None = None
    handler: RuleHandlerSchema | None = None
    schedule: RuleScheduleSchema | None = None


class RuleResponse(RoutingBaseModel):
    id: str
    organization_id: str
    name: str
    description: str | None = None
    priority: int
    is_active: bool
    criteria: RuleCriteriaSchema
    handler: RuleHandlerSchema
    schedule: RuleScheduleSchema
    created_at: datetime | None = None
    updated_at: datetime | None = None


# =============================================================================
# CATEGORIZATION
# =============================================================================


class CategorizeRequest(RoutingBaseModel):
    content: str = Field(..., min_length=1)
    subject: str | None = None
    use_ai: bool = False


class CategorizationResponse(RoutingBaseModel):
    categories: list[str]
    urgency_level: UrgencyLevel
    confidence: float
    source: str


class MatchRulesRequest(RoutingBaseModel):
    categories: list[str] = Field(..., min_length=1)
    content: str = ""
    subject: str | None = None
    sender_email: str | None = None
    urgency_level: UrgencyLevel = UrgencyLevel.NORMAL

    @field_validator("categories")
    @classmethod
    def normalize(cls, v: list[str]) -> list[str]:
        return _normalize_tags(v)


class MatchedRuleResponse(RoutingBaseModel):
    id: str
    name: str
    priority: int
    handler: RuleHandlerSchema


# =============================================================================
# EXPERTS AND HANDLERS
# =============================================================================


class FindExpertsRequest(RoutingBaseModel):
    categories: list[str] = Field(..., min_length=1)
    must_be_available: bool = True
    max_workload: float | None = Field(default=None, ge=0, le=100)
    limit: int = Field(default=5, ge=1, le=20)
    exclude_person_ids: list[str] = Field(default_factory=list)


class HandlerCandidateResponse(RoutingBaseModel):
    person_id: str
    person_name: str
    expertise_score: float
    availability_score: float
    workload_score: float
    combined_score: float
    matched_skills: list[str] = Field(default_factory=list)


class AvailabilityResponse(RoutingBaseModel):
    person_id: str
    is_available: bool
    score: float
    reason: str | None = None


class WorkloadResponse(RoutingBaseModel):
    person_id: str
    has_capacity: bool
    current_workload: float
    workload_score: float


class EscalateRequest(RoutingBaseModel):
    escalation_path: list[EscalationLevelSchema] | None = None
    is_urgent: bool = False
    start_level: int = Field(default=1, ge=1)


class EscalationResponse(RoutingBaseModel):
    handler_id: str
    handler_type: HandlerType
    handler_name: str | None = None
    escalation_level: int
    reason: str
    original_handler_id: str
    exhausted: bool = False


class SelectBackupRequest(RoutingBaseModel):
    require_capacity: bool = False
    exclude_ids: list[str] = Field(default_factory=list)


class BackupResponse(RoutingBaseModel):
    person_id: str
    person_name: str
    workload_score: float
    availability_score: float
    expertise_score: float
    combined_score: float
    reason: str
    strategy: str


# =============================================================================
# ROUTING
# =============================================================================


class RoutableRequest(RoutingBaseModel):
    """An incoming ticket, email or task description."""

    content: str = Field(..., min_length=1)
    subject: str | None = None
    request_type: str = "general"
    metadata: dict = Field(default_factory=dict)
    user_id: str | None = None
    request_id: str | None = Field(
        default=None,
        description="Caller's id; a content fingerprint is used when omitted",
    )
    sender_email: str | None = None

    @field_validator("content")
    @classmethod
    def require_text(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content must not be blank")
        return v


class RouteOptionsSchema(RoutingBaseModel):
    use_ai: bool = False
    categories: list[str] | None = Field(
        default=None,
        description="Skip categorization and use these categories",
    )
    skip_rules: bool = False
    preferred_handler_id: str | None = None
    ignore_workload: bool = False
    max_alternatives: int = Field(default=3, ge=0, le=10)


class RouteRequest(RoutableRequest, RouteOptionsSchema):
    """A request to route, plus routing options."""


class BatchRouteRequest(RoutingBaseModel):
    requests: list[RoutableRequest] = Field(..., min_length=1, max_length=50)
    options: RouteOptionsSchema = Field(default_factory=RouteOptionsSchema)


class RoutingDecisionResponse(RoutingBaseModel):
    id: str
    organization_id: str
    request_id: str
    request_type: str | None = None
    categories: list[str]
    urgency_level: UrgencyLevel
    handler_id: str
    handler_type: HandlerType
    handler_name: str | None = None
    matched_rule_id: str | None = None
    matched_rule_name: str | None = None
    confidence: float
    reasoning: str
    was_escalated: bool
    was_rerouted: bool
    escalation_level: int
    alternative_handlers: list[HandlerCandidateResponse] = Field(default_factory=list)
    processing_time_ms: int | None = None
    created_at: datetime | None = None

    # Outcome feedback
    was_successful: bool | None = None
    feedback_score: int | None = None
    feedback_text: str | None = None
    resolution_time_ms: int | None = None
    outcome_recorded_at: datetime | None = None


class RouteResponse(RoutingBaseModel):
    decision: RoutingDecisionResponse
    matched_rules: list[str] = Field(default_factory=list)
    processing_time_ms: int


class BatchRouteResponse(RoutingBaseModel):
    results: list[RouteResponse]
    failed: int = Field(..., description="Requests that could not be routed")


class DecisionListResponse(RoutingBaseModel):
    items: list[RoutingDecisionResponse]
    count: int


class FeedbackRequest(RoutingBaseModel):
    """Outcome feedback; a later call overwrites an earlier one."""

    was_successful: bool
    feedback_score: int | None = Field(default=None, ge=1, le=5)
    feedback_text: str | None = Field(default=None, max_length=2000)
    resolution_time_ms: int | None = Field(default=None, ge=0)
