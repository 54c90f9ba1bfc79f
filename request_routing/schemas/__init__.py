"""Routing API Schemas.

Schemas are organized by domain:
- base: Common configuration and error responses
- routing: Rules, categorization, experts, escalation, backups and decisions
"""

from .base import (
    ErrorDetail,
    ErrorResponse,
    RoutingBaseModel,
)
from .routing import (
    # Rule structure
    ActiveHoursSchema,
    EscalationLevelSchema,
    RuleCriteriaSchema,
    RuleHandlerSchema,
    RuleScheduleSchema,
    # Rules
    RuleCreate,
    RuleResponse,
    RuleUpdate,
    # Categorization and matching
    CategorizationResponse,
    CategorizeRequest,
    MatchedRuleResponse,
    MatchRulesRequest,
    # Experts and handlers
    AvailabilityResponse,
    BackupResponse,
    EscalateRequest,
    EscalationResponse,
    FindExpertsRequest,
    HandlerCandidateResponse,
    SelectBackupRequest,
    WorkloadResponse,
    # Routing
    BatchRouteRequest,
    BatchRouteResponse,
    DecisionListResponse,
    FeedbackRequest,
    RoutableRequest,
    RouteOptionsSchema,
    RouteRequest,
    RouteResponse,
    RoutingDecisionResponse,
)

__all__ = [
    "ErrorDetail",
    "ErrorResponse",
    "RoutingBaseModel",
    "ActiveHoursSchema",
    "EscalationLevelSchema",
    "RuleCriteriaSchema",
    "RuleHandlerSchema",
    "RuleScheduleSchema",
    "RuleCreate",
    "RuleResponse",
    "RuleUpdate",
    "CategorizationResponse",
    "CategorizeRequest",
    "MatchedRuleResponse",
    "MatchRulesRequest",
    "AvailabilityResponse",
    "BackupResponse",
    "EscalateRequest",
    "EscalationResponse",
    "FindExpertsRequest",
    "HandlerCandidateResponse",
    "SelectBackupRequest",
    "WorkloadResponse",
    "BatchRouteRequest",
    "BatchRouteResponse",
    "DecisionListResponse",
    "FeedbackRequest",
    "RoutableRequest",
    "RouteOptionsSchema",
    "RouteRequest",
    "RouteResponse",
    "RoutingDecisionResponse",
]
