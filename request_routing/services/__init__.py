"""Routing services: categorization, rules, expertise, escalation and decisions."""

from .backup_selector import BackupConfig, BackupOptions, BackupResult, BackupSelector
from .categorizer import CategorizationResult, RequestCategorizer, quick_categorize
from .collaborators import (
    AvailabilityCheck,
    AvailabilityProvider,
    ExpertiseGraph,
    PersonProfile,
    Skill,
    WorkloadCheck,
    WorkloadProvider,
)
from .decision_recorder import (
    DecisionOutcome,
    DecisionRecord,
    DecisionRecorder,
    DecisionStore,
    SqlDecisionStore,
)
from .errors import (
    DecisionNotFoundError,
    DecisionRecordError,
    InvalidRequestError,
    RoutingError,
    RuleNotFoundError,
)
from .escalation import (
    DEFAULT_ESCALATION_PATH,
    URGENT_ESCALATION_PATH,
    EscalationHandler,
    EscalationLevel,
    EscalationOptions,
    EscalationResult,
)
from .expert_finder import ExpertFinder, ExpertSearchOptions, HandlerCandidate
from .profile_store import (
    ProfileAvailabilityProvider,
    ProfileWorkloadProvider,
    SqlExpertiseGraph,
)
from .routing_engine import IncomingRequest, RoutingEngine, RoutingOptions, RoutingOutcome
from .rule_matcher import RuleCache, RuleMatcher, RuleStore
from .rule_store import SqlRuleStore
from .rules import MatchContext, RuleCriteria, RuleDefinition, RuleHandler, RuleSchedule
from .signals import GuardedExpertiseGraph, HandlerSignals

__all__ = [
    # Engine
    "RoutingEngine",
    "IncomingRequest",
    "RoutingOptions",
    "RoutingOutcome",
    # Components
    "RequestCategorizer",
    "CategorizationResult",
    "quick_categorize",
    "RuleMatcher",
    "RuleCache",
    "RuleStore",
    "SqlRuleStore",
    "MatchContext",
    "RuleCriteria",
    "RuleDefinition",
    "RuleHandler",
    "RuleSchedule",
    "ExpertFinder",
    "ExpertSearchOptions",
    "HandlerCandidate",
    "EscalationHandler",
    "EscalationLevel",
    "EscalationOptions",
    "EscalationResult",
    "DEFAULT_ESCALATION_PATH",
    "URGENT_ESCALATION_PATH",
    "BackupSelector",
    "BackupConfig",
    "BackupOptions",
    "BackupResult",
    "DecisionRecorder",
    "DecisionRecord",
    "DecisionOutcome",
    "DecisionStore",
    "SqlDecisionStore",
    # Collaborators
    "AvailabilityCheck",
    "AvailabilityProvider",
    "ExpertiseGraph",
    "PersonProfile",
    "Skill",
    "WorkloadCheck",
    "WorkloadProvider",
    "GuardedExpertiseGraph",
    "HandlerSignals",
    "ProfileAvailabilityProvider",
    "ProfileWorkloadProvider",
    "SqlExpertiseGraph",
    # Errors
    "RoutingError",
    "InvalidRequestError",
    "RuleNotFoundError",
    "DecisionNotFoundError",
    "DecisionRecordError",
]
