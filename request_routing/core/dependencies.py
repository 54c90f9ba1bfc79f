"""FastAPI dependencies for organization context and routing services."""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..services.backup_selector import BackupConfig, BackupSelector
from ..services.categorizer import RequestCategorizer
from ..services.collaborators import AvailabilityProvider, ExpertiseGraph, WorkloadProvider
from ..services.decision_recorder import DecisionRecorder, DecisionStore, SqlDecisionStore
from ..services.escalation import EscalationHandler
from ..services.expert_finder import ExpertFinder
from ..services.profile_store import (
    ProfileAvailabilityProvider,
    ProfileWorkloadProvider,
    SqlExpertiseGraph,
)
from ..services.routing_engine import RoutingEngine
from ..services.rule_matcher import RuleCache, RuleMatcher
from ..services.rule_store import SqlRuleStore
from ..services.signals import GuardedExpertiseGraph, HandlerSignals
from .config import Settings, get_settings
from .database import async_session_factory, get_session

logger = logging.getLogger(__name__)

SessionDep = Annotated[AsyncSession, Depends(get_session)]


async def require_organization(
    x_organization_id: Annotated[str | None, Header()] = None,
) -> str:
    """Organization scope from the X-Organization-ID header."""
    if not x_organization_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Organization-ID header is required",
        )
    return x_organization_id


OrganizationDep = Annotated[str, Depends(require_organization)]


@lru_cache
def get_rule_cache() -> RuleCache:
    """Process-wide rule cache, invalidated by rule CRUD."""
    return RuleCache(ttl_seconds=get_settings().rule_cache_ttl_seconds)


# =============================================================================
# ROUTING SERVICES
# =============================================================================


@dataclass
class RoutingServices:
    """Wired routing components for one request scope."""
    categorizer: RequestCategorizer
    rule_store: SqlRuleStore
    matcher: RuleMatcher
    signals: HandlerSignals
    experts: ExpertFinder
    backups: BackupSelector
    escalation: EscalationHandler
    recorder: DecisionRecorder
    engine: RoutingEngine


def build_routing_services(
    session: AsyncSession,
    *,
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    rule_cache: RuleCache | None = None,
    graph: ExpertiseGraph | None = None,
    availability: AvailabilityProvider | None = None,
    workload: WorkloadProvider | None = None,
    decision_store: DecisionStore | None = None,
    categorizer: RequestCategorizer | None = None,
) -> RoutingServices:
    """Wire the engine. Collaborators default to the profile-table adapters."""
    settings = settings or get_settings()
    session_factory = session_factory or async_session_factory

    graph = graph or SqlExpertiseGraph(session_factory)
    availability = availability or ProfileAvailabilityProvider(session_factory)
    workload = workload or ProfileWorkloadProvider(
        session_factory, capacity_threshold=settings.workload_capacity_threshold
    )

    guarded_graph = GuardedExpertiseGraph(graph, timeout=settings.expertise_timeout_seconds)
    signals = HandlerSignals(
        availability,
        workload,
        availability_timeout=settings.availability_timeout_seconds,
        workload_timeout=settings.workload_timeout_seconds,
    )

    rule_store = SqlRuleStore(session, cache=rule_cache)
    matcher = RuleMatcher(rule_store, cache=rule_cache)
    categorizer = categorizer or RequestCategorizer(settings)
    experts = ExpertFinder(guarded_graph, signals)
    backups = BackupSelector(guarded_graph, signals, BackupConfig.from_settings(settings))
    escalation = EscalationHandler(
        guarded_graph, signals, backups, default_queue_id=settings.default_queue_id
    )
    recorder = DecisionRecorder(decision_store or SqlDecisionStore(session))

    engine = RoutingEngine(
        categorizer,
        matcher,
        experts,
        signals,
        backups,
        escalation,
        recorder,
        default_queue_id=settings.default_queue_id,
    )

    return RoutingServices(
        categorizer=categorizer,
        rule_store=rule_store,
        matcher=matcher,
        signals=signals,
        experts=experts,
        backups=backups,
        escalation=escalation,
        recorder=recorder,
        engine=engine,
    )


async def get_routing_services(session: SessionDep) -> RoutingServices:
    return build_routing_services(session, rule_cache=get_rule_cache())


RoutingServicesDep = Annotated[RoutingServices, Depends(get_routing_services)]
