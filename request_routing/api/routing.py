"""
Routing API Routes.

Endpoints:
1. POST /routing/route - Route a request and record the decision
2. POST /routing/categorize, /match-rules, /find-expert(s) - Pipeline stages on their own
3. /routing/handlers/{id}/... - Availability, workload, backups and escalation
4. /routing/rules - Routing rule CRUD
5. /routing/decisions - Decision history and outcome feedback
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, Response, status

from ..core.dependencies import OrganizationDep, RoutingServicesDep
from ..schemas.routing import (
    AvailabilityResponse,
    BackupResponse,
    BatchRouteRequest,
    BatchRouteResponse,
    CategorizationResponse,
    CategorizeRequest,
    DecisionListResponse,
    EscalateRequest,
    EscalationResponse,
    FeedbackRequest,
    FindExpertsRequest,
    HandlerCandidateResponse,
    MatchedRuleResponse,
    MatchRulesRequest,
    RoutableRequest,
    RouteOptionsSchema,
    RouteRequest,
    RouteResponse,
    RoutingDecisionResponse,
    RuleCreate,
    RuleResponse,
    RuleUpdate,
    SelectBackupRequest,
    WorkloadResponse,
)
from ..services.backup_selector import BackupOptions
from ..services.decision_recorder import DecisionOutcome, DecisionRecord
from ..services.errors import (
    DecisionNotFoundError,
    DecisionRecordError,
    InvalidRequestError,
    RuleNotFoundError,
)
from ..services.escalation import EscalationLevel, EscalationOptions
from ..services.expert_finder import ExpertSearchOptions
from ..services.routing_engine import IncomingRequest, RoutingOptions, RoutingOutcome
from ..services.rules import MatchContext
from ..models import UrgencyLevel

router = APIRouter(prefix="/routing", tags=["routing"])


# =============================================================================
# HELPERS
# =============================================================================


def _incoming(body: RoutableRequest, organization_id: str) -> IncomingRequest:
    return IncomingRequest(
        content=body.content,
        organization_id=organization_id,
        subject=body.subject,
        request_type=body.request_type,
        metadata=body.metadata,
        user_id=body.user_id,
        request_id=body.request_id,
        sender_email=body.sender_email,
    )


def _options(body: RouteOptionsSchema) -> RoutingOptions:
    return RoutingOptions(
        use_ai=body.use_ai,
        provided_categories=body.categories,
        skip_rules=body.skip_rules,
        preferred_handler_id=body.preferred_handler_id,
        ignore_workload=body.ignore_workload,
        max_alternatives=body.max_alternatives,
    )


def _decision_response(record: DecisionRecord) -> RoutingDecisionResponse:
    return RoutingDecisionResponse.model_validate(record.to_dict())


def _route_response(outcome: RoutingOutcome) -> RouteResponse:
    return RouteResponse(
        decision=_decision_response(outcome.decision),
        matched_rules=[rule.name for rule in outcome.matched_rules],
        processing_time_ms=outcome.processing_time_ms,
    )


# =============================================================================
# ROUTING
# =============================================================================


@router.post(
    "/route",
    response_model=RouteResponse,
    summary="Route a request",
    description="""
    Decide who handles a request and record the decision.

    The response always names a handler: a person, a team, or a queue.
    If the decision cannot be stored the call fails with 503 and should be retried.
    """,
)
async def route_request(
    request: RouteRequest,
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
):
    """Route a single request."""
    try:
        outcome = await services.engine.route_request(
            _incoming(request, organization_id), _options(request)
        )
    except InvalidRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except DecisionRecordError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return _route_response(outcome)


@router.post(
    "/route/batch",
    response_model=BatchRouteResponse,
    summary="Route several requests",
)
async def route_batch(
    request: BatchRouteRequest,
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
):
    """Route requests independently; failures are counted, not raised."""
    outcomes = await services.engine.route_requests(
        [_incoming(item, organization_id) for item in request.requests],
        _options(request.options),
    )
    return BatchRouteResponse(
        results=[_route_response(o) for o in outcomes],
        failed=len(request.requests) - len(outcomes),
    )


@router.post("/categorize", response_model=CategorizationResponse)
async def categorize(request: CategorizeRequest, services: RoutingServicesDep):
    """Categorize request text without routing it."""
    result = await services.categorizer.categorize(
        request.content, request.subject, use_ai=request.use_ai
    )
    return CategorizationResponse(**result.to_dict())


@router.post("/match-rules", response_model=list[MatchedRuleResponse])
async def match_rules(
    request: MatchRulesRequest,
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
):
    """Rules that match the given categories, highest priority first."""
    rules = await services.matcher.match_rules(
        organization_id,
        request.categories,
        MatchContext(
            content=request.content,
            subject=request.subject,
            sender_email=request.sender_email,
            urgency_level=UrgencyLevel(request.urgency_level),
        ),
    )
    return [
        MatchedRuleResponse(
            id=rule.id,
            name=rule.name,
            priority=rule.priority,
            handler=rule.handler.to_dict(),
        )
        for rule in rules
    ]


# =============================================================================
# EXPERTS
# =============================================================================


def _search_options(request: FindExpertsRequest) -> ExpertSearchOptions:
    return ExpertSearchOptions(
        must_be_available=request.must_be_available,
        max_workload=request.max_workload,
        limit=request.limit,
        exclude_person_ids=request.exclude_person_ids,
    )


@router.post("/find-expert", response_model=HandlerCandidateResponse)
async def find_expert(
    request: FindExpertsRequest,
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
):
    """Best expert for the categories."""
    try:
        expert = await services.experts.find_best_expert(
            organization_id, request.categories, _search_options(request)
        )
    except InvalidRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if expert is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No expert found for these categories",
        )
    return HandlerCandidateResponse(**expert.to_dict())


@router.post("/find-experts", response_model=list[HandlerCandidateResponse])
async def find_experts(
    request: FindExpertsRequest,
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
):
    """Ranked experts for the categories."""
    try:
        experts = await services.experts.find_experts(
            organization_id, request.categories, _search_options(request)
        )
    except InvalidRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return [HandlerCandidateResponse(**e.to_dict()) for e in experts]


# =============================================================================
# HANDLERS
# =============================================================================


@router.get("/handlers/{person_id}/availability", response_model=AvailabilityResponse)
async def check_availability(
    person_id: str,
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
):
    check = await services.signals.availability(person_id, organization_id)
    return AvailabilityResponse(
        person_id=person_id,
        is_available=check.is_available,
        score=check.score,
        reason=check.reason,
    )


@router.get("/handlers/{person_id}/workload", response_model=WorkloadResponse)
async def check_workload(
    person_id: str,
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
):
    check = await services.signals.workload(person_id, organization_id)
    return WorkloadResponse(
        person_id=person_id,
        has_capacity=check.has_capacity,
        current_workload=check.current_workload,
        workload_score=check.workload_score,
    )


@router.get("/handlers/{person_id}/backups", response_model=list[BackupResponse])
async def get_backup_candidates(
    person_id: str,
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
    limit: Annotated[int, Query(ge=1, le=20)] = 5,
):
    """Ranked backup suggestions for a handler."""
    candidates = await services.backups.get_backup_candidates(person_id, organization_id, limit)
    return [BackupResponse(**c.to_dict()) for c in candidates]


@router.post("/handlers/{person_id}/select-backup", response_model=BackupResponse)
async def select_backup(
    person_id: str,
    request: SelectBackupRequest,
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
):
    """First backup found by the cascade; 404 when nobody qualifies."""
    backup = await services.backups.select_backup(
        person_id,
        organization_id,
        BackupOptions(
            require_capacity=request.require_capacity,
            exclude_ids=request.exclude_ids,
        ),
    )
    if backup is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No backup available for {person_id}",
        )
    return BackupResponse(**backup.to_dict())


@router.post("/handlers/{person_id}/escalate", response_model=EscalationResponse)
async def escalate(
    person_id: str,
    request: EscalateRequest,
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
):
    """Escalate away from a handler. Always resolves to someone or a queue."""
    path = (
        [EscalationLevel.from_dict(lvl.model_dump()) for lvl in request.escalation_path]
        if request.escalation_path
        else None
    )
    result = await services.escalation.handle_escalation(
        person_id,
        organization_id,
        EscalationOptions(
            escalation_path=path,
            is_urgent=request.is_urgent,
            start_level=request.start_level,
        ),
    )
    return EscalationResponse(**result.to_dict())


# =============================================================================
# RULES
# =============================================================================


@router.get("/rules", response_model=list[RuleResponse])
async def list_rules(
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
    include_inactive: bool = True,
):
    return await services.rule_store.list_rules(organization_id, include_inactive)


@router.post("/rules", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(
    request: RuleCreate,
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
):
    return await services.rule_store.create_rule(organization_id, request)


@router.get("/rules/{rule_id}", response_model=RuleResponse)
async def get_rule(
    rule_id: str,
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
):
    try:
        return await services.rule_store.get_rule(organization_id, rule_id)
    except RuleNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Routing rule {rule_id} not found",
        )


@router.patch("/rules/{rule_id}", response_model=RuleResponse)
async def update_rule(
    rule_id: str,
    request: RuleUpdate,
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
):
    try:
        return await services.rule_store.update_rule(organization_id, rule_id, request)
    except RuleNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Routing rule {rule_id} not found",
        )


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(
    rule_id: str,
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
):
    try:
        await services.rule_store.delete_rule(organization_id, rule_id)
    except RuleNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Routing rule {rule_id} not found",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# DECISIONS
# =============================================================================


@router.get("/decisions", response_model=DecisionListResponse)
async def list_decisions(
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
    handler_id: str | None = None,
    since: datetime | None = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
):
    records = await services.recorder.list_decisions(
        organization_id, handler_id=handler_id, since=since, limit=limit
    )
    return DecisionListResponse(
        items=[_decision_response(r) for r in records],
        count=len(records),
    )


@router.get("/decisions/{decision_id}", response_model=RoutingDecisionResponse)
async def get_decision(
    decision_id: str,
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
):
    try:
        record = await services.recorder.get_decision(decision_id, organization_id)
    except DecisionNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Routing decision {decision_id} not found",
        )
    return _decision_response(record)


@router.post("/decisions/{decision_id}/feedback", response_model=RoutingDecisionResponse)
async def record_feedback(
    decision_id: str,
    request: FeedbackRequest,
    organization_id: OrganizationDep,
    services: RoutingServicesDep,
):
    """Attach outcome feedback. Repeated calls overwrite the previous outcome."""
    try:
        await services.recorder.update_outcome(
            decision_id,
            organization_id,
            DecisionOutcome(
                was_successful=request.was_successful,
                feedback_score=request.feedback_score,
                feedback_text=request.feedback_text,
                resolution_time_ms=request.resolution_time_ms,
            ),
        )
        record = await services.recorder.get_decision(decision_id, organization_id)
    except DecisionNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Routing decision {decision_id} not found",
        )
    except InvalidRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return _decision_response(record)
