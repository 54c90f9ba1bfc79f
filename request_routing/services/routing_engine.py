"""
Routing Engine: decides who handles an incoming request.

Pipeline:
1. Categorize the request (AI with heuristic fallback)
2. Match organization rules; take the first rule whose handler is reachable
3. Otherwise try the preferred handler, then the best expert
4. Verify availability and capacity; reroute to a backup or escalate
5. Attach ranked alternatives
6. Record the decision (synchronous; a failed write fails the request)

Every automatic routing ends with a concrete handler: when nothing else
works the request goes to the default queue.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Sequence

from ..models import HandlerType
from .backup_selector import BackupOptions, BackupResult, BackupSelector
from .categorizer import (
    CategorizationResult,
    RequestCategorizer,
    normalize_categories,
    quick_categorize,
)
from .decision_recorder import DecisionRecord, DecisionRecorder, request_fingerprint
from .errors import InvalidRequestError
from .escalation import EscalationHandler, EscalationOptions
from .expert_finder import ExpertFinder, ExpertSearchOptions, HandlerCandidate
from .rule_matcher import RuleMatcher
from .rules import MatchContext, RuleDefinition
from .signals import HandlerSignals

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIDENCE
# =============================================================================

RULE_WEIGHT = 0.7
CATEGORY_WEIGHT = 0.3

SINGLE_RULE_CONFIDENCE = 0.95
EXTRA_RULE_PENALTY = 0.1
MIN_RULE_CONFIDENCE = 0.6

PREFERRED_HANDLER_EXPERTISE = 0.8
REROUTE_FACTOR = 0.9
ESCALATED_CONFIDENCE_CAP = 0.5
DEFAULT_QUEUE_CONFIDENCE = 0.3

STRONG_EXPERTISE = 0.7


def rule_confidence(match_count: int) -> float:
    """0.95 for one unambiguous match, lower when several rules compete."""
    penalty = EXTRA_RULE_PENALTY * max(0, match_count - 1)
    return max(MIN_RULE_CONFIDENCE, SINGLE_RULE_CONFIDENCE - penalty)


def _blend(primary: float, categorization: float) -> float:
    return RULE_WEIGHT * primary + CATEGORY_WEIGHT * categorization


# =============================================================================
# DATA TYPES
# =============================================================================


@dataclass
class IncomingRequest:
    content: str
    organization_id: str
    subject: str | None = None
    request_type: str = "general"
    metadata: dict = field(default_factory=dict)
    user_id: str | None = None
    request_id: str | None = None
    sender_email: str | None = None


@dataclass
class RoutingOptions:
    use_ai: bool = False
    provided_categories: Sequence[str] | None = None
    skip_rules: bool = False
    preferred_handler_id: str | None = None
    ignore_workload: bool = False  # no capacity rerouting; pools rotate
    max_alternatives: int = 3


@dataclass
class RoutingOutcome:
    decision: DecisionRecord
    matched_rules: list[RuleDefinition]
    processing_time_ms: int


@dataclass
class _Assignment:
    handler_id: str
    handler_type: HandlerType
    confidence: float
    handler_name: str | None = None
    rule: RuleDefinition | None = None
    expertise_score: float | None = None
    is_available: bool | None = None  # None until checked
    was_rerouted: bool = False
    was_escalated: bool = False
    escalation_level: int = 0
    notes: list[str] = field(default_factory=list)

    @property
    def final_confidence(self) -> float:
        confidence = self.confidence
        if self.was_rerouted:
            confidence *= REROUTE_FACTOR
        if self.was_escalated:
            confidence = min(confidence, ESCALATED_CONFIDENCE_CAP)
        return max(0.0, min(1.0, confidence))


@dataclass
class _RouteState:
    request: IncomingRequest
    started: float
    categorization: CategorizationResult | None = None
    matched_rules: list[RuleDefinition] = field(default_factory=list)
    assignment: _Assignment | None = None
    alternatives: list[HandlerCandidate] = field(default_factory=list)
    record_task: asyncio.Future | None = None
    cancelled: bool = False

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


def _report_orphaned_write(state: _RouteState, task: asyncio.Future) -> None:
    """Collect the result of a decision write nobody is awaiting any more."""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None and state.cancelled:
        logger.error(
            f"Decision write failed after routing was cancelled (stage=record_decision, "
            f"org={state.request.organization_id}, handler={state.assignment.handler_id}): {error}"
        )


# =============================================================================
# ENGINE
# =============================================================================


class RoutingEngine:
    """Orchestrates categorization, rules, expertise, escalation and recording."""

    def __init__(
        self,
        categorizer: RequestCategorizer,
        matcher: RuleMatcher,
        experts: ExpertFinder,
        signals: HandlerSignals,
        backups: BackupSelector,
        escalation: EscalationHandler,
        recorder: DecisionRecorder,
        *,
        default_queue_id: str = "default_queue",
    ):
        self._categorizer = categorizer
        self._matcher = matcher
        self._experts = experts
        self._signals = signals
        self._backups = backups
        self._escalation = escalation
        self._recorder = recorder
        self.default_queue_id = default_queue_id

    async def route_request(
        self,
        request: IncomingRequest,
        options: RoutingOptions | None = None,
    ) -> RoutingOutcome:
        """Route one request and record the decision.

        Raises:
            InvalidRequestError: content or organization missing
            DecisionRecordError: the decision could not be stored
        """
        options = options or RoutingOptions()
        if not request.content or not request.content.strip():
            raise InvalidRequestError("Request content is required")
        if not request.organization_id:
            raise InvalidRequestError("Organization is required")

        state = _RouteState(request=request, started=time.perf_counter())
        logger.info(f"Routing request for org {request.organization_id}")

        try:
            decision = await self._run(state, options)
        except asyncio.CancelledError:
            state.cancelled = True
            await self._record_on_cancel(state)
            raise

        logger.info(
            f"Routed request {decision.request_id} to {decision.handler_type.value} "
            f"{decision.handler_id} (confidence={decision.confidence:.2f}, "
            f"escalated={decision.was_escalated}, {decision.processing_time_ms}ms)"
        )
        return RoutingOutcome(
            decision=decision,
            matched_rules=state.matched_rules,
            processing_time_ms=decision.processing_time_ms,
        )

    async def route_requests(
        self,
        requests: Sequence[IncomingRequest],
        options: RoutingOptions | None = None,
    ) -> list[RoutingOutcome]:
        """Route requests one by one. A failed request is logged and skipped."""
        outcomes = []
        for request in requests:
            try:
                outcomes.append(await self.route_request(request, options))
            except Exception as e:
                logger.error(
                    f"Failed to route request {request.request_id or '<unnamed>'} "
                    f"for org {request.organization_id}: {e}"
                )
        return outcomes

    # =========================================================================
    # PIPELINE
    # =========================================================================

    async def _run(self, state: _RouteState, options: RoutingOptions) -> DecisionRecord:
        request = state.request
        org = request.organization_id

        state.categorization = await self._categorize(request, options)
        categories = state.categorization.categories

        if not options.skip_rules:
            state.matched_rules = await self._matcher.match_rules(
                org,
                categories,
                MatchContext(
                    content=request.content,
                    subject=request.subject,
                    sender_email=request.sender_email,
                    urgency_level=state.categorization.urgency_level,
                    request_type=request.request_type,
                ),
            )

        unreachable: _Assignment | None = None

        for rule in state.matched_rules:
            assignment, missed = await self._resolve_rule(rule, state, options)
            if assignment is not None:
                state.assignment = assignment
                break
            unreachable = unreachable or missed

        if state.assignment is None and options.preferred_handler_id:
            state.assignment, missed = await self._resolve_preferred(
                options.preferred_handler_id, state
            )
            unreachable = unreachable or missed

        if state.assignment is None:
            state.assignment = await self._resolve_expert(state, rule=None)

        if state.assignment is None and unreachable is not None:
            state.assignment = unreachable

        if state.assignment is None:
            state.assignment = _Assignment(
                handler_id=self.default_queue_id,
                handler_type=HandlerType.QUEUE,
                confidence=DEFAULT_QUEUE_CONFIDENCE,
                was_escalated=True,
                notes=["Escalated due to no available expert"],
            )

        await self._ensure_available(state, options)

        if options.max_alternatives > 0:
            state.alternatives = await self._find_alternatives(state, options.max_alternatives)

        decision = self._build_decision(state)
        state.record_task = asyncio.ensure_future(self._recorder.record(decision))
        state.record_task.add_done_callback(partial(_report_orphaned_write, state))
        await asyncio.shield(state.record_task)
        return decision

    async def _categorize(
        self, request: IncomingRequest, options: RoutingOptions
    ) -> CategorizationResult:
        provided = normalize_categories(options.provided_categories or ())
        if provided:
            # Urgency still comes from the text
            heuristic = quick_categorize(request.content, request.subject)
            return CategorizationResult(
                categories=provided,
                urgency_level=heuristic.urgency_level,
                confidence=1.0,
                source="provided",
            )
        return await self._categorizer.categorize(
            request.content, request.subject, use_ai=options.use_ai
        )

    # =========================================================================
    # HANDLER RESOLUTION
    # =========================================================================

    async def _resolve_rule(
        self, rule: RuleDefinition, state: _RouteState, options: RoutingOptions
    ) -> tuple[_Assignment | None, _Assignment | None]:
        """Returns (assignment, first unreachable target)."""
        handler = rule.handler
        base = _blend(rule_confidence(len(state.matched_rules)), state.categorization.confidence)
        note = f'Matched routing rule: "{rule.name}"'

        if handler.type in (HandlerType.TEAM, HandlerType.QUEUE):
            if not handler.target_id:
                logger.warning(f"Rule {rule.id} has a {handler.type.value} handler without target")
                return None, None
            return _Assignment(
                handler_id=handler.target_id,
                handler_type=handler.type,
                confidence=base,
                rule=rule,
                notes=[note],
            ), None

        if handler.type == HandlerType.AUTO:
            return await self._resolve_expert(state, rule=rule), None

        org = state.request.organization_id

        if handler.pool_ids:
            if options.ignore_workload:
                person_id, is_available = await self._rotate_pool(handler.pool_ids, org)
                pool_note = "Selected next member of the rule's pool in rotation"
            else:
                person_id, is_available = await self._pick_from_pool(handler.pool_ids, org)
                pool_note = "Selected least-loaded member of the rule's pool"
            assignment = _Assignment(
                handler_id=person_id,
                handler_type=HandlerType.PERSON,
                confidence=base,
                rule=rule,
                is_available=is_available,
                notes=[note, pool_note],
            )
            return (assignment, None) if is_available else (None, assignment)

        for target_id, extra in (
            (handler.target_id, None),
            (handler.fallback_target_id, "Rule target unavailable, used fallback target"),
        ):
            if not target_id:
                continue
            availability = await self._signals.availability(target_id, org, stage="rule_handler")
            if availability.is_available:
                return _Assignment(
                    handler_id=target_id,
                    handler_type=HandlerType.PERSON,
                    confidence=base,
                    rule=rule,
                    is_available=True,
                    notes=[note] + ([extra] if extra else []),
                ), None

        if not handler.target_id:
            return None, None
        return None, _Assignment(
            handler_id=handler.target_id,
            handler_type=HandlerType.PERSON,
            confidence=base,
            rule=rule,
            is_available=False,
            notes=[note],
        )

    async def _pick_from_pool(
        self, pool_ids: Sequence[str], organization_id: str
    ) -> tuple[str, bool]:
        """Least-loaded available pool member with capacity, else first available."""
        checks = await asyncio.gather(
            *(
                asyncio.gather(
                    self._signals.availability(pid, organization_id, stage="rule_pool"),
                    self._signals.workload(pid, organization_id, stage="rule_pool"),
                )
                for pid in pool_ids
            )
        )
        available = [
            (pid, workload)
            for pid, (availability, workload) in zip(pool_ids, checks)
            if availability.is_available
        ]
        with_capacity = sorted(
            (entry for entry in available if entry[1].has_capacity),
            key=lambda entry: entry[1].current_workload,
        )
        if with_capacity:
            return with_capacity[0][0], True
        if available:
            return available[0][0], True
        return pool_ids[0], False

    async def _rotate_pool(
        self, pool_ids: Sequence[str], organization_id: str
    ) -> tuple[str, bool]:
        """Next available member after the pool's most recent assignee."""
        start = 0
        try:
            last = await self._recorder.list_decisions(
                organization_id, handler_ids=pool_ids, limit=1
            )
        except Exception as e:
            logger.warning(
                f"Could not read pool history (stage=rule_pool, org={organization_id}): {e}"
            )
            last = []
        if last:
            start = list(pool_ids).index(last[0].handler_id) + 1

        rotation = [pool_ids[(start + i) % len(pool_ids)] for i in range(len(pool_ids))]
        for person_id in rotation:
            availability = await self._signals.availability(
                person_id, organization_id, stage="rule_pool"
            )
            if availability.is_available:
                return person_id, True
        return rotation[0], False

    async def _resolve_preferred(
        self, person_id: str, state: _RouteState
    ) -> tuple[_Assignment | None, _Assignment | None]:
        availability = await self._signals.availability(
            person_id, state.request.organization_id, stage="preferred_handler"
        )
        assignment = _Assignment(
            handler_id=person_id,
            handler_type=HandlerType.PERSON,
            confidence=_blend(PREFERRED_HANDLER_EXPERTISE, state.categorization.confidence),
            expertise_score=PREFERRED_HANDLER_EXPERTISE,
            is_available=availability.is_available,
            notes=["Preferred handler requested"],
        )
        return (assignment, None) if availability.is_available else (None, assignment)

    async def _resolve_expert(
        self, state: _RouteState, rule: RuleDefinition | None
    ) -> _Assignment | None:
        expert = await self._experts.find_best_expert(
            state.request.organization_id,
            state.categorization.categories,
            ExpertSearchOptions(must_be_available=True, limit=1),
        )
        if expert is None:
            return None

        notes = [f'Matched routing rule: "{rule.name}"'] if rule else []
        if expert.expertise_score > STRONG_EXPERTISE:
            notes.append(f"{expert.person_name or 'Handler'} has strong expertise in this area")
        else:
            notes.append("Best available expertise match")

        if rule is not None:
            confidence = _blend(rule_confidence(len(state.matched_rules)), state.categorization.confidence)
        else:
            confidence = _blend(expert.combined_score, state.categorization.confidence)

        return _Assignment(
            handler_id=expert.person_id,
            handler_type=HandlerType.PERSON,
            handler_name=expert.person_name,
            confidence=confidence,
            rule=rule,
            expertise_score=expert.expertise_score,
            is_available=True,
            notes=notes,
        )

    # =========================================================================
    # AVAILABILITY, CAPACITY AND ESCALATION
    # =========================================================================

    async def _ensure_available(self, state: _RouteState, options: RoutingOptions) -> None:
        assignment = state.assignment
        if assignment.handler_type != HandlerType.PERSON or assignment.was_escalated:
            return

        org = state.request.organization_id

        if assignment.is_available is None:
            availability = await self._signals.availability(
                assignment.handler_id, org, stage="ensure_available"
            )
            assignment.is_available = availability.is_available

        if not assignment.is_available:
            backup = await self._backups.select_backup(assignment.handler_id, org)
            if backup is not None:
                self._reroute(
                    assignment, backup, "Original handler unavailable, rerouted to backup"
                )
                return
            await self._escalate(state)
            return

        if options.ignore_workload:
            return

        workload = await self._signals.workload(assignment.handler_id, org, stage="ensure_available")
        if workload.has_capacity:
            return

        backup = await self._backups.select_backup(
            assignment.handler_id,
            org,
            BackupOptions(require_capacity=True),
        )
        if backup is not None:
            self._reroute(assignment, backup, "Original handler at capacity, rerouted to backup")
        else:
            logger.info(
                f"Handler {assignment.handler_id} is at capacity and no backup has room, keeping"
            )

    def _reroute(self, assignment: _Assignment, backup: BackupResult, note: str) -> None:
        assignment.handler_id = backup.person_id
        assignment.handler_name = backup.person_name
        assignment.is_available = True
        assignment.was_rerouted = True
        assignment.notes.append(note)

    async def _escalate(self, state: _RouteState) -> None:
        assignment = state.assignment
        path = assignment.rule.handler.escalation_path if assignment.rule else ()
        result = await self._escalation.handle_escalation(
            assignment.handler_id,
            state.request.organization_id,
            EscalationOptions(
                escalation_path=path or None,
                is_urgent=state.categorization.urgency_level.is_urgent,
            ),
        )
        assignment.handler_id = result.handler_id
        assignment.handler_type = result.handler_type
        assignment.handler_name = result.handler_name
        assignment.was_escalated = True
        assignment.escalation_level = result.escalation_level
        assignment.notes.append(f"Escalated: {result.reason}")

    async def _find_alternatives(self, state: _RouteState, limit: int) -> list[HandlerCandidate]:
        try:
            return await self._experts.find_experts(
                state.request.organization_id,
                state.categorization.categories,
                ExpertSearchOptions(
                    must_be_available=True,
                    limit=limit,
                    exclude_person_ids=[state.assignment.handler_id],
                ),
            )
        except Exception as e:
            logger.warning(
                f"Could not compute alternatives (stage=alternatives, "
                f"org={state.request.organization_id}): {e}"
            )
            return []

    # =========================================================================
    # DECISION
    # =========================================================================

    def _build_decision(self, state: _RouteState) -> DecisionRecord:
        request = state.request
        assignment = state.assignment
        categorization = state.categorization

        return DecisionRecord(
            organization_id=request.organization_id,
            request_id=request.request_id
            or request_fingerprint(request.organization_id, request.content, request.subject),
            request_type=request.request_type,
            categories=list(categorization.categories),
            urgency_level=categorization.urgency_level,
            handler_id=assignment.handler_id,
            handler_type=assignment.handler_type,
            handler_name=assignment.handler_name,
            matched_rule_id=assignment.rule.id if assignment.rule else None,
            matched_rule_name=assignment.rule.name if assignment.rule else None,
            confidence=assignment.final_confidence,
            reasoning=self._reasoning(categorization, assignment),
            was_escalated=assignment.was_escalated,
            was_rerouted=assignment.was_rerouted,
            escalation_level=assignment.escalation_level,
            alternative_handlers=list(state.alternatives),
            processing_time_ms=state.elapsed_ms,
        )

    @staticmethod
    def _reasoning(categorization: CategorizationResult, assignment: _Assignment) -> str:
        parts = []
        if categorization.categories:
            parts.append(f"Request categorized as: {', '.join(categorization.categories)}")
        if categorization.urgency_level.is_urgent:
            parts.append(f"{categorization.urgency_level.value.capitalize()} urgency detected")
        parts.extend(assignment.notes)
        return ". ".join(parts) + "."

    async def _record_on_cancel(self, state: _RouteState) -> None:
        """Persist a best-effort decision when routing is cancelled after a handler was chosen."""
        if state.record_task is not None or state.assignment is None:
            return

        logger.warning(
            f"Routing cancelled for org {state.request.organization_id}, "
            f"recording best-effort decision for {state.assignment.handler_id}"
        )
        try:
            await asyncio.shield(self._recorder.record(self._build_decision(state)))
        except Exception as e:
            logger.error(f"Best-effort decision record failed: {e}")
