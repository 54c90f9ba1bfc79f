"""
Tests for the Routing Engine - end-to-end routing decisions.

These tests verify:
1. RULES: The highest-priority reachable rule decides the handler
2. EXPERTISE: Without rules the best available expert is chosen
3. REROUTING: Unavailable or saturated handlers are replaced by backups
4. ESCALATION: When nobody can be found the request still gets a handler
5. RECORDING: Every routed request is recorded exactly once
"""

import asyncio

import pytest

from request_routing.models import EscalationLevelType, HandlerType, UrgencyLevel
from request_routing.schemas.routing import RuleCreate, RuleHandlerSchema
from request_routing.services.categorizer import RequestCategorizer
from request_routing.services.decision_recorder import (
    DecisionRecord,
    DecisionRecorder,
    SqlDecisionStore,
)
from request_routing.services.errors import DecisionRecordError, InvalidRequestError
from request_routing.services.escalation import EscalationLevel
from request_routing.services.routing_engine import (
    IncomingRequest,
    RoutingEngine,
    RoutingOptions,
    rule_confidence,
)
from request_routing.services.rule_matcher import RuleMatcher
from request_routing.services.rule_store import SqlRuleStore

from .fakes import ORG, Directory, person, rule


def request(content: str = "I was charged twice, please refund", **kwargs) -> IncomingRequest:
    return IncomingRequest(content=content, organization_id=ORG, **kwargs)


def with_categories(*categories: str, **kwargs) -> RoutingOptions:
    return RoutingOptions(provided_categories=list(categories), **kwargs)


# =============================================================================
# TEST: RULE ROUTING
# =============================================================================


class TestRuleRouting:
    async def test_billing_goes_to_finance_team(self, staff):
        directory = Directory(
            staff,
            [rule("Billing to finance", HandlerType.TEAM, categories=["billing"], target_id="finance")],
        )

        outcome = await directory.engine.route_request(request())
        decision = outcome.decision

        assert "billing" in decision.categories
        assert decision.handler_type == HandlerType.TEAM
        assert decision.handler_id == "finance"
        assert decision.matched_rule_name == "Billing to finance"
        assert not decision.was_escalated
        assert 'Matched routing rule: "Billing to finance"' in decision.reasoning
        assert decision.reasoning.startswith("Request categorized as: ")
        assert decision.reasoning.endswith(".")
        assert [r.name for r in outcome.matched_rules] == ["Billing to finance"]

    async def test_rule_confidence_blends_with_categorization(self, staff):
        directory = Directory(
            staff, [rule("Billing", HandlerType.TEAM, categories=["billing"], target_id="finance")]
        )

        outcome = await directory.engine.route_request(request(), with_categories("billing"))

        assert outcome.decision.confidence == pytest.approx(0.7 * 0.95 + 0.3 * 1.0)

    async def test_highest_priority_rule_wins(self, staff):
        directory = Directory(
            staff,
            [
                rule("Low", HandlerType.TEAM, priority=10, categories=["billing"], target_id="a-team"),
                rule("High", HandlerType.QUEUE, priority=900, categories=["billing"], target_id="vip"),
            ],
        )

        outcome = await directory.engine.route_request(request(), with_categories("billing"))

        assert outcome.decision.handler_id == "vip"
        assert outcome.decision.handler_type == HandlerType.QUEUE
        assert [r.name for r in outcome.matched_rules] == ["High", "Low"]
        assert outcome.decision.confidence == pytest.approx(0.7 * rule_confidence(2) + 0.3)

    async def test_person_rule_fallback_target(self, staff):
        directory = Directory(
            staff,
            [
                rule(
                    "Billing lead",
                    categories=["billing"],
                    target_id="carol",
                    fallback_target_id="dave",
                )
            ],
        )
        directory.set_unavailable("carol")

        outcome = await directory.engine.route_request(request(), with_categories("billing"))

        assert outcome.decision.handler_id == "dave"
        assert outcome.decision.matched_rule_name == "Billing lead"
        assert "Rule target unavailable, used fallback target" in outcome.decision.reasoning

    async def test_unreachable_rule_target_falls_through_to_expert(self, staff):
        directory = Directory(staff, [rule("Billing lead", categories=["billing"], target_id="carol")])
        directory.set_unavailable("carol")

        outcome = await directory.engine.route_request(request(), with_categories("billing"))

        assert outcome.decision.handler_id == "alice"
        assert outcome.decision.matched_rule_id is None

    async def test_pool_picks_least_loaded_member(self, staff):
        directory = Directory(
            staff, [rule("IT pool", categories=["it"], pool_ids=["carol", "dave"])]
        )

        outcome = await directory.engine.route_request(request("laptop broken"), with_categories("it"))

        assert outcome.decision.handler_id == "dave"
        assert "Selected least-loaded member of the rule's pool" in outcome.decision.reasoning

    async def test_pool_rotates_when_workload_is_ignored(self, staff):
        directory = Directory(
            staff, [rule("IT pool", categories=["it"], pool_ids=["carol", "dave", "lena"])]
        )
        options = with_categories("it", ignore_workload=True, max_alternatives=0)

        outcomes = [
            await directory.engine.route_request(request("laptop broken"), options)
            for _ in range(4)
        ]

        assert [o.decision.handler_id for o in outcomes] == ["carol", "dave", "lena", "carol"]
        assert "in rotation" in outcomes[0].decision.reasoning

    async def test_pool_rotation_skips_unavailable_members(self, staff):
        directory = Directory(
            staff, [rule("IT pool", categories=["it"], pool_ids=["carol", "dave", "lena"])]
        )
        options = with_categories("it", ignore_workload=True)
        await directory.engine.route_request(request("laptop broken"), options)
        directory.set_unavailable("dave")

        outcome = await directory.engine.route_request(request("laptop broken"), options)

        assert outcome.decision.handler_id == "lena"
        assert not outcome.decision.was_rerouted

    async def test_auto_rule_uses_expertise(self, staff):
        directory = Directory(staff, [rule("Auto", HandlerType.AUTO, categories=["billing"])])

        outcome = await directory.engine.route_request(request(), with_categories("billing"))

        assert outcome.decision.handler_id == "alice"
        assert outcome.decision.matched_rule_name == "Auto"

    async def test_skip_rules(self, staff):
        directory = Directory(
            staff, [rule("Billing", HandlerType.TEAM, categories=["billing"], target_id="finance")]
        )

        outcome = await directory.engine.route_request(
            request(), with_categories("billing", skip_rules=True)
        )

        assert outcome.decision.handler_id == "alice"
        assert outcome.matched_rules == []


# =============================================================================
# TEST: EXPERTISE ROUTING
# =============================================================================


class TestExpertRouting:
    async def test_best_expert_without_rules(self, directory):
        outcome = await directory.engine.route_request(request(), with_categories("billing"))
        decision = outcome.decision

        assert decision.handler_id == "alice"
        assert decision.handler_type == HandlerType.PERSON
        assert decision.handler_name == "Alice"
        assert "Alice has strong expertise in this area" in decision.reasoning
        assert [a.person_id for a in decision.alternative_handlers] == ["bob"]

    async def test_alternatives_never_include_handler(self, directory):
        outcome = await directory.engine.route_request(
            request("database query"), with_categories("SQL", max_alternatives=5)
        )

        handler = outcome.decision.handler_id
        assert handler == "carol"
        assert handler not in [a.person_id for a in outcome.decision.alternative_handlers]

    async def test_no_alternatives_requested(self, directory):
        outcome = await directory.engine.route_request(
            request(), with_categories("billing", max_alternatives=0)
        )

        assert outcome.decision.alternative_handlers == []

    async def test_preferred_handler(self, directory):
        outcome = await directory.engine.route_request(
            request(), with_categories("billing", preferred_handler_id="dave")
        )

        assert outcome.decision.handler_id == "dave"
        assert outcome.decision.confidence == pytest.approx(0.7 * 0.8 + 0.3 * 1.0)
        assert "Preferred handler requested" in outcome.decision.reasoning

    async def test_unavailable_preferred_handler_is_skipped(self, directory):
        directory.set_unavailable("dave")

        outcome = await directory.engine.route_request(
            request(), with_categories("billing", preferred_handler_id="dave")
        )

        assert outcome.decision.handler_id == "alice"

    async def test_heuristic_categorization(self, directory):
        outcome = await directory.engine.route_request(request("URGENT: refund my subscription"))

        assert "billing" in outcome.decision.categories
        assert outcome.decision.urgency_level == UrgencyLevel.HIGH
        assert "High urgency detected" in outcome.decision.reasoning


# =============================================================================
# TEST: REROUTING AND ESCALATION
# =============================================================================


class TestReroutingAndEscalation:
    async def test_unreachable_rule_target_is_rerouted_to_backup(self, staff):
        directory = Directory(
            staff, [rule("Garden", categories=["gardening"], target_id="carol")]
        )
        directory.set_unavailable("carol")

        outcome = await directory.engine.route_request(
            request("the hedge"), with_categories("gardening")
        )
        decision = outcome.decision

        assert decision.handler_id == "dave"
        assert decision.was_rerouted
        assert not decision.was_escalated
        assert decision.matched_rule_name == "Garden"
        assert decision.confidence == pytest.approx((0.7 * 0.95 + 0.3) * 0.9)
        assert "Original handler unavailable, rerouted to backup" in decision.reasoning

    async def test_saturated_handler_is_rerouted(self, directory):
        directory.graph.profiles["alice"].current_workload = 90

        outcome = await directory.engine.route_request(request(), with_categories("billing"))

        assert outcome.decision.handler_id == "bob"
        assert outcome.decision.was_rerouted
        assert "Original handler at capacity, rerouted to backup" in outcome.decision.reasoning

    async def test_ignore_workload_keeps_saturated_handler(self, directory):
        directory.graph.profiles["alice"].current_workload = 90

        outcome = await directory.engine.route_request(
            request(), with_categories("billing", ignore_workload=True)
        )

        assert outcome.decision.handler_id == "alice"
        assert not outcome.decision.was_rerouted

    async def test_rule_escalation_path(self):
        directory = Directory(
            [
                person("carol", manager_id="maria", available=False),
                person("maria", available=False),
            ],
            [
                rule(
                    "Garden",
                    categories=["gardening"],
                    target_id="carol",
                    escalation_path=[
                        EscalationLevel(1, EscalationLevelType.QUEUE, target_id="garden_queue")
                    ],
                )
            ],
        )

        outcome = await directory.engine.route_request(
            request("the hedge"), with_categories("gardening")
        )
        decision = outcome.decision

        assert decision.handler_id == "garden_queue"
        assert decision.handler_type == HandlerType.QUEUE
        assert decision.was_escalated
        assert decision.escalation_level == 1
        assert decision.confidence <= 0.5
        assert "Escalated: Escalated to queue garden_queue" in decision.reasoning

    async def test_urgent_request_uses_urgent_path(self):
        directory = Directory(
            [person("carol", available=False)],
            [rule("Garden", categories=["gardening"], target_id="carol")],
        )

        outcome = await directory.engine.route_request(
            request("URGENT the hedge is on fire"), with_categories("gardening")
        )

        assert outcome.decision.handler_id == "urgent_queue"
        assert outcome.decision.escalation_level == 3

    async def test_default_queue_when_nobody_fits(self, directory):
        outcome = await directory.engine.route_request(
            request("the hedge"), with_categories("gardening")
        )
        decision = outcome.decision

        assert decision.handler_id == "default_queue"
        assert decision.handler_type == HandlerType.QUEUE
        assert decision.was_escalated
        assert decision.escalation_level == 0
        assert decision.confidence == pytest.approx(0.3)
        assert "Escalated due to no available expert" in decision.reasoning

    async def test_collaborator_outage_still_routes(self, directory):
        directory.graph.fail = True
        directory.rule_store.fail = True

        outcome = await directory.engine.route_request(request(), with_categories("billing"))

        assert outcome.decision.handler_id == "default_queue"

    @pytest.mark.parametrize(
        "categories", [["billing"], ["SQL"], ["gardening"], ["hr", "leave"]]
    )
    async def test_escalated_confidence_is_capped(self, directory, categories):
        directory.set_unavailable("alice", "bob", "carol", "dave")

        outcome = await directory.engine.route_request(
            request(), with_categories(*categories)
        )

        assert outcome.decision.handler_id
        if outcome.decision.was_escalated:
            assert outcome.decision.confidence <= 0.5


# =============================================================================
# TEST: VALIDATION AND RECORDING
# =============================================================================


class TestRecording:
    async def test_decision_is_recorded_once(self, directory):
        outcome = await directory.engine.route_request(request(request_id="ticket-42"))

        assert list(directory.decisions.records) == [outcome.decision.id]
        assert directory.decisions.records[outcome.decision.id].request_id == "ticket-42"

    async def test_missing_request_id_uses_fingerprint(self, directory):
        first = await directory.engine.route_request(request())
        second = await directory.engine.route_request(request())

        assert first.decision.request_id == second.decision.request_id
        assert first.decision.id != second.decision.id

    async def test_record_failure_fails_the_request(self, directory):
        directory.decisions.fail = True

        with pytest.raises(DecisionRecordError):
            await directory.engine.route_request(request())

    @pytest.mark.parametrize("content", ["", "   "])
    async def test_blank_content_is_rejected(self, directory, content):
        with pytest.raises(InvalidRequestError):
            await directory.engine.route_request(request(content))
        assert directory.decisions.records == {}

    async def test_missing_organization_is_rejected(self, directory):
        with pytest.raises(InvalidRequestError):
            await directory.engine.route_request(IncomingRequest(content="hi", organization_id=""))

    async def test_cancelled_request_still_records_decision(self, directory):
        directory.decisions.delay = 0.2

        task = asyncio.create_task(directory.engine.route_request(request()))
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.3)

        assert len(directory.decisions.records) == 1

    async def test_write_failing_after_cancellation_is_logged(self, directory, caplog):
        directory.decisions.delay = 0.2
        directory.decisions.fail = True

        task = asyncio.create_task(directory.engine.route_request(request()))
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        with caplog.at_level("ERROR", logger="request_routing.services.routing_engine"):
            await asyncio.sleep(0.3)

        assert directory.decisions.records == {}
        assert "failed after routing was cancelled" in caplog.text
        assert f"org={ORG}" in caplog.text

    async def test_processing_time_is_reported(self, directory):
        outcome = await directory.engine.route_request(request())

        assert outcome.processing_time_ms >= 0
        assert outcome.processing_time_ms == outcome.decision.processing_time_ms


class CollidingDecisionStore(SqlDecisionStore):
    """Gives the next write an id that is already taken."""

    collide_with: str | None = None

    async def add(self, record):
        if self.collide_with:
            record.id, self.collide_with = self.collide_with, None
        return await super().add(record)


class TestBatchRouting:
    async def test_failures_are_skipped(self, directory):
        outcomes = await directory.engine.route_requests(
            [request(), request("  "), request("vacation next week")]
        )

        assert len(outcomes) == 2
        assert len(directory.decisions.records) == 2

    async def test_failed_write_does_not_affect_later_requests(self, directory, session):
        rule_store = SqlRuleStore(session)
        await rule_store.create_rule(
            ORG,
            RuleCreate(
                name="Billing to finance",
                criteria={"categories": ["billing"]},
                handler=RuleHandlerSchema(type="team", target_id="finance"),
            ),
        )
        store = CollidingDecisionStore(session)
        engine = RoutingEngine(
            RequestCategorizer(),
            RuleMatcher(rule_store),
            directory.experts,
            directory.signals,
            directory.backups,
            directory.escalation,
            DecisionRecorder(store),
        )
        taken = await DecisionRecorder(store).record(
            DecisionRecord(
                organization_id=ORG,
                request_id="earlier",
                handler_id="bob",
                handler_type=HandlerType.PERSON,
                confidence=0.5,
            )
        )
        store.collide_with = taken

        outcomes = await engine.route_requests(
            [request(request_id="first"), request(request_id="second"), request(request_id="third")]
        )

        assert [o.decision.request_id for o in outcomes] == ["second", "third"]
        assert all(o.decision.handler_id == "finance" for o in outcomes)
        stored = await DecisionRecorder(store).list_decisions(ORG)
        assert sorted(d.request_id for d in stored) == ["earlier", "second", "third"]

