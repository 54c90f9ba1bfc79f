"""
Tests for the routing HTTP API.

These tests verify:
1. Routing endpoints return recorded decisions
2. Rule CRUD is validated and takes effect immediately
3. Decision history and feedback
4. Handler lookups: availability, workload, backups and escalation
5. Service errors map to status codes with the standard error body
"""

import json

import httpx
import pytest
from fastapi import Request

from request_routing.core.config import Settings
from request_routing.core.dependencies import build_routing_services, get_routing_services
from request_routing.main import app, routing_exception_handler
from request_routing.services.errors import DecisionRecordError, RuleNotFoundError
from request_routing.services.rule_matcher import RuleCache

from .fakes import ORG, FakeAvailability, FakeExpertiseGraph, FakeWorkload, InMemoryDecisionStore

API = "/api/v1/routing"
HEADERS = {"X-Organization-ID": ORG}

BILLING_RULE = {
    "name": "Billing to finance",
    "priority": 500,
    "criteria": {"categories": ["Billing"]},
    "handler": {"type": "team", "target_id": "finance"},
}


@pytest.fixture
def graph(staff) -> FakeExpertiseGraph:
    return FakeExpertiseGraph(staff)


@pytest.fixture
async def client(session_factory, graph):
    availability = FakeAvailability(graph)
    workload = FakeWorkload(graph)
    rule_cache = RuleCache()
    settings = Settings(GEMINI_API_KEY=None)

    async def routing_services():
        async with session_factory() as session:
            yield build_routing_services(
                session,
                settings=settings,
                session_factory=session_factory,
                rule_cache=rule_cache,
                graph=graph,
                availability=availability,
                workload=workload,
            )

    app.dependency_overrides[get_routing_services] = routing_services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def create_rule(client, body=BILLING_RULE) -> dict:
    response = await client.post(f"{API}/rules", json=body, headers=HEADERS)
    assert response.status_code == 201, response.text
    return response.json()


# =============================================================================
# TEST: ROUTING
# =============================================================================


class TestRouteEndpoint:
    async def test_organization_header_is_required(self, client):
        response = await client.post(f"{API}/route", json={"content": "refund please"})

        assert response.status_code == 400

    async def test_route_by_rule(self, client):
        await create_rule(client)

        response = await client.post(
            f"{API}/route",
            json={"content": "I was charged twice, please refund", "request_id": "t-1"},
            headers=HEADERS,
        )

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["matched_rules"] == ["Billing to finance"]
        decision = body["decision"]
        assert decision["handler_type"] == "team"
        assert decision["handler_id"] == "finance"
        assert decision["request_id"] == "t-1"
        assert decision["urgency_level"] == "normal"

    async def test_route_by_expertise(self, client):
        response = await client.post(
            f"{API}/route",
            json={"content": "refund", "categories": ["billing"], "max_alternatives": 2},
            headers=HEADERS,
        )

        decision = response.json()["decision"]
        assert decision["handler_id"] == "alice"
        assert decision["handler_name"] == "Alice"
        assert [a["person_id"] for a in decision["alternative_handlers"]] == ["bob"]
        assert "billing" in decision["alternative_handlers"][0]["matched_skills"]

    async def test_blank_content_is_rejected(self, client):
        response = await client.post(f"{API}/route", json={"content": "   "}, headers=HEADERS)

        assert response.status_code == 422

    async def test_batch(self, client):
        response = await client.post(
            f"{API}/route/batch",
            json={
                "requests": [{"content": "refund please"}, {"content": "vacation next week"}],
                "options": {"max_alternatives": 0},
            },
            headers=HEADERS,
        )

        body = response.json()
        assert response.status_code == 200
        assert body["failed"] == 0
        assert len(body["results"]) == 2

    async def test_categorize(self, client):
        response = await client.post(
            f"{API}/categorize", json={"content": "URGENT: refund my subscription"}
        )

        body = response.json()
        assert "billing" in body["categories"]
        assert body["urgency_level"] == "high"
        assert body["source"] == "heuristic"


# =============================================================================
# TEST: RULES
# =============================================================================


class TestRuleEndpoints:
    async def test_create_and_get(self, client):
        created = await create_rule(client)

        response = await client.get(f"{API}/rules/{created['id']}", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["criteria"]["categories"] == ["billing"]
        assert body["handler"]["type"] == "team"
        assert body["organization_id"] == ORG

    async def test_team_rule_needs_target(self, client):
        body = {**BILLING_RULE, "handler": {"type": "team"}}

        response = await client.post(f"{API}/rules", json=body, headers=HEADERS)

        assert response.status_code == 422

    async def test_invalid_schedule(self, client):
        body = {**BILLING_RULE, "schedule": {"active_hours": {"start": "25:00", "end": "08:00"}}}

        response = await client.post(f"{API}/rules", json=body, headers=HEADERS)

        assert response.status_code == 422

    async def test_update(self, client):
        created = await create_rule(client)

        response = await client.patch(
            f"{API}/rules/{created['id']}",
            json={"priority": 10, "is_active": False},
            headers=HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["priority"] == 10
        assert response.json()["is_active"] is False
        assert response.json()["name"] == BILLING_RULE["name"]

    async def test_list_rules(self, client):
        await create_rule(client)
        await create_rule(client, {**BILLING_RULE, "name": "Top", "priority": 900})

        response = await client.get(f"{API}/rules", headers=HEADERS)

        assert [r["name"] for r in response.json()] == ["Top", "Billing to finance"]

    async def test_rules_are_scoped_to_organization(self, client):
        created = await create_rule(client)

        response = await client.get(
            f"{API}/rules/{created['id']}", headers={"X-Organization-ID": "org-other"}
        )

        assert response.status_code == 404

    async def test_delete_takes_effect_immediately(self, client):
        created = await create_rule(client)
        route = {"content": "refund please", "categories": ["billing"]}

        before = await client.post(f"{API}/route", json=route, headers=HEADERS)
        deleted = await client.delete(f"{API}/rules/{created['id']}", headers=HEADERS)
        after = await client.post(f"{API}/route", json=route, headers=HEADERS)

        assert before.json()["decision"]["handler_id"] == "finance"
        assert deleted.status_code == 204
        assert after.json()["decision"]["handler_id"] == "alice"

    async def test_missing_rule(self, client):
        assert (await client.get(f"{API}/rules/missing", headers=HEADERS)).status_code == 404
        assert (
            await client.patch(f"{API}/rules/missing", json={"priority": 1}, headers=HEADERS)
        ).status_code == 404
        assert (await client.delete(f"{API}/rules/missing", headers=HEADERS)).status_code == 404

    async def test_match_rules(self, client):
        await create_rule(client)

        response = await client.post(
            f"{API}/match-rules", json={"categories": ["billing"]}, headers=HEADERS
        )

        assert [r["name"] for r in response.json()] == ["Billing to finance"]
        assert response.json()[0]["handler"]["target_id"] == "finance"


# =============================================================================
# TEST: DECISIONS
# =============================================================================


class TestDecisionEndpoints:
    async def route(self, client) -> dict:
        response = await client.post(
            f"{API}/route",
            json={"content": "refund please", "categories": ["billing"]},
            headers=HEADERS,
        )
        return response.json()["decision"]

    async def test_get_decision(self, client):
        decision = await self.route(client)

        response = await client.get(f"{API}/decisions/{decision['id']}", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["handler_id"] == decision["handler_id"]

    async def test_feedback_overwrites(self, client):
        decision = await self.route(client)
        url = f"{API}/decisions/{decision['id']}/feedback"

        await client.post(url, json={"was_successful": True, "feedback_score": 5}, headers=HEADERS)
        response = await client.post(
            url, json={"was_successful": False, "feedback_score": 2}, headers=HEADERS
        )

        assert response.status_code == 200
        assert response.json()["feedback_score"] == 2
        assert response.json()["was_successful"] is False

        listing = await client.get(f"{API}/decisions", headers=HEADERS)
        assert listing.json()["count"] == 1

    async def test_feedback_validation(self, client):
        decision = await self.route(client)

        response = await client.post(
            f"{API}/decisions/{decision['id']}/feedback",
            json={"was_successful": True, "feedback_score": 6},
            headers=HEADERS,
        )

        assert response.status_code == 422

    async def test_feedback_for_unknown_decision(self, client):
        response = await client.post(
            f"{API}/decisions/missing/feedback", json={"was_successful": True}, headers=HEADERS
        )

        assert response.status_code == 404

    async def test_list_by_handler(self, client):
        await self.route(client)

        alice = await client.get(f"{API}/decisions", params={"handler_id": "alice"}, headers=HEADERS)
        bob = await client.get(f"{API}/decisions", params={"handler_id": "bob"}, headers=HEADERS)

        assert alice.json()["count"] == 1
        assert bob.json()["count"] == 0


# =============================================================================
# TEST: EXPERTS AND HANDLERS
# =============================================================================


class TestHandlerEndpoints:
    async def test_find_expert(self, client):
        response = await client.post(
            f"{API}/find-expert", json={"categories": ["billing"]}, headers=HEADERS
        )

        assert response.status_code == 200
        assert response.json()["person_id"] == "alice"

    async def test_find_expert_none(self, client):
        response = await client.post(
            f"{API}/find-expert", json={"categories": ["gardening"]}, headers=HEADERS
        )

        assert response.status_code == 404

    async def test_find_experts(self, client):
        response = await client.post(
            f"{API}/find-experts",
            json={"categories": ["billing"], "exclude_person_ids": ["alice"]},
            headers=HEADERS,
        )

        assert [e["person_id"] for e in response.json()] == ["bob"]

    async def test_availability_and_workload(self, client):
        availability = await client.get(f"{API}/handlers/alice/availability", headers=HEADERS)
        workload = await client.get(f"{API}/handlers/alice/workload", headers=HEADERS)

        assert availability.json()["is_available"] is True
        assert workload.json()["current_workload"] == 30
        assert workload.json()["has_capacity"] is True

    async def test_backups(self, client):
        response = await client.get(f"{API}/handlers/carol/backups", headers=HEADERS)

        assert [b["person_id"] for b in response.json()] == ["dave", "lena"]

    async def test_select_backup(self, client):
        response = await client.post(
            f"{API}/handlers/alice/select-backup", json={}, headers=HEADERS
        )

        assert response.json()["person_id"] == "bob"
        assert response.json()["strategy"] == "designated"

    async def test_select_backup_none(self, client, graph):
        for profile in graph.profiles.values():
            profile.is_available = False

        response = await client.post(
            f"{API}/handlers/alice/select-backup", json={}, headers=HEADERS
        )

        assert response.status_code == 404

    async def test_escalate(self, client):
        response = await client.post(f"{API}/handlers/alice/escalate", json={}, headers=HEADERS)

        body = response.json()
        assert body["handler_id"] == "maria"
        assert body["escalation_level"] == 1

    async def test_escalate_with_custom_path(self, client):
        response = await client.post(
            f"{API}/handlers/alice/escalate",
            json={"escalation_path": [{"level": 1, "type": "queue", "target_id": "finance_queue"}]},
            headers=HEADERS,
        )

        body = response.json()
        assert body["handler_id"] == "finance_queue"
        assert body["handler_type"] == "queue"


async def test_health(client):
    response = await client.get("/health")

    assert response.json()["status"] == "healthy"


# =============================================================================
# TEST: ERROR MAPPING
# =============================================================================


class TestErrorMapping:
    async def test_unrecorded_decision_is_503(self, client, session_factory, graph):
        store = InMemoryDecisionStore()
        store.fail = True

        async def failing_services():
            async with session_factory() as session:
                yield build_routing_services(
                    session,
                    settings=Settings(GEMINI_API_KEY=None),
                    session_factory=session_factory,
                    rule_cache=RuleCache(),
                    graph=graph,
                    availability=FakeAvailability(graph),
                    workload=FakeWorkload(graph),
                    decision_store=store,
                )

        app.dependency_overrides[get_routing_services] = failing_services

        response = await client.post(
            f"{API}/route", json={"content": "refund please"}, headers=HEADERS
        )

        assert response.status_code == 503
        assert store.records == {}

    @pytest.mark.parametrize(
        "exc, status_code, error",
        [
            (RuleNotFoundError("Rule r-1 not found"), 404, "rule_not_found"),
            (DecisionRecordError("write failed"), 503, "decision_not_recorded"),
        ],
    )
    async def test_service_errors_use_error_response(self, exc, status_code, error):
        request = Request(
            {
                "type": "http",
                "method": "GET",
                "scheme": "http",
                "server": ("test", 80),
                "path": "/api/v1/routing/rules/r-1",
                "root_path": "",
                "query_string": b"",
                "headers": [],
            }
        )

        response = await routing_exception_handler(request, exc)

        assert response.status_code == status_code
        body = json.loads(response.body)
        assert body["error"] == error
        assert body["message"] == str(exc)
