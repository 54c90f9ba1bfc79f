"""
Tests for escalation.

These tests verify:
1. PATHS: Levels are attempted strictly in order, first success wins
2. TERMINATION: Escalation always yields a handler, never None
3. URGENCY: The urgent path reaches its queue sooner than the default path
4. LEVEL TYPES: manager, role, person, team and queue resolution
"""

import pytest

from request_routing.models import EscalationLevelType, HandlerType
from request_routing.services.escalation import (
    DEFAULT_ESCALATION_PATH,
    URGENT_ESCALATION_PATH,
    EscalationLevel,
    EscalationOptions,
)

from .fakes import ORG, Directory, person


def level(n, kind, **kwargs) -> EscalationLevel:
    return EscalationLevel(n, EscalationLevelType(kind), **kwargs)


class TestEscalationPaths:
    async def test_manager_first(self, directory):
        result = await directory.escalation.handle_escalation("alice", ORG)

        assert result.handler_id == "maria"
        assert result.handler_name == "Maria"
        assert result.handler_type == HandlerType.PERSON
        assert result.escalation_level == 1
        assert result.reason == "Escalated to manager"
        assert result.original_handler_id == "alice"
        assert not result.exhausted

    async def test_team_lead_when_manager_unavailable(self, directory):
        directory.set_unavailable("maria")

        result = await directory.escalation.handle_escalation("alice", ORG)

        assert result.handler_id == "lena"
        assert result.escalation_level == 2
        assert result.reason == "Escalated to team_lead"

    async def test_department_head_next(self, directory):
        directory.set_unavailable("maria", "lena")

        result = await directory.escalation.handle_escalation("alice", ORG)

        assert result.handler_id == "henry"
        assert result.escalation_level == 3

    async def test_general_queue_after_people(self, directory):
        directory.set_unavailable("maria", "lena", "henry")

        result = await directory.escalation.handle_escalation("alice", ORG)

        assert result.handler_id == "general_queue"
        assert result.handler_type == HandlerType.QUEUE
        assert result.escalation_level == 4
        assert not result.exhausted

    async def test_explicit_path_reaches_queue_at_level_three(self):
        # No manager relationship and no team lead at all
        directory = Directory([person("alice", team="finance")])
        path = [
            level(1, "manager", wait_minutes=0),
            level(2, "role", target_role="team_lead", wait_minutes=30),
            level(3, "queue", target_id="general_queue", wait_minutes=120),
        ]

        result = await directory.escalation.handle_escalation(
            "alice", ORG, EscalationOptions(escalation_path=path)
        )

        assert result.handler_id == "general_queue"
        assert result.escalation_level == 3

    async def test_urgent_path_reaches_queue_one_level_earlier(self):
        directory = Directory([person("alice", team="finance")])

        urgent = await directory.escalation.handle_escalation(
            "alice", ORG, EscalationOptions(is_urgent=True)
        )
        normal = await directory.escalation.handle_escalation("alice", ORG)

        assert urgent.handler_id == "urgent_queue"
        assert urgent.escalation_level == 3
        assert normal.handler_id == "general_queue"
        assert normal.escalation_level == 4
        assert len(URGENT_ESCALATION_PATH) == 3
        assert len(DEFAULT_ESCALATION_PATH) == 4

    async def test_levels_run_in_level_order(self, directory):
        path = [
            level(2, "queue", target_id="late_queue"),
            level(1, "manager"),
        ]

        result = await directory.escalation.handle_escalation(
            "alice", ORG, EscalationOptions(escalation_path=path)
        )

        assert result.handler_id == "maria"

    async def test_start_level_skips_earlier_levels(self, directory):
        result = await directory.escalation.handle_escalation(
            "alice", ORG, EscalationOptions(start_level=2)
        )

        assert result.handler_id == "lena"
        assert result.escalation_level == 2


class TestEscalationTermination:
    async def test_exhausted_path_goes_to_default_queue(self, directory):
        path = [level(1, "role", target_role="ceo")]

        result = await directory.escalation.handle_escalation(
            "alice", ORG, EscalationOptions(escalation_path=path)
        )

        assert result.handler_id == "default_queue"
        assert result.handler_type == HandlerType.QUEUE
        assert result.escalation_level == 2
        assert result.exhausted
        assert result.reason == "Escalation path exhausted, routed to default queue"

    async def test_configured_default_queue(self):
        directory = Directory([person("alice")], default_queue_id="triage")

        result = await directory.escalation.handle_escalation(
            "alice", ORG, EscalationOptions(escalation_path=[level(1, "manager")])
        )

        assert result.handler_id == "triage"

    @pytest.mark.parametrize("urgent", [True, False])
    async def test_graph_outage_still_resolves(self, directory, urgent):
        directory.graph.fail = True

        result = await directory.escalation.handle_escalation(
            "alice", ORG, EscalationOptions(is_urgent=urgent)
        )

        assert result is not None
        assert result.handler_type == HandlerType.QUEUE

    async def test_role_never_escalates_to_original(self, directory):
        result = await directory.escalation.handle_escalation(
            "lena",
            ORG,
            EscalationOptions(escalation_path=[level(1, "role", target_role="team_lead")]),
        )

        assert result.exhausted

    async def test_role_requires_capacity(self, directory):
        directory.graph.profiles["lena"].current_workload = 95

        result = await directory.escalation.handle_escalation(
            "alice",
            ORG,
            EscalationOptions(escalation_path=[level(1, "role", target_role="team_lead")]),
        )

        assert result.exhausted


class TestLevelTypes:
    async def test_person_level_with_target(self, directory):
        result = await directory.escalation.handle_escalation(
            "alice",
            ORG,
            EscalationOptions(escalation_path=[level(1, "person", target_id="carol")]),
        )

        assert result.handler_id == "carol"
        assert result.reason == "Escalated to designated person"

    async def test_person_level_without_target_uses_backup(self, directory):
        result = await directory.escalation.handle_escalation(
            "alice",
            ORG,
            EscalationOptions(escalation_path=[level(1, "person")]),
        )

        assert result.handler_id == "bob"
        assert result.reason == "Escalated to backup: Designated backup for primary handler"

    async def test_unavailable_person_target_is_skipped(self, directory):
        directory.set_unavailable("carol")

        result = await directory.escalation.handle_escalation(
            "alice",
            ORG,
            EscalationOptions(
                escalation_path=[
                    level(1, "person", target_id="carol"),
                    level(2, "queue", target_id="finance_queue"),
                ]
            ),
        )

        assert result.handler_id == "finance_queue"
        assert result.escalation_level == 2

    async def test_team_level_defaults_to_original_team(self, directory):
        result = await directory.escalation.handle_escalation(
            "alice",
            ORG,
            EscalationOptions(escalation_path=[level(1, "team")]),
        )

        assert result.handler_id == "finance"
        assert result.handler_type == HandlerType.TEAM

    async def test_queue_level_without_target_uses_default(self, directory):
        result = await directory.escalation.handle_escalation(
            "alice",
            ORG,
            EscalationOptions(escalation_path=[level(1, "queue")]),
        )

        assert result.handler_id == "default_queue"
        assert result.escalation_level == 1
        assert not result.exhausted
