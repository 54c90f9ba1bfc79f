"""
Tests for the SQL rule store.

These tests verify:
1. ORDERING: Equal priorities keep creation order even with identical timestamps
2. CACHE: Writes invalidate the organization's cached rules
3. FAILURES: A rejected write is rolled back and the session stays usable
"""

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from request_routing.models import RoutingRule
from request_routing.schemas.routing import RuleCreate, RuleHandlerSchema, RuleUpdate
from request_routing.services.rule_matcher import RuleCache, RuleMatcher
from request_routing.services.rule_store import SqlRuleStore

from .fakes import ORG


def billing_rule(name: str, priority: int = 50, target: str = "finance") -> RuleCreate:
    return RuleCreate(
        name=name,
        priority=priority,
        criteria={"categories": ["billing"]},
        handler=RuleHandlerSchema(type="team", target_id=target),
    )


@pytest.fixture
def store(session) -> SqlRuleStore:
    return SqlRuleStore(session, cache=RuleCache())


# =============================================================================
# TEST: ORDERING
# =============================================================================


class TestRuleOrdering:
    async def test_sequence_follows_creation_per_organization(self, store):
        first = await store.create_rule(ORG, billing_rule("First"))
        second = await store.create_rule(ORG, billing_rule("Second"))
        other = await store.create_rule("org-other", billing_rule("Other"))

        assert (first.sequence, second.sequence) == (1, 2)
        assert other.sequence == 1

    async def test_ties_keep_creation_order_with_identical_timestamps(self, store, session):
        for name in ("First", "Second", "Third"):
            await store.create_rule(ORG, billing_rule(name))
        created = (await store.list_rules(ORG))[0].created_at
        await session.execute(update(RoutingRule).values(created_at=created))
        await session.commit()

        active = await store.list_active_rules(ORG)
        matched = await RuleMatcher(store).match_rules(ORG, ["billing"])

        assert [r.name for r in active] == ["First", "Second", "Third"]
        assert [r.name for r in matched] == ["First", "Second", "Third"]

    async def test_list_rules_by_priority(self, store):
        await store.create_rule(ORG, billing_rule("Low", priority=10))
        await store.create_rule(ORG, billing_rule("High", priority=900))

        assert [r.name for r in await store.list_rules(ORG)] == ["High", "Low"]


# =============================================================================
# TEST: CACHE
# =============================================================================


class TestCacheInvalidation:
    async def test_writes_invalidate(self, session):
        cache = RuleCache()
        store = SqlRuleStore(session, cache=cache)
        matcher = RuleMatcher(store, cache=cache)

        rule = await store.create_rule(ORG, billing_rule("Billing"))
        assert [r.name for r in await matcher.match_rules(ORG, ["billing"])] == ["Billing"]

        await store.update_rule(ORG, rule.id, RuleUpdate(is_active=False))

        assert await matcher.match_rules(ORG, ["billing"]) == []


# =============================================================================
# TEST: FAILURES
# =============================================================================


class TestFailedWrites:
    async def test_rejected_update_is_rolled_back(self, store):
        rule = await store.create_rule(ORG, billing_rule("Billing", priority=100))

        # Skips schema validation so the database constraint rejects it
        with pytest.raises(IntegrityError):
            await store.update_rule(ORG, rule.id, RuleUpdate.model_construct(priority=5000))

        stored = await store.get_rule(ORG, rule.id)
        later = await store.create_rule(ORG, billing_rule("Later"))

        assert stored.priority == 100
        assert later.sequence == 2
