"""Rule matching with a per-organization read-through cache."""

import logging
import time
from datetime import datetime, timezone
from typing import Protocol, Sequence

from .rules import MatchContext, RuleDefinition

logger = logging.getLogger(__name__)


class RuleStore(Protocol):
    async def list_active_rules(self, organization_id: str) -> list[RuleDefinition]:
        """Active rules in creation order."""
        ...


class RuleCache:
    """Active rule sets keyed by organization, expiring after ``ttl_seconds``.

    Rule CRUD must call ``invalidate`` for the affected organization.
    """

    def __init__(self, ttl_seconds: float = 300):
        self.ttl_seconds = ttl_seconds
        self._entries: dict[str, tuple[float, list[RuleDefinition]]] = {}

    def get(self, organization_id: str) -> list[RuleDefinition] | None:
        entry = self._entries.get(organization_id)
        if entry is None:
            return None
        stored_at, rules = entry
        if time.monotonic() - stored_at > self.ttl_seconds:
            del self._entries[organization_id]
            return None
        return rules

    def put(self, organization_id: str, rules: list[RuleDefinition]) -> None:
        self._entries[organization_id] = (time.monotonic(), list(rules))

    def invalidate(self, organization_id: str) -> None:
        self._entries.pop(organization_id, None)

    def clear(self) -> None:
        self._entries.clear()


class RuleMatcher:
    """Evaluates an organization's rules against a categorized request."""

    def __init__(self, store: RuleStore, cache: RuleCache | None = None):
        self._store = store
        self._cache = cache

    async def match_rules(
        self,
        organization_id: str,
        categories: Sequence[str],
        context: MatchContext | None = None,
    ) -> list[RuleDefinition]:
        """Return every matching rule, highest priority first.

        Equal priorities keep creation order. A rule store failure yields no
        matches so routing falls through to expertise matching.
        """
        context = context or MatchContext()
        moment = context.now or datetime.now(timezone.utc)

        rules = await self._load(organization_id)
        matched = [r for r in rules if r.applies_to(categories, context, moment)]

        # sorted() is stable, so ties keep creation order
        matched = sorted(matched, key=lambda r: -r.priority)

        if matched:
            logger.debug(
                f"Matched {len(matched)} rule(s) for org {organization_id}: "
                f"{[r.name for r in matched]}"
            )
        return matched

    async def _load(self, organization_id: str) -> list[RuleDefinition]:
        if self._cache is not None:
            cached = self._cache.get(organization_id)
            if cached is not None:
                return cached

        try:
            rules = await self._store.list_active_rules(organization_id)
        except Exception as e:
            logger.warning(
                f"Failed to load routing rules (stage=match_rules, org={organization_id}): {e}"
            )
            return []

        if self._cache is not None:
            self._cache.put(organization_id, rules)
        return rules
