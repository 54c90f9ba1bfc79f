"""SQL-backed routing rule store.

Every write invalidates the organization's cached rule set so the matcher
never evaluates a stale rule after CRUD.
"""

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import RoutingRule
from ..schemas.routing import RuleCreate, RuleUpdate
from .errors import RuleNotFoundError
from .rule_matcher import RuleCache
from .rules import RuleDefinition

logger = logging.getLogger(__name__)


class SqlRuleStore:
    """Rule persistence over an ``AsyncSession``."""

    def __init__(self, session: AsyncSession, cache: RuleCache | None = None):
        self._session = session
        self._cache = cache

    async def list_active_rules(self, organization_id: str) -> list[RuleDefinition]:
        result = await self._session.execute(
            select(RoutingRule)
            .where(
                RoutingRule.organization_id == organization_id,
                RoutingRule.is_active.is_(True),
            )
            .order_by(RoutingRule.sequence)
        )
        return [RuleDefinition.from_model(rule) for rule in result.scalars().all()]

    async def list_rules(
        self, organization_id: str, include_inactive: bool = True
    ) -> list[RoutingRule]:
        query = select(RoutingRule).where(RoutingRule.organization_id == organization_id)
        if not include_inactive:
            query = query.where(RoutingRule.is_active.is_(True))
        result = await self._session.execute(
            query.order_by(RoutingRule.priority.desc(), RoutingRule.sequence)
        )
        return list(result.scalars().all())

    async def get_rule(self, organization_id: str, rule_id: str) -> RoutingRule:
        result = await self._session.execute(
            select(RoutingRule).where(
                RoutingRule.id == rule_id,
                RoutingRule.organization_id == organization_id,
            )
        )
        rule = result.scalar_one_or_none()
        if rule is None:
            raise RuleNotFoundError(f"Routing rule {rule_id} not found")
        return rule

    async def create_rule(self, organization_id: str, data: RuleCreate) -> RoutingRule:
        rule = RoutingRule(
            organization_id=organization_id,
            name=data.name,
            description=data.description,
            priority=data.priority,
            is_active=data.is_active,
            sequence=await self._next_sequence(organization_id),
            criteria=data.criteria.model_dump(exclude_defaults=True),
            handler=data.handler.model_dump(exclude_none=True),
            schedule=data.schedule.model_dump(exclude_none=True),
        )
        self._session.add(rule)
        await self._commit()
        self._invalidate(organization_id)

        logger.info(f"Created routing rule {rule.id} '{rule.name}' for org {organization_id}")
        return rule

    async def update_rule(
        self, organization_id: str, rule_id: str, data: RuleUpdate
    ) -> RoutingRule:
        rule = await self.get_rule(organization_id, rule_id)

        changes = data.model_dump(exclude_unset=True)
        for key in ("name", "description", "priority", "is_active"):
            if key in changes:
                setattr(rule, key, changes[key])
        if data.criteria is not None:
            rule.criteria = data.criteria.model_dump(exclude_defaults=True)
        if data.handler is not None:
            rule.handler = data.handler.model_dump(exclude_none=True)
        if data.schedule is not None:
            rule.schedule = data.schedule.model_dump(exclude_none=True)

        await self._commit()
        self._invalidate(organization_id)

        logger.info(f"Updated routing rule {rule_id} for org {organization_id}")
        return rule

    async def delete_rule(self, organization_id: str, rule_id: str) -> None:
        rule = await self.get_rule(organization_id, rule_id)
        await self._session.delete(rule)
        await self._commit()
        self._invalidate(organization_id)

        logger.info(f"Deleted routing rule {rule_id} for org {organization_id}")

    async def _next_sequence(self, organization_id: str) -> int:
        result = await self._session.execute(
            select(func.coalesce(func.max(RoutingRule.sequence), 0) + 1).where(
                RoutingRule.organization_id == organization_id
            )
        )
        return result.scalar_one()

    async def _commit(self) -> None:
        try:
            await self._session.flush()
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

    def _invalidate(self, organization_id: str) -> None:
        if self._cache is not None:
            self._cache.invalidate(organization_id)
