"""
Backup Selector: finds a substitute when a handler is unreachable.

Strategies, always tried in this order:
1. Designated backup from the primary's profile
2. Available member of the primary's team
3. Available expert in one of the primary's top skills
4. Least-loaded available person in the organization

``select_backup`` stops at the first strategy that finds someone and may
return None. ``get_backup_candidates`` runs strategies 1-3 in full and
returns a ranked list for "suggest a backup" screens.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Sequence

from ..core.config import Settings
from ..models import BackupStrategy
from .cascade import Step, first_success
from .collaborators import PersonProfile
from .expert_finder import combined_score, rank_key
from .signals import GuardedExpertiseGraph, HandlerSignals

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class BackupConfig:
    """Trust levels and scan bounds for the backup cascade."""

    # Assumed expertise of a designated backup / team peer. Not calibrated.
    designated_expertise: float = 0.8
    team_expertise: float = 0.7
    unknown_expertise: float = 0.5

    top_skill_count: int = 3
    experts_per_skill: int = 5
    team_scan_limit: int = 20
    organization_scan_limit: int = 50

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackupConfig":
        return cls(
            designated_expertise=settings.designated_backup_expertise,
            team_expertise=settings.team_backup_expertise,
            organization_scan_limit=settings.lowest_workload_scan_limit,
        )


DEFAULT_CONFIG = BackupConfig()


# =============================================================================
# RESULT TYPES
# =============================================================================


@dataclass
class BackupOptions:
    require_capacity: bool = False
    exclude_ids: Sequence[str] = ()


@dataclass
class BackupResult:
    person_id: str
    person_name: str
    workload_score: float
    availability_score: float
    expertise_score: float
    reason: str
    strategy: BackupStrategy

    @property
    def combined_score(self) -> float:
        return combined_score(
            self.expertise_score, self.availability_score, self.workload_score
        )

    def to_dict(self) -> dict:
        return {
            "person_id": self.person_id,
            "person_name": self.person_name,
            "workload_score": self.workload_score,
            "availability_score": self.availability_score,
            "expertise_score": self.expertise_score,
            "combined_score": self.combined_score,
            "reason": self.reason,
            "strategy": self.strategy.value,
        }


@dataclass
class _Lookup:
    primary_id: str
    organization_id: str
    profile: PersonProfile | None
    require_capacity: bool
    excluded: set[str] = field(default_factory=set)

    def allows(self, person_id: str | None) -> bool:
        return bool(person_id) and person_id != self.primary_id and person_id not in self.excluded


# =============================================================================
# SELECTOR
# =============================================================================


class BackupSelector:
    """Backup cascade over the expertise graph and live handler signals."""

    def __init__(
        self,
        graph: GuardedExpertiseGraph,
        signals: HandlerSignals,
        config: BackupConfig = DEFAULT_CONFIG,
    ):
        self._graph = graph
        self._signals = signals
        self.config = config

    async def select_backup(
        self,
        primary_handler_id: str,
        organization_id: str,
        options: BackupOptions | None = None,
    ) -> BackupResult | None:
        """Return the first backup found by the cascade, or None."""
        lookup = await self._lookup(primary_handler_id, organization_id, options)

        steps = [
            Step("designated", lambda ctx: self._first(self._designated(ctx))),
            Step("team", lambda ctx: self._first(self._team(ctx))),
            Step("skill", lambda ctx: self._first(self._skill(ctx))),
            Step("lowest_workload", self._lowest_workload),
        ]
        result = await first_success(steps, lookup, stage="select_backup")

        if result is None:
            logger.info(
                f"No backup found for {primary_handler_id} in org {organization_id}"
            )
        else:
            logger.info(
                f"Selected backup {result.person_id} for {primary_handler_id} "
                f"via {result.strategy.value}"
            )
        return result

    async def get_backup_candidates(
        self,
        primary_handler_id: str,
        organization_id: str,
        limit: int = 5,
    ) -> list[BackupResult]:
        """Collect designated, team and skill candidates, ranked best first."""
        lookup = await self._lookup(primary_handler_id, organization_id, None)

        candidates: dict[str, BackupResult] = {}
        for name, strategy in (
            ("designated", self._designated),
            ("team", self._team),
            ("skill", self._skill),
        ):
            try:
                async for result in strategy(lookup):
                    candidates.setdefault(result.person_id, result)
            except Exception as e:
                logger.warning(f"get_backup_candidates: step '{name}' failed: {e}")

        ranked = sorted(
            candidates.values(),
            key=lambda r: rank_key(r.combined_score, r.workload_score),
        )
        return ranked[:limit]

    # =========================================================================
    # STRATEGIES
    # =========================================================================

    async def _designated(self, lookup: _Lookup) -> AsyncIterator[BackupResult]:
        if lookup.profile is None or not lookup.allows(lookup.profile.backup_person_id):
            return

        backup_id = lookup.profile.backup_person_id
        result = await self._check(
            backup_id,
            lookup,
            expertise=self.config.designated_expertise,
            reason="Designated backup for primary handler",
            strategy=BackupStrategy.DESIGNATED,
        )
        if result is not None:
            backup_profile = await self._graph.get_profile(
                lookup.organization_id, backup_id, stage="select_backup"
            )
            result.person_name = backup_profile.person_name if backup_profile else "Unknown"
            yield result

    async def _team(self, lookup: _Lookup) -> AsyncIterator[BackupResult]:
        if lookup.profile is None or not lookup.profile.team:
            return

        members = await self._graph.list_profiles(
            lookup.organization_id,
            team=lookup.profile.team,
            exclude_ids=[lookup.primary_id, *lookup.excluded],
            limit=self.config.team_scan_limit,
            stage="select_backup:team",
        )
        for member in members:
            if not lookup.allows(member.person_id) or member.team != lookup.profile.team:
                continue
            result = await self._check(
                member.person_id,
                lookup,
                expertise=self.config.team_expertise,
                reason="Team member with availability",
                strategy=BackupStrategy.TEAM,
                person_name=member.person_name,
            )
            if result is not None:
                yield result

    async def _skill(self, lookup: _Lookup) -> AsyncIterator[BackupResult]:
        if lookup.profile is None or not lookup.profile.skills:
            return

        primary_skills = [s.name.lower() for s in lookup.profile.skills]
        seen: set[str] = set()

        for skill in lookup.profile.top_skills(self.config.top_skill_count):
            experts = await self._graph.find_experts_by_skill(
                lookup.organization_id,
                skill.name,
                min_level=max(1, skill.level - 1),
                must_be_available=True,
                limit=self.config.experts_per_skill,
                stage="select_backup:skill",
            )
            for expert in experts:
                if not lookup.allows(expert.person_id) or expert.person_id in seen:
                    continue
                seen.add(expert.person_id)

                expert_skills = [s.name.lower() for s in expert.skills]
                overlap = sum(
                    1
                    for name in primary_skills
                    if any(name in other or other in name for other in expert_skills)
                )
                level = expert.skill_level(skill.name)

                result = await self._check(
                    expert.person_id,
                    lookup,
                    expertise=min(1.0, overlap / len(primary_skills) + 0.3),
                    reason=f"Expert in {skill.name} (level {level if level is not None else 'N/A'})",
                    strategy=BackupStrategy.SKILL,
                    person_name=expert.person_name,
                )
                if result is not None:
                    yield result

    async def _lowest_workload(self, lookup: _Lookup) -> BackupResult | None:
        profiles = await self._graph.list_profiles(
            lookup.organization_id,
            exclude_ids=[lookup.primary_id, *lookup.excluded],
            limit=self.config.organization_scan_limit,
            stage="select_backup:lowest_workload",
        )
        profiles = [p for p in profiles if lookup.allows(p.person_id)]
        if not profiles:
            return None

        signals = await asyncio.gather(
            *(
                asyncio.gather(
                    self._signals.availability(
                        p.person_id, lookup.organization_id, stage="select_backup"
                    ),
                    self._signals.workload(
                        p.person_id, lookup.organization_id, stage="select_backup"
                    ),
                )
                for p in profiles
            )
        )

        available = [
            (profile, availability, workload)
            for profile, (availability, workload) in zip(profiles, signals)
            if availability.is_available
            and (workload.has_capacity or not lookup.require_capacity)
        ]
        if not available:
            return None

        # Stable: equal workloads keep scan order
        available.sort(key=lambda entry: entry[2].current_workload)
        profile, availability, workload = available[0]

        return BackupResult(
            person_id=profile.person_id,
            person_name=profile.person_name,
            workload_score=workload.workload_score,
            availability_score=availability.score,
            expertise_score=self.config.unknown_expertise,
            reason=f"Lowest workload in organization ({workload.current_workload:g}%)",
            strategy=BackupStrategy.LOWEST_WORKLOAD,
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _lookup(
        self,
        primary_handler_id: str,
        organization_id: str,
        options: BackupOptions | None,
    ) -> _Lookup:
        options = options or BackupOptions()
        profile = await self._graph.get_profile(
            organization_id, primary_handler_id, stage="select_backup"
        )
        return _Lookup(
            primary_id=primary_handler_id,
            organization_id=organization_id,
            profile=profile,
            require_capacity=options.require_capacity,
            excluded=set(options.exclude_ids),
        )

    async def _check(
        self,
        person_id: str,
        lookup: _Lookup,
        *,
        expertise: float,
        reason: str,
        strategy: BackupStrategy,
        person_name: str = "",
    ) -> BackupResult | None:
        """Build a result if the person is available (and has capacity when required)."""
        availability = await self._signals.availability(
            person_id, lookup.organization_id, stage=f"select_backup:{strategy.value}"
        )
        if not availability.is_available:
            return None

        workload = await self._signals.workload(
            person_id, lookup.organization_id, stage=f"select_backup:{strategy.value}"
        )
        if lookup.require_capacity and not workload.has_capacity:
            return None

        return BackupResult(
            person_id=person_id,
            person_name=person_name,
            workload_score=workload.workload_score,
            availability_score=availability.score,
            expertise_score=expertise,
            reason=reason,
            strategy=strategy,
        )

    @staticmethod
    async def _first(results: AsyncIterator[BackupResult]) -> BackupResult | None:
        try:
            async for result in results:
                return result
            return None
        finally:
            await results.aclose()
