"""Default collaborators backed by the ``expertise_profiles`` table.

Skill filtering happens in Python because skills are stored as a JSON list;
organizations are small enough for a bounded scan. Each lookup opens its own
short-lived session so the engine can issue lookups concurrently.
"""

import logging
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import ExpertiseProfile, PresenceStatus
from .collaborators import AvailabilityCheck, PersonProfile, Skill, WorkloadCheck

logger = logging.getLogger(__name__)

# Availability score per presence status; away/offline are unreachable
PRESENCE_SCORES: dict[PresenceStatus, float] = {
    PresenceStatus.AVAILABLE: 1.0,
    PresenceStatus.BUSY: 0.5,
    PresenceStatus.AWAY: 0.0,
    PresenceStatus.OFFLINE: 0.0,
}

_REACHABLE = (PresenceStatus.AVAILABLE, PresenceStatus.BUSY)


def profile_from_model(row: ExpertiseProfile) -> PersonProfile:
    return PersonProfile(
        person_id=row.person_id,
        person_name=row.person_name,
        email=row.email,
        department=row.department,
        team=row.team,
        manager_id=row.manager_id,
        backup_person_id=row.backup_person_id,
        roles=list(row.roles or []),
        skills=[Skill.from_dict(s) for s in row.skills or []],
        is_available=PresenceStatus(row.status) in _REACHABLE,
        current_workload=row.current_workload,
    )


async def _get_row(
    session_factory: async_sessionmaker[AsyncSession], organization_id: str, person_id: str
) -> ExpertiseProfile | None:
    async with session_factory() as session:
        result = await session.execute(
            select(ExpertiseProfile).where(
                ExpertiseProfile.organization_id == organization_id,
                ExpertiseProfile.person_id == person_id,
            )
        )
        return result.scalar_one_or_none()


class SqlExpertiseGraph:
    """Expertise graph queries over stored profiles."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], scan_limit: int = 500):
        self._session_factory = session_factory
        self._scan_limit = scan_limit

    async def get_expertise_profile(
        self, organization_id: str, person_id: str
    ) -> PersonProfile | None:
        row = await _get_row(self._session_factory, organization_id, person_id)
        return profile_from_model(row) if row else None

    async def find_experts_by_skill(
        self,
        organization_id: str,
        skill_name: str,
        *,
        min_level: int = 3,
        min_confidence: float = 0.0,
        must_be_available: bool = False,
        limit: int = 10,
    ) -> list[PersonProfile]:
        """People holding the skill at ``min_level`` or above, strongest first."""
        wanted = skill_name.lower()
        matches: list[tuple[int, PersonProfile]] = []

        for profile in await self._scan(organization_id, must_be_available=must_be_available):
            best = max(
                (
                    s.level
                    for s in profile.skills
                    if (wanted in s.name.lower() or s.name.lower() in wanted)
                    and s.level >= min_level
                    and s.confidence >= min_confidence
                ),
                default=None,
            )
            if best is not None:
                matches.append((best, profile))

        matches.sort(key=lambda m: (-m[0], m[1].current_workload))
        return [profile for _, profile in matches[:limit]]

    async def find_people_by_role(
        self, organization_id: str, role: str, *, limit: int = 20
    ) -> list[PersonProfile]:
        people = [p for p in await self._scan(organization_id) if p.has_role(role)]
        people.sort(key=lambda p: p.current_workload)
        return people[:limit]

    async def list_profiles(
        self,
        organization_id: str,
        *,
        team: str | None = None,
        exclude_ids: Sequence[str] = (),
        limit: int = 50,
    ) -> list[PersonProfile]:
        query = select(ExpertiseProfile).where(
            ExpertiseProfile.organization_id == organization_id
        )
        if team is not None:
            query = query.where(ExpertiseProfile.team == team)
        if exclude_ids:
            query = query.where(ExpertiseProfile.person_id.not_in(list(exclude_ids)))

        return await self._fetch(query.order_by(ExpertiseProfile.person_id).limit(limit))

    async def _scan(
        self, organization_id: str, *, must_be_available: bool = False
    ) -> list[PersonProfile]:
        query = select(ExpertiseProfile).where(
            ExpertiseProfile.organization_id == organization_id
        )
        if must_be_available:
            query = query.where(ExpertiseProfile.status.in_(_REACHABLE))

        return await self._fetch(
            query.order_by(ExpertiseProfile.person_id).limit(self._scan_limit)
        )

    async def _fetch(self, query) -> list[PersonProfile]:
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [profile_from_model(row) for row in result.scalars().all()]


class ProfileAvailabilityProvider:
    """Availability from the stored presence status."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def check_availability(
        self, person_id: str, organization_id: str
    ) -> AvailabilityCheck:
        row = await _get_row(self._session_factory, organization_id, person_id)
        if row is None:
            return AvailabilityCheck(is_available=False, score=0.0, reason="no profile")

        status = PresenceStatus(row.status)
        return AvailabilityCheck(
            is_available=status in _REACHABLE,
            score=PRESENCE_SCORES[status],
            reason=status.value,
        )


class ProfileWorkloadProvider:
    """Capacity from the stored workload percentage."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        capacity_threshold: float = 80.0,
    ):
        self._session_factory = session_factory
        self.capacity_threshold = capacity_threshold

    async def check_workload_capacity(
        self, person_id: str, organization_id: str
    ) -> WorkloadCheck:
        row = await _get_row(self._session_factory, organization_id, person_id)
        if row is None:
            return WorkloadCheck(has_capacity=False, current_workload=100.0)

        return WorkloadCheck(
            has_capacity=row.current_workload < self.capacity_threshold,
            current_workload=row.current_workload,
        )
