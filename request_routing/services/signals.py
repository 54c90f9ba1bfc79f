"""Guarded access to collaborators.

Every collaborator call is bounded by a timeout. Errors and timeouts are
logged with person/org/stage context and turned into negative signals:
unavailable, no capacity, no profile, no experts.
"""

import asyncio
import logging
from typing import Awaitable, Sequence, TypeVar

from .collaborators import (
    NO_CAPACITY,
    UNAVAILABLE,
    AvailabilityCheck,
    AvailabilityProvider,
    ExpertiseGraph,
    PersonProfile,
    WorkloadCheck,
    WorkloadProvider,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def guarded(
    call: Awaitable[T],
    *,
    timeout: float,
    fallback: T,
    stage: str,
    organization_id: str | None = None,
    person_id: str | None = None,
) -> T:
    """Await a collaborator call, returning ``fallback`` on error or timeout."""
    try:
        return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError:
        logger.warning(
            f"Collaborator timed out after {timeout}s "
            f"(stage={stage}, person={person_id}, org={organization_id})"
        )
    except Exception as e:
        logger.warning(
            f"Collaborator failed (stage={stage}, person={person_id}, "
            f"org={organization_id}): {e}"
        )
    return fallback


class HandlerSignals:
    """Availability and workload lookups with fail-safe defaults.

    A failed availability check reads as "unavailable" so routing escalates
    instead of silently picking an unreachable handler.
    """

    def __init__(
        self,
        availability: AvailabilityProvider,
        workload: WorkloadProvider,
        *,
        availability_timeout: float = 0.5,
        workload_timeout: float = 0.5,
    ):
        self._availability = availability
        self._workload = workload
        self._availability_timeout = availability_timeout
        self._workload_timeout = workload_timeout

    async def availability(
        self, person_id: str, organization_id: str, *, stage: str = "availability"
    ) -> AvailabilityCheck:
        return await guarded(
            self._availability.check_availability(person_id, organization_id),
            timeout=self._availability_timeout,
            fallback=UNAVAILABLE,
            stage=stage,
            organization_id=organization_id,
            person_id=person_id,
        )

    async def workload(
        self, person_id: str, organization_id: str, *, stage: str = "workload"
    ) -> WorkloadCheck:
        return await guarded(
            self._workload.check_workload_capacity(person_id, organization_id),
            timeout=self._workload_timeout,
            fallback=NO_CAPACITY,
            stage=stage,
            organization_id=organization_id,
            person_id=person_id,
        )


class GuardedExpertiseGraph:
    """Expertise graph queries that never raise."""

    def __init__(self, graph: ExpertiseGraph, *, timeout: float = 1.0):
        self._graph = graph
        self._timeout = timeout

    async def get_profile(
        self, organization_id: str, person_id: str, *, stage: str = "profile"
    ) -> PersonProfile | None:
        return await guarded(
            self._graph.get_expertise_profile(organization_id, person_id),
            timeout=self._timeout,
            fallback=None,
            stage=stage,
            organization_id=organization_id,
            person_id=person_id,
        )

    async def find_experts_by_skill(
        self,
        organization_id: str,
        skill_name: str,
        *,
        min_level: int = 3,
        min_confidence: float = 0.0,
        must_be_available: bool = False,
        limit: int = 10,
        stage: str = "experts_by_skill",
    ) -> list[PersonProfile]:
        return await guarded(
            self._graph.find_experts_by_skill(
                organization_id,
                skill_name,
                min_level=min_level,
                min_confidence=min_confidence,
                must_be_available=must_be_available,
                limit=limit,
            ),
            timeout=self._timeout,
            fallback=[],
            stage=f"{stage}:{skill_name}",
            organization_id=organization_id,
        )

    async def find_people_by_role(
        self, organization_id: str, role: str, *, limit: int = 20, stage: str = "people_by_role"
    ) -> list[PersonProfile]:
        return await guarded(
            self._graph.find_people_by_role(organization_id, role, limit=limit),
            timeout=self._timeout,
            fallback=[],
            stage=f"{stage}:{role}",
            organization_id=organization_id,
        )

    async def list_profiles(
        self,
        organization_id: str,
        *,
        team: str | None = None,
        exclude_ids: Sequence[str] = (),
        limit: int = 50,
        stage: str = "list_profiles",
    ) -> list[PersonProfile]:
        return await guarded(
            self._graph.list_profiles(
                organization_id, team=team, exclude_ids=exclude_ids, limit=limit
            ),
            timeout=self._timeout,
            fallback=[],
            stage=stage,
            organization_id=organization_id,
        )
