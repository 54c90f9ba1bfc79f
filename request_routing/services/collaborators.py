"""Ports for the external collaborators the routing engine consumes.

The expertise graph, availability provider and workload provider are owned
by other systems. The engine only sees these typed query interfaces; the
default SQL-backed implementations live in ``profile_store``.
"""

from dataclasses import dataclass, field
from typing import Protocol, Sequence


@dataclass(frozen=True)
class Skill:
    """A skill with recorded evidence."""
    name: str
    level: int  # 1-5
    confidence: float = 1.0  # 0-1

    @classmethod
    def from_dict(cls, data: dict) -> "Skill":
        return cls(
            name=data.get("name", ""),
            level=int(data.get("level", 1)),
            confidence=float(data.get("confidence", 1.0)),
        )

    def to_dict(self) -> dict:
        return {"name": self.name, "level": self.level, "confidence": self.confidence}


@dataclass
class PersonProfile:
    """Expertise profile of one person as returned by the expertise graph."""
    person_id: str
    person_name: str
    email: str | None = None
    department: str | None = None
    team: str | None = None
    manager_id: str | None = None
    backup_person_id: str | None = None
    roles: list[str] = field(default_factory=list)
    skills: list[Skill] = field(default_factory=list)
    is_available: bool = True
    current_workload: float = 0.0  # 0-100

    def top_skills(self, count: int = 3) -> list[Skill]:
        return sorted(self.skills, key=lambda s: s.level, reverse=True)[:count]

    def skill_level(self, skill_name: str) -> int | None:
        wanted = skill_name.lower()
        for skill in self.skills:
            if skill.name.lower() == wanted:
                return skill.level
        return None

    def has_role(self, role: str) -> bool:
        return role.lower() in (r.lower() for r in self.roles)


@dataclass(frozen=True)
class AvailabilityCheck:
    is_available: bool
    score: float  # 0-1
    reason: str | None = None


@dataclass(frozen=True)
class WorkloadCheck:
    has_capacity: bool
    current_workload: float  # 0-100

    @property
    def workload_score(self) -> float:
        """Inverse load: 1 = idle, 0 = saturated."""
        return workload_score(self.current_workload)


def workload_score(current_workload: float) -> float:
    return max(0.0, min(1.0, 1 - current_workload / 100))


# Fail-safe signals used when a provider errors or times out
UNAVAILABLE = AvailabilityCheck(is_available=False, score=0.0, reason="availability unknown")
NO_CAPACITY = WorkloadCheck(has_capacity=False, current_workload=100.0)


class ExpertiseGraph(Protocol):
    async def get_expertise_profile(
        self, organization_id: str, person_id: str
    ) -> PersonProfile | None: ...

    async def find_experts_by_skill(
        self,
        organization_id: str,
        skill_name: str,
        *,
        min_level: int = 3,
        min_confidence: float = 0.0,
        must_be_available: bool = False,
        limit: int = 10,
    ) -> list[PersonProfile]: ...

    async def find_people_by_role(
        self, organization_id: str, role: str, *, limit: int = 20
    ) -> list[PersonProfile]: ...

    async def list_profiles(
        self,
        organization_id: str,
        *,
        team: str | None = None,
        exclude_ids: Sequence[str] = (),
        limit: int = 50,
    ) -> list[PersonProfile]: ...


class AvailabilityProvider(Protocol):
    async def check_availability(
        self, person_id: str, organization_id: str
    ) -> AvailabilityCheck: ...


class WorkloadProvider(Protocol):
    async def check_workload_capacity(
        self, person_id: str, organization_id: str
    ) -> WorkloadCheck: ...
