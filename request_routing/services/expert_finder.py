"""
Expert Finder: candidate scoring for expertise-based routing.

Turns request categories into skills, queries the expertise graph for each
skill concurrently, and ranks the merged candidates by a fixed weighting of
expertise fit, availability and workload.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Sequence

from .categorizer import normalize_categories
from .collaborators import PersonProfile
from .errors import InvalidRequestError
from .signals import GuardedExpertiseGraph, HandlerSignals

logger = logging.getLogger(__name__)


# =============================================================================
# SCORING
# =============================================================================

# Same weighting for expert search and backup ranking
EXPERTISE_WEIGHT = 0.4
AVAILABILITY_WEIGHT = 0.3
WORKLOAD_WEIGHT = 0.3


def combined_score(expertise: float, availability: float, workload: float) -> float:
    return (
        EXPERTISE_WEIGHT * expertise
        + AVAILABILITY_WEIGHT * availability
        + WORKLOAD_WEIGHT * workload
    )


def rank_key(combined: float, workload: float) -> tuple[float, float]:
    """Sort key: best combined score first, less-loaded first on ties."""
    return (-combined, -workload)


@dataclass(frozen=True)
class MatchedSkill:
    skill_name: str
    level: int
    confidence: float
    relevance: float


@dataclass
class HandlerCandidate:
    """A scored person. Ephemeral; only stored inside a decision's alternatives."""
    person_id: str
    person_name: str
    expertise_score: float
    availability_score: float
    workload_score: float  # 1 = least loaded
    matched_skills: list[MatchedSkill] = field(default_factory=list)
    combined_score: float = field(init=False)

    def __post_init__(self):
        self.combined_score = combined_score(
            self.expertise_score, self.availability_score, self.workload_score
        )

    def to_dict(self) -> dict:
        return {
            "person_id": self.person_id,
            "person_name": self.person_name,
            "expertise_score": self.expertise_score,
            "availability_score": self.availability_score,
            "workload_score": self.workload_score,
            "combined_score": self.combined_score,
            "matched_skills": [s.skill_name for s in self.matched_skills],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HandlerCandidate":
        return cls(
            person_id=data["person_id"],
            person_name=data.get("person_name", ""),
            expertise_score=float(data.get("expertise_score", 0.0)),
            availability_score=float(data.get("availability_score", 0.0)),
            workload_score=float(data.get("workload_score", 0.0)),
            matched_skills=[
                MatchedSkill(skill_name=name, level=0, confidence=0.0, relevance=0.0)
                for name in data.get("matched_skills", [])
            ],
        )


# =============================================================================
# CATEGORY TO SKILLS MAPPING
# =============================================================================


CATEGORY_SKILL_MAP: dict[str, list[str]] = {
    # Finance
    "billing": ["billing", "invoicing", "accounts receivable", "finance"],
    "invoice": ["accounting", "invoicing", "accounts receivable", "finance"],
    "payment": ["accounts payable", "treasury", "banking", "finance"],
    "budget": ["financial planning", "budgeting", "controlling", "finance"],
    "expense": ["expense management", "accounting", "compliance"],
    "accounting": ["bookkeeping", "gaap", "ifrs", "tax", "audit"],
    "tax": ["tax compliance", "vat", "corporate tax"],
    "audit": ["internal audit", "compliance", "sox", "risk management"],
    # Sales
    "sales": ["sales", "crm", "negotiation", "customer relationship"],
    "quote": ["pricing", "quotation", "sales", "product knowledge"],
    "proposal": ["proposal writing", "sales engineering", "solution design"],
    "contract": ["contract management", "legal", "negotiation"],
    "pricing": ["pricing strategy", "market analysis", "finance"],
    # Support
    "support": ["customer support", "technical support", "troubleshooting"],
    "complaint": ["complaint handling", "customer service", "conflict resolution"],
    "issue": ["issue resolution", "problem solving", "technical support"],
    "feature_request": ["product management", "requirements analysis"],
    "feedback": ["customer feedback", "quality assurance", "process improvement"],
    # HR
    "hr": ["human resources", "personnel management", "labor law"],
    "leave": ["hr administration", "time management", "payroll"],
    "recruitment": ["recruiting", "talent acquisition", "interviewing"],
    "onboarding": ["onboarding", "training", "hr"],
    "training": ["training", "learning development", "coaching"],
    "performance": ["performance management", "hr", "leadership"],
    # IT
    "it": ["it support", "technical support", "infrastructure"],
    "access": ["identity management", "security", "it administration"],
    "software": ["software support", "application management", "development"],
    "hardware": ["hardware support", "infrastructure", "networking"],
    "security": ["information security", "cybersecurity", "risk management"],
    "infrastructure": ["infrastructure", "cloud", "networking", "devops"],
    # Legal
    "legal": ["legal", "compliance", "contract law", "corporate law"],
    "compliance": ["compliance", "regulatory", "gdpr"],
    "gdpr": ["data protection", "gdpr", "privacy"],
    "contract_review": ["contract review", "legal", "negotiation"],
    "nda": ["nda", "confidentiality", "legal"],
    # Operations
    "operations": ["operations management", "process improvement", "lean"],
    "logistics": ["logistics", "supply chain", "shipping", "warehousing"],
    "shipping": ["shipping", "logistics", "export", "customs"],
    "inventory": ["inventory management", "warehouse", "supply chain"],
    "procurement": ["procurement", "purchasing", "vendor management"],
    # Project
    "project": ["project management", "agile", "planning"],
    "deadline": ["project management", "time management", "planning"],
    "milestone": ["project management", "program management", "planning"],
    "planning": ["planning", "strategy", "project management"],
    # General
    "general": ["communication", "administration", "coordination"],
    "meeting": ["coordination", "scheduling", "administration"],
    "scheduling": ["calendar management", "coordination", "administration"],
}


def skill_queries(categories: Sequence[str], budget: int) -> list[str]:
    """Skills to query, taken from each category in turn.

    Every category gets at least one query even when there are more
    categories than ``budget``.
    """
    per_category = [
        CATEGORY_SKILL_MAP.get(category.lower()) or [category.lower()]
        for category in categories
    ]
    budget = max(budget, len(per_category))

    skills: dict[str, None] = {}
    for rank in range(max((len(s) for s in per_category), default=0)):
        for mapped in per_category:
            if rank < len(mapped):
                skills.setdefault(mapped[rank], None)
            if len(skills) >= budget:
                return list(skills)
    return list(skills)


def _names_overlap(a: str, b: str) -> bool:
    a, b = a.lower(), b.lower()
    return a in b or b in a


def skill_relevance(skill_name: str, categories: Sequence[str]) -> float:
    """How central a skill is to the categories (1.0 primary ... 0.4 generic)."""
    for category in categories:
        mapped = CATEGORY_SKILL_MAP.get(category.lower())
        if not mapped:
            continue
        for index, mapped_skill in enumerate(mapped):
            if _names_overlap(skill_name, mapped_skill):
                if index == 0:
                    return 1.0
                if index == 1:
                    return 0.8
                return 0.6
    return 0.4


def expertise_score(matched_skills: Sequence[MatchedSkill]) -> float:
    """Relevance-weighted mean of (level / 5) * confidence."""
    if not matched_skills:
        return 0.0

    weighted_sum = 0.0
    total_weight = 0.0
    for skill in matched_skills:
        weighted_sum += (skill.level / 5) * skill.confidence * skill.relevance
        total_weight += skill.relevance

    return min(1.0, weighted_sum / total_weight) if total_weight > 0 else 0.0


# =============================================================================
# EXPERT FINDER
# =============================================================================


@dataclass
class ExpertSearchOptions:
    must_be_available: bool = True
    max_workload: float | None = None  # 0-100
    limit: int = 5
    exclude_person_ids: Sequence[str] = ()
    min_level: int = 2
    min_confidence: float = 0.5
    max_skill_queries: int = 6
    experts_per_skill: int = 10


class ExpertFinder:
    """Finds and ranks people whose recorded skills fit the request categories."""

    def __init__(self, graph: GuardedExpertiseGraph, signals: HandlerSignals):
        self._graph = graph
        self._signals = signals

    async def find_best_expert(
        self,
        organization_id: str,
        categories: Sequence[str],
        options: ExpertSearchOptions | None = None,
    ) -> HandlerCandidate | None:
        experts = await self.find_experts(organization_id, categories, options)
        return experts[0] if experts else None

    async def find_experts(
        self,
        organization_id: str,
        categories: Sequence[str],
        options: ExpertSearchOptions | None = None,
    ) -> list[HandlerCandidate]:
        """Return up to ``options.limit`` candidates, best first."""
        options = options or ExpertSearchOptions()
        categories = normalize_categories(categories)
        if not categories:
            raise InvalidRequestError("At least one category is required")

        skills = skill_queries(categories, options.max_skill_queries)

        # Fan out one graph query per skill
        results = await asyncio.gather(
            *(
                self._graph.find_experts_by_skill(
                    organization_id,
                    skill,
                    min_level=options.min_level,
                    min_confidence=options.min_confidence,
                    must_be_available=options.must_be_available,
                    limit=options.experts_per_skill,
                    stage="find_experts",
                )
                for skill in skills
            )
        )

        # Merge and drop exclusions before any scoring calls
        excluded = set(options.exclude_person_ids)
        profiles: dict[str, PersonProfile] = {}
        for experts in results:
            for expert in experts:
                if expert.person_id in excluded:
                    continue
                profiles.setdefault(expert.person_id, expert)

        if not profiles:
            logger.debug(f"No experts found for categories={list(categories)} org={organization_id}")
            return []

        scored = await asyncio.gather(
            *(
                self._score(profile, organization_id, categories, skills, options)
                for profile in profiles.values()
            )
        )
        candidates = [c for c in scored if c is not None]
        candidates.sort(key=lambda c: rank_key(c.combined_score, c.workload_score))

        if candidates:
            logger.debug(
                f"Expert matching for categories={list(categories)}: "
                f"{len(candidates)} candidates, best={candidates[0].person_id} "
                f"score={candidates[0].combined_score:.2f}"
            )

        return candidates[: options.limit]

    async def _score(
        self,
        profile: PersonProfile,
        organization_id: str,
        categories: Sequence[str],
        skills: Sequence[str],
        options: ExpertSearchOptions,
    ) -> HandlerCandidate | None:
        availability = await self._signals.availability(
            profile.person_id, organization_id, stage="find_experts"
        )
        if options.must_be_available and not availability.is_available:
            return None

        workload = await self._signals.workload(
            profile.person_id, organization_id, stage="find_experts"
        )
        if options.max_workload is not None and workload.current_workload > options.max_workload:
            return None

        matched = [
            MatchedSkill(
                skill_name=skill.name,
                level=skill.level,
                confidence=skill.confidence,
                relevance=skill_relevance(skill.name, categories),
            )
            for skill in profile.skills
            if any(_names_overlap(skill.name, wanted) for wanted in skills)
        ]

        return HandlerCandidate(
            person_id=profile.person_id,
            person_name=profile.person_name,
            expertise_score=expertise_score(matched),
            availability_score=availability.score,
            workload_score=workload.workload_score,
            matched_skills=matched,
        )
