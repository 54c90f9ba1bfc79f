"""
Escalation Handler.

Walks an ordered escalation path when a handler cannot be reached. Levels are
attempted strictly in order; the first that resolves a handler wins. When the
whole path fails the request lands in the default queue, which needs no I/O
and therefore cannot fail.
"""

import logging
from dataclasses import dataclass
from typing import Sequence

from ..models import EscalationLevelType, HandlerType
from .backup_selector import BackupSelector
from .cascade import Step, first_success
from .collaborators import PersonProfile
from .signals import GuardedExpertiseGraph, HandlerSignals

logger = logging.getLogger(__name__)


# =============================================================================
# ESCALATION PATHS
# =============================================================================


@dataclass(frozen=True)
class EscalationLevel:
    level: int  # 1-based
    type: EscalationLevelType
    target_id: str | None = None
    target_role: str | None = None
    wait_minutes: int = 0  # advisory, for timer-driven escalation

    @classmethod
    def from_dict(cls, data: dict) -> "EscalationLevel":
        return cls(
            level=int(data["level"]),
            type=EscalationLevelType(data["type"]),
            target_id=data.get("target_id"),
            target_role=data.get("target_role"),
            wait_minutes=int(data.get("wait_minutes", 0)),
        )

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "type": self.type.value,
            "target_id": self.target_id,
            "target_role": self.target_role,
            "wait_minutes": self.wait_minutes,
        }


DEFAULT_ESCALATION_PATH: tuple[EscalationLevel, ...] = (
    EscalationLevel(1, EscalationLevelType.MANAGER, wait_minutes=15),
    EscalationLevel(2, EscalationLevelType.ROLE, target_role="team_lead", wait_minutes=30),
    EscalationLevel(3, EscalationLevelType.ROLE, target_role="department_head", wait_minutes=60),
    EscalationLevel(4, EscalationLevelType.QUEUE, target_id="general_queue", wait_minutes=120),
)

URGENT_ESCALATION_PATH: tuple[EscalationLevel, ...] = (
    EscalationLevel(1, EscalationLevelType.MANAGER, wait_minutes=0),
    EscalationLevel(2, EscalationLevelType.ROLE, target_role="team_lead", wait_minutes=5),
    EscalationLevel(3, EscalationLevelType.QUEUE, target_id="urgent_queue", wait_minutes=15),
)


@dataclass
class EscalationOptions:
    escalation_path: Sequence[EscalationLevel] | None = None
    is_urgent: bool = False
    start_level: int = 1


@dataclass
class EscalationResult:
    handler_id: str
    handler_type: HandlerType
    escalation_level: int
    reason: str
    original_handler_id: str
    handler_name: str | None = None
    exhausted: bool = False

    def to_dict(self) -> dict:
        return {
            "handler_id": self.handler_id,
            "handler_type": self.handler_type.value,
            "handler_name": self.handler_name,
            "escalation_level": self.escalation_level,
            "reason": self.reason,
            "original_handler_id": self.original_handler_id,
            "exhausted": self.exhausted,
        }


@dataclass
class _Escalation:
    original_handler_id: str
    organization_id: str
    profile: PersonProfile | None = None
    profile_loaded: bool = False


# =============================================================================
# HANDLER
# =============================================================================


class EscalationHandler:
    """Resolves the next reachable handler along an escalation path."""

    def __init__(
        self,
        graph: GuardedExpertiseGraph,
        signals: HandlerSignals,
        backups: BackupSelector,
        *,
        default_queue_id: str = "default_queue",
    ):
        self._graph = graph
        self._signals = signals
        self._backups = backups
        self.default_queue_id = default_queue_id

    def path_for(self, options: EscalationOptions) -> list[EscalationLevel]:
        """The path to walk: explicit, or the urgent/default path."""
        if options.escalation_path:
            path = list(options.escalation_path)
        elif options.is_urgent:
            path = list(URGENT_ESCALATION_PATH)
        else:
            path = list(DEFAULT_ESCALATION_PATH)
        return sorted(path, key=lambda lvl: lvl.level)

    async def handle_escalation(
        self,
        original_handler_id: str,
        organization_id: str,
        options: EscalationOptions | None = None,
    ) -> EscalationResult:
        """Escalate away from ``original_handler_id``. Never returns None."""
        options = options or EscalationOptions()
        path = self.path_for(options)
        context = _Escalation(original_handler_id, organization_id)

        steps = [
            Step(
                f"level {lvl.level} ({lvl.type.value})",
                lambda ctx, lvl=lvl: self._resolve_level(lvl, ctx),
            )
            for lvl in path
            if lvl.level >= options.start_level
        ]

        result = await first_success(steps, context, stage="escalation")
        if result is not None:
            logger.info(
                f"Escalated {original_handler_id} to {result.handler_type.value} "
                f"{result.handler_id} at level {result.escalation_level}"
            )
            return result

        logger.warning(
            f"Escalation path exhausted for {original_handler_id} in org "
            f"{organization_id}, using {self.default_queue_id}"
        )
        return EscalationResult(
            handler_id=self.default_queue_id,
            handler_type=HandlerType.QUEUE,
            escalation_level=len(path) + 1,
            reason="Escalation path exhausted, routed to default queue",
            original_handler_id=original_handler_id,
            exhausted=True,
        )

    async def _resolve_level(
        self, level: EscalationLevel, ctx: _Escalation
    ) -> EscalationResult | None:
        if level.type == EscalationLevelType.MANAGER:
            return await self._resolve_manager(level, ctx)
        if level.type == EscalationLevelType.ROLE:
            return await self._resolve_role(level, ctx)
        if level.type == EscalationLevelType.PERSON:
            return await self._resolve_person(level, ctx)
        if level.type == EscalationLevelType.TEAM:
            return await self._resolve_team(level, ctx)
        return self._resolve_queue(level, ctx)

    async def _original_profile(self, ctx: _Escalation) -> PersonProfile | None:
        if not ctx.profile_loaded:
            ctx.profile = await self._graph.get_profile(
                ctx.organization_id, ctx.original_handler_id, stage="escalation"
            )
            ctx.profile_loaded = True
        return ctx.profile

    async def _resolve_manager(self, level: EscalationLevel, ctx: _Escalation):
        profile = await self._original_profile(ctx)
        if profile is None or not profile.manager_id:
            return None

        availability = await self._signals.availability(
            profile.manager_id, ctx.organization_id, stage="escalation:manager"
        )
        if not availability.is_available:
            return None

        manager = await self._graph.get_profile(
            ctx.organization_id, profile.manager_id, stage="escalation:manager"
        )
        return EscalationResult(
            handler_id=profile.manager_id,
            handler_type=HandlerType.PERSON,
            handler_name=manager.person_name if manager else None,
            escalation_level=level.level,
            reason="Escalated to manager",
            original_handler_id=ctx.original_handler_id,
        )

    async def _resolve_role(self, level: EscalationLevel, ctx: _Escalation):
        if not level.target_role:
            return None

        people = await self._graph.find_people_by_role(
            ctx.organization_id, level.target_role, stage="escalation:role"
        )
        for person in people:
            if person.person_id == ctx.original_handler_id:
                continue

            availability = await self._signals.availability(
                person.person_id, ctx.organization_id, stage="escalation:role"
            )
            if not availability.is_available:
                continue

            workload = await self._signals.workload(
                person.person_id, ctx.organization_id, stage="escalation:role"
            )
            if not workload.has_capacity:
                continue

            return EscalationResult(
                handler_id=person.person_id,
                handler_type=HandlerType.PERSON,
                handler_name=person.person_name,
                escalation_level=level.level,
                reason=f"Escalated to {level.target_role}",
                original_handler_id=ctx.original_handler_id,
            )
        return None

    async def _resolve_person(self, level: EscalationLevel, ctx: _Escalation):
        if level.target_id:
            if level.target_id == ctx.original_handler_id:
                return None
            availability = await self._signals.availability(
                level.target_id, ctx.organization_id, stage="escalation:person"
            )
            if not availability.is_available:
                return None
            return EscalationResult(
                handler_id=level.target_id,
                handler_type=HandlerType.PERSON,
                escalation_level=level.level,
                reason="Escalated to designated person",
                original_handler_id=ctx.original_handler_id,
            )

        backup = await self._backups.select_backup(
            ctx.original_handler_id, ctx.organization_id
        )
        if backup is None:
            return None
        return EscalationResult(
            handler_id=backup.person_id,
            handler_type=HandlerType.PERSON,
            handler_name=backup.person_name,
            escalation_level=level.level,
            reason=f"Escalated to backup: {backup.reason}",
            original_handler_id=ctx.original_handler_id,
        )

    async def _resolve_team(self, level: EscalationLevel, ctx: _Escalation):
        team_id = level.target_id
        if not team_id:
            profile = await self._original_profile(ctx)
            team_id = profile.team if profile else None
        if not team_id:
            return None
        return EscalationResult(
            handler_id=team_id,
            handler_type=HandlerType.TEAM,
            escalation_level=level.level,
            reason=f"Escalated to team {team_id}",
            original_handler_id=ctx.original_handler_id,
        )

    def _resolve_queue(self, level: EscalationLevel, ctx: _Escalation):
        queue_id = level.target_id or self.default_queue_id
        return EscalationResult(
            handler_id=queue_id,
            handler_type=HandlerType.QUEUE,
            escalation_level=level.level,
            reason=f"Escalated to queue {queue_id}",
            original_handler_id=ctx.original_handler_id,
        )
