"""
Decision Recorder: persists routing decisions and their outcome feedback.

Decisions are append-only. Recording is a synchronous write: a routing call
does not return until its decision is stored, and a failed write fails the
call. Feedback only updates the outcome fields of an existing decision.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import HandlerType, RoutingDecision, UrgencyLevel
from ..models.base import new_id, utcnow
from .errors import DecisionNotFoundError, DecisionRecordError, InvalidRequestError
from .expert_finder import HandlerCandidate

logger = logging.getLogger(__name__)


def request_fingerprint(organization_id: str, content: str, subject: str | None = None) -> str:
    """Stable id for a request that arrived without one."""
    data = f"{organization_id}|{subject or ''}|{content}"
    return hashlib.sha256(data.encode()).hexdigest()


# =============================================================================
# DATA TYPES
# =============================================================================


@dataclass
class DecisionRecord:
    """One routing outcome, as produced by the engine."""
    organization_id: str
    request_id: str
    handler_id: str
    handler_type: HandlerType
    confidence: float
    categories: list[str] = field(default_factory=list)
    urgency_level: UrgencyLevel = UrgencyLevel.NORMAL
    request_type: str = "general"
    handler_name: str | None = None
    matched_rule_id: str | None = None
    matched_rule_name: str | None = None
    reasoning: str = ""
    was_escalated: bool = False
    was_rerouted: bool = False
    escalation_level: int = 0
    alternative_handlers: list[HandlerCandidate] = field(default_factory=list)
    processing_time_ms: int = 0
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    # Outcome feedback
    was_successful: bool | None = None
    feedback_score: int | None = None
    feedback_text: str | None = None
    resolution_time_ms: int | None = None
    outcome_recorded_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "request_id": self.request_id,
            "request_type": self.request_type,
            "categories": list(self.categories),
            "urgency_level": self.urgency_level.value,
            "handler_id": self.handler_id,
            "handler_type": self.handler_type.value,
            "handler_name": self.handler_name,
            "matched_rule_id": self.matched_rule_id,
            "matched_rule_name": self.matched_rule_name,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "was_escalated": self.was_escalated,
            "was_rerouted": self.was_rerouted,
            "escalation_level": self.escalation_level,
            "alternative_handlers": [c.to_dict() for c in self.alternative_handlers],
            "processing_time_ms": self.processing_time_ms,
            "created_at": self.created_at,
            "was_successful": self.was_successful,
            "feedback_score": self.feedback_score,
            "feedback_text": self.feedback_text,
            "resolution_time_ms": self.resolution_time_ms,
            "outcome_recorded_at": self.outcome_recorded_at,
        }

    @classmethod
    def from_model(cls, row: RoutingDecision) -> "DecisionRecord":
        return cls(
            id=row.id,
            organization_id=row.organization_id,
            request_id=row.request_id,
            request_type=row.request_type,
            categories=list(row.categories or []),
            urgency_level=UrgencyLevel(row.urgency_level),
            handler_id=row.handler_id,
            handler_type=HandlerType(row.handler_type),
            handler_name=row.handler_name,
            matched_rule_id=row.matched_rule_id,
            matched_rule_name=row.matched_rule_name,
            confidence=row.confidence,
            reasoning=row.reasoning or "",
            was_escalated=row.was_escalated,
            was_rerouted=row.was_rerouted,
            escalation_level=row.escalation_level,
            alternative_handlers=[
                HandlerCandidate.from_dict(c) for c in row.alternative_handlers or []
            ],
            processing_time_ms=row.processing_time_ms,
            created_at=row.created_at,
            was_successful=row.was_successful,
            feedback_score=row.feedback_score,
            feedback_text=row.feedback_text,
            resolution_time_ms=row.resolution_time_ms,
            outcome_recorded_at=row.outcome_recorded_at,
        )


@dataclass
class DecisionOutcome:
    was_successful: bool
    feedback_score: int | None = None  # 1-5
    feedback_text: str | None = None
    resolution_time_ms: int | None = None


class DecisionStore(Protocol):
    async def add(self, record: DecisionRecord) -> str: ...

    async def get(self, organization_id: str, decision_id: str) -> DecisionRecord | None: ...

    async def update_outcome(
        self,
        organization_id: str,
        decision_id: str,
        outcome: DecisionOutcome,
        recorded_at: datetime,
    ) -> bool: ...

    async def search(
        self,
        organization_id: str,
        *,
        handler_id: str | None = None,
        handler_ids: Sequence[str] = (),
        since: datetime | None = None,
        limit: int = 50,
    ) -> list[DecisionRecord]: ...


# =============================================================================
# SQL STORE
# =============================================================================


class SqlDecisionStore:
    """Decision persistence over an ``AsyncSession``. Writes are committed."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def add(self, record: DecisionRecord) -> str:
        row = RoutingDecision(
            id=record.id,
            organization_id=record.organization_id,
            request_id=record.request_id,
            request_type=record.request_type,
            categories=list(record.categories),
            urgency_level=record.urgency_level,
            handler_id=record.handler_id,
            handler_type=record.handler_type,
            handler_name=record.handler_name,
            matched_rule_id=record.matched_rule_id,
            matched_rule_name=record.matched_rule_name,
            confidence=record.confidence,
            reasoning=record.reasoning,
            was_escalated=record.was_escalated,
            was_rerouted=record.was_rerouted,
            escalation_level=record.escalation_level,
            alternative_handlers=[c.to_dict() for c in record.alternative_handlers],
            processing_time_ms=record.processing_time_ms,
            created_at=record.created_at,
        )
        self._session.add(row)
        await self._commit()
        return row.id

    async def get(self, organization_id: str, decision_id: str) -> DecisionRecord | None:
        row = await self._get_row(organization_id, decision_id)
        return DecisionRecord.from_model(row) if row else None

    async def update_outcome(
        self,
        organization_id: str,
        decision_id: str,
        outcome: DecisionOutcome,
        recorded_at: datetime,
    ) -> bool:
        row = await self._get_row(organization_id, decision_id)
        if row is None:
            return False

        row.was_successful = outcome.was_successful
        row.feedback_score = outcome.feedback_score
        row.feedback_text = outcome.feedback_text
        row.resolution_time_ms = outcome.resolution_time_ms
        row.outcome_recorded_at = recorded_at

        await self._commit()
        return True

    async def search(
        self,
        organization_id: str,
        *,
        handler_id: str | None = None,
        handler_ids: Sequence[str] = (),
        since: datetime | None = None,
        limit: int = 50,
    ) -> list[DecisionRecord]:
        query = select(RoutingDecision).where(
            RoutingDecision.organization_id == organization_id
        )
        if handler_id:
            query = query.where(RoutingDecision.handler_id == handler_id)
        if handler_ids:
            query = query.where(RoutingDecision.handler_id.in_(handler_ids))
        if since:
            query = query.where(RoutingDecision.created_at >= since)

        result = await self._session.execute(
            query.order_by(RoutingDecision.created_at.desc()).limit(limit)
        )
        return [DecisionRecord.from_model(row) for row in result.scalars().all()]

    async def _commit(self) -> None:
        # A failed flush leaves the session unusable until rolled back
        try:
            await self._session.flush()
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

    async def _get_row(self, organization_id: str, decision_id: str) -> RoutingDecision | None:
        result = await self._session.execute(
            select(RoutingDecision).where(
                RoutingDecision.id == decision_id,
                RoutingDecision.organization_id == organization_id,
            )
        )
        return result.scalar_one_or_none()


# =============================================================================
# RECORDER
# =============================================================================


class DecisionRecorder:
    """Records decisions and attaches outcome feedback."""

    def __init__(self, store: DecisionStore):
        self._store = store

    async def record(self, decision: DecisionRecord) -> str:
        """Persist a decision. Raises DecisionRecordError if the write fails."""
        try:
            decision_id = await self._store.add(decision)
        except Exception as e:
            logger.error(
                f"Failed to record routing decision (stage=record_decision, "
                f"org={decision.organization_id}, handler={decision.handler_id}): {e}"
            )
            raise DecisionRecordError(f"Failed to record routing decision: {e}") from e

        logger.debug(f"Recorded routing decision {decision_id}")
        return decision_id

    async def update_outcome(
        self,
        decision_id: str,
        organization_id: str,
        outcome: DecisionOutcome,
    ) -> None:
        """Attach outcome feedback. Repeated calls overwrite, never duplicate."""
        if outcome.feedback_score is not None and not 1 <= outcome.feedback_score <= 5:
            raise InvalidRequestError("feedback_score must be between 1 and 5")
        if outcome.resolution_time_ms is not None and outcome.resolution_time_ms < 0:
            raise InvalidRequestError("resolution_time_ms must not be negative")

        updated = await self._store.update_outcome(
            organization_id, decision_id, outcome, utcnow()
        )
        if not updated:
            raise DecisionNotFoundError(f"Routing decision {decision_id} not found")

        logger.info(
            f"Recorded outcome for decision {decision_id}: "
            f"successful={outcome.was_successful} score={outcome.feedback_score}"
        )

    async def get_decision(self, decision_id: str, organization_id: str) -> DecisionRecord:
        record = await self._store.get(organization_id, decision_id)
        if record is None:
            raise DecisionNotFoundError(f"Routing decision {decision_id} not found")
        return record

    async def list_decisions(
        self,
        organization_id: str,
        *,
        handler_id: str | None = None,
        handler_ids: Sequence[str] = (),
        since: datetime | None = None,
        limit: int = 50,
    ) -> list[DecisionRecord]:
        """Newest first. ``handler_ids`` keeps decisions for any of the given handlers."""
        return await self._store.search(
            organization_id,
            handler_id=handler_id,
            handler_ids=handler_ids,
            since=since,
            limit=limit,
        )
