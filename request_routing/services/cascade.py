"""First-success-wins combinator shared by the backup and escalation cascades."""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Sequence, TypeVar

logger = logging.getLogger(__name__)

C = TypeVar("C")
R = TypeVar("R")


@dataclass(frozen=True)
class Step(Generic[C, R]):
    """One strategy in a cascade. ``run`` returns None when it finds nothing."""
    name: str
    run: Callable[[C], Awaitable[R | None]]


async def first_success(
    steps: Sequence[Step[C, R]],
    context: C,
    *,
    stage: str,
) -> R | None:
    """Run steps in order and return the first non-None result.

    A step that raises is logged and treated as having found nothing.
    """
    for step in steps:
        try:
            result = await step.run(context)
        except Exception as e:
            logger.warning(f"{stage}: step '{step.name}' failed, trying next: {e}")
            continue

        if result is not None:
            logger.debug(f"{stage}: step '{step.name}' succeeded")
            return result

        logger.debug(f"{stage}: step '{step.name}' found nothing")

    return None
