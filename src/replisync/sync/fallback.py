"""Ordered-strategy executor for bounded fallback chains.

Each step is tried in sequence; the first one producing a value wins. Steps
never run in parallel and the chain never loops, so its length is the hard
upper bound on extra requests.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class FallbackStep(Generic[T]):
    """One named strategy. Returning None counts as a miss."""

    name: str
    run: Callable[[], Awaitable[T | None]]


async def run_fallback_chain(
    steps: Sequence[FallbackStep[T]],
    *,
    fatal: tuple[type[BaseException], ...] = (),
    recoverable: tuple[type[BaseException], ...] = (Exception,),
    on_exhausted: Callable[[BaseException | None], BaseException] | None = None,
) -> T:
    """Run ``steps`` in order and return the first non-None result.

    Args:
        steps: Strategies to try, in priority order.
        fatal: Exception types that abort the chain immediately.
        recoverable: Exception types that move on to the next step.
        on_exhausted: Builds the error raised when every step missed. When
            omitted, the last step's exception is re-raised.

    Raises:
        The fatal exception, the ``on_exhausted`` error, or the last error.
    """
    last_error: BaseException | None = None

    for step in steps:
        try:
            result = await step.run()
        except fatal:
            raise
        except recoverable as e:
            logger.debug("Fallback step %s failed: %s", step.name, e)
            last_error = e
            continue

        if result is not None:
            return result
        logger.debug("Fallback step %s produced no result", step.name)

    if on_exhausted is not None:
        raise on_exhausted(last_error) from last_error
    if last_error is not None:
        raise last_error
    raise LookupError("Fallback chain exhausted without a result")
