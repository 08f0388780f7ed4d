"""Best-effort side operations whose failure must never reach the caller."""

from typing import Awaitable

from tieredstore.core.logging import get_logger

logger = get_logger(__name__)


async def advisory(operation: str, awaitable: Awaitable, **context) -> None:
    """Await ``awaitable`` and log, rather than raise, any failure.

    Used for cache population and post-commit cleanup: the durable store
    already holds the truth, so these only affect speed or staleness.
    Cancellation is not an error here and still propagates.
    """
    try:
        await awaitable
    except Exception as e:
        logger.warning("Advisory operation failed", operation=operation,
                       error=str(e), error_type=type(e).__name__, **context)
