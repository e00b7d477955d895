"""
Transaction runner.

Runs a unit of work inside a single database transaction and retries it
when the store reports a conflict (optimistic version mismatch, lock or
serialization failure).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.core.errors import SlotEngineError, TransactionAbortedError, TransactionFailedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFLICT_ERRORS = (StaleDataError, OperationalError)


class StepTracker:
    """Remembers which step of a unit of work is running."""

    def __init__(self, initial: str = "load"):
        self.current = initial

    def __call__(self, step: str) -> None:
        self.current = step


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    work: Callable[[AsyncSession, StepTracker], Awaitable[T]],
    *,
    retries: Optional[int] = None,
    backoff: Optional[float] = None,
    context: Optional[dict[str, Any]] = None,
) -> T:
    """Execute ``work`` atomically.

    Args:
        session_factory: Factory producing a fresh session per attempt
        work: Coroutine receiving the session and a step tracker
        retries: Conflict retries (defaults to settings)
        backoff: Base backoff in seconds (defaults to settings)
        context: Error context (org_id, appointment_id, slot_id)

    Returns:
        Whatever ``work`` returns

    Raises:
        SlotEngineError: Domain errors raised by ``work`` (rolled back)
        TransactionAbortedError: Conflict persisted after retries
        TransactionFailedError: Any other failure, tagged with the step
    """
    retries = settings.transaction_retries if retries is None else retries
    backoff = settings.transaction_retry_backoff if backoff is None else backoff
    context = context or {}

    attempt = 0
    while True:
        step = StepTracker()
        session = session_factory()
        try:
            async with session.begin():
                return await work(session, step)
        except SlotEngineError:
            raise
        except CONFLICT_ERRORS as e:
            attempt += 1
            if attempt > retries:
                logger.error(f"Transaction aborted at step '{step.current}' after {attempt} attempts: {e}")
                raise TransactionAbortedError(
                    f"Conflicting concurrent update during {step.current}",
                    **context,
                ) from e
            logger.warning(f"Transaction conflict at step '{step.current}', retrying ({attempt}/{retries})")
            await asyncio.sleep(backoff * attempt)
        except Exception as e:
            logger.error(f"Transaction failed at step '{step.current}': {e}", exc_info=True)
            raise TransactionFailedError(step.current, str(e) or type(e).__name__, **context) from e
        finally:
            await session.close()
