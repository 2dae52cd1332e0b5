"""Transactions with a soft deadline.

The deadline only bounds how long the caller waits: the unit of work runs as a
shielded task that still commits or rolls back, and releases its connection,
after the caller has been told it timed out.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .database import ISOLATION_LEVELS
from .errors import QueryTimeoutError, TransactionTimeoutError, ValidationError

logger = logging.getLogger(__name__)


def _log_late_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("Abandoned work failed after its timeout: %r", error)


class TransactionRunner:
    def __init__(self, db_connector: Any, default_timeout_ms: Optional[int] = None):
        self.db_connector = db_connector
        self.default_timeout_ms = default_timeout_ms

    @staticmethod
    def normalize_isolation_level(isolation_level: Optional[str]) -> Optional[str]:
        if not isolation_level:
            return None
        level = " ".join(str(isolation_level).upper().split())
        if level not in ISOLATION_LEVELS:
            raise ValidationError(
                f"Unsupported isolation level: {isolation_level!r}",
                {"allowed": sorted(ISOLATION_LEVELS)},
            )
        return level

    async def with_transaction(
        self,
        unit_of_work: Callable[[Any], Awaitable[Any]],
        timeout_ms: Optional[int] = None,
        isolation_level: Optional[str] = None,
    ) -> Any:
        """Run ``unit_of_work(connection)`` in one transaction.

        Commits on success, rolls back on any exception and always releases
        the connection. Raises ``TransactionTimeoutError`` if the work has not
        finished within ``timeout_ms``.
        """
        level = self.normalize_isolation_level(isolation_level)
        timeout_ms = self.default_timeout_ms if timeout_ms is None else timeout_ms

        async def run() -> Any:
            conn = await self.db_connector.get_connection()
            try:
                await self.db_connector.begin(conn, level)
                result = await unit_of_work(conn)
                await self.db_connector.commit(conn)
                return result
            except BaseException:
                try:
                    await self.db_connector.rollback(conn)
                except Exception as e:
                    logger.error("Rollback failed: %s", e)
                raise
            finally:
                await self.db_connector.release(conn)

        task = asyncio.ensure_future(run())
        try:
            return await self._wait(task, timeout_ms)
        except asyncio.TimeoutError:
            if task.done():
                raise
            task.add_done_callback(_log_late_failure)
            logger.warning("Transaction exceeded %sms; the caller stopped waiting", timeout_ms)
            raise TransactionTimeoutError(
                f"Transaction timeout after {timeout_ms}ms", {"timeout_ms": timeout_ms}
            ) from None

    async def run_with_timeout(self, awaitable: Awaitable[Any], timeout_ms: Optional[int]) -> Any:
        """Apply the same soft deadline to a single read."""
        task = asyncio.ensure_future(awaitable)
        try:
            return await self._wait(task, timeout_ms)
        except asyncio.TimeoutError:
            if task.done():
                raise
            task.add_done_callback(_log_late_failure)
            raise QueryTimeoutError(
                f"Query timeout after {timeout_ms}ms", {"timeout_ms": timeout_ms}
            ) from None

    @staticmethod
    async def _wait(task: asyncio.Future, timeout_ms: Optional[int]) -> Any:
        if not timeout_ms or timeout_ms <= 0:
            return await task
        return await asyncio.wait_for(asyncio.shield(task), timeout_ms / 1000)
